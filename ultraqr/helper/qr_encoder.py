# helper/qr_encoder.py
import logging
from typing import List, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from qrcode.exceptions import DataOverflowError

from ultraqr.errors import EncodingFailed

logger = logging.getLogger(__name__)

# Indexed by (upper module filled, lower module filled)
_HALF_BLOCKS = {
    (True, True): "█",
    (True, False): "▀",
    (False, True): "▄",
    (False, False): " ",
}


def render_small(matrix: List[List[bool]], inverse: bool = False) -> str:
    """
    Render a module matrix as text, two module rows per line.

    By default light modules are drawn filled, which reads correctly on a
    dark terminal background.
    """
    lines = []
    for top in range(0, len(matrix), 2):
        upper = matrix[top]
        lower = matrix[top + 1] if top + 1 < len(matrix) else [inverse] * len(upper)
        line = []
        for up, down in zip(upper, lower):
            line.append(_HALF_BLOCKS[(up == inverse, down == inverse)])
        lines.append("".join(line))
    return "\n".join(lines) + "\n"


def generate_qr_code(data: str, output_path: Optional[str] = None,
                     border: int = 1, inverse: bool = False) -> str:
    """
    Encode `data` as a QR code.

    Args:
        data: String to encode
        output_path: If given, a PNG image of the code is written there
        border: Quiet zone width in modules
        inverse: Draw dark modules filled instead of light ones

    Returns:
        Text rendering of the code

    Raises:
        EncodingFailed: If the data exceeds QR capacity or the image cannot be saved
    """
    logger.debug(f"QR code data: {data}")
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_L,
        border=border,
    )
    qr.add_data(data)
    try:
        qr.make(fit=True)
    except DataOverflowError as e:
        raise EncodingFailed(f"{len(data)} characters do not fit in a QR code", e) from e
    logger.debug(f"QR code version {qr.version}")

    if output_path:
        try:
            image = qr.make_image()
            image.save(output_path)
        except (OSError, ValueError) as e:
            raise EncodingFailed(f"Failed to save QR image to {output_path}", e) from e
        logger.info(f"QR code image saved to {output_path}")

    return render_small(qr.get_matrix(), inverse=inverse)
