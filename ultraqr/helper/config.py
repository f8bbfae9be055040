# helper/config.py
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from ultraqr.tpm.policy import DEFAULT_PCRS, PCRSelection, parse_pcrs

DEFAULT_DEVICE = "/dev/tpmrm0"
DEFAULT_KEY_PREFIX = "/etc/ultraqr/key"
PUBKEY_ENCODINGS = ("base64", "hex")


@dataclass(frozen=True)
class UltraQRConfig:
    """Settings for one invocation, built once at start-up"""

    device: str = DEFAULT_DEVICE
    key_prefix: str = DEFAULT_KEY_PREFIX
    pcrs: PCRSelection = field(default_factory=lambda: parse_pcrs(DEFAULT_PCRS))
    challenge: str = ""
    output_path: Optional[str] = None
    pubkey_encoding: str = "base64"
    verbose: bool = False

    def __post_init__(self):
        if self.pubkey_encoding not in PUBKEY_ENCODINGS:
            raise ValueError(f"Unknown public key encoding: {self.pubkey_encoding}")

    @classmethod
    def from_args(cls, args: Any) -> 'UltraQRConfig':
        """
        Build the configuration from parsed command-line arguments.

        Unset options fall back to ULTRAQR_* environment variables, then to
        the defaults. An empty PCR list falls back to DEFAULT_PCRS.

        Raises:
            InvalidPolicySpec: If the PCR list is malformed
        """
        pcr_spec = getattr(args, 'pcr', None) or os.getenv('ULTRAQR_PCRS', '') or DEFAULT_PCRS

        return cls(
            device=getattr(args, 'device', None) or os.getenv('ULTRAQR_DEVICE', DEFAULT_DEVICE),
            key_prefix=getattr(args, 'key_prefix', None) or os.getenv('ULTRAQR_KEY_PREFIX', DEFAULT_KEY_PREFIX),
            pcrs=parse_pcrs(pcr_spec),
            challenge=getattr(args, 'challenge', None) or "",
            output_path=getattr(args, 'output', None),
            pubkey_encoding="hex" if getattr(args, 'hex', False) else "base64",
            verbose=bool(getattr(args, 'verbose', False)),
        )
