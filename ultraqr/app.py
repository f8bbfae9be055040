# app.py
import argparse
import logging
import sys
from typing import List, Optional

from ultraqr.errors import UltraQRError
from ultraqr.helper.config import DEFAULT_DEVICE, DEFAULT_KEY_PREFIX, UltraQRConfig
from ultraqr.tpm.module.ultraqr_service import Mode, UltraQRService
from ultraqr.tpm.policy import DEFAULT_PCRS

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ultraqr",
        description="Prove measured boot state with a TPM-sealed key and QR codes",
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--init", dest="mode", action="store_const", const=Mode.INIT,
                       help="Initialize UltraQR with a new signing key")
    modes.add_argument("--enroll", dest="mode", action="store_const", const=Mode.ENROLL,
                       help="Enroll a new verifier device")
    modes.add_argument("--verify", dest="mode", action="store_const", const=Mode.VERIFY,
                       help="Verify measured boot state")

    parser.add_argument("--device", default=None,
                        help=f"TPM device or TCTI string (default: {DEFAULT_DEVICE})")
    parser.add_argument("--key-prefix", default=None,
                        help=f"Path prefix of the key files (default: {DEFAULT_KEY_PREFIX})")
    parser.add_argument("--pcr", default=None,
                        help=f"TPM PCRs to seal the key at initialization (default: {DEFAULT_PCRS})")
    parser.add_argument("--challenge", default="",
                        help="Sign this challenge instead of the current timestamp")
    parser.add_argument("--output", default=None,
                        help="Also write the QR code as a PNG image to this path")
    parser.add_argument("--hex", action="store_true",
                        help="Hex-encode the enrollment public key instead of base64")
    parser.add_argument("--verbose", action="store_true", help="Use verbose logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse already printed help or the usage error
        return 0 if e.code == 0 else 1

    if args.mode is None:
        parser.print_usage(sys.stderr)
        return 1

    configure_logging(args.verbose)

    try:
        config = UltraQRConfig.from_args(args)
        result = UltraQRService(config).run(args.mode)
    except UltraQRError as e:
        logger.error(f"{args.mode.value} failed: {e}")
        return 1

    if result.rendering:
        print(result.rendering, end="")
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
