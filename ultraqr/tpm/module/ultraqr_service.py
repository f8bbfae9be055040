# tpm/module/ultraqr_service.py
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ultraqr.helper.config import UltraQRConfig
from ultraqr.helper.finite_state_machine import BaseStateMachine, State
from ultraqr.helper.payload import ChallengePayload, TimestampPayload, timestamp_message
from ultraqr.helper.qr_encoder import generate_qr_code
from ultraqr.tpm.connection import TPMConnection
from ultraqr.tpm.key_manager import KeyManager
from ultraqr.tpm.signer import Signer

logger = logging.getLogger(__name__)


class Mode(Enum):
    INIT = "init"
    ENROLL = "enroll"
    VERIFY = "verify"


_MODE_STATES = {
    Mode.INIT: State.INITIALIZING,
    Mode.ENROLL: State.ENROLLING,
    Mode.VERIFY: State.VERIFYING,
}


@dataclass
class FlowResult:
    """Outcome of one flow: the QR data and its rendering, if any"""

    mode: Mode
    data: str = ""
    rendering: str = ""
    image_path: Optional[str] = None


class UltraQRService:
    """
    Runs the init, enroll and verify flows against one TPM connection.

    Each run opens the connection, drives exactly one flow and closes the
    connection again, flushing every handle, on success and on failure.
    """

    def __init__(self, config: UltraQRConfig,
                 connection_factory: Callable[[str], TPMConnection] = TPMConnection.open,
                 qr_encoder: Callable[..., str] = generate_qr_code,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.connection_factory = connection_factory
        self.qr_encoder = qr_encoder
        self.clock = clock
        self.state_machine = BaseStateMachine()

    @property
    def state(self) -> State:
        return self.state_machine.state

    def run(self, mode: Mode) -> FlowResult:
        """
        Execute a single flow.

        Raises:
            UltraQRError: Any failure of the flow; the connection is already closed
        """
        if self.state_machine.finished:
            self.state_machine.reset()

        if mode not in _MODE_STATES:
            self.state_machine.transition(State.FAILED, {"action": str(mode), "error": "Unknown mode"})
            raise ValueError(f"Unknown mode: {mode}")

        handlers = {
            Mode.INIT: self.initialize,
            Mode.ENROLL: self.enroll,
            Mode.VERIFY: self.verify,
        }
        self.state_machine.transition(_MODE_STATES[mode], {"action": mode.value})

        try:
            with self.connection_factory(self.config.device) as connection:
                result = handlers[mode](connection)
        except Exception as e:
            self.state_machine.transition(State.FAILED, {"action": mode.value, "error": str(e)})
            raise

        self.state_machine.transition(State.DONE, {"action": mode.value, "completed": True})
        return result

    def initialize(self, connection: TPMConnection) -> FlowResult:
        """Create a new signing key sealed to the configured PCRs"""
        logger.info("Generating a new signing key")
        KeyManager(connection).create_key(self.config.key_prefix, self.config.pcrs)
        logger.info("New key generated and sealed to the TPM!")
        return FlowResult(mode=Mode.INIT, data=self.config.key_prefix)

    def enroll(self, connection: TPMConnection) -> FlowResult:
        """Export the public key as an enrollment QR code"""
        logger.info("Retrieving public key")
        key = KeyManager(connection).load_key(self.config.key_prefix, self.config.pcrs)
        data = Signer(connection).export_public_key(key, self.config.pubkey_encoding)

        logger.info("Generating enrollment QR code")
        rendering = self.qr_encoder(data, self.config.output_path)
        return FlowResult(mode=Mode.ENROLL, data=data, rendering=rendering,
                          image_path=self.config.output_path)

    def verify(self, connection: TPMConnection) -> FlowResult:
        """Sign the challenge, or the current time, as a verification QR code"""
        logger.info("Unsealing signing key")
        key = KeyManager(connection).load_key(self.config.key_prefix, self.config.pcrs)
        signer = Signer(connection)

        if self.config.challenge:
            logger.info("Signing challenge")
            signature = signer.sign(key, self.config.challenge.encode("utf-8"))
            payload = ChallengePayload(c=self.config.challenge, s=_b64(signature))
        else:
            logger.info("Signing current timestamp")
            timestamp = int(self.clock())
            signature = signer.sign(key, timestamp_message(timestamp))
            payload = TimestampPayload(t=str(timestamp), s=_b64(signature))

        data = payload.to_json()
        logger.debug(f"Signed data: {data}")

        logger.info("Generating verification QR code")
        rendering = self.qr_encoder(data, self.config.output_path)
        return FlowResult(mode=Mode.VERIFY, data=data, rendering=rendering,
                          image_path=self.config.output_path)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
