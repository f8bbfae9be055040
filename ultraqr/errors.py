# ultraqr/errors.py
from typing import Optional


class UltraQRError(Exception):
    """
    Base class for every failure UltraQR reports to the operator.

    All of these are fatal to the current invocation. TPM sessions are
    single-use, so nothing is retried locally; the operator re-runs the command.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class InvalidPolicySpec(UltraQRError):
    """PCR selection string could not be parsed"""


class DeviceUnavailable(UltraQRError):
    """TPM device or TCTI could not be opened"""


class PolicyComputationFailed(UltraQRError):
    """Trial session could not compute the policy digest"""


class PolicyAuthFailed(UltraQRError):
    """Live PCR values do not satisfy the policy the key was sealed to"""


class KeyCreationFailed(UltraQRError):
    """TPM refused to create the storage root or the signing key"""


class KeyPersistenceFailed(UltraQRError):
    """Key blobs could not be written to disk"""


class KeyNotFound(UltraQRError):
    """Key blob files are missing or unreadable"""


class KeyLoadFailed(UltraQRError):
    """TPM refused to load the persisted key"""


class PublicKeyExportFailed(UltraQRError):
    """Public area is not an exportable EC key"""


class SigningFailed(UltraQRError):
    """TPM refused the sign command"""


class SignatureEncodingFailed(UltraQRError):
    """TPM signature could not be converted to DER"""


class EncodingFailed(UltraQRError):
    """QR code could not be produced"""
