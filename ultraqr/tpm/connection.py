# ultraqr/tpm/connection.py
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional

from tpm2_pytss import (
    ESAPI,
    ESYS_TR,
    TPM2_ALG,
    TPM2_SE,
    TPM2B_DIGEST,
    TPM2B_PUBLIC,
    TPM2B_SENSITIVE_CREATE,
    TPMA_OBJECT,
    TPMT_PUBLIC,
    TPMT_SYM_DEF,
    TSS2_Exception,
)

from ultraqr.errors import (
    DeviceUnavailable,
    KeyCreationFailed,
    PolicyAuthFailed,
    PolicyComputationFailed,
)
from ultraqr.tpm.policy import PCRSelection

logger = logging.getLogger(__name__)


def storage_root_template() -> TPM2B_PUBLIC:
    """Fixed template for the storage root; same template on same TPM gives the same key"""
    return TPM2B_PUBLIC(
        TPMT_PUBLIC.parse(
            alg="ecc256:aes128cfb",
            objectAttributes=TPMA_OBJECT.USERWITHAUTH
            | TPMA_OBJECT.RESTRICTED
            | TPMA_OBJECT.DECRYPT
            | TPMA_OBJECT.FIXEDTPM
            | TPMA_OBJECT.FIXEDPARENT
            | TPMA_OBJECT.SENSITIVEDATAORIGIN,
        )
    )


@dataclass
class PolicySession:
    """A policy session that has evaluated the PCR policy against live values"""

    handle: ESYS_TR
    selection: PCRSelection
    digest: bytes


class TPMConnection:
    """
    Connection to the TPM that owns every transient handle opened through it.

    Use it as a context manager so that close() runs on every exit path:

        with TPMConnection.open("/dev/tpmrm0") as conn:
            root = conn.derive_storage_root()
    """

    def __init__(self, esapi, device: str = ""):
        self.esapi = esapi
        self.device = device
        self._handles: List[ESYS_TR] = []
        self._storage_root: Optional[ESYS_TR] = None
        self._closed = False

    @classmethod
    def open(cls, device: str, esapi_factory: Callable = ESAPI) -> "TPMConnection":
        """
        Open the TPM behind `device`.

        Args:
            device: Device node such as /dev/tpmrm0, or a TCTI string
                such as "swtpm:port=2321"
            esapi_factory: Callable building the ESAPI context from a TCTI string

        Raises:
            DeviceUnavailable: If the device does not exist or ESAPI fails to start
        """
        if ":" in device:
            tcti = device
        else:
            if not os.path.exists(device):
                raise DeviceUnavailable(f"TPM device {device} does not exist")
            tcti = f"device:{device}"

        logger.debug(f"Opening TPM with TCTI {tcti}")
        try:
            esapi = esapi_factory(tcti)
        except (TSS2_Exception, OSError, RuntimeError) as e:
            raise DeviceUnavailable(f"Cannot open TPM {device}", e) from e
        return cls(esapi, device)

    def __enter__(self):
        return self

    def __exit__(self, _type, value, traceback) -> None:
        self.close()

    @property
    def open_handles(self) -> List[ESYS_TR]:
        return list(self._handles)

    def register(self, handle: ESYS_TR) -> ESYS_TR:
        """Track a transient handle so close() flushes it"""
        self._handles.append(handle)
        return handle

    def release(self, handle: ESYS_TR) -> None:
        """Flush a tracked handle now instead of at close()"""
        if handle in self._handles:
            self._handles.remove(handle)
        if handle == self._storage_root:
            self._storage_root = None
        self.esapi.flush_context(handle)

    def close(self) -> None:
        """Flush every registered handle, then close the ESAPI context"""
        if self._closed:
            logger.warning("TPM connection already closed")
            return
        self._closed = True

        while self._handles:
            handle = self._handles.pop()
            try:
                self.esapi.flush_context(handle)
            except TSS2_Exception as e:
                logger.error(f"Failed to flush handle {handle}: {e}")
        self._storage_root = None

        logger.debug("Closing TPM connection")
        self.esapi.close()

    def derive_storage_root(self) -> ESYS_TR:
        """
        Create the primary storage key under the owner hierarchy.

        The key is re-derived on each run rather than persisted in NVRAM.
        It is cached for the lifetime of this connection.
        """
        if self._storage_root is not None:
            return self._storage_root

        try:
            handle, _, _, _, _ = self.esapi.create_primary(
                TPM2B_SENSITIVE_CREATE(),
                storage_root_template(),
                ESYS_TR.OWNER,
            )
        except TSS2_Exception as e:
            raise KeyCreationFailed("Failed to derive storage root", e) from e

        self._storage_root = self.register(handle)
        logger.debug("Storage root derived")
        return handle

    def _start_session(self, session_type: TPM2_SE) -> ESYS_TR:
        return self.esapi.start_auth_session(
            tpm_key=ESYS_TR.NONE,
            bind=ESYS_TR.NONE,
            session_type=session_type,
            symmetric=TPMT_SYM_DEF(algorithm=TPM2_ALG.NULL),
            auth_hash=TPM2_ALG.SHA256,
        )

    def compute_policy_digest(self, selection: PCRSelection) -> bytes:
        """
        Compute the PCR policy digest with a trial session.

        The trial session is flushed as soon as the digest is read back.

        Raises:
            PolicyComputationFailed: If any step of the trial session fails
        """
        pcrs = selection.to_tpml()
        try:
            session = self._start_session(TPM2_SE.TRIAL)
        except TSS2_Exception as e:
            raise PolicyComputationFailed("Failed to start trial session", e) from e

        try:
            self.esapi.policy_pcr(session, TPM2B_DIGEST(), pcrs)
            digest = bytes(self.esapi.policy_get_digest(session))
        except TSS2_Exception as e:
            raise PolicyComputationFailed(f"Failed to compute policy over {selection}", e) from e
        finally:
            try:
                self.esapi.flush_context(session)
            except TSS2_Exception as e:
                logger.error(f"Failed to flush trial session: {e}")

        logger.debug(f"Policy digest for {selection}: {digest.hex()}")
        return digest

    def open_policy_session(self, selection: PCRSelection,
                            expected_digest: Optional[bytes] = None) -> PolicySession:
        """
        Start a policy session and satisfy the PCR policy with live values.

        The session authorizes exactly one command.

        Args:
            selection: PCRs the key was sealed to
            expected_digest: authPolicy of the key; when given, the session
                digest must match it

        Raises:
            PolicyAuthFailed: If the live PCR state does not satisfy the policy
        """
        pcrs = selection.to_tpml()
        try:
            handle = self.register(self._start_session(TPM2_SE.POLICY))
        except TSS2_Exception as e:
            raise PolicyAuthFailed("Failed to start policy session", e) from e

        try:
            self.esapi.policy_pcr(handle, TPM2B_DIGEST(), pcrs)
            digest = bytes(self.esapi.policy_get_digest(handle))
        except TSS2_Exception as e:
            raise PolicyAuthFailed(f"PCR policy over {selection} failed", e) from e

        if expected_digest is not None and digest != expected_digest:
            logger.debug(f"Session digest {digest.hex()} != key policy {expected_digest.hex()}")
            try:
                self.release(handle)
            except TSS2_Exception as e:
                logger.error(f"Failed to flush rejected policy session: {e}")
            raise PolicyAuthFailed(
                f"PCR values for {selection} do not match the state the key was sealed to; "
                "either the boot state changed or the PCR selection differs from the one used at --init"
            )

        return PolicySession(handle=handle, selection=selection, digest=digest)
