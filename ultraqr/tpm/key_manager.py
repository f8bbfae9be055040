# ultraqr/tpm/key_manager.py
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from tpm2_pytss import (
    ESYS_TR,
    TPM2_ALG,
    TPM2_ECC_CURVE,
    TPM2B_DIGEST,
    TPM2B_ECC_PARAMETER,
    TPM2B_PRIVATE,
    TPM2B_PUBLIC,
    TPM2B_SENSITIVE_CREATE,
    TPMA_OBJECT,
    TPMS_ECC_PARMS,
    TPMS_ECC_POINT,
    TPMS_SCHEME_HASH,
    TPMT_ECC_SCHEME,
    TPMT_KDF_SCHEME,
    TPMT_PUBLIC,
    TPMT_SYM_DEF_OBJECT,
    TPMU_ASYM_SCHEME,
    TPMU_PUBLIC_ID,
    TPMU_PUBLIC_PARMS,
    TSS2_Exception,
)

from ultraqr.errors import (
    KeyCreationFailed,
    KeyLoadFailed,
    KeyNotFound,
    KeyPersistenceFailed,
)
from ultraqr.tpm.connection import PolicySession, TPMConnection
from ultraqr.tpm.policy import PCRSelection

logger = logging.getLogger(__name__)

PRIVATE_SUFFIX = ".priv"
PUBLIC_SUFFIX = ".pub"


def signing_key_template(auth_policy: bytes,
                         point: Tuple[bytes, bytes] = (b"", b"")) -> TPM2B_PUBLIC:
    """
    Template for the sealed ECDSA P-256 signing key.

    USERWITHAUTH is left out, so the key can only be used through its policy.
    """
    x, y = point
    return TPM2B_PUBLIC(
        publicArea=TPMT_PUBLIC(
            type=TPM2_ALG.ECC,
            nameAlg=TPM2_ALG.SHA256,
            objectAttributes=(
                TPMA_OBJECT.SIGN_ENCRYPT
                | TPMA_OBJECT.FIXEDTPM
                | TPMA_OBJECT.FIXEDPARENT
                | TPMA_OBJECT.SENSITIVEDATAORIGIN
            ),
            authPolicy=TPM2B_DIGEST(auth_policy),
            parameters=TPMU_PUBLIC_PARMS(
                eccDetail=TPMS_ECC_PARMS(
                    symmetric=TPMT_SYM_DEF_OBJECT(algorithm=TPM2_ALG.NULL),
                    scheme=TPMT_ECC_SCHEME(
                        scheme=TPM2_ALG.ECDSA,
                        details=TPMU_ASYM_SCHEME(
                            ecdsa=TPMS_SCHEME_HASH(hashAlg=TPM2_ALG.SHA256)
                        ),
                    ),
                    curveID=TPM2_ECC_CURVE.NIST_P256,
                    kdf=TPMT_KDF_SCHEME(scheme=TPM2_ALG.NULL),
                )
            ),
            unique=TPMU_PUBLIC_ID(
                ecc=TPMS_ECC_POINT(
                    x=TPM2B_ECC_PARAMETER(x),
                    y=TPM2B_ECC_PARAMETER(y),
                )
            ),
        )
    )


@dataclass
class KeyBlobs:
    """Public area and TPM-wrapped private area of the signing key"""

    private: TPM2B_PRIVATE
    public: TPM2B_PUBLIC

    @property
    def auth_policy(self) -> bytes:
        return bytes(self.public.publicArea.authPolicy)


@dataclass
class AuthorizedKey:
    """A loaded key together with the policy session authorizing its next use"""

    handle: ESYS_TR
    public: TPM2B_PUBLIC
    session: PolicySession
    consumed: bool = False


def key_paths(prefix: str) -> Dict[str, Path]:
    return {
        "private": Path(f"{prefix}{PRIVATE_SUFFIX}"),
        "public": Path(f"{prefix}{PUBLIC_SUFFIX}"),
    }


class KeyManager:
    """Creates, persists and reloads the PCR-sealed signing key"""

    def __init__(self, connection: TPMConnection):
        self.connection = connection

    def create_key(self, prefix: str, selection: PCRSelection) -> KeyBlobs:
        """
        Create a new signing key sealed to the current values of `selection`.

        Both blob files are overwritten. A persistence failure leaves the new
        key unusable and the caller has to run creation again.

        Raises:
            PolicyComputationFailed: If the policy digest cannot be computed
            KeyCreationFailed: If the TPM refuses to create the key
            KeyPersistenceFailed: If the blobs cannot be written
        """
        parent = self.connection.derive_storage_root()
        digest = self.connection.compute_policy_digest(selection)

        try:
            private, public, _, _, _ = self.connection.esapi.create(
                parent,
                TPM2B_SENSITIVE_CREATE(),
                signing_key_template(digest),
            )
        except TSS2_Exception as e:
            raise KeyCreationFailed("TPM failed to create the signing key", e) from e

        blobs = KeyBlobs(private=private, public=public)
        self.save(prefix, blobs)
        logger.info(f"Signing key sealed to PCRs {selection} and saved under {prefix}")
        return blobs

    def save(self, prefix: str, blobs: KeyBlobs) -> None:
        """
        Write both blobs with owner-only permissions.

        Each blob goes to a temporary file first; both are renamed into place
        only once both are fully written. The previous private blob is kept
        aside until the public blob is in place, so a failed rename restores
        the old pair instead of mixing old and new blobs.
        """
        paths = key_paths(prefix)
        contents = {
            "private": blobs.private.marshal(),
            "public": blobs.public.marshal(),
        }
        staged: Dict[str, str] = {}
        backup = paths["private"].with_name(f".{paths['private'].name}.old")
        has_backup = False
        private_replaced = False

        try:
            directory = paths["private"].parent
            directory.mkdir(parents=True, exist_ok=True)

            for name, data in contents.items():
                # mkstemp creates the file with mode 0600
                fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{paths[name].name}.")
                staged[name] = tmp_path
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())

            if paths["private"].exists():
                os.replace(paths["private"], backup)
                has_backup = True

            os.replace(staged["private"], paths["private"])
            del staged["private"]
            private_replaced = True

            os.replace(staged["public"], paths["public"])
            del staged["public"]
        except OSError as e:
            self._rollback(paths["private"], backup if has_backup else None, private_replaced)
            raise KeyPersistenceFailed(f"Failed to save key blobs under {prefix}", e) from e
        finally:
            for tmp_path in staged.values():
                try:
                    os.unlink(tmp_path)
                except OSError as e:
                    logger.warning(f"Could not remove temporary file {tmp_path}: {e}")

        if has_backup:
            try:
                os.unlink(backup)
            except OSError as e:
                logger.warning(f"Could not remove previous private blob {backup}: {e}")

        logger.debug(f"Wrote {paths['private']} and {paths['public']}")

    @staticmethod
    def _rollback(private_path: Path, backup: Optional[Path], private_replaced: bool) -> None:
        """Put the previous private blob back after a failed save"""
        try:
            if backup is not None:
                os.replace(backup, private_path)
            elif private_replaced:
                # No previous key to restore
                os.unlink(private_path)
        except OSError as e:
            logger.error(f"Failed to restore {private_path} after a failed save: {e}")

    def read(self, prefix: str) -> KeyBlobs:
        """Read and unmarshal both blob files"""
        paths = key_paths(prefix)
        try:
            private_data = paths["private"].read_bytes()
            public_data = paths["public"].read_bytes()
        except OSError as e:
            raise KeyNotFound(f"Cannot read key files for {prefix} (run --init first?)", e) from e

        try:
            private, _ = TPM2B_PRIVATE.unmarshal(private_data)
            public, _ = TPM2B_PUBLIC.unmarshal(public_data)
        except TSS2_Exception as e:
            raise KeyLoadFailed(f"Key files for {prefix} are corrupt", e) from e

        return KeyBlobs(private=private, public=public)

    def load_key(self, prefix: str, selection: PCRSelection) -> AuthorizedKey:
        """
        Load the persisted key and authorize it for a single use.

        Raises:
            KeyNotFound: If either blob file is missing
            KeyLoadFailed: If the TPM refuses the blobs
            PolicyAuthFailed: If the live PCR values do not match the sealed state
        """
        blobs = self.read(prefix)

        try:
            parent = self.connection.derive_storage_root()
        except KeyCreationFailed as e:
            raise KeyLoadFailed("Cannot derive the storage root to load the key under", e.cause) from e

        try:
            handle = self.connection.register(
                self.connection.esapi.load(parent, blobs.private, blobs.public)
            )
            public, _, _ = self.connection.esapi.read_public(handle)
        except TSS2_Exception as e:
            raise KeyLoadFailed(f"TPM refused to load the key from {prefix}", e) from e
        logger.debug(f"Key {prefix} loaded")

        session = self.connection.open_policy_session(
            selection, expected_digest=bytes(public.publicArea.authPolicy)
        )
        return AuthorizedKey(handle=handle, public=public, session=session)

    def authorize(self, key: AuthorizedKey, selection: Optional[PCRSelection] = None) -> AuthorizedKey:
        """Attach a fresh policy session to an already loaded key"""
        selection = selection or key.session.selection
        session = self.connection.open_policy_session(
            selection, expected_digest=bytes(key.public.publicArea.authPolicy)
        )
        return AuthorizedKey(handle=key.handle, public=key.public, session=session)
