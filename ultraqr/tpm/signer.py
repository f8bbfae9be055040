# ultraqr/tpm/signer.py
import base64
import logging

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from tpm2_pytss import (
    TPM2_ALG,
    TPM2_ECC_CURVE,
    TPM2_RH,
    TPM2_ST,
    TPM2B_DIGEST,
    TPMS_SCHEME_HASH,
    TPMT_SIG_SCHEME,
    TPMT_TK_HASHCHECK,
    TPMU_SIG_SCHEME,
    TSS2_Exception,
)

from ultraqr.errors import (
    PublicKeyExportFailed,
    SignatureEncodingFailed,
    SigningFailed,
)
from ultraqr.tpm.connection import TPMConnection
from ultraqr.tpm.key_manager import AuthorizedKey

logger = logging.getLogger(__name__)

_CURVES = {
    TPM2_ECC_CURVE.NIST_P256: ec.SECP256R1,
    TPM2_ECC_CURVE.NIST_P384: ec.SECP384R1,
    TPM2_ECC_CURVE.NIST_P521: ec.SECP521R1,
}

_ENCODINGS = {
    "base64": lambda der: base64.b64encode(der).decode("ascii"),
    "hex": lambda der: der.hex(),
}


def sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


class Signer:
    """Exports the public half of a loaded key and signs with it"""

    def __init__(self, connection: TPMConnection):
        self.connection = connection

    def public_key(self, key: AuthorizedKey) -> ec.EllipticCurvePublicKey:
        """Read back the public area and rebuild it as a cryptography key"""
        try:
            public, _, _ = self.connection.esapi.read_public(key.handle)
        except TSS2_Exception as e:
            raise PublicKeyExportFailed("Failed to read the public area", e) from e

        area = public.publicArea
        if area.type != TPM2_ALG.ECC:
            raise PublicKeyExportFailed(f"Unsupported key type {area.type}: only ECC is supported")

        curve_id = area.parameters.eccDetail.curveID
        curve = _CURVES.get(curve_id)
        if curve is None:
            raise PublicKeyExportFailed(f"Unsupported curve {curve_id}")

        ecc_point = area.unique.ecc
        x = int.from_bytes(bytes(ecc_point.x), byteorder="big")
        y = int.from_bytes(bytes(ecc_point.y), byteorder="big")
        try:
            return ec.EllipticCurvePublicNumbers(x, y, curve()).public_key()
        except ValueError as e:
            raise PublicKeyExportFailed("Public point is not on the curve", e) from e

    def export_public_key(self, key: AuthorizedKey, encoding: str = "base64") -> str:
        """
        Export the public key as DER SubjectPublicKeyInfo.

        Args:
            key: Loaded key
            encoding: "base64" or "hex"

        Returns:
            Encoded DER public key
        """
        if encoding not in _ENCODINGS:
            raise PublicKeyExportFailed(f"Unknown public key encoding {encoding!r}")

        der = self.public_key(key).public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        encoded = _ENCODINGS[encoding](der)
        logger.debug(f"Public key: {encoded}")
        return encoded

    def sign(self, key: AuthorizedKey, payload: bytes) -> bytes:
        """
        Sign the SHA-256 digest of `payload` with the key's policy session.

        The session is spent by this call whether or not the TPM accepts it.

        Returns:
            DER-encoded ECDSA signature

        Raises:
            SigningFailed: If the session was already used or the TPM refuses
            SignatureEncodingFailed: If the TPM returns something other than ECDSA
        """
        if key.consumed:
            raise SigningFailed("Policy session already used; load the key again")

        digest = sha256(payload)
        scheme = TPMT_SIG_SCHEME(
            scheme=TPM2_ALG.ECDSA,
            details=TPMU_SIG_SCHEME(ecdsa=TPMS_SCHEME_HASH(hashAlg=TPM2_ALG.SHA256)),
        )
        # Null ticket: the key is not restricted, so the TPM need not have hashed the data
        validation = TPMT_TK_HASHCHECK(tag=TPM2_ST.HASHCHECK, hierarchy=TPM2_RH.NULL)

        key.consumed = True
        try:
            signature = self.connection.esapi.sign(
                key.handle,
                TPM2B_DIGEST(digest),
                scheme,
                validation,
                session1=key.session.handle,
            )
        except TSS2_Exception as e:
            raise SigningFailed("TPM refused to sign", e) from e
        finally:
            try:
                self.connection.release(key.session.handle)
            except TSS2_Exception as e:
                logger.error(f"Failed to flush policy session: {e}")

        return self._to_der(signature)

    @staticmethod
    def _to_der(signature) -> bytes:
        if signature.sigAlg != TPM2_ALG.ECDSA:
            raise SignatureEncodingFailed(f"Unexpected signature algorithm {signature.sigAlg}")

        r = int.from_bytes(bytes(signature.signature.ecdsa.signatureR), byteorder="big")
        s = int.from_bytes(bytes(signature.signature.ecdsa.signatureS), byteorder="big")
        if r <= 0 or s <= 0:
            raise SignatureEncodingFailed("TPM returned an empty R or S value")

        try:
            return encode_dss_signature(r, s)
        except ValueError as e:
            raise SignatureEncodingFailed("Failed to DER-encode the signature", e) from e
