# helper/payload.py
import base64
import json
from dataclasses import dataclass, asdict
from typing import Dict, Any, ClassVar, Type

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec


def timestamp_message(timestamp: int) -> bytes:
    """Bytes signed for a timestamp: minimal big-endian encoding of the seconds"""
    return timestamp.to_bytes((timestamp.bit_length() + 7) // 8, byteorder="big")


@dataclass
class BasePayload:
    """Base class for the JSON objects carried in verification QR codes"""

    # Key holding the signed value (to be overridden by subclasses)
    VALUE_KEY: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert payload to dictionary, value key first"""
        return asdict(self)

    def to_json(self) -> str:
        """Compact JSON as it goes into the QR code"""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def signed_message(self) -> bytes:
        """Bytes the signature in this payload covers"""
        raise NotImplementedError

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BasePayload':
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BasePayload':
        return cls.from_dict(json.loads(json_str))


@dataclass
class TimestampPayload(BasePayload):
    """Signature over the current Unix time"""
    VALUE_KEY: ClassVar[str] = "t"

    t: str = ""
    s: str = ""

    def signed_message(self) -> bytes:
        timestamp = int(self.t)
        if timestamp < 0:
            raise ValueError(f"Negative timestamp: {self.t}")
        return timestamp_message(timestamp)


@dataclass
class ChallengePayload(BasePayload):
    """Signature over a verifier-supplied challenge"""
    VALUE_KEY: ClassVar[str] = "c"

    c: str = ""
    s: str = ""

    def signed_message(self) -> bytes:
        return self.c.encode("utf-8")


class PayloadFactory:
    """Factory for rebuilding payloads on the verifier side"""

    _payload_types: Dict[str, Type[BasePayload]] = {
        payload.VALUE_KEY: payload for payload in (TimestampPayload, ChallengePayload)
    }

    @classmethod
    def create_from_dict(cls, data: Dict[str, Any]) -> BasePayload:
        if not data:
            raise ValueError("Cannot create payload from empty dictionary")

        if not isinstance(data.get("s"), str):
            raise ValueError("Missing signature in payload")

        value_keys = [key for key in cls._payload_types if key in data]
        if len(value_keys) != 1:
            raise ValueError(f"Payload must hold exactly one of {sorted(cls._payload_types)}")

        payload_class = cls._payload_types[value_keys[0]]
        try:
            return payload_class.from_dict(data)
        except TypeError as e:
            raise ValueError(f"Invalid payload data: {str(e)}")

    @classmethod
    def create_from_json(cls, json_str: str) -> BasePayload:
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("Payload must be a JSON object")
        return cls.create_from_dict(data)


def verify_payload(payload: BasePayload, public_key_der: bytes) -> bool:
    """
    Check a payload's signature against an enrolled public key.

    Args:
        payload: Payload decoded from a verification QR code
        public_key_der: DER SubjectPublicKeyInfo captured at enrollment

    Returns:
        True if the signature is valid for the payload's message
    """
    public_key = serialization.load_der_public_key(public_key_der)
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError("Enrolled key is not an EC key")

    try:
        signature = base64.b64decode(payload.s, validate=True)
        public_key.verify(signature, payload.signed_message(), ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True
