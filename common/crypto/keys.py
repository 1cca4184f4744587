"""
Tunnel key material for the relay node.
Curve25519 key pairs and pre-shared keys, base64-encoded for storage and transport.
"""
import base64
import binascii
import logging
from dataclasses import dataclass

from Crypto.Random import get_random_bytes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

logger = logging.getLogger(__name__)

KEY_SIZE = 32


@dataclass(frozen=True)
class KeyPair:
    """A tunnel key pair, both halves base64 encoded"""
    private_key: str
    public_key: str

    def to_dict(self) -> dict:
        # The private half stays out of anything meant for display
        return {"public_key": self.public_key}


def clamp_private_key(raw: bytes) -> bytes:
    """
    Clamp a 32-byte scalar the way Curve25519 expects

    Args:
        raw: 32 random bytes

    Returns:
        Clamped scalar
    """
    if len(raw) != KEY_SIZE:
        raise ValueError(f"invalid key length: expected {KEY_SIZE}, got {len(raw)}")

    scalar = bytearray(raw)
    scalar[0] &= 248
    scalar[31] &= 127
    scalar[31] |= 64
    return bytes(scalar)


def _public_from_scalar(scalar: bytes) -> bytes:
    private = x25519.X25519PrivateKey.from_private_bytes(scalar)
    return private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def generate_keypair() -> KeyPair:
    """
    Generate a new tunnel key pair

    Returns:
        KeyPair with a clamped private key and the matching public key
    """
    scalar = clamp_private_key(get_random_bytes(KEY_SIZE))
    public = _public_from_scalar(scalar)

    return KeyPair(
        private_key=base64.b64encode(scalar).decode('ascii'),
        public_key=base64.b64encode(public).decode('ascii')
    )


def generate_preshared_key() -> str:
    """
    Generate a pre-shared key for an additional symmetric layer

    Returns:
        Base64-encoded 32-byte key
    """
    return base64.b64encode(get_random_bytes(KEY_SIZE)).decode('ascii')


def _decode_key(key: str) -> bytes:
    try:
        decoded = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 encoding: {e}")

    if len(decoded) != KEY_SIZE:
        raise ValueError(f"invalid key length: expected {KEY_SIZE}, got {len(decoded)}")
    return decoded


def validate_private_key(key: str) -> None:
    """
    Validate a base64 private key

    Raises:
        ValueError: If the key is not base64 or not 32 bytes long
    """
    _decode_key(key)


def validate_public_key(key: str) -> None:
    """
    Validate a base64 public key

    Raises:
        ValueError: If the key is not base64 or not 32 bytes long
    """
    _decode_key(key)


def derive_public_key(private_key: str) -> str:
    """
    Derive the public key from a stored private key

    Args:
        private_key: Base64-encoded private key

    Returns:
        Base64-encoded public key
    """
    scalar = _decode_key(private_key)
    return base64.b64encode(_public_from_scalar(scalar)).decode('ascii')
