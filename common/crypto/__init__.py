"""
Cryptography package for the relay node.
Tunnel key pairs, pre-shared keys and key validation.
"""

from common.crypto.keys import (
    KeyPair, generate_keypair, generate_preshared_key,
    derive_public_key, validate_private_key, validate_public_key
)

__all__ = [
    'KeyPair',
    'generate_keypair',
    'generate_preshared_key',
    'derive_public_key',
    'validate_private_key',
    'validate_public_key'
]
