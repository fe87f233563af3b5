"""
Cryptographic core for encrypted direct messages.

Implements secp256k1 ECDH key agreement with AES-256-GCM message encryption,
plus the session key data model used across key rotation.
"""

from .primitives import (
    generate_keypair,
    public_key_from_private,
    is_valid_public_key,
    derive_shared_secret,
    encrypt,
    decrypt,
    CryptoError,
    AuthenticationFailure,
    InvalidKeyMaterial,
    KeyGenerationError,
)
from .keyring import KeyPair, KeyRing, ActiveKey
from .config import KeyPolicy

__all__ = [
    'generate_keypair',
    'public_key_from_private',
    'is_valid_public_key',
    'derive_shared_secret',
    'encrypt',
    'decrypt',
    'CryptoError',
    'AuthenticationFailure',
    'InvalidKeyMaterial',
    'KeyGenerationError',
    'KeyPair',
    'KeyRing',
    'ActiveKey',
    'KeyPolicy',
]
