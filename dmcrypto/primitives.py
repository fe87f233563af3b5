"""
Cryptographic Primitives for Direct-Message Encryption

This module provides the ECDH + AES-GCM operations used by encrypted
direct conversations. Key agreement runs over secp256k1; the shared
x-coordinate is hashed with SHA-256 into an AES-256-GCM key.

Public keys travel as 64 raw bytes (x || y, no 0x04 prefix).
"""

import os
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


PRIVATE_KEY_LENGTH = 32
PUBLIC_KEY_LENGTH = 64
NONCE_LENGTH = 12
TAG_LENGTH = 16

_UNCOMPRESSED_PREFIX = b"\x04"


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class AuthenticationFailure(CryptoError):
    """AEAD tag did not verify: wrong key or tampered blob"""
    pass


class InvalidKeyMaterial(CryptoError):
    """Key bytes are malformed (wrong length, off-curve, out of range)"""
    pass


class KeyGenerationError(CryptoError):
    """The secure random source or crypto backend could not produce a key"""
    pass


def _load_private_key(private_key: bytes) -> ec.EllipticCurvePrivateKey:
    if len(private_key) != PRIVATE_KEY_LENGTH:
        raise InvalidKeyMaterial(
            f"Invalid private key length: {len(private_key)}, expected {PRIVATE_KEY_LENGTH}"
        )
    try:
        return ec.derive_private_key(int.from_bytes(private_key, "big"), ec.SECP256K1())
    except ValueError as e:
        raise InvalidKeyMaterial(f"Invalid private key: {e}")


def _load_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    # Deliberate length check: compressed (33) and prefixed (65) keys are rejected
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise InvalidKeyMaterial(
            f"Invalid public key length: {len(public_key)}, expected {PUBLIC_KEY_LENGTH}"
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), _UNCOMPRESSED_PREFIX + bytes(public_key)
        )
    except ValueError as e:
        raise InvalidKeyMaterial(f"Public key is not a secp256k1 point: {e}")


def _serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    encoded = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )
    return encoded[1:]


def generate_keypair() -> Tuple[bytes, bytes]:
    """
    Generate a secp256k1 keypair for ECDH.

    Returns:
        Tuple of (32-byte private key, 64-byte public key without prefix)

    Raises:
        KeyGenerationError: If the random source is unavailable
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256K1())
    except Exception as e:
        raise KeyGenerationError(f"Key generation failed: {str(e)}")

    private_bytes = private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_LENGTH, "big")
    return private_bytes, _serialize_public_key(private_key.public_key())


def public_key_from_private(private_key: bytes) -> bytes:
    """Return the 64-byte public key for a 32-byte private key"""
    return _serialize_public_key(_load_private_key(private_key).public_key())


def is_valid_public_key(public_key: bytes) -> bool:
    """Check that bytes are a 64-byte uncompressed point on secp256k1"""
    try:
        _load_public_key(public_key)
        return True
    except InvalidKeyMaterial:
        return False


def derive_shared_secret(local_private_key: bytes, peer_public_key: bytes) -> bytes:
    """
    Derive a symmetric key with ECDH.

    Both sides compute the same value:
        derive(alice.private, bob.public) == derive(bob.private, alice.public)

    Args:
        local_private_key: Our 32-byte private key
        peer_public_key: Their 64-byte public key (no 0x04 prefix)

    Returns:
        32-byte key: SHA-256 of the shared point's x-coordinate

    Raises:
        InvalidKeyMaterial: If either key is malformed
    """
    peer = _load_public_key(peer_public_key)
    local = _load_private_key(local_private_key)
    shared_x = local.exchange(ec.ECDH(), peer)
    return hashlib.sha256(shared_x).digest()


def encrypt(key: bytes, plaintext: str) -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte symmetric key
        plaintext: Message to encrypt

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    if len(key) != 32:
        raise InvalidKeyMaterial(f"Invalid symmetric key length: {len(key)}, expected 32")

    nonce = os.urandom(NONCE_LENGTH)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return nonce + ciphertext


def decrypt(key: bytes, blob: bytes) -> str:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte symmetric key
        blob: nonce + encrypted message + tag

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationFailure: If the tag does not verify under this key
    """
    if len(key) != 32:
        raise InvalidKeyMaterial(f"Invalid symmetric key length: {len(key)}, expected 32")
    if len(blob) < NONCE_LENGTH + TAG_LENGTH:
        raise AuthenticationFailure("Ciphertext too short")

    nonce = blob[:NONCE_LENGTH]
    actual_ciphertext = blob[NONCE_LENGTH:]

    aesgcm = AESGCM(key)
    try:
        plaintext = aesgcm.decrypt(nonce, actual_ciphertext, None)
    except InvalidTag:
        raise AuthenticationFailure("Authentication tag mismatch")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError(f"Plaintext is not valid UTF-8: {str(e)}")


def to_hex(data: bytes) -> str:
    """Hex-encode bytes without a 0x prefix"""
    return data.hex()


def from_hex(value: str) -> bytes:
    """Decode hex, tolerating a 0x prefix"""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise InvalidKeyMaterial(f"Invalid hex encoding: {e}")


def fingerprint(public_key: bytes) -> str:
    """Short, log-safe identifier for a public key"""
    return hashlib.sha256(public_key).hexdigest()[:16]
