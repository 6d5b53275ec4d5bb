"""
Raz - Client-side cryptographic primitives.

Created by orpheus497

This module implements the building blocks of the room encryption scheme:
- Key derivation: HKDF-SHA256 turns the shared room secret into a
  deterministic per-sender root key
- AEAD codec: AES-256-GCM with a fresh random 96-bit nonce per message
- Room secret generation and the base64 wire encoding

The server never calls into this module. Every participant derives the same
root keys independently, so derivation must stay deterministic: a constant
salt and a domain-separation label that no other derivation in the system
uses.

All cryptographic operations use the cryptography library (Apache 2.0/BSD License).
"""

import base64
import binascii
import logging
import secrets
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import KEY_SIZE, NONCE_SIZE, ROOT_KEY_INFO, ROOT_KEY_SALT, SECRET_SIZE
from .errors import AuthenticationFailed, CryptoError, ErrorCode, InvalidKeyMaterial

logger = logging.getLogger(__name__)


def encode_base64(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(data).decode("ascii")


def decode_base64(text: str) -> bytes:
    """
    Decode standard base64 text.

    Raises:
        AuthenticationFailed: If the text is not valid base64. Wire fields
            that cannot be decoded are treated like any other undecryptable
            message.
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise AuthenticationFailed(
            f"Malformed base64 field: {e}", {"error": str(e)}
        ) from e


def generate_secret() -> str:
    """
    Generate a fresh room secret.

    The secret is 32 bytes from the operating system CSPRNG, base64 encoded.
    It travels out-of-band (URL fragment or local cache) and is never sent
    to the server.
    """
    return encode_base64(secrets.token_bytes(SECRET_SIZE))


def _coerce_secret_material(secret_material: Union[bytes, str]) -> bytes:
    if isinstance(secret_material, str):
        secret_material = secret_material.encode("utf-8")
    elif isinstance(secret_material, bytearray):
        secret_material = bytes(secret_material)
    elif not isinstance(secret_material, bytes):
        raise InvalidKeyMaterial(
            f"Secret material must be bytes or str, not {type(secret_material).__name__}"
        )

    if not secret_material:
        raise InvalidKeyMaterial("Secret material must not be empty")
    return secret_material


def derive_initial_key(secret_material: Union[bytes, str]) -> bytes:
    """
    Derive a 32-byte root key from high-entropy secret material.

    Uses HKDF-SHA256 with a fixed all-zero salt and the ``raz-e2e-root``
    info label. Identical input always yields an identical key, which is what
    lets every participant arrive at the same root key without coordination.

    Args:
        secret_material: Shared secret (text is UTF-8 encoded)

    Returns:
        32-byte root key

    Raises:
        InvalidKeyMaterial: If the material is empty or of the wrong type
    """
    material = _coerce_secret_material(secret_material)
    kdf = HKDF(
        algorithm=hashes.SHA256(), length=KEY_SIZE, salt=ROOT_KEY_SALT, info=ROOT_KEY_INFO
    )
    return kdf.derive(material)


def derive_sender_root_key(secret: str, sender_token: str) -> bytes:
    """Derive the root key of one sender's chain within a room."""
    return derive_initial_key(f"{secret}:{sender_token}")


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyMaterial(f"Key must be {KEY_SIZE} bytes")


def encrypt(plaintext: Union[bytes, str], key: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt a payload with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Payload (text is UTF-8 encoded)
        key: 32-byte ratchet step key

    Returns:
        Tuple of (ciphertext with tag, nonce)

    Raises:
        InvalidKeyMaterial: If the key has the wrong length
        CryptoError: If encryption fails
    """
    _check_key(key)
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    nonce = secrets.token_bytes(NONCE_SIZE)
    try:
        ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
    except Exception as e:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            f"Message encryption failed: {e}",
            {"error": str(e)},
        ) from e

    return ciphertext, nonce


def decrypt(ciphertext: bytes, iv: bytes, key: bytes) -> bytes:
    """
    Decrypt and authenticate an AES-256-GCM payload.

    Args:
        ciphertext: Ciphertext with appended tag
        iv: Nonce used at encryption time
        key: 32-byte ratchet step key

    Returns:
        Plaintext bytes

    Raises:
        InvalidKeyMaterial: If the key has the wrong length
        AuthenticationFailed: If the ciphertext was tampered with, the key is
            wrong (for example after ratchet desynchronization), or the nonce
            is malformed
    """
    _check_key(key)
    if len(iv) != NONCE_SIZE:
        raise AuthenticationFailed(
            f"Nonce must be {NONCE_SIZE} bytes, got {len(iv)}", {"iv_length": len(iv)}
        )

    try:
        return AESGCM(bytes(key)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        logger.debug("Message authentication failed")
        raise AuthenticationFailed(
            "Message authentication failed (wrong key or tampering)"
        ) from e
    except ValueError as e:
        raise AuthenticationFailed(
            f"Message decryption failed: {e}", {"error": str(e)}
        ) from e
