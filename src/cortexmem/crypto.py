"""Password-based authenticated encryption for cortexmem records at rest.

Each call to :func:`encrypt` derives a fresh 256-bit key from the password
and a random salt with PBKDF2-HMAC-SHA256, then seals the text with
AES-256-GCM under a random 96-bit nonce.  The resulting token is::

    base64(salt) "." base64(nonce) "." base64(ciphertext || tag)

``.`` never appears in standard base64 output, so splitting is unambiguous.

Typical usage::

    from cortexmem.crypto import encrypt, decrypt

    token = encrypt("database password rotates monthly", "passphrase")
    assert decrypt(token, "passphrase") == "database password rotates monthly"
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SALT_LENGTH = 16  # 128-bit salt
_NONCE_LENGTH = 12  # 96-bit GCM nonce
_KEY_LENGTH = 32  # 256-bit derived key
_PBKDF2_ITERATIONS = 100_000
_DELIMITER = "."

# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a password and salt.

    Uses PBKDF2-HMAC-SHA256 with 100,000 iterations.

    Args:
        password: The user-provided passphrase.
        salt: Random salt stored alongside the ciphertext.

    Returns:
        A 32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=_PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


# ---------------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------------


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encrypt(plaintext: str, password: str) -> str:
    """Encrypt *plaintext* with a key derived from *password*.

    A fresh salt and nonce are generated on every call, so encrypting the
    same text twice never yields the same token.

    Args:
        plaintext: The text to protect.
        password: The passphrase.

    Returns:
        The ``salt.nonce.ciphertext`` token.
    """
    salt = os.urandom(_SALT_LENGTH)
    nonce = os.urandom(_NONCE_LENGTH)
    key = derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return _DELIMITER.join((_b64(salt), _b64(nonce), _b64(ciphertext)))


def decrypt(token: str, password: str) -> str:
    """Decrypt a token produced by :func:`encrypt`.

    Args:
        token: The ``salt.nonce.ciphertext`` token.
        password: The passphrase used at encryption time.

    Returns:
        The original plaintext.

    Raises:
        DecryptionError: If the token is malformed, has been tampered
            with, or *password* is wrong.  No partial plaintext is ever
            returned.
    """
    if not isinstance(token, str):
        raise DecryptionError("Encrypted token must be a string")

    parts = token.split(_DELIMITER)
    if len(parts) != 3 or not all(parts):
        raise DecryptionError(
            f"Invalid encrypted data format: expected 3 parts, got {len(parts)}"
        )

    try:
        salt, nonce, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"Invalid encrypted data format: {exc}") from exc

    if len(nonce) != _NONCE_LENGTH:
        raise DecryptionError(
            f"Invalid nonce length: expected {_NONCE_LENGTH} bytes, got {len(nonce)}"
        )

    key = derive_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError(
            "Authentication failed: wrong password or corrupted data"
        ) from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted data is not valid UTF-8") from exc


def looks_encrypted(value: str) -> bool:
    """Cheap structural check for the token format (no key derivation)."""
    parts = value.split(_DELIMITER)
    if len(parts) != 3 or not all(parts):
        return False
    try:
        for p in parts:
            base64.b64decode(p, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True
