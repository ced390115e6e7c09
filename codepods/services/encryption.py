"""AES-256-GCM encryption for secrets at rest (GitHub access tokens).

Stored format is ``iv:ciphertext:tag``, each part hex encoded.
"""

import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from codepods.config import encryption_key

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
SALT = b"codepods-secure-salt-v1"

_HEX = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted."""


def _derive_key() -> bytes:
    kdf = Scrypt(salt=SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(encryption_key().encode("utf-8"))


def encrypt(text: str | None) -> str | None:
    """Encrypt text, returning None for empty input."""
    if not text:
        return None

    try:
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(_derive_key()).encrypt(iv, text.encode("utf-8"), None)
    except Exception as e:
        logger.error(f"Encryption error: {e}")
        raise EncryptionError("Failed to encrypt data") from e

    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"


def decrypt(data: str | None) -> str | None:
    """Decrypt a value produced by encrypt(), returning None for empty input."""
    if not data:
        return None

    parts = data.split(":")
    if len(parts) != 3:
        raise EncryptionError("Invalid encrypted data format")

    try:
        iv, ciphertext, tag = (bytes.fromhex(part) for part in parts)
        plain = AESGCM(_derive_key()).decrypt(iv, ciphertext + tag, None)
    except (ValueError, InvalidTag) as e:
        logger.error(f"Decryption error: {e}")
        raise EncryptionError("Failed to decrypt data") from e

    return plain.decode("utf-8")


def is_encrypted(data: str | None) -> bool:
    """Whether a value looks like encrypt() output."""
    if not data or not isinstance(data, str):
        return False
    parts = data.split(":")
    return len(parts) == 3 and all(_HEX.match(part) for part in parts)


def reveal_token(stored: str | None) -> str | None:
    """Return a usable token from a stored column value.

    Tokens saved before encryption was introduced are returned as is.
    """
    if is_encrypted(stored):
        return decrypt(stored)
    return stored
