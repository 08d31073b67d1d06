"""
Token Encryption Service

Encrypts and decrypts Peloton OAuth tokens using AES-256-GCM.
All tokens are encrypted at rest in the database.

ARCHITECTURE:
- Uses cryptography library (AESGCM)
- Key is injected into TokenCipher; only get_token_cipher() reads
  PELOTON_TOKEN_ENCRYPTION_KEY from settings
- Ciphertext format: v1.<iv-b64>.<ciphertext-b64>.<tag-b64>
- Never stores plain credentials, never falls back to a generated key

Failure taxonomy:
- TokenEncryptionConfigError: missing/invalid key. Operators must fix config.
- MalformedCiphertextError / TokenAuthenticationError: one bad token.
  The affected user must re-link their account.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings

logger = logging.getLogger(__name__)

CURRENT_VERSION = "v1"
SUPPORTED_VERSIONS = {"v1"}
KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12  # 96 bits, recommended for GCM
AUTH_TAG_LENGTH = 16  # 128 bits


class TokenEncryptionConfigError(RuntimeError):
    """Encryption key is missing or invalid (server configuration problem)."""


class TokenDecryptionError(ValueError):
    """A single stored token could not be decrypted."""


class MalformedCiphertextError(TokenDecryptionError):
    """Ciphertext does not match the versioned four-part format."""


class TokenAuthenticationError(TokenDecryptionError):
    """Authentication tag check failed (tampered data or wrong key)."""


class DecryptionError(Exception):
    """
    Raised by decrypt_token() for any per-token failure.

    Callers should prompt the user to reconnect their Peloton account.
    """

    def __init__(self, message: str = "Token decryption failed. Please reconnect your Peloton account."):
        super().__init__(message)


class EncryptionError(Exception):
    """
    Raised by encrypt_token() when a token cannot be encrypted.

    Always a server configuration error; never store the plaintext instead.
    """

    def __init__(self, message: str = "Token encryption failed. Server configuration error."):
        super().__init__(message)


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedCiphertextError(f"Invalid base64 in {field}") from e


def load_key(key_b64: Optional[str]) -> bytes:
    """
    Decode and validate a base64-encoded 256-bit key.

    Raises:
        TokenEncryptionConfigError: key missing, not base64, or wrong length
    """
    if not key_b64:
        raise TokenEncryptionConfigError(
            "PELOTON_TOKEN_ENCRYPTION_KEY environment variable is not configured"
        )
    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TokenEncryptionConfigError("Encryption key is not valid base64") from e
    if len(key) != KEY_LENGTH:
        raise TokenEncryptionConfigError(
            f"Invalid encryption key length: expected {KEY_LENGTH} bytes, got {len(key)}. "
            "Generate a new key with: openssl rand -base64 32"
        )
    return key


class TokenCipher:
    """Versioned AES-256-GCM encryption for credential material."""

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
            raise TokenEncryptionConfigError(
                f"Encryption key must be exactly {KEY_LENGTH} bytes"
            )
        self._aesgcm = AESGCM(bytes(key))

    @classmethod
    def from_base64(cls, key_b64: Optional[str]) -> "TokenCipher":
        return cls(load_key(key_b64))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string with a fresh random IV.

        Returns:
            "v1.<iv>.<ciphertext>.<tag>", each part base64-encoded
        """
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext; store them separately.
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return ".".join([
            CURRENT_VERSION,
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
            base64.b64encode(tag).decode("ascii"),
        ])

    def decrypt(self, token: str) -> str:
        """
        Verify and decrypt a v1 ciphertext.

        Raises:
            MalformedCiphertextError: wrong number of parts, unknown version,
                bad base64, bad IV/tag length
            TokenAuthenticationError: tag mismatch (tampering or wrong key)
        """
        parts = token.split(".")
        if len(parts) != 4:
            raise MalformedCiphertextError(
                f"Invalid ciphertext format: expected 4 parts, got {len(parts)}"
            )

        version, iv_b64, ciphertext_b64, tag_b64 = parts
        if version not in SUPPORTED_VERSIONS:
            raise MalformedCiphertextError(f"Unsupported encryption version: {version}")

        iv = _b64decode(iv_b64, "iv")
        ciphertext = _b64decode(ciphertext_b64, "ciphertext")
        tag = _b64decode(tag_b64, "auth tag")

        if len(iv) != IV_LENGTH:
            raise MalformedCiphertextError(f"Invalid IV length: expected {IV_LENGTH}, got {len(iv)}")
        if len(tag) != AUTH_TAG_LENGTH:
            raise MalformedCiphertextError(
                f"Invalid auth tag length: expected {AUTH_TAG_LENGTH}, got {len(tag)}"
            )

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise TokenAuthenticationError("Ciphertext failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedCiphertextError("Decrypted payload is not UTF-8") from e


def is_encrypted(value: Optional[str]) -> bool:
    """True if the value carries a version prefix (i.e. is not legacy plaintext)."""
    if not value:
        return False
    return value.startswith(f"{CURRENT_VERSION}.")


# Global instance
_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get or create the process-wide cipher keyed from settings."""
    global _token_cipher
    if _token_cipher is None:
        _token_cipher = TokenCipher.from_base64(settings.PELOTON_TOKEN_ENCRYPTION_KEY)
    return _token_cipher


def reset_token_cipher() -> None:
    """Drop the cached cipher so the next call re-reads settings (key rotation, tests)."""
    global _token_cipher
    _token_cipher = None


def encrypt_token(plain_token: str, cipher: Optional[TokenCipher] = None) -> str:
    """
    Encrypt a token for storage.

    Raises:
        EncryptionError: key missing/invalid or encryption failed
    """
    try:
        return (cipher or get_token_cipher()).encrypt(plain_token)
    except TokenEncryptionConfigError as e:
        logger.critical(f"Token encryption failed - check PELOTON_TOKEN_ENCRYPTION_KEY: {e}")
        raise EncryptionError() from e


def decrypt_token(stored_token: str, cipher: Optional[TokenCipher] = None) -> str:
    """
    Decrypt a stored token, passing legacy unencrypted tokens through.

    Raises:
        DecryptionError: malformed, tampered, or wrong-key ciphertext
        TokenEncryptionConfigError: key missing/invalid (not a per-token problem)
    """
    if not is_encrypted(stored_token):
        return stored_token
    try:
        return (cipher or get_token_cipher()).decrypt(stored_token)
    except TokenDecryptionError as e:
        logger.error(f"Token decryption failed: {e}")
        raise DecryptionError() from e
