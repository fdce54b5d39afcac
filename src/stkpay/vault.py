"""Credential vault: authenticated encryption of stored processor secrets."""

import os
import base64
import binascii
import logging
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import SecretStr

from .errors import DecryptionError, EncryptionConfigError, EncryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32


class CredentialVault:
    """AES-256-GCM vault for processor credentials.

    Ciphertext layout is ``base64(nonce || ciphertext || tag)`` with a fresh
    random 12-byte nonce per call, so encrypting the same value twice yields
    different text.
    """

    def __init__(self, key: Union[bytes, str, SecretStr, None]):
        """Initialize the vault.

        Args:
            key: Raw 32-byte key, or its base64 encoding.

        Raises:
            EncryptionConfigError: If the key is missing or not 32 bytes.
        """
        self._aead = AESGCM(self._load_key(key))

    @staticmethod
    def _load_key(key: Union[bytes, str, SecretStr, None]) -> bytes:
        if isinstance(key, SecretStr):
            key = key.get_secret_value()
        if not key:
            raise EncryptionConfigError("Encryption key is not configured")
        if isinstance(key, str):
            try:
                key = base64.b64decode(key, validate=True)
            except (binascii.Error, ValueError) as e:
                raise EncryptionConfigError("Encryption key is not valid base64") from e
        if len(key) != KEY_SIZE:
            raise EncryptionConfigError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        return key

    @staticmethod
    def generate_key() -> str:
        """Generate a new base64-encoded key for configuration."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise EncryptionError("Cannot encrypt an empty value")
        nonce = os.urandom(NONCE_SIZE)
        try:
            ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (OverflowError, TypeError, ValueError) as e:
            raise EncryptionError("Failed to encrypt credential") from e
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a value produced by ``encrypt``.

        Raises:
            DecryptionError: On malformed input, a wrong key, or tampering.
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Stored credential is not valid base64") from e
        if len(raw) <= NONCE_SIZE:
            raise DecryptionError("Stored credential is truncated")
        nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("Stored credential failed authentication") from e
        return plaintext.decode("utf-8")

    def decrypt_secret(self, token: Optional[str]) -> Optional[SecretStr]:
        """Decrypt into a ``SecretStr`` holder; ``None`` passes through."""
        if token is None:
            return None
        return SecretStr(self.decrypt(token))
