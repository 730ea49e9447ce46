"""Symmetric encryption for OAuth tokens at rest (Fernet, AES-128-CBC + HMAC).

Generate a key with ``TokenCipher.generate_key()`` and put it in
``TOKEN_ENCRYPTION_KEY``.
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from connector_api.core.exceptions import TokenCipherError
from connector_api.core.logger import setup_logger

logger = setup_logger(__name__)


class TokenCipher:
    """Encrypts and decrypts token strings with a single Fernet key."""

    def __init__(self, key: Optional[str]):
        if not key:
            raise TokenCipherError("TOKEN_ENCRYPTION_KEY is not configured; tokens cannot be stored")
        try:
            self._fernet = Fernet(key.strip().encode())
        except (ValueError, TypeError) as e:
            raise TokenCipherError(f"Invalid TOKEN_ENCRYPTION_KEY: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise TokenCipherError("Refusing to encrypt an empty token")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise TokenCipherError("No ciphertext to decrypt")
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            logger.error("Stored token could not be decrypted (wrong key or corrupted value)")
            raise TokenCipherError("Stored token could not be decrypted") from e
