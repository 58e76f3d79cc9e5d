"""Encryption of stored POS credentials (Fernet)."""
import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from exceptions import AuthError

logger = logging.getLogger(__name__)


class TokenEncryptionService:
    """Encrypts tokens before they reach the database and decrypts them for a single call."""

    def __init__(self, key: Optional[str] = None, secret: Optional[str] = None):
        if key:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        elif secret:
            logger.warning("POS_TOKEN_ENCRYPTION_KEY not set, deriving key from SECRET_KEY")
            derived = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
            self._fernet = Fernet(derived)
        else:
            raise ValueError("An encryption key or secret is required")

    @classmethod
    def from_config(cls, config) -> 'TokenEncryptionService':
        return cls(key=config.POS_TOKEN_ENCRYPTION_KEY, secret=config.SECRET_KEY)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.error("Stored POS credential could not be decrypted")
            raise AuthError("Stored credential could not be decrypted; reconnect the POS account")
