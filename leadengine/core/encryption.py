"""
Token encryption at rest

Reddit access and refresh tokens are stored Fernet-encrypted. The key comes
from TOKEN_ENCRYPTION_KEY; outside production a process-local key is
generated so development databases still round-trip.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from leadengine.core.config import get_settings

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Token could not be encrypted or decrypted"""
    pass


class TokenEncryption:
    """Symmetric encryption for OAuth tokens"""

    def __init__(self, key: Optional[str] = None):
        settings = get_settings()
        key = key or settings.token_encryption_key
        if not key:
            if settings.is_production:
                raise EncryptionError("TOKEN_ENCRYPTION_KEY must be set in production")
            logger.warning("TOKEN_ENCRYPTION_KEY not set - using an ephemeral development key")
            key = Fernet.generate_key().decode()
        try:
            self.fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise EncryptionError(f"Invalid TOKEN_ENCRYPTION_KEY: {e}")

    def encrypt(self, value: str) -> str:
        if value is None:
            raise EncryptionError("Cannot encrypt an empty token")
        return self.fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self.fernet.decrypt(token.encode()).decode()
        except (InvalidToken, AttributeError) as e:
            raise EncryptionError(f"Token decryption failed: {e}")


_encryption: Optional[TokenEncryption] = None


def get_encryption() -> TokenEncryption:
    """Get the process-wide token encryption helper"""
    global _encryption
    if _encryption is None:
        _encryption = TokenEncryption()
    return _encryption
