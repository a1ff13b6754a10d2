"""
Local JWT verification for API callers
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from leadengine.core.config import get_settings
from leadengine.core.errors import UnauthenticatedError

logger = logging.getLogger(__name__)


class JWTHandler:
    """Issues and verifies HS256 bearer tokens"""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        settings = get_settings()
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm

    def create_access_token(self, user_id: str, expires_delta: timedelta = timedelta(hours=1)) -> str:
        payload = {
            "sub": user_id,
            "exp": datetime.now(timezone.utc) + expires_delta,
            "type": "access",
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            raise UnauthenticatedError("Invalid or expired token")
