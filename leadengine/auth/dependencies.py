"""
Authentication dependencies for FastAPI routes
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from leadengine.auth.jwt_handler import JWTHandler
from leadengine.core.errors import UnauthenticatedError

# Security scheme
security = HTTPBearer(auto_error=False)


def get_jwt_handler() -> JWTHandler:
    return JWTHandler()


async def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """Extract JWT token from Authorization header"""
    if not credentials or not credentials.credentials:
        raise UnauthenticatedError("Must be authenticated")
    return credentials.credentials


async def get_current_user_id(
    token: str = Depends(get_token),
    jwt_handler: JWTHandler = Depends(get_jwt_handler)
) -> str:
    """Authenticated caller id (the token subject)"""
    payload = jwt_handler.verify_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token payload")
    return str(user_id)
