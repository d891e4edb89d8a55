from typing import Any, Dict, Optional
from fastapi import Depends, Request, HTTPException, status
from fastapi.security import HTTPBearer, http
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from cravecrafted.common.custom_exceptions import OrderAuthorizationError
from cravecrafted.config.settings import config_settings
from cravecrafted.db.dependencies import get_session
from cravecrafted.schema.full_schema import UserRole, Users
from cravecrafted.user.repository import get_user_by_id


class Authentication(HTTPBearer):
    def __init__(self, auto_error=True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Optional[Dict[str, Any]]:
        auth_creds: Optional[http.HTTPAuthorizationCredentials] = await super().__call__(request)
        if auth_creds is None:
            return None
        decoded_token = decode_token(auth_creds.credentials)

        if not decoded_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token provided.")

        return decoded_token


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify signature and expiry, returns the claims or None."""
    try:
        return jwt.decode(token, key=config_settings.JWT_SECRET, algorithms=[config_settings.JWT_ALGO])
    except JWTError:
        return None


def create_access_token(user_public_id: str, roles=None, expires_at=None) -> str:
    claims: Dict[str, Any] = {"sub": str(user_public_id), "roles": list(roles or [])}
    if expires_at is not None:
        claims["exp"] = int(expires_at.timestamp())
    return jwt.encode(claims, config_settings.JWT_SECRET, algorithm=config_settings.JWT_ALGO)


async def get_current_user(request: Request, session: AsyncSession = Depends(get_session)) -> Users:
    # the authentication middleware resolved the token subject to an internal id
    user_id = getattr(request.state, "user_identifier", None)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = await get_user_by_id(session, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def require_admin(user: Users = Depends(get_current_user)) -> Users:
    # role comes from the database row, token claims are informational only
    if user.role != UserRole.ADMIN.value:
        raise OrderAuthorizationError("Admin access required")
    return user
