"""Request identity: a bearer JWT or the configured API key, verified only (tokens are issued elsewhere)."""
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db
from .models import User


class TokenData(BaseModel):
    sub: Optional[str] = None  # user_id
    email: Optional[str] = None
    exp: Optional[datetime] = None


api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)
http_bearer = HTTPBearer(auto_error=False)


def verify_token(token: str) -> Optional[TokenData]:
    """Decode and check signature/expiry; None for any invalid token."""
    if not settings.secret_key:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    exp = payload.get("exp")
    sub = payload.get("sub")
    return TokenData(
        sub=str(sub) if sub is not None else None,
        email=payload.get("email"),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None) if exp else None,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _user_for_api_key(db: AsyncSession) -> User:
    # The API key is a single-user credential.
    if settings.api_key_user_id is None:
        raise _unauthorized("API key is enabled but API_KEY_USER_ID is not set.")
    user = await db.get(User, settings.api_key_user_id)
    if user is None:
        raise _unauthorized("API key user not found")
    return user


async def _user_for_token(db: AsyncSession, token: str) -> Optional[User]:
    if not settings.secret_key:
        raise _unauthorized("JWT auth is not enabled (SECRET_KEY not set).")
    data = verify_token(token)
    if data is None or not data.sub or not data.sub.isdigit():
        return None
    return await db.get(User, int(data.sub))


async def get_current_user_required(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> User:
    """Every /api route except health and the OAuth callback runs as this user. No anonymous mode."""
    if not settings.secret_key and not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth not configured. Set SECRET_KEY (JWT) or API_KEY (+ API_KEY_USER_ID).",
        )
    if settings.api_key and api_key == settings.api_key:
        return await _user_for_api_key(db)
    if credentials and credentials.credentials:
        user = await _user_for_token(db, credentials.credentials)
        if user is not None:
            return user
    raise _unauthorized("Invalid or missing credentials")
