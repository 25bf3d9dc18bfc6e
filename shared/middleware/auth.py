"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
Bearer JWTs come from the identity provider; the `sub` claim is the user id.
The first authenticated request for an unknown `sub` creates the local user row.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(str(payload["sub"]))
        self.role: UserRole = UserRole(payload.get("role") or UserRole.CLIENT.value)
        self.name: Optional[str] = payload.get("name")
        self.email: Optional[str] = payload.get("email")
        self.jti: Optional[str] = payload.get("jti")
        self.payload = payload


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        token_data = TokenData(payload)
    except (JWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if token_data.jti and await RedisCache(redis).is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return token_data


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the User for the JWT sub claim, creating it on first sight."""
    user = await db.get(User, token_data.user_id)

    if not user:
        user = User(
            id=token_data.user_id,
            email=token_data.email,
            display_name=token_data.name or (token_data.email or "Użytkownik").split("@")[0],
            role=token_data.role,
            fcm_tokens=[],
            referral_stats={},
        )
        db.add(user)
        await db.flush()

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


require_professional = RoleRequired(UserRole.PROFESSIONAL, UserRole.ADMIN)
require_admin = RoleRequired(UserRole.ADMIN)
