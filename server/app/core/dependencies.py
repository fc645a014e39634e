"""Core authentication and authorization dependencies."""
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..database import get_connection
from .feature_flags import is_feature_enabled
from .models.auth import CurrentUser, TokenPayload
from .services.auth import decode_token

security = HTTPBearer()


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Decode and validate a bearer token payload."""
    payload = decode_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_user(
    payload: TokenPayload = Depends(get_token_payload),
) -> CurrentUser:
    """Dependency to get the current authenticated user."""
    try:
        user_id = UUID(payload.sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    async with get_connection() as conn:
        user_row = await conn.fetchrow(
            "SELECT id, email, role, organization_id, name, is_active FROM users WHERE id = $1",
            user_id,
        )

    if not user_row or not user_row["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    return CurrentUser(
        id=user_row["id"],
        email=user_row["email"],
        role=user_row["role"],
        organization_id=user_row["organization_id"],
        name=user_row["name"],
    )


def require_roles(*roles):
    """Dependency factory for role-based access control."""
    async def role_checker(current_user: CurrentUser = Depends(get_current_user)):
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(roles)}"
            )
        if current_user.organization_id is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User is not assigned to a property",
            )
        return current_user
    return role_checker


require_reviewer = require_roles("admin", "hr", "manager")
require_hr = require_roles("admin", "hr")


def require_feature(feature_name: str):
    """Factory for a dependency that checks the user's property has a feature enabled."""
    async def checker(current_user: CurrentUser = Depends(require_reviewer)):
        async with get_connection() as conn:
            raw = await conn.fetchval(
                "SELECT enabled_features FROM companies WHERE id = $1",
                current_user.organization_id,
            )
        if not is_feature_enabled(raw, feature_name):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Feature '{feature_name}' is not enabled for this property",
            )
        return current_user
    return checker
