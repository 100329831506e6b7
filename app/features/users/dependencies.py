"""
FastAPI dependencies for authentication and authorization.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.temporal import utcnow
from app.features.api_keys.dependencies import authenticate_api_key
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token, profile_from_claims


security = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def get_current_user(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    api_key: Annotated[Optional[str], Depends(api_key_header)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from a bearer token or API key.

    This dependency:
    1. Uses X-API-Key when present, otherwise the Authorization bearer token
    2. Verifies the token and reads the provider subject ("sub")
    3. Looks up or creates the user in the local database
    4. Updates last_login_at timestamp

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    if api_key:
        user = await authenticate_api_key(db, api_key, request.client.host if request.client else None)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired API key",
            )
    elif credentials is not None:
        payload = verify_jwt_token(credentials.credentials)
        clerk_id = payload["sub"]

        result = await db.execute(select(User).where(User.clerk_id == clerk_id))
        user = result.scalar_one_or_none()

        # First request from this identity: mirror it locally
        if user is None:
            user = User(clerk_id=clerk_id, **profile_from_claims(payload))
            db.add(user)
        user.last_login_at = utcnow()
        await db.commit()
        await db.refresh(user)
    else:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    Require admin privileges.

    Usage:
        @router.delete("/users/{user_id}")
        async def delete_user(
            user_id: str,
            admin: User = Depends(get_current_admin_user)
        ):
            # Only admins can access this endpoint
            ...
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user

