"""
User routes.

Accounts are created on first sign-in (see dependencies.get_current_user);
these routes cover profiles, the caller's effective permissions and the
admin switches for admin status and deactivation.
"""
from typing import List
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CachePort, get_cache
from app.core.database.engine import get_db
from app.core.exceptions import NotFoundError, ValidationError
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.engine import PermissionDecisionEngine
from app.features.permissions.invalidation import invalidate_user
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User
from app.features.users.schemas import UserPermissionsResponse, UserPublic, UserResponse, UserUpdate
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["users"])


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _not_self(admin: User, target: User, message: str) -> None:
    if admin.id == target.id:
        raise ValidationError(message)


@router.get("/me", response_model=UserResponse)
async def read_own_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.patch("/me", response_model=UserResponse)
async def update_own_profile(
    changes: UserUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Change your display name. Email and admin status come from elsewhere."""
    for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(current_user, field, value)
    await db.commit()
    await db.refresh(current_user)
    return current_user


@router.get("/me/permissions", response_model=UserPermissionsResponse)
async def read_own_permissions(
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_user)
):
    """
    Grant keys you hold right now.

    permissions come from your roles (inherited ones included), delegated
    from delegations currently in force. Policies and resource-specific
    grants are evaluated per check and are not listed here.
    """
    grants, _ = await PermissionDecisionEngine(db, cache).role_grants(current_user.id)
    return UserPermissionsResponse(
        user_id=current_user.id,
        hierarchy_level=grants.level,
        permissions=sorted(grants.keys),
        delegated=sorted(grants.delegated - grants.keys),
        valid_until=grants.expires_at,
    )


@router.get("/", response_model=List[UserPublic])
async def list_active_users(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    result = await db.execute(
        select(User).where(User.is_active == True).order_by(User.created_at).offset(skip).limit(limit)
    )
    return result.scalars().all()


@router.get("/{user_id}", response_model=UserPublic)
async def read_profile(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Public profile of any user: id and name only."""
    return await _get_user(db, user_id)


@router.patch("/{user_id}/admin", response_model=UserResponse)
async def flip_admin_status(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin_user)
):
    """Grant or withdraw admin status (admin only). Admins cannot change their own."""
    user = await _get_user(db, user_id)
    _not_self(admin, user, "Cannot modify your own admin status")

    user.is_admin = not user.is_admin
    await create_audit_log(db, admin.id, "toggle_admin", "user", user.id, {"is_admin": user.is_admin}, request)
    await db.commit()
    await db.refresh(user)
    log.info("Admin %s set is_admin=%s for user %s", admin.id, user.is_admin, user.id)
    return user


@router.delete("/{user_id}")
async def deactivate_account(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    admin: User = Depends(get_current_admin_user)
):
    """
    Deactivate an account (admin only).

    The row stays for the audit trail; the user is refused on their next
    request and their cached permissions are dropped.
    """
    user = await _get_user(db, user_id)
    _not_self(admin, user, "Cannot deactivate your own account")

    user.is_active = False
    await create_audit_log(db, admin.id, "deactivate", "user", user.id, None, request)
    await db.commit()
    await invalidate_user(cache, user.id)
    log.info("Admin %s deactivated user %s", admin.id, user.id)
    return {"message": "User deactivated successfully"}
