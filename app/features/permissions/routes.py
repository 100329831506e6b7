"""
Permission management API routes.

Provides endpoints for managing permissions, roles, the role hierarchy,
grants, user role assignments (singly or in bulk), resource-specific grants
and policies, for checking permissions, and for reading, summarizing and
exporting the check and audit logs.

Writes are admin-only. Reading the logs needs audit:READ. Every write
records an audit log entry and invalidates the cached permission sets it
affects.
"""
import csv
import json
import time
from datetime import datetime
from io import StringIO
from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import Response
from sqlalchemy import select, func, or_, case, distinct
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core import config
from app.core.cache import CachePort, get_cache
from app.core.database.engine import get_db
from app.core.exceptions import ConflictError, NotFoundError, RBACError, ValidationError
from app.core.rate_limit import limiter
from app.core.temporal import as_utc, build_validity_filter, overlap_filter, revoked_until, utcnow
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User
from app.features.permissions.models import (
    Permission,
    Role,
    RoleHierarchy,
    RolePermission,
    UserRole,
    ResourcePermission,
    PermissionPolicy,
    PermissionCheckLog,
    PolicyType,
    AuditLog,
)
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleParentAssign,
    RoleHierarchyResponse,
    EffectivePermissionsResponse,
    RolePermissionGrant,
    RolePermissionResponse,
    UserRoleAssign,
    UserRoleResponse,
    ResourcePermissionGrant,
    ResourcePermissionResponse,
    PolicyCreate,
    PolicyUpdate,
    PolicyResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    BulkPermissionCheckRequest,
    BulkPermissionCheckResponse,
    CheckLogResponse,
    CheckLogListResponse,
    AccessSummaryResponse,
    ResourceCount,
    AuditLogResponse,
    AuditLogListResponse,
    BulkRoleAssign,
    BulkRoleRevoke,
    BulkItemError,
    BulkOperationResult,
)
from app.features.permissions.dependencies import (
    create_audit_log,
    get_engine,
    request_context,
    require_permission,
)
from app.features.permissions.engine import Decision, PermissionDecisionEngine, grant_key
from app.features.permissions.hierarchy import RoleHierarchyResolver
from app.features.permissions.invalidation import invalidate_all, invalidate_role, invalidate_user, invalidate_users
from app.features.permissions.policies import dump_rules, parse_rules
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None or permission.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Permission not found")
    return permission


async def _get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None or role.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Role not found")
    return role


async def _get_policy(db: AsyncSession, policy_id: str) -> PermissionPolicy:
    policy = await db.get(PermissionPolicy, policy_id)
    if policy is None or policy.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return policy


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _to_response(decision: Decision) -> PermissionCheckResponse:
    return PermissionCheckResponse(
        is_allowed=decision.allowed,
        denial_reason=decision.reason,
        duration_ms=decision.duration_ms,
        source=decision.source,
        policy_code=decision.policy_code,
    )


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)  # Only admins can create permissions
):
    """Create a new permission (admin only)."""
    data = permission.model_dump()
    data["code"] = data["code"] or grant_key(permission.resource, permission.action, permission.scope)
    try:
        db_permission = Permission(**data)
        db.add(db_permission)
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this code or resource/action/scope already exists"
        )

    await create_audit_log(db, current_user.id, "create", "permission", db_permission.id,
                           permission.model_dump(mode="json"), request)
    await db.commit()
    return db_permission


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List permissions with optional filtering."""
    stmt = select(Permission).where(Permission.deleted_at.is_(None))

    if resource:
        stmt = stmt.where(Permission.resource == resource.lower())
    if action:
        stmt = stmt.where(Permission.action == action.upper())
    if not include_inactive:
        stmt = stmt.where(Permission.is_active == True)

    stmt = stmt.order_by(Permission.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific permission by ID."""
    return await _get_permission(db, permission_id)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """
    Update a permission (admin only).

    resource, action and scope define what existing grants mean, so they can
    only change while no role or resource grant references the permission.
    """
    db_permission = await _get_permission(db, permission_id)

    update_data = permission_update.model_dump(exclude_unset=True)
    if "resource" in update_data and update_data["resource"]:
        update_data["resource"] = update_data["resource"].lower()
    if "action" in update_data and update_data["action"]:
        update_data["action"] = update_data["action"].upper()

    identity = {k: v for k, v in update_data.items() if k in ("resource", "action", "scope")}
    if any(getattr(db_permission, k) != v for k, v in identity.items()):
        role_refs = await db.scalar(
            select(func.count()).select_from(RolePermission).where(RolePermission.permission_id == permission_id)
        )
        resource_refs = await db.scalar(
            select(func.count()).select_from(ResourcePermission)
            .where(ResourcePermission.permission_id == permission_id)
        )
        if role_refs or resource_refs:
            raise ConflictError("Permission is referenced by grants; resource, action and scope cannot change")

    for key, value in update_data.items():
        setattr(db_permission, key, value)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this resource/action/scope already exists"
        )

    await create_audit_log(db, current_user.id, "update", "permission", permission_id,
                           permission_update.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    await invalidate_all(cache)
    return db_permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Soft-delete a permission (admin only). Grants referencing it stop counting."""
    db_permission = await _get_permission(db, permission_id)

    db_permission.is_active = False
    db_permission.deleted_at = utcnow()
    await create_audit_log(db, current_user.id, "delete", "permission", permission_id,
                           {"code": db_permission.code}, request)
    await db.commit()
    await invalidate_all(cache)
    return None


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Create a new role (admin only)."""
    try:
        db_role = Role(**role.model_dump())
        db.add(db_role)
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this code already exists"
        )

    await create_audit_log(db, current_user.id, "create", "role", db_role.id, role.model_dump(mode="json"), request)
    await db.commit()
    return db_role


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List roles, most senior first."""
    stmt = select(Role).where(Role.deleted_at.is_(None))
    if not include_inactive:
        stmt = stmt.where(Role.is_active == True)

    stmt = stmt.order_by(Role.hierarchy_level, Role.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific role."""
    return await _get_role(db, role_id)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Update a role (admin only). A level change must stay between parent and children."""
    db_role = await _get_role(db, role_id)
    update_data = role_update.model_dump(exclude_unset=True)

    level = update_data.get("hierarchy_level")
    if level is not None:
        edge = await db.scalar(select(RoleHierarchy).where(RoleHierarchy.role_id == role_id))
        if edge is not None:
            parent = await db.get(Role, edge.parent_role_id)
            if parent is not None and level <= parent.hierarchy_level:
                raise ValidationError(
                    f"Hierarchy level {level} must be greater than parent level {parent.hierarchy_level}"
                )
        child_levels = await db.execute(
            select(Role.hierarchy_level)
            .join(RoleHierarchy, RoleHierarchy.role_id == Role.id)
            .where(RoleHierarchy.parent_role_id == role_id)
        )
        if any(child <= level for child in child_levels.scalars().all()):
            raise ValidationError(f"Hierarchy level {level} must be lower than every child role's level")

    for key, value in update_data.items():
        setattr(db_role, key, value)

    await create_audit_log(db, current_user.id, "update", "role", role_id,
                           role_update.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Soft-delete a role (admin only). System roles cannot be deleted."""
    db_role = await _get_role(db, role_id)
    if db_role.is_system:
        raise ConflictError(f"System role {db_role.code} cannot be deleted")

    db_role.is_active = False
    db_role.deleted_at = utcnow()
    await create_audit_log(db, current_user.id, "delete", "role", role_id, {"code": db_role.code}, request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return None


@router.get("/roles/{role_id}/effective-permissions", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    role_id: str,
    as_of: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Permissions a role holds at as_of (default now), including inherited ones."""
    await _get_role(db, role_id)
    as_of = as_utc(as_of) or utcnow()

    permission_ids = await RoleHierarchyResolver(db).resolve_effective_permissions(role_id, as_of)
    permissions = []
    if permission_ids:
        result = await db.execute(
            select(Permission).where(Permission.id.in_(permission_ids)).order_by(Permission.code)
        )
        permissions = result.scalars().all()

    return EffectivePermissionsResponse(
        role_id=role_id,
        as_of=as_of,
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
    )


# ============================================================================
# Role Hierarchy Routes
# ============================================================================

@router.put("/roles/{role_id}/parent", response_model=RoleHierarchyResponse)
async def set_role_parent(
    role_id: str,
    assignment: RoleParentAssign,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Set (or replace) a role's parent (admin only)."""
    edge = await RoleHierarchyResolver(db).set_parent(
        role_id, assignment.parent_role_id, assignment.inherit_permissions
    )
    await create_audit_log(db, current_user.id, "set_parent", "role", role_id,
                           assignment.model_dump(mode="json"), request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return edge


@router.delete("/roles/{role_id}/parent", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_parent(
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Detach a role from its parent (admin only)."""
    await _get_role(db, role_id)
    if not await RoleHierarchyResolver(db).remove_parent(role_id):
        raise HTTPException(status_code=404, detail="Role has no parent")

    await create_audit_log(db, current_user.id, "remove_parent", "role", role_id, None, request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return None


# ============================================================================
# Role Grant Routes
# ============================================================================

@router.post("/roles/{role_id}/permissions", response_model=RolePermissionResponse,
             status_code=status.HTTP_201_CREATED)
async def grant_permission_to_role(
    role_id: str,
    grant: RolePermissionGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """
    Grant (or, with is_granted=false, explicitly deny) a permission to a role
    for a validity window (admin only). Windows for the same role and
    permission may not overlap.
    """
    role = await _get_role(db, role_id)
    permission = await _get_permission(db, grant.permission_id)
    effective_from = as_utc(grant.effective_from) or utcnow()
    effective_until = as_utc(grant.effective_until)

    existing = await db.scalar(
        select(RolePermission.id).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission.id,
            RolePermission.is_active == True,
            overlap_filter(RolePermission.effective_from, RolePermission.effective_until,
                           effective_from, effective_until),
        ).limit(1)
    )
    if existing is not None:
        raise ConflictError(f"Role {role.code} already has {permission.code} for an overlapping period")

    db_grant = RolePermission(
        role_id=role_id,
        permission=permission,
        is_granted=grant.is_granted,
        effective_from=effective_from,
        effective_until=effective_until,
        granted_by=current_user.id,
        grant_reason=grant.grant_reason,
    )
    db.add(db_grant)
    await db.flush()

    await create_audit_log(db, current_user.id, "grant" if grant.is_granted else "deny", "role", role_id,
                           grant.model_dump(mode="json"), request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return db_grant


@router.get("/roles/{role_id}/permissions", response_model=List[RolePermissionResponse])
async def list_role_grants(
    role_id: str,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Direct grants and denies on a role (not inherited ones)."""
    await _get_role(db, role_id)
    stmt = select(RolePermission).where(RolePermission.role_id == role_id)
    if not include_inactive:
        stmt = stmt.where(RolePermission.is_active == True)
    result = await db.execute(stmt.order_by(RolePermission.effective_from))
    return result.scalars().all()


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_permission_from_role(
    role_id: str,
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Revoke every active grant or deny of a permission on a role (admin only)."""
    result = await db.execute(
        select(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
            RolePermission.is_active == True,
        )
    )
    grants = result.scalars().all()
    if not grants:
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    now = utcnow()
    for db_grant in grants:
        db_grant.is_active = False
        db_grant.effective_until = revoked_until(db_grant.effective_from, db_grant.effective_until, now)

    await create_audit_log(db, current_user.id, "revoke", "role", role_id,
                           {"permission_id": permission_id}, request)
    await db.commit()
    await invalidate_role(db, cache, role_id)
    return None


# ============================================================================
# User Role Routes
# ============================================================================

async def _assign_role(
    db: AsyncSession,
    user_id: str,
    role: Role,
    effective_from: datetime,
    effective_until: Optional[datetime],
    assigned_by: str,
) -> UserRole:
    """Validate and add one assignment. Nothing is written when it raises."""
    if await db.get(User, user_id) is None:
        raise NotFoundError("User not found")

    existing = await db.scalar(
        select(UserRole.id).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role.id,
            UserRole.is_active == True,
            overlap_filter(UserRole.effective_from, UserRole.effective_until, effective_from, effective_until),
        ).limit(1)
    )
    if existing is not None:
        raise ConflictError(f"User already has role {role.code} for an overlapping period")

    db_assignment = UserRole(
        user_id=user_id,
        role=role,
        assigned_by=assigned_by,
        effective_from=effective_from,
        effective_until=effective_until,
    )
    db.add(db_assignment)
    await db.flush()
    return db_assignment


async def _revoke_role(db: AsyncSession, user_id: str, role_id: str, at: datetime) -> List[UserRole]:
    """Deactivate a user's active assignments of a role, ending them at `at`."""
    result = await db.execute(
        select(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role_id,
            UserRole.is_active == True,
        )
    )
    assignments = result.scalars().all()
    if not assignments:
        raise NotFoundError("Role assignment not found")

    for db_assignment in assignments:
        db_assignment.is_active = False
        db_assignment.effective_until = revoked_until(db_assignment.effective_from,
                                                      db_assignment.effective_until, at)
    return assignments


def _bulk_result(total: int, successful: List[str], errors: List[BulkItemError], started: float):
    if not errors:
        outcome = "success"
    elif successful:
        outcome = "partial"
    else:
        outcome = "failed"
    return BulkOperationResult(
        status=outcome,
        total=total,
        succeeded=len(successful),
        failed=len(errors),
        successful=successful,
        errors=errors,
        duration_ms=(time.perf_counter() - started) * 1000,
    )


@router.post("/users/{user_id}/roles", response_model=UserRoleResponse, status_code=status.HTTP_201_CREATED)
async def assign_role_to_user(
    user_id: str,
    assignment: UserRoleAssign,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Assign a role to a user for a validity window (admin only)."""
    await _get_user(db, user_id)
    role = await _get_role(db, assignment.role_id)
    if not role.is_active:
        raise ValidationError(f"Role {role.code} is inactive")

    db_assignment = await _assign_role(
        db, user_id, role,
        as_utc(assignment.effective_from) or utcnow(),
        as_utc(assignment.effective_until),
        current_user.id,
    )

    await create_audit_log(db, current_user.id, "assign_role", "user", user_id,
                           assignment.model_dump(mode="json"), request)
    await db.commit()
    await invalidate_user(cache, user_id)
    return db_assignment


@router.get("/users/{user_id}/roles", response_model=List[UserRoleResponse])
async def list_user_roles(
    user_id: str,
    include_future: bool = False,
    include_expired: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    List a user's role assignments.

    Default: assignments valid now. include_future: those starting later.
    include_expired: those already ended. Both: everything.
    """
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view other users' roles"
        )

    result = await db.execute(
        select(UserRole)
        .where(
            UserRole.user_id == user_id,
            UserRole.is_active == True,
            build_validity_filter(UserRole.effective_from, UserRole.effective_until,
                                  include_future=include_future, include_expired=include_expired),
        )
        .order_by(UserRole.effective_from)
    )
    return result.scalars().all()


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Deactivate a user's assignments of a role (admin only)."""
    await _revoke_role(db, user_id, role_id, utcnow())

    await create_audit_log(db, current_user.id, "remove_role", "user", user_id, {"role_id": role_id}, request)
    await db.commit()
    await invalidate_user(cache, user_id)
    return None


@router.post("/bulk/assign-role", response_model=BulkOperationResult)
async def bulk_assign_role(
    bulk: BulkRoleAssign,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """
    Assign one role to many users (admin only).

    Each user is handled on its own: unknown users and overlapping
    assignments are reported in errors while the rest are assigned.
    """
    started = time.perf_counter()
    role = await _get_role(db, bulk.role_id)
    if not role.is_active:
        raise ValidationError(f"Role {role.code} is inactive")

    effective_from = as_utc(bulk.effective_from) or utcnow()
    effective_until = as_utc(bulk.effective_until)
    user_ids = list(dict.fromkeys(bulk.user_ids))
    log.info("Starting bulk role assignment: %d users -> role %s", len(user_ids), role.code)

    successful: List[str] = []
    errors: List[BulkItemError] = []
    for user_id in user_ids:
        try:
            await _assign_role(db, user_id, role, effective_from, effective_until, current_user.id)
            successful.append(user_id)
        except RBACError as e:
            log.warning("Failed to assign role %s to user %s: %s", role.code, user_id, e.message)
            errors.append(BulkItemError(user_id=user_id, error=e.message))

    if successful:
        await create_audit_log(db, current_user.id, "bulk_assign_role", "role", role.id,
                               {"user_ids": successful, **bulk.model_dump(mode="json", exclude={"user_ids"})},
                               request)
    await db.commit()
    await invalidate_users(cache, successful)

    result = _bulk_result(len(user_ids), successful, errors, started)
    log.info("Bulk role assignment completed: %d/%d succeeded", result.succeeded, result.total)
    return result


@router.post("/bulk/revoke-role", response_model=BulkOperationResult)
async def bulk_revoke_role(
    bulk: BulkRoleRevoke,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_admin_user)
):
    """Revoke one role from many users (admin only). Users without it are reported in errors."""
    started = time.perf_counter()
    role = await _get_role(db, bulk.role_id)
    user_ids = list(dict.fromkeys(bulk.user_ids))
    now = utcnow()
    log.info("Starting bulk role revocation: %d users -> role %s", len(user_ids), role.code)

    successful: List[str] = []
    errors: List[BulkItemError] = []
    for user_id in user_ids:
        try:
            await _revoke_role(db, user_id, role.id, now)
            successful.append(user_id)
        except RBACError as e:
            log.warning("Failed to revoke role %s from user %s: %s", role.code, user_id, e.message)
            errors.append(BulkItemError(user_id=user_id, error=e.message))

    if successful:
        await create_audit_log(db, current_user.id, "bulk_revoke_role", "role", role.id,
                               {"user_ids": successful}, request)
    await db.commit()
    await invalidate_users(cache, successful)

    result = _bulk_result(len(user_ids), successful, errors, started)
    log.info("Bulk role revocation completed: %d/%d succeeded", result.succeeded, result.total)
    return result


# ============================================================================
# Resource Permission Routes
# ============================================================================

@router.post("/resource-permissions", response_model=ResourcePermissionResponse,
             status_code=status.HTTP_201_CREATED)
async def grant_resource_permission(
    grant: ResourcePermissionGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Grant or deny a permission on a single resource instance (admin only)."""
    await _get_user(db, grant.user_id)
    permission = await _get_permission(db, grant.permission_id)

    db_grant = ResourcePermission(
        user_id=grant.user_id,
        permission=permission,
        resource_type=permission.resource,
        resource_id=grant.resource_id,
        is_granted=grant.is_granted,
        valid_from=as_utc(grant.valid_from) or utcnow(),
        valid_until=as_utc(grant.valid_until),
        grant_reason=grant.grant_reason,
        granted_by=current_user.id,
    )
    db.add(db_grant)
    await db.flush()

    await create_audit_log(db, current_user.id, "grant_resource", "resource_permission", db_grant.id,
                           grant.model_dump(mode="json"), request)
    await db.commit()
    return db_grant


@router.get("/resource-permissions", response_model=List[ResourcePermissionResponse])
async def list_resource_permissions(
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    include_inactive: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List resource-specific grants. Non-admins only see their own."""
    if not current_user.is_admin:
        if user_id and user_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to view other users' grants"
            )
        user_id = current_user.id

    stmt = select(ResourcePermission)
    if user_id:
        stmt = stmt.where(ResourcePermission.user_id == user_id)
    if resource_type:
        stmt = stmt.where(ResourcePermission.resource_type == resource_type.lower())
    if resource_id:
        stmt = stmt.where(ResourcePermission.resource_id == resource_id)
    if not include_inactive:
        stmt = stmt.where(ResourcePermission.is_active == True)

    stmt = stmt.order_by(ResourcePermission.valid_from.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.delete("/resource-permissions/{grant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_resource_permission(
    grant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Deactivate a resource-specific grant (admin only)."""
    db_grant = await db.get(ResourcePermission, grant_id)
    if db_grant is None or not db_grant.is_active:
        raise HTTPException(status_code=404, detail="Resource permission not found")

    db_grant.is_active = False
    db_grant.valid_until = revoked_until(db_grant.valid_from, db_grant.valid_until)
    await create_audit_log(db, current_user.id, "revoke_resource", "resource_permission", grant_id,
                           {"user_id": db_grant.user_id, "resource_id": db_grant.resource_id}, request)
    await db.commit()
    return None


# ============================================================================
# Policy Routes
# ============================================================================

@router.post("/policies", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    policy: PolicyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Create a policy (admin only). Rules are validated against the policy type."""
    rules = parse_rules(policy.policy_type, policy.rules)
    data = policy.model_dump()
    data["rules"] = dump_rules(rules)
    if data["resource"]:
        data["resource"] = data["resource"].lower()

    try:
        db_policy = PermissionPolicy(**data)
        db.add(db_policy)
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Policy with this code already exists"
        )

    await create_audit_log(db, current_user.id, "create", "policy", db_policy.id,
                           policy.model_dump(mode="json"), request)
    await db.commit()
    return db_policy


@router.get("/policies", response_model=List[PolicyResponse])
async def list_policies(
    policy_type: Optional[PolicyType] = None,
    resource: Optional[str] = None,
    include_inactive: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List policies in evaluation order."""
    stmt = select(PermissionPolicy).where(PermissionPolicy.deleted_at.is_(None))
    if policy_type:
        stmt = stmt.where(PermissionPolicy.policy_type == policy_type)
    if resource:
        stmt = stmt.where(or_(PermissionPolicy.resource == resource.lower(), PermissionPolicy.resource.is_(None)))
    if not include_inactive:
        stmt = stmt.where(PermissionPolicy.is_active == True)

    stmt = stmt.order_by(PermissionPolicy.priority.desc(), PermissionPolicy.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/policies/{policy_id}", response_model=PolicyResponse)
async def get_policy(
    policy_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific policy."""
    return await _get_policy(db, policy_id)


@router.put("/policies/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    policy_id: str,
    policy_update: PolicyUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Update a policy (admin only). The policy type cannot change."""
    db_policy = await _get_policy(db, policy_id)
    update_data = policy_update.model_dump(exclude_unset=True)

    if update_data.get("rules") is not None:
        update_data["rules"] = dump_rules(parse_rules(db_policy.policy_type, update_data["rules"]))
    if update_data.get("resource"):
        update_data["resource"] = update_data["resource"].lower()
    if update_data.get("action"):
        update_data["action"] = update_data["action"].upper()

    for key, value in update_data.items():
        setattr(db_policy, key, value)

    await create_audit_log(db, current_user.id, "update", "policy", policy_id,
                           policy_update.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    return db_policy


@router.delete("/policies/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)
):
    """Soft-delete a policy (admin only)."""
    db_policy = await _get_policy(db, policy_id)
    db_policy.is_active = False
    db_policy.deleted_at = utcnow()
    await create_audit_log(db, current_user.id, "delete", "policy", policy_id, {"code": db_policy.code}, request)
    await db.commit()
    return None


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.CHECK_RATE_LIMIT)
async def check_permission(
    check_request: PermissionCheckRequest,
    request: Request,
    engine: PermissionDecisionEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user)
):
    """Check a permission for the current user, or for any user as an admin."""
    user_id = check_request.user_id or current_user.id
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to check other users' permissions"
        )

    decision = await engine.check(
        user_id,
        check_request.resource,
        check_request.action,
        check_request.scope,
        check_request.resource_id,
        request_context(request, check_request.context),
    )
    return _to_response(decision)


@router.post("/check/bulk", response_model=BulkPermissionCheckResponse)
@limiter.limit(config.CHECK_RATE_LIMIT)
async def check_permissions_bulk(
    bulk_request: BulkPermissionCheckRequest,
    request: Request,
    engine: PermissionDecisionEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user)
):
    """Run up to 50 checks for one user; each one is logged separately."""
    user_id = bulk_request.user_id or current_user.id
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to check other users' permissions"
        )

    decisions = await engine.check_many(
        user_id, bulk_request.checks, request_context(request, bulk_request.context)
    )
    return BulkPermissionCheckResponse(
        results={label: _to_response(decision) for label, decision in decisions.items()}
    )


# ============================================================================
# Check Log Routes
# ============================================================================

EXPORT_COLUMNS = [
    "ID", "User ID", "Resource", "Action", "Scope", "Resource ID",
    "Allowed", "Denial Reason", "Duration (ms)", "Checked At",
]


def _check_log_conditions(
    user_id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    is_allowed: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_duration_ms: Optional[float] = None,
) -> list:
    conditions = []
    if user_id:
        conditions.append(PermissionCheckLog.user_id == user_id)
    if resource:
        conditions.append(PermissionCheckLog.resource == resource.lower())
    if action:
        conditions.append(PermissionCheckLog.action == action.upper())
    if is_allowed is not None:
        conditions.append(PermissionCheckLog.is_allowed == is_allowed)
    if start_date:
        conditions.append(PermissionCheckLog.checked_at >= as_utc(start_date))
    if end_date:
        conditions.append(PermissionCheckLog.checked_at <= as_utc(end_date))
    if min_duration_ms is not None:
        conditions.append(PermissionCheckLog.check_duration_ms >= min_duration_ms)
    return conditions


async def _list_check_logs(db: AsyncSession, skip: int, limit: int, conditions: list) -> CheckLogListResponse:
    stmt = select(PermissionCheckLog).where(*conditions)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(PermissionCheckLog.checked_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return CheckLogListResponse(
        items=[CheckLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )


@router.get("/check-logs", response_model=CheckLogListResponse)
async def list_check_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    is_allowed: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_duration_ms: Optional[float] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit", "READ"))
):
    """List permission check logs with optional filtering, newest first."""
    conditions = _check_log_conditions(user_id, resource, action, is_allowed,
                                       start_date, end_date, min_duration_ms)
    return await _list_check_logs(db, skip, limit, conditions)


@router.get("/check-logs/denied", response_model=CheckLogListResponse)
async def list_denied_checks(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    resource: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit", "READ"))
):
    """Denied checks only, for access reviews."""
    conditions = _check_log_conditions(user_id, resource, None, False, start_date, end_date)
    return await _list_check_logs(db, skip, limit, conditions)


async def _top_resources(db: AsyncSession, conditions: list) -> List[ResourceCount]:
    checks = func.count().label("checks")
    result = await db.execute(
        select(PermissionCheckLog.resource, checks)
        .where(*conditions)
        .group_by(PermissionCheckLog.resource)
        .order_by(checks.desc(), PermissionCheckLog.resource)
        .limit(10)
    )
    return [ResourceCount(resource=row.resource, count=row.checks) for row in result.all()]


@router.get("/check-logs/summary", response_model=AccessSummaryResponse)
async def get_access_summary(
    user_id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit", "READ"))
):
    """Totals, allow/deny rates, durations and the most checked and most denied resources."""
    conditions = _check_log_conditions(user_id, resource, action, None, start_date, end_date)

    totals = (await db.execute(
        select(
            func.count().label("total"),
            func.coalesce(func.sum(case((PermissionCheckLog.is_allowed == True, 1), else_=0)), 0).label("allowed"),
            func.avg(PermissionCheckLog.check_duration_ms).label("avg_duration"),
            func.max(PermissionCheckLog.check_duration_ms).label("max_duration"),
            func.count(distinct(PermissionCheckLog.user_id)).label("users"),
            func.count(distinct(PermissionCheckLog.resource)).label("resources"),
        ).where(*conditions)
    )).one()

    total = totals.total or 0
    allowed = int(totals.allowed or 0)
    denied = total - allowed

    return AccessSummaryResponse(
        total_checks=total,
        allowed_checks=allowed,
        denied_checks=denied,
        allow_rate=allowed / total * 100 if total else 0.0,
        deny_rate=denied / total * 100 if total else 0.0,
        avg_duration_ms=totals.avg_duration or 0.0,
        max_duration_ms=totals.max_duration or 0.0,
        unique_users=totals.users or 0,
        unique_resources=totals.resources or 0,
        top_resources=await _top_resources(db, conditions),
        top_denied=await _top_resources(db, [*conditions, PermissionCheckLog.is_allowed == False]),
    )


@router.get("/check-logs/export")
async def export_check_logs(
    format: Literal["json", "csv"] = "json",
    include_metadata: bool = False,
    user_id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    is_allowed: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_duration_ms: Optional[float] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit", "READ"))
):
    """
    Export check logs as JSON or CSV, newest first.

    At most CHECK_LOG_EXPORT_LIMIT rows are returned. The metadata column is
    only included when include_metadata is set.
    """
    filters = {
        "user_id": user_id,
        "resource": resource,
        "action": action,
        "is_allowed": is_allowed,
        "start_date": start_date,
        "end_date": end_date,
        "min_duration_ms": min_duration_ms,
    }
    conditions = _check_log_conditions(**filters)
    result = await db.execute(
        select(PermissionCheckLog)
        .where(*conditions)
        .order_by(PermissionCheckLog.checked_at.desc())
        .limit(config.CHECK_LOG_EXPORT_LIMIT)
    )
    logs = result.scalars().all()
    log.info("Exporting %d check logs as %s for user %s", len(logs), format, current_user.id)

    if format == "json":
        exclude = None if include_metadata else {"details"}
        return {
            "export_date": utcnow().isoformat(),
            "total_records": len(logs),
            "filters": {k: v.isoformat() if isinstance(v, datetime) else v
                        for k, v in filters.items() if v is not None},
            "data": [
                CheckLogResponse.model_validate(entry).model_dump(mode="json", by_alias=True, exclude=exclude)
                for entry in logs
            ],
        }

    output = StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL)
    writer.writerow(EXPORT_COLUMNS + (["Metadata"] if include_metadata else []))
    for entry in logs:
        row = [
            entry.id,
            entry.user_id,
            entry.resource,
            entry.action,
            entry.scope or "",
            entry.resource_id or "",
            "Yes" if entry.is_allowed else "No",
            entry.denial_reason or "",
            entry.check_duration_ms,
            as_utc(entry.checked_at).isoformat(),
        ]
        if include_metadata:
            row.append(json.dumps(entry.details or {}, sort_keys=True))
        writer.writerow(row)

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="permission-check-logs.csv"'},
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit", "READ"))
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
