"""
Permission delegation routes.

A user lends some of the permissions they hold through their roles to
another user for a bounded window. Delegators (and admins) can revoke or
extend a delegation; both parties can see it. Every change invalidates the
delegate's cached permission set.
"""
from datetime import datetime, timedelta
from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CachePort, get_cache
from app.core.database.engine import get_db
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.temporal import as_utc, overlap_filter, revoked_until, utcnow
from app.features.delegations.models import PermissionDelegation
from app.features.delegations.schemas import (
    DelegationCounts,
    DelegationCreate,
    DelegationExtend,
    DelegationResponse,
    DelegationRevoke,
    DelegationSummary,
)
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.engine import PermissionDecisionEngine, has_grant
from app.features.permissions.invalidation import invalidate_user
from app.features.permissions.models import Permission
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

EXPIRING_SOON = timedelta(days=7)


async def _get_active_user(db: AsyncSession, user_id: str, label: str) -> User:
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError(f"{label} {user_id} not found")
    return user


async def _get_delegation(db: AsyncSession, delegation_id: str, current_user: User) -> PermissionDelegation:
    """Load a delegation visible to the current user (either party, or an admin)."""
    delegation = await db.get(PermissionDelegation, delegation_id)
    if delegation is None or (
        not current_user.is_admin and current_user.id not in (delegation.delegator_id, delegation.delegate_id)
    ):
        raise NotFoundError("Delegation not found")
    return delegation


def _require_delegator(delegation: PermissionDelegation, current_user: User) -> None:
    if not current_user.is_admin and current_user.id != delegation.delegator_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the delegator or an admin can change a delegation"
        )


async def _check_overlap(
    db: AsyncSession,
    delegator_id: str,
    delegate_id: str,
    valid_from: datetime,
    valid_until: datetime,
    exclude_id: Optional[str] = None,
) -> None:
    stmt = select(PermissionDelegation).where(
        PermissionDelegation.delegator_id == delegator_id,
        PermissionDelegation.delegate_id == delegate_id,
        PermissionDelegation.is_revoked == False,
        overlap_filter(PermissionDelegation.valid_from, PermissionDelegation.valid_until, valid_from, valid_until),
    )
    if exclude_id:
        stmt = stmt.where(PermissionDelegation.id != exclude_id)
    overlapping = await db.scalar(stmt.limit(1))
    if overlapping is not None:
        raise ConflictError(
            f"Active delegation already exists for this period from "
            f"{as_utc(overlapping.valid_from).isoformat()} to {as_utc(overlapping.valid_until).isoformat()}"
        )


@router.post("/delegations", response_model=DelegationResponse, status_code=status.HTTP_201_CREATED)
async def create_delegation(
    delegation: DelegationCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_user)
):
    """
    Delegate permissions to another user until valid_until.

    The delegator must currently hold every delegated permission through
    their roles; delegated permissions cannot be passed on again.
    """
    delegator_id = delegation.delegator_id or current_user.id
    if delegator_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to delegate on behalf of other users"
        )
    if delegator_id == delegation.delegate_id:
        raise ValidationError("Cannot delegate permissions to yourself")

    await _get_active_user(db, delegator_id, "Delegator")
    await _get_active_user(db, delegation.delegate_id, "Delegate")

    now = utcnow()
    valid_from = as_utc(delegation.valid_from) or now
    valid_until = as_utc(delegation.valid_until)
    if valid_until <= now:
        raise ValidationError("valid_until must be in the future")

    result = await db.execute(
        select(Permission).where(
            Permission.id.in_(delegation.permission_ids),
            Permission.is_active == True,
            Permission.deleted_at.is_(None),
        )
    )
    permissions = result.scalars().all()
    missing = set(delegation.permission_ids) - {p.id for p in permissions}
    if missing:
        raise NotFoundError(f"Permissions not found: {', '.join(sorted(missing))}")

    grants, _ = await PermissionDecisionEngine(db).role_grants(delegator_id)
    not_held = sorted(p.code for p in permissions if not has_grant(grants.keys, p.resource, p.action, p.scope))
    if not_held:
        raise ValidationError(f"Cannot delegate permissions you do not hold: {', '.join(not_held)}")

    await _check_overlap(db, delegator_id, delegation.delegate_id, valid_from, valid_until)

    db_delegation = PermissionDelegation(
        delegator_id=delegator_id,
        delegate_id=delegation.delegate_id,
        permission_ids=delegation.permission_ids,
        reason=delegation.reason,
        valid_from=valid_from,
        valid_until=valid_until,
        created_by=current_user.id,
    )
    db.add(db_delegation)
    await db.flush()

    await create_audit_log(db, current_user.id, "delegate", "delegation", db_delegation.id,
                           delegation.model_dump(mode="json"), request)
    await db.commit()
    await invalidate_user(cache, delegation.delegate_id)
    log.info("User %s delegated %d permissions to %s until %s",
             delegator_id, len(permissions), delegation.delegate_id, valid_until.isoformat())
    return db_delegation


@router.get("/delegations", response_model=List[DelegationResponse])
async def list_delegations(
    direction: Literal["sent", "received", "all"] = "all",
    user_id: Optional[str] = None,
    include_revoked: bool = False,
    include_expired: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List your delegations; admins may pass user_id to list someone else's."""
    owner = user_id or current_user.id
    if owner != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")

    if direction == "sent":
        stmt = select(PermissionDelegation).where(PermissionDelegation.delegator_id == owner)
    elif direction == "received":
        stmt = select(PermissionDelegation).where(PermissionDelegation.delegate_id == owner)
    else:
        stmt = select(PermissionDelegation).where(
            or_(PermissionDelegation.delegator_id == owner, PermissionDelegation.delegate_id == owner)
        )
    if not include_revoked:
        stmt = stmt.where(PermissionDelegation.is_revoked == False)
    if not include_expired:
        stmt = stmt.where(PermissionDelegation.valid_until >= utcnow())

    stmt = stmt.order_by(PermissionDelegation.valid_from.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/delegations/summary", response_model=DelegationSummary)
async def get_delegation_summary(
    user_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Counts of sent and received delegations, and active ones ending within a week."""
    owner = user_id or current_user.id
    if owner != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")

    now = utcnow()
    active = (
        PermissionDelegation.is_revoked == False,
        PermissionDelegation.valid_from <= now,
        PermissionDelegation.valid_until >= now,
    )

    async def count(*conditions) -> int:
        return await db.scalar(select(func.count()).select_from(PermissionDelegation).where(*conditions)) or 0

    sent = PermissionDelegation.delegator_id == owner
    received = PermissionDelegation.delegate_id == owner
    return DelegationSummary(
        sent=DelegationCounts(active=await count(sent, *active), total=await count(sent)),
        received=DelegationCounts(active=await count(received, *active), total=await count(received)),
        expiring_soon=await count(
            or_(sent, received), *active, PermissionDelegation.valid_until <= now + EXPIRING_SOON
        ),
    )


@router.get("/delegations/{delegation_id}", response_model=DelegationResponse)
async def get_delegation(
    delegation_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a delegation you are party to (any delegation as an admin)."""
    return await _get_delegation(db, delegation_id, current_user)


@router.post("/delegations/{delegation_id}/revoke", response_model=DelegationResponse)
async def revoke_delegation(
    delegation_id: str,
    revoke: DelegationRevoke,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_user)
):
    """Revoke a delegation early. Its window is closed at the time of revocation."""
    delegation = await _get_delegation(db, delegation_id, current_user)
    _require_delegator(delegation, current_user)
    if delegation.is_revoked:
        raise ValidationError("Delegation is already revoked")

    now = utcnow()
    delegation.is_revoked = True
    delegation.revoked_at = now
    delegation.revoked_by = current_user.id
    delegation.revoked_reason = revoke.reason
    delegation.valid_until = revoked_until(delegation.valid_from, delegation.valid_until, now)

    await create_audit_log(db, current_user.id, "revoke", "delegation", delegation_id,
                           {"delegate_id": delegation.delegate_id, "reason": revoke.reason}, request)
    await db.commit()
    await invalidate_user(cache, delegation.delegate_id)
    return delegation


@router.post("/delegations/{delegation_id}/extend", response_model=DelegationResponse)
async def extend_delegation(
    delegation_id: str,
    extend: DelegationExtend,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
    current_user: User = Depends(get_current_user)
):
    """Move a delegation's end later. Revoked delegations cannot be extended."""
    delegation = await _get_delegation(db, delegation_id, current_user)
    _require_delegator(delegation, current_user)
    if delegation.is_revoked:
        raise ValidationError("Cannot extend a revoked delegation")

    old_until = as_utc(delegation.valid_until)
    new_until = as_utc(extend.valid_until)
    if new_until <= old_until:
        raise ValidationError("New valid_until must be after the current valid_until")

    await _check_overlap(db, delegation.delegator_id, delegation.delegate_id,
                         as_utc(delegation.valid_from), new_until, exclude_id=delegation.id)

    delegation.valid_until = new_until
    await create_audit_log(db, current_user.id, "extend", "delegation", delegation_id,
                           {"old_valid_until": old_until.isoformat(), "new_valid_until": new_until.isoformat(),
                            "reason": extend.reason}, request)
    await db.commit()
    await invalidate_user(cache, delegation.delegate_id)
    return delegation
