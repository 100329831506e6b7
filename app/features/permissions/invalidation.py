"""
Cache invalidation for role-derived permission sets.

Every admin write that can change what a user is allowed to do (role
grants, user role assignments, hierarchy edges, role activation,
delegations) must call one of these after its changes are committed.

Invalidating bumps a generation counter before deleting entries. A check
that loaded grants before the write may still store them afterwards, but
its entry carries the old generation and is ignored on read.
"""
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.cache import CachePort, build_key
from app.core.database.base import generate_ulid
from app.features.permissions.engine import generation_key
from app.features.permissions.hierarchy import RoleHierarchyResolver
from app.features.permissions.models import UserRole
from app.utils import get_logger


log = get_logger(__name__)

# Must outlive any entry written under the previous generation
GENERATION_TTL = max(config.PERMISSION_CACHE_TTL * 10, 86400)


async def _bump(cache: CachePort, key: str) -> None:
    await cache.set(key, generate_ulid(), GENERATION_TTL)


async def invalidate_user(cache: Optional[CachePort], user_id: str) -> None:
    """Drop every cached permission entry for one user."""
    if cache is None:
        return
    try:
        await _bump(cache, generation_key(user_id))
        await cache.delete(build_key("perm", user_id, "*"))
    except Exception as e:
        # Entries still expire after PERMISSION_CACHE_TTL
        log.error("Failed to invalidate permission cache for user %s: %s", user_id, e)


async def invalidate_users(cache: Optional[CachePort], user_ids: Iterable[str]) -> int:
    count = 0
    for user_id in set(user_ids):
        await invalidate_user(cache, user_id)
        count += 1
    return count


async def invalidate_role(session: AsyncSession, cache: Optional[CachePort], role_id: str) -> int:
    """
    Invalidate every user holding role_id or any role below it.

    Assignments are matched regardless of validity window, so users with
    future or expired assignments are cleared too.
    """
    if cache is None:
        return 0
    roles = await RoleHierarchyResolver(session).descendants(role_id)
    result = await session.execute(
        select(UserRole.user_id).where(UserRole.role_id.in_(roles)).distinct()
    )
    count = await invalidate_users(cache, result.scalars().all())
    log.debug("Invalidated permission cache for %d users of role %s", count, role_id)
    return count


async def invalidate_all(cache: Optional[CachePort]) -> None:
    """Drop every cached permission set, for changes to the permissions themselves."""
    if cache is None:
        return
    try:
        await _bump(cache, generation_key())
        await cache.delete(build_key("perm", "*"))
    except Exception as e:
        log.error("Failed to clear permission cache: %s", e)
