"""
Permission decision engine.

Answers "may user U perform ACTION on resource R (optionally instance I)
now?" by combining, in order:

1. the user's currently valid role assignments
2. the effective permissions of those roles through the hierarchy, plus
   permissions currently delegated to the user
3. resource-specific grants for instance I, which take precedence over
   role grants whether or not they are still valid
4. contextual policies, any of which can veto

Every call writes exactly one PermissionCheckLog row. Any failure while
deciding produces a deny; the engine never raises out of check().

The grant set from steps 1 and 2 is cached per user. An entry is only used
while no underlying validity window has started or ended since it was
computed, and while the user's invalidation generation is unchanged.

Usage:
    engine = PermissionDecisionEngine(db, cache)
    decision = await engine.check(user.id, "documents", "READ", resource_id="doc_123")
    if not decision.allowed:
        raise HTTPException(status_code=403, detail=decision.reason)
"""
import asyncio
import json
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.cache import CachePort, build_key
from app.core.exceptions import CycleDetectedError, EvaluationError
from app.core.temporal import as_utc, is_currently_valid, next_boundary, utcnow
from app.features.delegations.models import PermissionDelegation
from app.features.permissions.hierarchy import RoleHierarchyResolver
from app.features.permissions.models import (
    Permission, PermissionCheckLog, PermissionPolicy, PermissionScope, ResourcePermission,
    Role, SCOPE_RANK, UserRole,
)
from app.features.permissions.policies import PolicyEffect, evaluate
from app.features.permissions.schemas import PermissionCheckItem, RequestContext
from app.utils import get_logger


log = get_logger(__name__)

# Keeps fire-and-forget cache writes alive until they finish
_background_tasks: Set[asyncio.Task] = set()


@dataclass
class Decision:
    allowed: bool
    reason: Optional[str] = None
    duration_ms: float = 0.0
    source: Optional[str] = None
    policy_code: Optional[str] = None
    cache_hit: bool = False


@dataclass
class RoleGrants:
    """
    Grant keys a user holds at one instant.

    keys come from roles, delegated from active delegations. level is the
    user's most senior hierarchy level. The set stays correct until
    expires_at, the next time any assignment, grant or delegation window
    starts or ends (None: no upcoming change). generation is the
    invalidation generation it was computed under.
    """
    keys: Set[str]
    level: Optional[int]
    delegated: Set[str] = field(default_factory=set)
    expires_at: Optional[datetime] = None
    generation: Optional[str] = None

    def is_fresh(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at

    def ttl(self, default: int, now: datetime) -> int:
        """Cache lifetime in whole seconds, never past expires_at."""
        if self.expires_at is None:
            return default
        return min(default, int((self.expires_at - now).total_seconds()))

    def dumps(self) -> str:
        return json.dumps({
            "keys": sorted(self.keys),
            "level": self.level,
            "delegated": sorted(self.delegated),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "generation": self.generation,
        })

    @classmethod
    def loads(cls, raw: str) -> "RoleGrants":
        data = json.loads(raw)
        expires_at = data.get("expires_at")
        return cls(
            keys=set(data["keys"]),
            level=data.get("level"),
            delegated=set(data.get("delegated", [])),
            expires_at=as_utc(datetime.fromisoformat(expires_at)) if expires_at else None,
            generation=data.get("generation"),
        )


def grant_key(resource: str, action: str, scope: Optional[PermissionScope] = None) -> str:
    """documents:READ:ALL, or documents:READ for an unscoped permission."""
    key = f"{resource.lower()}:{action.upper()}"
    if scope is not None:
        key = f"{key}:{PermissionScope(scope).value}"
    return key


def has_grant(keys: Iterable[str], resource: str, action: str,
              scope: Optional[PermissionScope] = None) -> bool:
    """
    Scope sufficiency check over grant keys.

    An unscoped request is satisfied by any grant for resource:ACTION. A
    scoped request needs a grant of at least that breadth; an unscoped grant
    only satisfies an unscoped request.
    """
    base = grant_key(resource, action)
    for key in keys:
        if key != base and not key.startswith(base + ":"):
            continue
        if scope is None:
            return True
        granted_scope = key[len(base) + 1:]
        if granted_scope and SCOPE_RANK[PermissionScope(granted_scope)] >= SCOPE_RANK[PermissionScope(scope)]:
            return True
    return False


def user_cache_key(user_id: str, subkey: str = "roles") -> str:
    return build_key("perm", user_id, subkey)


def generation_key(user_id: Optional[str] = None) -> str:
    """Invalidation generation for one user, or the global one without a user."""
    return build_key("permgen", user_id or "_all")


def _spawn(coro) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_task_done)


def _task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        log.warning("Background cache write failed: %s", task.exception())


class PermissionDecisionEngine:
    """Evaluates permission checks for one database session."""

    def __init__(self, session: AsyncSession, cache: Optional[CachePort] = None,
                 ttl: int = config.PERMISSION_CACHE_TTL):
        self.session = session
        self.cache = cache
        self.ttl = ttl
        self._memo: Dict[str, RoleGrants] = {}

    async def check(
        self,
        user_id: str,
        resource: str,
        action: str,
        scope: Optional[PermissionScope] = None,
        resource_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Decision:
        started = time.perf_counter()
        resource = resource.lower()
        action = action.upper()
        context = context or RequestContext()

        try:
            decision = await self._decide(user_id, resource, action, scope, resource_id, context)
        except CycleDetectedError as e:
            log.error("Permission check for user %s hit a hierarchy cycle: %s", user_id, e.message)
            decision = Decision(False, "evaluation error: role hierarchy cycle", source="error")
        except EvaluationError as e:
            log.error("Permission check for user %s on %s:%s failed: %s", user_id, resource, action, e.message)
            decision = Decision(False, "evaluation error", source="error")
        except Exception:
            log.exception("Permission check for user %s on %s:%s failed", user_id, resource, action)
            decision = Decision(False, "evaluation error", source="error")

        decision.duration_ms = (time.perf_counter() - started) * 1000
        await self._write_log(user_id, resource, action, scope, resource_id, context, decision)
        return decision

    async def check_many(
        self,
        user_id: str,
        checks: List[PermissionCheckItem],
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Decision]:
        """Run checks sequentially; results are keyed by grant key (plus resource id)."""
        results: Dict[str, Decision] = {}
        for item in checks:
            label = grant_key(item.resource, item.action, item.scope)
            if item.resource_id:
                label = f"{label}#{item.resource_id}"
            results[label] = await self.check(
                user_id, item.resource, item.action, item.scope, item.resource_id, context
            )
        return results

    # ------------------------------------------------------------------
    # Decision steps
    # ------------------------------------------------------------------

    async def _decide(
        self,
        user_id: str,
        resource: str,
        action: str,
        scope: Optional[PermissionScope],
        resource_id: Optional[str],
        context: RequestContext,
    ) -> Decision:
        try:
            return await self._evaluate(user_id, resource, action, scope, resource_id, context)
        except SQLAlchemyError as e:
            raise EvaluationError(f"Could not load permission data: {e}") from e

    async def _evaluate(
        self,
        user_id: str,
        resource: str,
        action: str,
        scope: Optional[PermissionScope],
        resource_id: Optional[str],
        context: RequestContext,
    ) -> Decision:
        grants, cache_hit = await self.role_grants(user_id)
        source = "role"

        resource_decision = None
        if resource_id is not None:
            resource_decision = await self._resource_grant(user_id, resource, action, resource_id)

        if resource_decision is not None:
            if not resource_decision.allowed:
                resource_decision.cache_hit = cache_hit
                return resource_decision
            source = "resource"
        elif not has_grant(grants.keys, resource, action, scope):
            if not has_grant(grants.delegated, resource, action, scope):
                return Decision(False, "permission not granted", source="role", cache_hit=cache_hit)
            source = "delegation"

        if context.hierarchy_level is None and grants.level is not None:
            context = context.model_copy(update={"hierarchy_level": grants.level})

        policies = await self._applicable_policies(resource, action)
        verdict = evaluate(policies, context)
        if verdict.effect == PolicyEffect.DENY:
            return Decision(
                False,
                f"denied by policy {verdict.policy_code}: {verdict.reason}",
                source="policy",
                policy_code=verdict.policy_code,
                cache_hit=cache_hit,
            )
        return Decision(True, source=source, cache_hit=cache_hit)

    async def role_grants(self, user_id: str) -> Tuple[RoleGrants, bool]:
        """
        Grants a user holds now, reused from this engine or the shared cache
        while still fresh. The flag is True only for a shared cache hit.
        """
        now = utcnow()
        memo = self._memo.get(user_id)
        if memo is not None and memo.is_fresh(now):
            return memo, False

        key = user_cache_key(user_id)
        generation = None
        if self.cache is not None:
            generation = await self._generation(user_id)
            cached = await self._read(key)
            if (cached is not None and generation is not None
                    and cached.generation == generation and cached.is_fresh(now)):
                self._memo[user_id] = cached
                return cached, True

        grants = await self._load_role_grants(user_id, now)
        grants.generation = generation
        self._memo[user_id] = grants
        # Without a generation the write could not be told apart from a stale one
        if generation is not None:
            ttl = grants.ttl(self.ttl, now)
            if ttl > 0:
                _spawn(self._store(key, grants.dumps(), ttl))
        return grants, False

    async def _generation(self, user_id: str) -> Optional[str]:
        """Current invalidation generation, or None when the cache cannot be read."""
        try:
            everyone = await self.cache.get(generation_key())
            user = await self.cache.get(generation_key(user_id))
        except Exception as e:
            log.warning("Permission cache read failed for generation of %s: %s", user_id, e)
            return None
        return f"{everyone or 0}.{user or 0}"

    async def _read(self, key: str) -> Optional[RoleGrants]:
        try:
            raw = await self.cache.get(key)
        except Exception as e:
            log.warning("Permission cache read failed for %s: %s", key, e)
            return None
        if not raw:
            return None
        try:
            return RoleGrants.loads(raw)
        except (ValueError, KeyError, TypeError):
            log.warning("Discarding malformed cache entry %s", key)
            return None

    async def _store(self, key: str, value: str, ttl: int) -> None:
        await self.cache.set(key, value, ttl)

    async def _load_role_grants(self, user_id: str, as_of: Optional[datetime] = None) -> RoleGrants:
        as_of = as_utc(as_of) or utcnow()
        result = await self.session.execute(
            select(UserRole.role_id, UserRole.effective_from, UserRole.effective_until, Role.hierarchy_level)
            .join(Role, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active == True,
                Role.is_active == True,
                Role.deleted_at.is_(None),
            )
        )
        assignments = result.all()
        windows = [(a.effective_from, a.effective_until) for a in assignments]
        current = [a for a in assignments if is_currently_valid(a.effective_from, a.effective_until, as_of)]

        keys: Set[str] = set()
        level = min((a.hierarchy_level for a in current), default=None)
        if current:
            permission_ids, grant_windows = await RoleHierarchyResolver(self.session).resolve_with_windows(
                {a.role_id for a in current}, as_of
            )
            windows.extend(grant_windows)
            keys = await self._grant_keys(permission_ids)

        delegated, delegation_windows = await self._delegated_keys(user_id, as_of)
        windows.extend(delegation_windows)

        return RoleGrants(keys=keys, level=level, delegated=delegated, expires_at=next_boundary(windows, as_of))

    async def _delegated_keys(self, user_id: str, as_of: datetime) -> Tuple[Set[str], List[Tuple]]:
        result = await self.session.execute(
            select(PermissionDelegation).where(
                PermissionDelegation.delegate_id == user_id,
                PermissionDelegation.is_revoked == False,
                PermissionDelegation.valid_until >= as_of,
            )
        )
        delegations = result.scalars().all()
        windows = [(d.valid_from, d.valid_until) for d in delegations]
        permission_ids = {
            permission_id
            for d in delegations
            if is_currently_valid(d.valid_from, d.valid_until, as_of)
            for permission_id in d.permission_ids
        }
        return await self._grant_keys(permission_ids), windows

    async def _grant_keys(self, permission_ids: Set[str]) -> Set[str]:
        if not permission_ids:
            return set()
        permissions = await self.session.execute(
            select(Permission.resource, Permission.action, Permission.scope)
            .where(
                Permission.id.in_(permission_ids),
                Permission.is_active == True,
                Permission.deleted_at.is_(None),
            )
        )
        return {grant_key(p.resource, p.action, p.scope) for p in permissions.all()}

    async def _resource_grant(
        self, user_id: str, resource: str, action: str, resource_id: str
    ) -> Optional[Decision]:
        """
        Decide from resource-specific records, or None if there are none.

        A record exists for the instance, so the role-level answer is not
        consulted: valid grants allow; anything else denies.
        """
        result = await self.session.execute(
            select(ResourcePermission)
            .join(Permission, ResourcePermission.permission_id == Permission.id)
            .where(
                ResourcePermission.user_id == user_id,
                ResourcePermission.resource_type == resource,
                ResourcePermission.resource_id == resource_id,
                ResourcePermission.is_active == True,
                Permission.action == action,
                Permission.is_active == True,
                Permission.deleted_at.is_(None),
            )
        )
        records = result.scalars().all()
        if not records:
            return None

        now = utcnow()
        valid = [r for r in records if is_currently_valid(r.valid_from, r.valid_until, now)]
        if any(not r.is_granted for r in valid):
            return Decision(False, "resource permission denied", source="resource")
        if valid:
            return Decision(True, source="resource")
        if any(r.is_granted for r in records):
            return Decision(False, "resource permission expired", source="resource")
        return Decision(False, "resource permission denied", source="resource")

    async def _applicable_policies(self, resource: str, action: str) -> List[PermissionPolicy]:
        result = await self.session.execute(
            select(PermissionPolicy).where(
                PermissionPolicy.is_active == True,
                PermissionPolicy.deleted_at.is_(None),
                or_(PermissionPolicy.resource.is_(None), PermissionPolicy.resource == resource),
                or_(PermissionPolicy.action.is_(None), PermissionPolicy.action == action),
            )
        )
        return list(result.scalars().all())

    async def _write_log(
        self,
        user_id: str,
        resource: str,
        action: str,
        scope: Optional[PermissionScope],
        resource_id: Optional[str],
        context: RequestContext,
        decision: Decision,
    ) -> None:
        details = {k: v for k, v in asdict(decision).items() if k in ("source", "policy_code", "cache_hit")}
        if context.ip_address:
            details["ip_address"] = context.ip_address

        try:
            if decision.source == "error":
                await self.session.rollback()
            self.session.add(PermissionCheckLog(
                user_id=user_id,
                resource=resource,
                action=action,
                scope=PermissionScope(scope).value if scope else None,
                resource_id=resource_id,
                is_allowed=decision.allowed,
                denial_reason=decision.reason,
                check_duration_ms=decision.duration_ms,
                details=details,
            ))
            await self.session.commit()
        except Exception:
            log.exception("Could not write permission check log for user %s", user_id)
            await self.session.rollback()
