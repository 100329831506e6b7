"""
Role hierarchy resolution.

Roles form a forest through RoleHierarchy rows (one parent per role). A
role's effective permissions are the currently valid grants of the role and
of every ancestor it inherits from, minus any permission explicitly denied
anywhere along that chain.

The pure functions (ancestor_chain, fold_grants) work on plain mappings so
they can be tested without a database; RoleHierarchyResolver loads the rows
and feeds them through.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import CycleDetectedError, NotFoundError, ValidationError
from app.core.temporal import as_utc, is_currently_valid, utcnow
from app.features.permissions.models import Permission, Role, RoleHierarchy, RolePermission
from app.utils import get_logger


log = get_logger(__name__)


def ancestor_chain(role_id: str, parents: Mapping, follow_uninherited: bool = False) -> List[str]:
    """
    Return [role_id, parent, grandparent, ...].

    parents maps a role id to its edge (anything with parent_role_id and
    inherit_permissions). The walk stops after a role whose edge does not
    inherit, unless follow_uninherited is set.

    Raises:
        CycleDetectedError: If a role is reached twice
    """
    chain = [role_id]
    visited = {role_id}
    current = role_id
    while True:
        edge = parents.get(current)
        if edge is None:
            break
        if not edge.inherit_permissions and not follow_uninherited:
            break
        parent = edge.parent_role_id
        if parent in visited:
            raise CycleDetectedError(parent)
        visited.add(parent)
        chain.append(parent)
        current = parent
    return chain


def fold_grants(
    chain: Sequence[str],
    grants_by_role: Mapping[str, Iterable],
    as_of: Optional[datetime] = None,
) -> Set[str]:
    """
    Fold role grants along a chain into a set of permission ids.

    Only active grants valid at as_of count. An explicit deny on any role in
    the chain removes the permission, wherever the allow came from.
    """
    as_of = as_utc(as_of) or utcnow()
    granted: Set[str] = set()
    denied: Set[str] = set()
    for role_id in chain:
        for grant in grants_by_role.get(role_id, ()):
            if not grant.is_active:
                continue
            if not is_currently_valid(grant.effective_from, grant.effective_until, as_of):
                continue
            if grant.is_granted:
                granted.add(grant.permission_id)
            else:
                denied.add(grant.permission_id)
    return granted - denied


class RoleHierarchyResolver:
    """
    Loads roles and hierarchy edges once per instance and resolves
    effective permissions from them.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._roles: Optional[Dict[str, Role]] = None
        self._parents: Optional[Dict[str, RoleHierarchy]] = None

    async def _load(self) -> None:
        if self._roles is not None:
            return
        roles = (await self.session.execute(select(Role))).scalars().all()
        edges = (await self.session.execute(select(RoleHierarchy))).scalars().all()
        self._roles = {role.id: role for role in roles}
        self._parents = {edge.role_id: edge for edge in edges}

    def reset(self) -> None:
        """Drop the loaded arena so the next call sees fresh rows."""
        self._roles = None
        self._parents = None

    def _usable(self, role_id: str) -> bool:
        role = self._roles.get(role_id)
        return role is not None and role.is_active and role.deleted_at is None

    async def chain_for(self, role_id: str) -> List[str]:
        """Inheritance chain for a role, cut at the first inactive or deleted role."""
        await self._load()
        chain = []
        for current in ancestor_chain(role_id, self._parents):
            if not self._usable(current):
                break
            chain.append(current)
        return chain

    async def _active_grants(self, role_ids: Iterable[str]) -> Dict[str, List[RolePermission]]:
        result = await self.session.execute(
            select(RolePermission)
            .join(Permission, RolePermission.permission_id == Permission.id)
            .where(
                RolePermission.role_id.in_(set(role_ids)),
                RolePermission.is_active == True,
                Permission.is_active == True,
                Permission.deleted_at.is_(None),
            )
        )
        grants_by_role: Dict[str, List[RolePermission]] = defaultdict(list)
        for grant in result.scalars().all():
            grants_by_role[grant.role_id].append(grant)
        return grants_by_role

    async def resolve_many(self, role_ids: Iterable[str], as_of: Optional[datetime] = None) -> Set[str]:
        """Union of effective permission ids over several roles."""
        effective, _ = await self.resolve_with_windows(role_ids, as_of)
        return effective

    async def resolve_with_windows(
        self, role_ids: Iterable[str], as_of: Optional[datetime] = None
    ) -> Tuple[Set[str], List[Tuple[datetime, Optional[datetime]]]]:
        """
        Effective permission ids plus the validity windows of every grant and
        deny that was folded, so callers know when the answer can change.
        """
        chains = [await self.chain_for(role_id) for role_id in role_ids]
        involved = {r for chain in chains for r in chain}
        if not involved:
            return set(), []

        grants_by_role = await self._active_grants(involved)

        effective: Set[str] = set()
        for chain in chains:
            effective |= fold_grants(chain, grants_by_role, as_of)
        windows = [
            (grant.effective_from, grant.effective_until)
            for grants in grants_by_role.values()
            for grant in grants
        ]
        return effective, windows

    async def resolve_effective_permissions(self, role_id: str, as_of: Optional[datetime] = None) -> Set[str]:
        return await self.resolve_many([role_id], as_of)

    async def would_create_cycle(self, child_id: str, parent_id: str) -> bool:
        """True if making parent_id the parent of child_id closes a loop."""
        if child_id == parent_id:
            return True
        await self._load()
        try:
            return child_id in ancestor_chain(parent_id, self._parents, follow_uninherited=True)
        except CycleDetectedError:
            return True

    async def descendants(self, role_id: str) -> Set[str]:
        """role_id plus every role below it, whether or not they inherit."""
        await self._load()
        children: Dict[str, List[str]] = defaultdict(list)
        for edge in self._parents.values():
            children[edge.parent_role_id].append(edge.role_id)

        found = {role_id}
        pending = [role_id]
        while pending:
            for child in children.get(pending.pop(), ()):
                if child not in found:
                    found.add(child)
                    pending.append(child)
        return found

    async def set_parent(self, child_id: str, parent_id: str, inherit_permissions: bool = True) -> RoleHierarchy:
        """
        Attach child_id under parent_id, replacing any existing parent.

        Raises:
            NotFoundError: If either role does not exist
            ValidationError: If the parent is not more senior than the child
            CycleDetectedError: If the edge would create a loop
        """
        await self._load()
        child = self._roles.get(child_id)
        parent = self._roles.get(parent_id)
        if child is None or child.deleted_at is not None:
            raise NotFoundError(f"Role {child_id} not found")
        if parent is None or parent.deleted_at is not None:
            raise NotFoundError(f"Role {parent_id} not found")
        if not parent.is_active:
            raise ValidationError(f"Parent role {parent.code} is inactive")

        if child.hierarchy_level <= parent.hierarchy_level:
            raise ValidationError(
                f"Child role hierarchy level ({child.hierarchy_level}) must be greater "
                f"than parent ({parent.hierarchy_level})"
            )
        if await self.would_create_cycle(child_id, parent_id):
            raise CycleDetectedError(child_id)

        edge = self._parents.get(child_id)
        if edge is None:
            edge = RoleHierarchy(role_id=child_id, parent_role_id=parent_id,
                                 inherit_permissions=inherit_permissions)
            self.session.add(edge)
        else:
            edge.parent_role_id = parent_id
            edge.inherit_permissions = inherit_permissions
        await self.session.flush()
        self._parents[child_id] = edge

        log.info("Role %s now inherits from %s (inherit=%s)", child.code, parent.code, inherit_permissions)
        return edge

    async def remove_parent(self, child_id: str) -> bool:
        """Detach a role from its parent. Returns False if it had none."""
        await self._load()
        edge = self._parents.pop(child_id, None)
        if edge is None:
            return False
        await self.session.delete(edge)
        await self.session.flush()
        return True
