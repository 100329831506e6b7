"""Shared pytest fixtures."""

import os

# Must happen before app modules read their configuration
os.environ.pop("REDIS_URL", None)
os.environ.pop("AUTH_JWT_PUBLIC_KEY", None)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.cache import InMemoryCache, get_cache
from app.core.database.base import Base
from app.core.database.engine import get_db, import_models
from app.core.rate_limit import limiter
from app.core.temporal import utcnow
from app.features.delegations.models import PermissionDelegation
from app.features.permissions.models import (
    Permission,
    PermissionPolicy,
    PermissionScope,
    PolicyType,
    ResourcePermission,
    Role,
    RoleHierarchy,
    RolePermission,
    UserRole,
)
from app.features.users.models import User
from app.main import app as fastapi_app


def make_token(sub: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
    """Unsigned-verification session token; tests run without AUTH_JWT_PUBLIC_KEY."""
    payload = {
        "sub": sub,
        "email": email or f"{sub}@example.com",
        "name": name or sub,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.clerk_id, user.email, user.name)}"}


class Factory:
    """Creates committed rows for tests."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def _save(self, obj: Any) -> Any:
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def user(self, clerk_id: Optional[str] = None, is_admin: bool = False, **kwargs) -> User:
        n = self._next()
        clerk_id = clerk_id or f"user_{n}"
        return await self._save(User(
            clerk_id=clerk_id,
            email=kwargs.pop("email", f"{clerk_id}@example.com"),
            name=kwargs.pop("name", clerk_id),
            is_admin=is_admin,
            **kwargs,
        ))

    async def permission(
        self, resource: str = "documents", action: str = "READ",
        scope: Optional[PermissionScope] = None, **kwargs
    ) -> Permission:
        code = f"{resource}:{action}" + (f":{scope.value}" if scope else "")
        return await self._save(Permission(
            code=kwargs.pop("code", code),
            name=kwargs.pop("name", code),
            resource=resource,
            action=action,
            scope=scope,
            **kwargs,
        ))

    async def role(self, code: Optional[str] = None, level: int = 10, **kwargs) -> Role:
        code = code or f"role_{self._next()}"
        return await self._save(Role(code=code, name=kwargs.pop("name", code), hierarchy_level=level, **kwargs))

    async def grant(
        self, role: Role, permission: Permission, is_granted: bool = True,
        effective_from: Optional[datetime] = None, effective_until: Optional[datetime] = None, **kwargs
    ) -> RolePermission:
        return await self._save(RolePermission(
            role_id=role.id,
            permission_id=permission.id,
            is_granted=is_granted,
            effective_from=effective_from or utcnow() - timedelta(days=1),
            effective_until=effective_until,
            **kwargs,
        ))

    async def assign(
        self, user: User, role: Role,
        effective_from: Optional[datetime] = None, effective_until: Optional[datetime] = None, **kwargs
    ) -> UserRole:
        return await self._save(UserRole(
            user_id=user.id,
            role_id=role.id,
            effective_from=effective_from or utcnow() - timedelta(days=1),
            effective_until=effective_until,
            **kwargs,
        ))

    async def parent(self, child: Role, parent: Role, inherit: bool = True) -> RoleHierarchy:
        return await self._save(RoleHierarchy(
            role_id=child.id, parent_role_id=parent.id, inherit_permissions=inherit
        ))

    async def resource_grant(
        self, user: User, permission: Permission, resource_id: str, is_granted: bool = True,
        valid_from: Optional[datetime] = None, valid_until: Optional[datetime] = None, **kwargs
    ) -> ResourcePermission:
        return await self._save(ResourcePermission(
            user_id=user.id,
            permission_id=permission.id,
            resource_type=permission.resource,
            resource_id=resource_id,
            is_granted=is_granted,
            valid_from=valid_from or utcnow() - timedelta(days=1),
            valid_until=valid_until,
            grant_reason=kwargs.pop("grant_reason", "test"),
            **kwargs,
        ))

    async def policy(
        self, code: str, policy_type: PolicyType, rules: dict, priority: int = 0, **kwargs
    ) -> PermissionPolicy:
        return await self._save(PermissionPolicy(
            code=code,
            name=kwargs.pop("name", code),
            policy_type=policy_type,
            rules=rules,
            priority=priority,
            **kwargs,
        ))

    async def delegation(
        self, delegator: User, delegate: User, permissions: list[Permission],
        valid_from: Optional[datetime] = None, valid_until: Optional[datetime] = None, **kwargs
    ) -> PermissionDelegation:
        return await self._save(PermissionDelegation(
            delegator_id=delegator.id,
            delegate_id=delegate.id,
            permission_ids=[p.id for p in permissions],
            reason=kwargs.pop("reason", "test"),
            valid_from=valid_from or utcnow() - timedelta(hours=1),
            valid_until=valid_until or utcnow() + timedelta(days=1),
            **kwargs,
        ))


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """File-backed SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture()
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def factory(db: AsyncSession) -> Factory:
    return Factory(db)


@pytest.fixture()
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest_asyncio.fixture()
async def client(session_factory, cache) -> AsyncIterator[AsyncClient]:
    """HTTPX client bound to the app, with the test database and cache injected."""

    async def _get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_cache] = lambda: cache
    limiter.reset()

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def auth_for():
    """Build Authorization headers for a user."""
    return auth


@pytest.fixture()
def token_for():
    """Build a raw session token for a provider subject."""
    return make_token
