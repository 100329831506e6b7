from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import select

from app.core.cache import build_key
from app.core.temporal import utcnow
from app.features.permissions.models import AuditLog, PermissionScope
from app.features.users.models import User


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}

    root = await client.get("/")
    assert root.json()["status"] == "online"


async def test_first_request_creates_local_user(client, db, token_for):
    headers = {"Authorization": f"Bearer {token_for('user_abc', 'abc@example.com', 'Abc Person')}"}
    response = await client.get("/users/me", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "abc@example.com"
    assert body["name"] == "Abc Person"
    assert body["is_admin"] is False
    assert body["last_login_at"] is not None

    again = await client.get("/users/me", headers=headers)
    assert again.json()["id"] == body["id"]
    users = (await db.execute(select(User).where(User.clerk_id == "user_abc"))).scalars().all()
    assert len(users) == 1


async def test_token_without_email_gets_placeholder(client):
    token = jwt.encode(
        {"sub": "user_noemail", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}, "x", algorithm="HS256"
    )
    response = await client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["email"] == "user_noemail@users.local"


async def test_rejects_bad_tokens(client):
    expired = jwt.encode(
        {"sub": "user_old", "exp": datetime.now(timezone.utc) - timedelta(minutes=5)}, "x", algorithm="HS256"
    )
    no_sub = jwt.encode({"exp": datetime.now(timezone.utc) + timedelta(minutes=5)}, "x", algorithm="HS256")

    for token in (expired, no_sub, "not-a-jwt"):
        response = await client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401, token


async def test_deactivated_user_is_forbidden(client, factory, auth_for):
    user = await factory.user(is_active=False)
    response = await client.get("/users/me", headers=auth_for(user))
    assert response.status_code == 403


async def test_update_own_name(client, factory, auth_for):
    user = await factory.user()
    response = await client.patch("/users/me", json={"name": "New Name"}, headers=auth_for(user))
    assert response.status_code == 200
    assert response.json()["name"] == "New Name"


async def test_public_profiles(client, factory, auth_for):
    viewer = await factory.user()
    other = await factory.user(name="Other Person")

    response = await client.get(f"/users/{other.id}", headers=auth_for(viewer))
    assert response.json() == {"id": other.id, "name": "Other Person"}
    assert (await client.get("/users/missing", headers=auth_for(viewer))).status_code == 404

    listing = await client.get("/users/", headers=auth_for(viewer))
    assert {u["id"] for u in listing.json()} == {viewer.id, other.id}


async def test_toggle_admin(client, db, factory, auth_for):
    admin = await factory.user(is_admin=True)
    user = await factory.user()

    response = await client.patch(f"/users/{user.id}/admin", headers=auth_for(admin))
    assert response.status_code == 200
    assert response.json()["is_admin"] is True

    assert (await client.patch(f"/users/{admin.id}/admin", headers=auth_for(admin))).status_code == 400

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "toggle_admin"))).scalars().all()
    assert [row.resource_id for row in audit] == [user.id]


async def test_non_admin_cannot_toggle_admin(client, factory, auth_for):
    user = await factory.user()
    other = await factory.user()
    response = await client.patch(f"/users/{other.id}/admin", headers=auth_for(user))
    assert response.status_code == 403


async def test_deactivate_user_clears_cache(client, cache, factory, auth_for):
    admin = await factory.user(is_admin=True)
    user = await factory.user()
    await cache.set(build_key("perm", user.id, "roles"), "{}", 60)

    response = await client.delete(f"/users/{user.id}", headers=auth_for(admin))
    assert response.status_code == 200
    assert await cache.get(build_key("perm", user.id, "roles")) is None

    assert (await client.get("/users/me", headers=auth_for(user))).status_code == 403
    assert (await client.delete(f"/users/{admin.id}", headers=auth_for(admin))).status_code == 400


async def test_own_permissions(client, factory, auth_for):
    user = await factory.user()
    lender = await factory.user()
    role = await factory.role(level=25)
    read = await factory.permission("documents", "READ", PermissionScope.ALL)
    approve = await factory.permission("documents", "APPROVE")
    await factory.grant(role, read)
    await factory.assign(user, role, effective_until=utcnow() + timedelta(days=3))
    await factory.delegation(lender, user, [read, approve], valid_until=utcnow() + timedelta(days=1))

    response = await client.get("/users/me/permissions", headers=auth_for(user))
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user.id
    assert body["hierarchy_level"] == 25
    assert body["permissions"] == ["documents:READ:ALL"]
    assert body["delegated"] == ["documents:APPROVE"]
    # The delegation ends first
    assert body["valid_until"] is not None


async def test_own_permissions_without_roles(client, factory, auth_for):
    user = await factory.user()
    body = (await client.get("/users/me/permissions", headers=auth_for(user))).json()
    assert body["permissions"] == []
    assert body["delegated"] == []
    assert body["hierarchy_level"] is None
    assert body["valid_until"] is None


async def test_list_users_bounds_page_size(client, factory, auth_for):
    viewer = await factory.user()
    assert (await client.get("/users/", params={"limit": 500}, headers=auth_for(viewer))).status_code == 400
