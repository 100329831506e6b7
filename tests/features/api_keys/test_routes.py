from datetime import timedelta

from sqlalchemy import select

from app.core.temporal import utcnow
from app.features.api_keys.models import ApiKey


async def _create_key(client, headers, **body):
    response = await client.post("/permissions/api-keys", json={"name": "ci", **body}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def test_create_and_use_api_key(client, db, factory, auth_for):
    user = await factory.user()
    created = await _create_key(client, auth_for(user))
    key = created["key"]
    assert key.startswith("sk_")
    assert created["last_four"] == key[-4:]
    assert created["prefix"] == "sk_"

    me = await client.get("/users/me", headers={"X-API-Key": key})
    assert me.status_code == 200
    assert me.json()["id"] == user.id

    record = (await db.execute(select(ApiKey).where(ApiKey.id == created["id"]))).scalar_one()
    assert record.usage_count == 1
    assert record.last_used_ip == "127.0.0.1"
    assert record.key_hash != key


async def test_listing_never_returns_plaintext(client, factory, auth_for):
    user = await factory.user()
    await _create_key(client, auth_for(user), prefix="pk")

    listing = await client.get("/permissions/api-keys", headers=auth_for(user))
    assert listing.status_code == 200
    assert len(listing.json()) == 1
    assert "key" not in listing.json()[0]
    assert "key_hash" not in listing.json()[0]


async def test_unknown_or_malformed_keys_are_rejected(client):
    for key in ("sk_" + "a" * 43, "garbage"):
        response = await client.get("/users/me", headers={"X-API-Key": key})
        assert response.status_code == 401


async def test_revoked_key_stops_working(client, factory, auth_for):
    user = await factory.user()
    created = await _create_key(client, auth_for(user))

    revoked = await client.delete(f"/permissions/api-keys/{created['id']}", headers=auth_for(user))
    assert revoked.status_code == 204
    assert (await client.get("/users/me", headers={"X-API-Key": created["key"]})).status_code == 401

    included = await client.get("/permissions/api-keys", params={"include_revoked": "true"}, headers=auth_for(user))
    assert [k["is_active"] for k in included.json()] == [False]


async def test_ip_allow_list(client, factory, auth_for):
    user = await factory.user()
    office_only = await _create_key(client, auth_for(user), allowed_ips=["10.0.0.0/8"])
    local = await _create_key(client, auth_for(user), allowed_ips=["127.0.0.*"])

    assert (await client.get("/users/me", headers={"X-API-Key": office_only["key"]})).status_code == 401
    assert (await client.get("/users/me", headers={"X-API-Key": local["key"]})).status_code == 200


async def test_invalid_ip_pattern_is_a_400(client, factory, auth_for):
    user = await factory.user()
    response = await client.post(
        "/permissions/api-keys", json={"name": "bad", "allowed_ips": ["10.0.0.0/99"]}, headers=auth_for(user)
    )
    assert response.status_code == 400


async def test_expired_key_is_rejected(client, factory, auth_for):
    user = await factory.user()
    created = await _create_key(
        client, auth_for(user), expires_at=(utcnow() - timedelta(minutes=1)).isoformat()
    )
    assert (await client.get("/users/me", headers={"X-API-Key": created["key"]})).status_code == 401


async def test_keys_are_private_to_their_owner(client, factory, auth_for):
    owner = await factory.user()
    other = await factory.user()
    admin = await factory.user(is_admin=True)
    created = await _create_key(client, auth_for(owner))

    assert (await client.get(
        "/permissions/api-keys", params={"user_id": owner.id}, headers=auth_for(other)
    )).status_code == 403
    assert (await client.delete(f"/permissions/api-keys/{created['id']}", headers=auth_for(other))).status_code == 404

    as_admin = await client.get("/permissions/api-keys", params={"user_id": owner.id}, headers=auth_for(admin))
    assert [k["id"] for k in as_admin.json()] == [created["id"]]


async def test_api_key_caller_goes_through_permission_checks(client, factory, auth_for):
    user = await factory.user()
    role = await factory.role()
    await factory.grant(role, await factory.permission("reports", "READ"))
    await factory.assign(user, role)
    created = await _create_key(client, auth_for(user))

    response = await client.post(
        "/permissions/check", json={"resource": "reports", "action": "READ"}, headers={"X-API-Key": created["key"]}
    )
    assert response.status_code == 200
    assert response.json()["is_allowed"] is True
