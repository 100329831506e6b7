"""
API key authentication.
"""
import re
from typing import Optional
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import hash_api_key, ip_in_any, key_prefix, needs_rehash, verify_api_key
from app.core.temporal import utcnow
from app.features.api_keys.models import ApiKey
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

API_KEY_FORMAT = re.compile(r"^(sk|pk|test)_[A-Za-z0-9_-]{32,}$")


async def authenticate_api_key(db: AsyncSession, api_key: str, client_ip: Optional[str]) -> Optional[User]:
    """
    Return the owner of a valid API key, or None.

    Records usage on success and upgrades the stored hash when the argon2
    parameters have changed since it was created.
    """
    if not API_KEY_FORMAT.match(api_key):
        return None

    now = utcnow()
    result = await db.execute(
        select(ApiKey).where(
            ApiKey.prefix == key_prefix(api_key),
            ApiKey.last_four == api_key[-4:],
            ApiKey.is_active == True,
            or_(ApiKey.expires_at.is_(None), ApiKey.expires_at > now),
        )
    )
    for record in result.scalars().all():
        if not verify_api_key(api_key, record.key_hash):
            continue

        if record.allowed_ips and not ip_in_any(client_ip, record.allowed_ips):
            log.warning(f"API key {record.id} used from disallowed address {client_ip}")
            return None

        if needs_rehash(record.key_hash):
            record.key_hash = hash_api_key(api_key)
            log.info(f"Rehashed API key {record.id}")
        record.last_used_at = now
        record.last_used_ip = client_ip
        record.usage_count = record.usage_count + 1

        user = await db.get(User, record.user_id)
        await db.commit()
        return user

    return None
