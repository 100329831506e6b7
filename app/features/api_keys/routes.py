"""
API key management routes.

Keys belong to the user who created them. Admins can list and revoke
anyone's keys.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.security import generate_api_key, hash_api_key, key_prefix
from app.features.api_keys.models import ApiKey
from app.features.api_keys.schemas import ApiKeyCreate, ApiKeyCreated, ApiKeyResponse
from app.features.permissions.dependencies import create_audit_log
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    key_in: ApiKeyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create an API key. The plaintext key is only returned here."""
    plaintext = generate_api_key(key_in.prefix)
    api_key = ApiKey(
        user_id=current_user.id,
        name=key_in.name,
        prefix=key_prefix(plaintext),
        last_four=plaintext[-4:],
        key_hash=hash_api_key(plaintext),
        allowed_ips=key_in.allowed_ips,
        expires_at=key_in.expires_at,
    )
    db.add(api_key)
    await db.flush()

    await create_audit_log(db, current_user.id, "create", "api_key", api_key.id,
                           {"name": key_in.name, "allowed_ips": key_in.allowed_ips}, request)
    await db.commit()

    response = ApiKeyResponse.model_validate(api_key)
    return ApiKeyCreated(**response.model_dump(), key=plaintext)


@router.get("/api-keys", response_model=List[ApiKeyResponse])
async def list_api_keys(
    user_id: Optional[str] = None,
    include_revoked: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List your API keys; admins may pass user_id to list someone else's."""
    owner = user_id or current_user.id
    if owner != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")

    stmt = select(ApiKey).where(ApiKey.user_id == owner)
    if not include_revoked:
        stmt = stmt.where(ApiKey.is_active == True)
    result = await db.execute(stmt.order_by(ApiKey.created_at.desc()))
    return result.scalars().all()


@router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Revoke an API key. Revoked keys stay on record."""
    api_key = await db.get(ApiKey, key_id)
    if api_key is None or (api_key.user_id != current_user.id and not current_user.is_admin):
        raise HTTPException(status_code=404, detail="API key not found")

    api_key.is_active = False
    await create_audit_log(db, current_user.id, "revoke", "api_key", key_id, None, request)
    await db.commit()
    log.info(f"API key {key_id} revoked by {current_user.id}")
    return None
