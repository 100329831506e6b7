"""
Permission dependencies for route protection and audit logging.

Implements:
- The per-request PermissionDecisionEngine
- FastAPI dependencies gating routes on a permission
- Audit logging helper for admin writes
"""
from typing import Dict, Any, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.cache import CachePort, get_cache
from app.core.database.engine import get_db
from app.core.temporal import utcnow
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.engine import PermissionDecisionEngine
from app.features.permissions.models import AuditLog, PermissionScope
from app.features.permissions.schemas import RequestContext
from app.utils import get_logger


log = get_logger(__name__)


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def request_context(request: Request, context: Optional[RequestContext] = None) -> RequestContext:
    """Fill in timestamp and IP address from the request when the caller did not."""
    context = context or RequestContext()
    update: Dict[str, Any] = {}
    if context.timestamp is None:
        update["timestamp"] = utcnow()
    if context.ip_address is None:
        update["ip_address"] = client_ip(request)
    return context.model_copy(update=update) if update else context


async def get_engine(
    db: AsyncSession = Depends(get_db),
    cache: CachePort = Depends(get_cache),
) -> PermissionDecisionEngine:
    return PermissionDecisionEngine(db, cache, ttl=config.PERMISSION_CACHE_TTL)


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(resource: str, action: str, scope: Optional[PermissionScope] = None):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.get("/documents/{document_id}")
        async def read_document(
            document_id: str,
            user: User = Depends(require_permission("documents", "READ"))
        ):
            pass

    Admins pass without a check. Everyone else goes through the decision
    engine, and a deny becomes a 403 carrying the denial reason.

    Raises:
        HTTPException: 403 if the engine denies
    """
    async def permission_dependency(
        request: Request,
        engine: PermissionDecisionEngine = Depends(get_engine),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if current_user.is_admin:
            log.debug(f"User {current_user.id} is admin - granted {action} on {resource}")
            return current_user

        resource_id = request.path_params.get("resource_id")
        decision = await engine.check(
            current_user.id, resource, action, scope, resource_id, request_context(request)
        )
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {action} on {resource} ({decision.reason})"
            )
        return current_user

    return permission_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    """
    Create an audit log entry in the caller's transaction.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "grant", "revoke")
        resource_type: Type of resource (e.g., "role", "policy")
        resource_id: ID of the resource
        details: Additional details
        request: Incoming request, for client IP and user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=client_ip(request) if request else None,
        user_agent=request.headers.get("user-agent") if request else None,
    )
    db.add(audit_log)
    await db.flush()

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}")
    return audit_log
