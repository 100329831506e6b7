"""
Permission, Role, grant and policy models for RBAC with temporal validity.

This module implements:
- Permissions (resource + action + optional scope)
- Roles arranged in a forest through a separate hierarchy table
- Time-bounded role grants (with explicit denies) and user role assignments
- Resource-specific grants for a single resource instance
- Typed contextual policies
- Write-once permission check logs and an append-only admin audit log
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, JSON, Text, DateTime, Boolean, Integer, Float,
    UniqueConstraint, Index,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, SoftDeleteMixin, generate_ulid
from app.core.temporal import utcnow


class PermissionScope(str, Enum):
    """Breadth of a permission, narrowest first."""
    OWN = "OWN"
    DEPARTMENT = "DEPARTMENT"
    SCHOOL = "SCHOOL"
    ALL = "ALL"


SCOPE_RANK: Dict[PermissionScope, int] = {
    PermissionScope.OWN: 1,
    PermissionScope.DEPARTMENT: 2,
    PermissionScope.SCHOOL: 3,
    PermissionScope.ALL: 4,
}


class PolicyType(str, Enum):
    TIME_BASED = "TIME_BASED"
    LOCATION_BASED = "LOCATION_BASED"
    ATTRIBUTE_BASED = "ATTRIBUTE_BASED"
    CONTEXTUAL = "CONTEXTUAL"
    HIERARCHICAL = "HIERARCHICAL"


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin, SoftDeleteMixin):
    """
    A single action on a resource type, optionally limited to a scope.

    Examples:
    - resource="documents", action="READ", scope=ALL
    - resource="users", action="UPDATE", scope=OWN
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("resource", "action", "scope", name="uq_permission_identity"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(150), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    scope: Mapped[PermissionScope | None] = mapped_column(SAEnum(PermissionScope), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r})>"


class Role(Base, TimestampMixin, SoftDeleteMixin):
    """
    Named bundle of permission grants.

    Lower hierarchy_level means more authority. Parent links live in
    RoleHierarchy, not on this table.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, code={self.code!r}, level={self.hierarchy_level})>"


class RoleHierarchy(Base, TimestampMixin):
    """
    Parent edge of a role.

    One row per child role, so the roles form a forest. When
    inherit_permissions is false the child does not see its parent's grants.
    """
    __tablename__ = "role_hierarchy"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    parent_role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inherit_permissions: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<RoleHierarchy(role={self.role_id}, parent={self.parent_role_id})>"


class RolePermission(Base, TimestampMixin):
    """Time-bounded grant (or explicit deny) of a permission to a role."""
    __tablename__ = "role_permissions"
    __table_args__ = (
        Index("ix_role_permissions_role_active", "role_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    grant_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")


class UserRole(Base, TimestampMixin):
    """Time-bounded assignment of a role to a user."""
    __tablename__ = "user_roles"
    __table_args__ = (
        Index("ix_user_roles_user_active", "user_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")


class ResourcePermission(Base, TimestampMixin):
    """
    Grant of a permission to one user on one resource instance.

    Takes precedence over role grants for that instance, including after it
    expires (see PermissionDecisionEngine).
    """
    __tablename__ = "resource_permissions"
    __table_args__ = (
        Index("ix_resource_permissions_lookup", "user_id", "resource_type", "resource_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grant_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")


class PermissionPolicy(Base, TimestampMixin, SoftDeleteMixin):
    """
    Contextual rule set evaluated after a grant is found.

    rules holds the JSON payload for policy_type; it is validated against the
    type's rule model on every write. resource/action narrow which checks the
    policy applies to (null = all).
    """
    __tablename__ = "permission_policies"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    policy_type: Mapped[PolicyType] = mapped_column(SAEnum(PolicyType), nullable=False)
    rules: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resource: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    action: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionPolicy(code={self.code!r}, type={self.policy_type}, priority={self.priority})>"


class PermissionCheckLog(Base):
    """
    One row per permission check. Never updated or deleted by the application.
    """
    __tablename__ = "permission_check_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    scope: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, index=True)
    denial_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_duration_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # "metadata" is reserved on declarative classes
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<PermissionCheckLog(user={self.user_id}, {self.resource}:{self.action}, allowed={self.is_allowed})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for administrative changes to roles, grants and policies.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
