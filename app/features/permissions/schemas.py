"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, grants, policies,
permission checks and logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.core.temporal import as_utc
from app.features.permissions.models import PermissionScope, PolicyType


def _check_window(start: Optional[datetime], end: Optional[datetime]) -> None:
    start, end = as_utc(start), as_utc(end)
    if start is not None and end is not None and start > end:
        raise ValueError("effective_from must be before or equal to effective_until")


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    resource: str = Field(..., min_length=1, max_length=100, description="Resource type (e.g., 'documents')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'READ', 'UPDATE')")
    scope: Optional[PermissionScope] = Field(None, description="Breadth of the permission")
    description: Optional[str] = Field(None, max_length=1000)


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""
    code: Optional[str] = Field(None, max_length=150, description="Defaults to resource:ACTION[:SCOPE]")

    @field_validator('resource')
    @classmethod
    def resource_format(cls, v: str) -> str:
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Resource must contain only alphanumeric characters, underscores and hyphens')
        return v.lower()

    @field_validator('action')
    @classmethod
    def action_uppercase(cls, v: str) -> str:
        """Actions are stored upper-case."""
        return v.upper()


class PermissionUpdate(BaseModel):
    """Identity fields can only change while nothing references the permission."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    resource: Optional[str] = Field(None, min_length=1, max_length=100)
    action: Optional[str] = Field(None, min_length=1, max_length=50)
    scope: Optional[PermissionScope] = None
    is_active: Optional[bool] = None


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    code: str
    is_active: bool
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique role code")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    hierarchy_level: int = Field(10, ge=0, le=1000, description="Lower is more senior")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    is_system: bool = False

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role code must contain only alphanumeric characters, underscores, and hyphens')
        return v.lower()


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    hierarchy_level: Optional[int] = Field(None, ge=0, le=1000)
    is_active: Optional[bool] = None


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_active: bool
    is_system: bool
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleParentAssign(BaseModel):
    parent_role_id: str
    inherit_permissions: bool = True


class RoleHierarchyResponse(BaseModel):
    role_id: str
    parent_role_id: str
    inherit_permissions: bool

    model_config = ConfigDict(from_attributes=True)


class EffectivePermissionsResponse(BaseModel):
    role_id: str
    as_of: datetime
    permissions: List[PermissionResponse]


# ============================================================================
# Grant Schemas
# ============================================================================

class RolePermissionGrant(BaseModel):
    """Grant (or explicitly deny) a permission to a role."""
    permission_id: str
    is_granted: bool = True
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    grant_reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def window_is_ordered(self):
        _check_window(self.effective_from, self.effective_until)
        return self


class RolePermissionResponse(BaseModel):
    id: str
    role_id: str
    permission_id: str
    is_granted: bool
    effective_from: datetime
    effective_until: Optional[datetime]
    is_active: bool
    grant_reason: Optional[str] = None
    permission: PermissionResponse

    model_config = ConfigDict(from_attributes=True)


class UserRoleAssign(BaseModel):
    role_id: str
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    @model_validator(mode="after")
    def window_is_ordered(self):
        _check_window(self.effective_from, self.effective_until)
        return self


class UserRoleResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str]
    effective_from: datetime
    effective_until: Optional[datetime]
    is_active: bool
    role: RoleResponse

    model_config = ConfigDict(from_attributes=True)


class ResourcePermissionGrant(BaseModel):
    user_id: str
    permission_id: str
    resource_id: str = Field(..., min_length=1, max_length=100)
    is_granted: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    grant_reason: str = Field(..., min_length=1, max_length=1000)

    @model_validator(mode="after")
    def window_is_ordered(self):
        _check_window(self.valid_from, self.valid_until)
        return self


class ResourcePermissionResponse(BaseModel):
    id: str
    user_id: str
    permission_id: str
    resource_type: str
    resource_id: str
    is_granted: bool
    valid_from: datetime
    valid_until: Optional[datetime]
    grant_reason: Optional[str]
    granted_by: Optional[str]
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Policy Schemas
# ============================================================================

class PolicyBase(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    policy_type: PolicyType
    rules: Dict[str, Any]
    priority: int = 0
    resource: Optional[str] = Field(None, max_length=100)
    action: Optional[str] = Field(None, max_length=50)

    @field_validator('action')
    @classmethod
    def action_uppercase(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class PolicyCreate(PolicyBase):
    is_active: bool = True


class PolicyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    rules: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None
    resource: Optional[str] = Field(None, max_length=100)
    action: Optional[str] = Field(None, max_length=50)
    is_active: Optional[bool] = None


class PolicyResponse(PolicyBase):
    id: str
    is_active: bool
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class RequestContext(BaseModel):
    """
    Facts about the request that policies are evaluated against.

    Accepts camelCase or snake_case keys; unknown keys are kept as extra
    attributes for attribute-based and contextual rules.
    """
    timestamp: Optional[datetime] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    device: Optional[str] = None
    mfa_verified: Optional[bool] = None
    department: Optional[str] = None
    hierarchy_level: Optional[int] = None
    resource_owner_level: Optional[int] = None
    resource_owner_department: Optional[str] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    def attributes(self) -> Dict[str, Any]:
        """All context values keyed by both snake_case and camelCase names."""
        values = self.model_dump()
        values.update(self.model_dump(by_alias=True))
        return values


class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user has a permission."""
    user_id: Optional[str] = Field(None, description="Defaults to the caller; other users require admin")
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    scope: Optional[PermissionScope] = None
    resource_id: Optional[str] = None
    context: RequestContext = Field(default_factory=RequestContext)

    @field_validator('action')
    @classmethod
    def action_uppercase(cls, v: str) -> str:
        return v.upper()


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    is_allowed: bool
    denial_reason: Optional[str] = None
    duration_ms: float
    source: Optional[str] = None
    policy_code: Optional[str] = None


class PermissionCheckItem(BaseModel):
    resource: str
    action: str
    scope: Optional[PermissionScope] = None
    resource_id: Optional[str] = None

    @field_validator('action')
    @classmethod
    def action_uppercase(cls, v: str) -> str:
        return v.upper()


class BulkPermissionCheckRequest(BaseModel):
    user_id: Optional[str] = None
    checks: List[PermissionCheckItem] = Field(..., min_length=1, max_length=50)
    context: RequestContext = Field(default_factory=RequestContext)


class BulkPermissionCheckResponse(BaseModel):
    results: Dict[str, PermissionCheckResponse]


# ============================================================================
# Bulk Operation Schemas
# ============================================================================

class BulkRoleAssign(BaseModel):
    """Assign one role to many users with the same validity window."""
    role_id: str
    user_ids: List[str] = Field(..., min_length=1, max_length=100)
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    @model_validator(mode="after")
    def window_is_ordered(self):
        _check_window(self.effective_from, self.effective_until)
        return self


class BulkRoleRevoke(BaseModel):
    role_id: str
    user_ids: List[str] = Field(..., min_length=1, max_length=100)


class BulkItemError(BaseModel):
    user_id: str
    error: str


class BulkOperationResult(BaseModel):
    """Per-user outcome of a bulk operation; one failure does not stop the rest."""
    status: str = Field(..., description="success, partial, or failed")
    total: int
    succeeded: int
    failed: int
    successful: List[str] = Field(default_factory=list, description="User ids that were changed")
    errors: List[BulkItemError] = Field(default_factory=list)
    duration_ms: float


# ============================================================================
# Log Schemas
# ============================================================================

class CheckLogResponse(BaseModel):
    id: str
    user_id: str
    resource: str
    action: str
    scope: Optional[str]
    resource_id: Optional[str]
    is_allowed: bool
    denial_reason: Optional[str]
    check_duration_ms: float
    details: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    checked_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckLogListResponse(BaseModel):
    items: List[CheckLogResponse]
    total: int
    page: int
    page_size: int
    pages: int


class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int


class ResourceCount(BaseModel):
    resource: str
    count: int


class AccessSummaryResponse(BaseModel):
    """Aggregate view over permission check logs."""
    total_checks: int
    allowed_checks: int
    denied_checks: int
    allow_rate: float = Field(..., description="Percentage of checks allowed")
    deny_rate: float = Field(..., description="Percentage of checks denied")
    avg_duration_ms: float
    max_duration_ms: float
    unique_users: int
    unique_resources: int
    top_resources: List[ResourceCount]
    top_denied: List[ResourceCount]
