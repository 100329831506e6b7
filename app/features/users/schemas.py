"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: str
    name: str = Field(..., min_length=1, max_length=255)


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    name: str | None = Field(None, min_length=1, max_length=255)


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    is_admin: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}


class UserPermissionsResponse(BaseModel):
    """Grant keys a user holds at the moment of the request."""
    user_id: str
    hierarchy_level: int | None = Field(None, description="Most senior level among current roles")
    permissions: list[str]
    delegated: list[str] = Field(default_factory=list, description="Held only through delegations")
    valid_until: datetime | None = Field(None, description="Next time a role, grant or delegation window changes")
