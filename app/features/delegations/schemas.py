"""
Pydantic schemas for permission delegations.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.temporal import as_utc


class DelegationCreate(BaseModel):
    delegate_id: str
    permission_ids: List[str] = Field(..., min_length=1, max_length=50)
    valid_from: Optional[datetime] = Field(None, description="Defaults to now")
    valid_until: datetime
    reason: str = Field(..., min_length=1, max_length=1000)
    delegator_id: Optional[str] = Field(None, description="Admins may delegate on behalf of another user")

    @field_validator("permission_ids")
    @classmethod
    def unique_ids(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def window_is_ordered(self):
        if self.valid_from is not None and as_utc(self.valid_until) <= as_utc(self.valid_from):
            raise ValueError("valid_until must be after valid_from")
        return self


class DelegationRevoke(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class DelegationExtend(BaseModel):
    valid_until: datetime
    reason: Optional[str] = Field(None, max_length=1000)


class DelegationResponse(BaseModel):
    id: str
    delegator_id: str
    delegate_id: str
    permission_ids: List[str]
    reason: str
    valid_from: datetime
    valid_until: datetime
    is_revoked: bool
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DelegationCounts(BaseModel):
    active: int
    total: int


class DelegationSummary(BaseModel):
    sent: DelegationCounts
    received: DelegationCounts
    expiring_soon: int = Field(..., description="Active delegations, sent or received, ending within 7 days")
