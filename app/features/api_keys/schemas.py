"""
Pydantic schemas for API key management.
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.security import validate_ip_pattern


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    prefix: Literal["sk", "pk", "test"] = "sk"
    allowed_ips: List[str] = Field(default_factory=list, description="Exact, wildcard or CIDR patterns")
    expires_at: Optional[datetime] = None

    @field_validator("allowed_ips")
    @classmethod
    def ip_patterns(cls, v: List[str]) -> List[str]:
        return [validate_ip_pattern(p) for p in v]


class ApiKeyResponse(BaseModel):
    id: str
    user_id: str
    name: str
    prefix: str
    last_four: str
    allowed_ips: List[str]
    expires_at: Optional[datetime] = None
    is_active: bool
    last_used_at: Optional[datetime] = None
    usage_count: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ApiKeyCreated(ApiKeyResponse):
    """Returned once on creation; the plaintext key is not stored."""
    key: str
