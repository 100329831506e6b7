"""
Temporary delegation of permissions from one user to another.

A delegation lends the delegate a set of permissions the delegator holds
through their roles, for a bounded window. It cannot outlive valid_until and
can be revoked or extended before then.
"""
from datetime import datetime
from typing import List
from sqlalchemy import String, ForeignKey, JSON, Text, DateTime, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.core.temporal import utcnow


class PermissionDelegation(Base, TimestampMixin):
    __tablename__ = "permission_delegations"
    __table_args__ = (
        Index("ix_permission_delegations_delegate", "delegate_id", "is_revoked"),
        Index("ix_permission_delegations_delegator", "delegator_id", "is_revoked"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    delegator_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    delegate_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    permission_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    # Always bounded
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PermissionDelegation(id={self.id}, from={self.delegator_id}, to={self.delegate_id}, "
            f"revoked={self.is_revoked})>"
        )
