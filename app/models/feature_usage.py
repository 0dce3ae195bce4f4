"""
Feature Usage Model
===================

Daily per-feature usage counters. Informational only: access decisions
are made from the subscription ledger, never from these counts.
"""

from datetime import date, datetime
from typing import Optional
import uuid

from sqlalchemy import Boolean, Date, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, UTCDateTime, utc_now


class FeatureUsage(Base):
    """Usage of one feature by one user on one day."""

    __tablename__ = "premium_feature_usage"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    feature: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    usage_count: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    usage_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("user_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    had_access: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "feature", "usage_date", name="uq_feature_usage_user_feature_day"),
    )

    def __repr__(self) -> str:
        return f"<FeatureUsage(user_id={self.user_id}, feature={self.feature}, count={self.usage_count})>"
