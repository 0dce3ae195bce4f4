"""
Subscription Models
===================

SQLAlchemy models for the subscription ledger and its audit trail.

``user_subscriptions`` holds exactly one current-state row per
(user, product). ``subscription_events`` is the append-only history of
every validation attempt, transition and access decision.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType, TimestampMixin, UTCDateTime, utc_now

if TYPE_CHECKING:
    from app.models.user import User


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class SubscriptionStatus(str, Enum):
    """Subscription status values. A missing row is ``NONE``."""
    NONE = "NONE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class Platform(str, Enum):
    """Receipt issuing platform."""
    APP_STORE = "app-store"
    PLAY_STORE = "play-store"
    WEB = "web"


class ReceiptEnvironment(str, Enum):
    """Store environment the receipt was issued in."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class SubscriptionEventType(str, Enum):
    """Event types written by the engine itself."""
    VALIDATED = "validated"
    REJECTED = "rejected"
    STATUS_CHANGED = "status-changed"
    FEATURE_CHECKED = "feature-checked"
    USAGE_TRACKED = "usage-tracked"


class SubscriptionRecord(Base, TimestampMixin):
    """
    Current subscription state for one (user, product) pair.

    Mutated only by the ledger; never hard-deleted.
    """

    __tablename__ = "user_subscriptions"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Subscription dates
    start_date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    expiration_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,  # Null while pending
    )
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    cancellation_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Purchase details
    latest_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    receipt_data: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    environment: Mapped[ReceiptEnvironment] = mapped_column(
        SQLEnum(
            ReceiptEnvironment,
            name="subscription_environment",
            values_callable=_enum_values,
        ),
        default=ReceiptEnvironment.PRODUCTION,
        nullable=False,
    )
    is_trial_period: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Ledger bookkeeping
    freshness_marker: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscriptions",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_user_subscriptions_user_product"),
        CheckConstraint(
            "expiration_date IS NULL OR expiration_date >= start_date",
            name="ck_user_subscriptions_expiration_after_start",
        ),
        Index("idx_user_subscriptions_status_expiration", "status", "expiration_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, product_id={self.product_id}, "
            f"status={self.status})>"
        )


class SubscriptionEvent(Base):
    """
    Append-only subscription audit event.

    Ordering by ``created_at`` is the replay order; current state lives
    only in ``user_subscriptions``.
    """

    __tablename__ = "subscription_events"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("user_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Event details
    event_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    event_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Context
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    previous_status: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
    )
    new_status: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_subscription_events_user_created", "user_id", "created_at"),
        Index("idx_subscription_events_type_created", "event_type", "created_at"),
        Index("idx_subscription_events_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(user_id={self.user_id}, event={self.event_type})>"
