"""
Receipt Model
=============

Raw purchase receipts as submitted by clients and platform webhooks.
Rows are written once per platform transaction id and never updated.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import Enum as SQLEnum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, UTCDateTime, utc_now
from app.models.subscription import Platform, ReceiptEnvironment, _enum_values


class PurchaseReceipt(Base):
    """Immutable purchase receipt keyed by platform transaction id."""

    __tablename__ = "purchase_receipts"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    transaction_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )

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

    # Receipt data
    receipt_data: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    receipt_signature: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="receipt_platform", values_callable=_enum_values),
        nullable=False,
    )
    environment: Mapped[ReceiptEnvironment] = mapped_column(
        SQLEnum(
            ReceiptEnvironment,
            name="subscription_environment",
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    submitted_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseReceipt(transaction_id={self.transaction_id}, "
            f"user_id={self.user_id}, platform={self.platform})>"
        )
