"""
User Model
==========

SQLAlchemy model for user accounts.

Accounts are owned by the auth service; this table only mirrors the
identifiers that receipts, subscriptions and events reference.
"""

from typing import TYPE_CHECKING
import uuid

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.subscription import SubscriptionRecord


class User(Base, TimestampMixin):
    """User account model."""

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Relationships
    subscriptions: Mapped[list["SubscriptionRecord"]] = relationship(
        "SubscriptionRecord",
        back_populates="user",
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
