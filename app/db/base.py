"""
Database Base Model
===================

Provides the base class for all SQLAlchemy models.

Column types are kept portable (generic ``Uuid``, ``JSON`` with a
``JSONB`` variant, a UTC-normalising datetime) so the same metadata runs
on PostgreSQL and on the SQLite database used by the test-suite.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    """Current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime that always round-trips as UTC.

    PostgreSQL stores ``timestamptz`` natively; SQLite drops the offset,
    so naive values read back are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """
    Base class for all database models.

    Provides common columns and functionality.
    """

    # Type annotation for class attributes
    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )
