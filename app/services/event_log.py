"""
Event Log
=========

Append-only audit trail of validation attempts, ledger transitions and
access decisions, stored in ``subscription_events``.

Events are never updated or deleted. ``created_at`` ordering is the
replay order.
"""

import asyncio
import logging
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.core.errors import ForeignKeyViolation, StorageUnavailable
from app.models.subscription import SubscriptionEvent, SubscriptionEventType, SubscriptionStatus
from app.models.user import User

logger = logging.getLogger(__name__)


def build_event(
    user_id: uuid.UUID,
    event_type: SubscriptionEventType | str,
    *,
    event_data: Optional[dict[str, Any]] = None,
    product_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    subscription_id: Optional[uuid.UUID] = None,
    previous_status: Optional[SubscriptionStatus] = None,
    new_status: Optional[SubscriptionStatus] = None,
    error_message: Optional[str] = None,
) -> SubscriptionEvent:
    """Build an event row; the caller adds it to its own session."""
    if isinstance(event_type, SubscriptionEventType):
        event_type = event_type.value
    return SubscriptionEvent(
        id=uuid.uuid4(),
        user_id=user_id,
        subscription_id=subscription_id,
        event_type=event_type,
        event_data=event_data or {},
        product_id=product_id,
        transaction_id=transaction_id,
        previous_status=previous_status.value if previous_status else None,
        new_status=new_status.value if new_status else None,
        error_message=error_message,
    )


class EventLog:
    """Writes and reads subscription events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
        log: Optional[logging.Logger] = None,
    ):
        self.session_factory = session_factory
        self.timeout = settings.EVENT_LOG_TIMEOUT_SECONDS
        self.log = log or logger

    async def append(
        self,
        user_id: uuid.UUID,
        event_type: SubscriptionEventType | str,
        **fields: Any,
    ) -> uuid.UUID:
        """
        Append one event in its own transaction.

        Raises:
            StorageUnavailable: The write failed or timed out.
        """
        event = build_event(user_id, event_type, **fields)
        try:
            await asyncio.wait_for(self._insert(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise StorageUnavailable(
                "Event log timed out",
                event_type=event.event_type,
            )
        except DBAPIError as e:
            raise StorageUnavailable(
                "Event log unavailable",
                event_type=event.event_type,
            ) from e
        return event.id

    async def _insert(self, event: SubscriptionEvent) -> None:
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()

    async def log_subscription_event(
        self,
        user_id: uuid.UUID,
        event_type: str,
        event_data: Optional[dict[str, Any]] = None,
    ) -> uuid.UUID:
        """
        Record a caller-supplied event (purchase_initiated, restore_completed, ...).

        Raises:
            ForeignKeyViolation: The user does not exist.
            StorageUnavailable: The write failed or timed out.
        """
        data = dict(event_data or {})
        try:
            async with self.session_factory() as session:
                user = await asyncio.wait_for(
                    session.get(User, user_id),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            raise StorageUnavailable("Event log timed out", event_type=event_type)
        except DBAPIError as e:
            raise StorageUnavailable("Event log unavailable", event_type=event_type) from e

        if user is None:
            raise ForeignKeyViolation(
                f"User {user_id} does not exist",
                user_id=str(user_id),
            )

        event_id = await self.append(
            user_id,
            event_type,
            event_data=data,
            product_id=data.get("product_id"),
            transaction_id=data.get("transaction_id"),
        )
        self.log.info("Subscription event logged: user=%s type=%s", user_id, event_type)
        return event_id

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[SubscriptionEvent]:
        """Events for a user in replay order (oldest first)."""
        stmt = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.user_id == user_id)
        )
        if event_type is not None:
            stmt = stmt.where(SubscriptionEvent.event_type == event_type)
        stmt = stmt.order_by(SubscriptionEvent.created_at, SubscriptionEvent.id).limit(limit)

        try:
            async with self.session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), timeout=self.timeout)
                return list(result.scalars().all())
        except asyncio.TimeoutError:
            raise StorageUnavailable("Event log timed out")
        except DBAPIError as e:
            raise StorageUnavailable("Event log unavailable") from e
