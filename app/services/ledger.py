"""
Subscription Ledger
===================

Owner of ``user_subscriptions``: the only code path that changes a
subscription's status.

Every transition for a (user, product) key runs under:
- an in-process ``asyncio.Lock`` for the key,
- ``SELECT ... FOR UPDATE`` on the row,
- the mapper's ``version`` counter, so a concurrent writer in another
  process fails with ``StaleDataError`` and is re-read and retried.

The ``status-changed`` event for a transition is written in the same
transaction as the row update.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, settings as default_settings
from app.core.concurrency import KeyedLock
from app.core.errors import (
    ForeignKeyViolation,
    InvalidTransition,
    StaleReceipt,
    StorageUnavailable,
    UserProductMismatch,
)
from app.core.state_machine import (
    ENTRY_STATUSES,
    is_allowed,
    is_new_lineage,
    is_terminal,
    should_apply,
)
from app.db.base import utc_now
from app.models.subscription import (
    ReceiptEnvironment,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.models.user import User
from app.schemas.receipt import ValidationOutcome
from app.schemas.subscription import ApplyResult, SubscriptionSnapshot
from app.services.cache import CacheInvalidator
from app.services.event_log import build_event

logger = logging.getLogger(__name__)

REASON_APPLIED = "applied"
REASON_STALE = "stale-receipt"
REASON_INVALID_TRANSITION = "invalid-transition"
REASON_ADMIN_OVERRIDE = "admin-override"
REASON_EXPIRED = "expired"
REASON_NOT_LAPSED = "not-lapsed"


class SubscriptionLedger:
    """Applies validation outcomes and administrative overrides."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
        log: Optional[logging.Logger] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS
        self.max_attempts = settings.LEDGER_MAX_APPLY_ATTEMPTS
        self.log = log or logger
        self.locks = locks or KeyedLock()
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: uuid.UUID, product_id: str) -> Optional[SubscriptionSnapshot]:
        """Current record for the key, or None (state NONE)."""
        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.product_id == product_id,
        )
        rows = await self._read(stmt)
        return SubscriptionSnapshot.model_validate(rows[0]) if rows else None

    async def list_for_user(self, user_id: uuid.UUID) -> list[SubscriptionSnapshot]:
        """Every record the user holds, one per product."""
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.product_id)
        )
        return [SubscriptionSnapshot.model_validate(row) for row in await self._read(stmt)]

    async def _read(self, stmt) -> list[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), timeout=self.timeout)
                return list(result.scalars().all())
        except asyncio.TimeoutError:
            raise StorageUnavailable("Subscription ledger timed out")
        except DBAPIError as e:
            raise StorageUnavailable("Subscription ledger unavailable") from e

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def apply(
        self,
        user_id: uuid.UUID,
        product_id: str,
        outcome: ValidationOutcome,
    ) -> ApplyResult:
        """
        Apply ``outcome`` to the (user, product) record.

        Idempotent on (user, product, transaction id): a duplicate or
        out-of-order outcome leaves the record untouched and returns
        ``ApplyResult(applied=False, reason="stale-receipt")``.

        Raises:
            InvalidTransition: The outcome implies an illegal edge.
            ForeignKeyViolation: The user does not exist.
            StorageUnavailable: Persistence failed, timed out or stayed contended.
        """
        if outcome.user_id != user_id or outcome.product_id != product_id:
            raise UserProductMismatch(
                "Outcome does not belong to this subscription",
                transaction_id=outcome.transaction_id,
            )

        result = await self._run_serialized(
            user_id,
            product_id,
            lambda session: self._apply_outcome(session, user_id, product_id, outcome),
        )
        if result.applied:
            await CacheInvalidator.on_subscription_change(str(user_id))
        return result

    async def override(
        self,
        user_id: uuid.UUID,
        product_id: str,
        new_status: SubscriptionStatus,
        expiration_date: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> ApplyResult:
        """
        Administrative status change that bypasses receipt validation.

        The transition guard still applies; freshness is not required.
        The stored marker is left alone: it stays in the platform's own
        domain (web sequence or event milliseconds) so the next platform
        receipt is still compared like with like.
        """
        result = await self._run_serialized(
            user_id,
            product_id,
            lambda session: self._apply_override(
                session, user_id, product_id, new_status, expiration_date, actor
            ),
        )
        await CacheInvalidator.on_subscription_change(str(user_id))
        return result

    async def expire(
        self,
        user_id: uuid.UUID,
        product_id: str,
        now: Optional[datetime] = None,
    ) -> ApplyResult:
        """
        Move a lapsed ACTIVE/GRACE record to EXPIRED.

        Lapse is a fact of the clock, not a platform event, so the
        freshness marker is not touched. A record that is no longer
        lapsed when the lock is taken (renewed in the meantime) is left
        alone.
        """
        result = await self._run_serialized(
            user_id,
            product_id,
            lambda session: self._apply_expiration(session, user_id, product_id, now or self.clock()),
        )
        if result.applied:
            await CacheInvalidator.on_subscription_change(str(user_id))
        return result

    async def _run_serialized(self, user_id: uuid.UUID, product_id: str, work) -> ApplyResult:
        """Run ``work(session)`` under the key lock, retrying lost races."""
        async with self.locks.hold((user_id, product_id)):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    async with self.session_factory() as session:
                        return await asyncio.wait_for(work(session), timeout=self.timeout)
                except IntegrityError as e:
                    if not _is_unique_violation(e):
                        raise self._integrity_error(user_id, product_id, e) from e
                    # Another writer created the row first
                    self.log.info(
                        "Concurrent insert on subscription %s/%s (attempt %d/%d)",
                        user_id,
                        product_id,
                        attempt,
                        self.max_attempts,
                    )
                except StaleDataError as e:
                    self.log.info(
                        "Concurrent update on subscription %s/%s (attempt %d/%d): %s",
                        user_id,
                        product_id,
                        attempt,
                        self.max_attempts,
                        type(e).__name__,
                    )
                except asyncio.TimeoutError:
                    raise StorageUnavailable(
                        "Subscription ledger timed out",
                        product_id=product_id,
                    )
                except DBAPIError as e:
                    self.log.error("Subscription ledger failure for %s/%s: %s", user_id, product_id, e)
                    raise StorageUnavailable(
                        "Subscription ledger unavailable",
                        product_id=product_id,
                    ) from e

        raise StorageUnavailable(
            "Subscription ledger stayed contended",
            product_id=product_id,
        )

    def _integrity_error(self, user_id: uuid.UUID, product_id: str, error: IntegrityError):
        """Map a non-retryable constraint failure to a domain error."""
        self.log.error("Constraint violation on subscription %s/%s: %s", user_id, product_id, error.orig)
        if _is_foreign_key_violation(error):
            return ForeignKeyViolation(f"User {user_id} does not exist", user_id=str(user_id))
        return InvalidTransition(
            "Record violates a ledger constraint",
            product_id=product_id,
        )

    async def _load_for_update(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
    ) -> Optional[SubscriptionRecord]:
        result = await session.execute(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.product_id == product_id,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _require_user(session: AsyncSession, user_id: uuid.UUID) -> None:
        if await session.get(User, user_id) is None:
            raise ForeignKeyViolation(f"User {user_id} does not exist", user_id=str(user_id))

    async def _transaction_seen(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
        transaction_id: str,
    ) -> bool:
        """Whether a transition was ever applied from ``transaction_id``."""
        result = await session.execute(
            select(SubscriptionEvent.id)
            .where(
                SubscriptionEvent.user_id == user_id,
                SubscriptionEvent.product_id == product_id,
                SubscriptionEvent.transaction_id == transaction_id,
                SubscriptionEvent.event_type == SubscriptionEventType.STATUS_CHANGED.value,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _apply_outcome(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
        outcome: ValidationOutcome,
    ) -> ApplyResult:
        record = await self._load_for_update(session, user_id, product_id)
        if record is None:
            await self._require_user(session, user_id)
        current = record.status if record else SubscriptionStatus.NONE
        marker = record.freshness_marker if record else 0
        current_tx = record.latest_transaction_id if record else None
        target = outcome.status

        replayed = False
        new_lineage = is_new_lineage(current, target, current_tx, outcome.transaction_id)
        if new_lineage:
            # Receipts of an older lineage must not reopen the record
            replayed = await self._transaction_seen(
                session, user_id, product_id, outcome.transaction_id
            )
            new_lineage = not replayed

        if not should_apply(
            current,
            marker,
            current_tx,
            target,
            outcome.freshness,
            outcome.transaction_id,
            replayed=replayed,
        ):
            return await self._reject_stale(session, record, current, outcome, marker)

        if not is_allowed(current, target, new_lineage=new_lineage):
            await self._reject(
                session,
                user_id,
                product_id,
                record,
                current,
                target,
                REASON_INVALID_TRANSITION,
                transaction_id=outcome.transaction_id,
                extra={"freshness": outcome.freshness, "stored_freshness": marker},
            )
            raise InvalidTransition(
                f"Illegal transition {current.value} -> {target.value}",
                previous_status=current.value,
                new_status=target.value,
                transaction_id=outcome.transaction_id,
            )

        if record is None:
            record = SubscriptionRecord(
                id=uuid.uuid4(),
                user_id=user_id,
                product_id=product_id,
                start_date=outcome.start_date,
            )
            session.add(record)
        elif new_lineage:
            record.start_date = outcome.start_date
        else:
            record.start_date = min(record.start_date, outcome.start_date)

        record.status = target
        if new_lineage or outcome.expiration_date is not None:
            record.expiration_date = outcome.expiration_date
        record.latest_transaction_id = outcome.transaction_id
        record.original_transaction_id = outcome.original_transaction_id or outcome.transaction_id
        if outcome.receipt_data is not None:
            record.receipt_data = outcome.receipt_data
        record.environment = outcome.environment
        record.is_trial_period = outcome.is_trial
        record.trial_end_date = outcome.trial_end_date
        record.cancellation_date = outcome.cancellation_date
        record.freshness_marker = max(marker, outcome.freshness)
        # The row must exist before the event that references it
        await session.flush()

        session.add(build_event(
            user_id,
            SubscriptionEventType.STATUS_CHANGED,
            subscription_id=record.id,
            product_id=product_id,
            transaction_id=outcome.transaction_id,
            previous_status=current,
            new_status=target,
            event_data={
                "previous_status": current.value,
                "new_status": target.value,
                "freshness": outcome.freshness,
                "stored_freshness": marker,
                "new_lineage": new_lineage,
                "reason": REASON_APPLIED,
            },
        ))
        await session.commit()

        self.log.info(
            "Subscription %s/%s: %s -> %s (transaction=%s freshness=%d)",
            user_id,
            product_id,
            current.value,
            target.value,
            outcome.transaction_id,
            outcome.freshness,
        )
        return ApplyResult(
            applied=True,
            reason=REASON_APPLIED,
            previous_status=current,
            new_status=target,
            record=SubscriptionSnapshot.model_validate(record),
        )

    async def _reject_stale(
        self,
        session: AsyncSession,
        record: Optional[SubscriptionRecord],
        current: SubscriptionStatus,
        outcome: ValidationOutcome,
        marker: int,
    ) -> ApplyResult:
        duplicate = record is not None and record.latest_transaction_id == outcome.transaction_id
        # Recorded, never raised
        stale = StaleReceipt(f"Freshness {outcome.freshness} does not supersede stored {marker}")
        await self._reject(
            session,
            outcome.user_id,
            outcome.product_id,
            record,
            current,
            outcome.status,
            REASON_STALE,
            transaction_id=outcome.transaction_id,
            extra={
                "freshness": outcome.freshness,
                "stored_freshness": marker,
                "duplicate": duplicate,
                "code": stale.code,
            },
        )
        self.log.info(
            "Stale outcome ignored for %s/%s: transaction=%s: %s",
            outcome.user_id,
            outcome.product_id,
            outcome.transaction_id,
            stale.message,
        )
        return ApplyResult(
            applied=False,
            reason=REASON_STALE,
            previous_status=current,
            new_status=current,
            record=SubscriptionSnapshot.model_validate(record) if record else None,
        )

    async def _reject(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
        record: Optional[SubscriptionRecord],
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        reason: str,
        transaction_id: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append a ``rejected`` event and end the transaction without touching the row."""
        data = {
            "reason": reason,
            "previous_status": current.value,
            "new_status": target.value,
        }
        data.update(extra or {})
        session.add(build_event(
            user_id,
            SubscriptionEventType.REJECTED,
            subscription_id=record.id if record else None,
            product_id=product_id,
            transaction_id=transaction_id,
            previous_status=current,
            new_status=target,
            event_data=data,
            error_message=reason,
        ))
        await session.commit()

    async def _apply_override(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
        new_status: SubscriptionStatus,
        expiration_date: Optional[datetime],
        actor: Optional[str],
    ) -> ApplyResult:
        record = await self._load_for_update(session, user_id, product_id)
        if record is None:
            await self._require_user(session, user_id)
        current = record.status if record else SubscriptionStatus.NONE
        marker = record.freshness_marker if record else 0
        reopening = (current is SubscriptionStatus.NONE or is_terminal(current)) and new_status in ENTRY_STATUSES

        if not is_allowed(current, new_status, new_lineage=reopening):
            await self._reject(
                session,
                user_id,
                product_id,
                record,
                current,
                new_status,
                REASON_INVALID_TRANSITION,
                extra={"source": REASON_ADMIN_OVERRIDE, "actor": actor},
            )
            raise InvalidTransition(
                f"Illegal transition {current.value} -> {new_status.value}",
                previous_status=current.value,
                new_status=new_status.value,
            )

        now = self.clock()
        if record is None:
            record = SubscriptionRecord(
                id=uuid.uuid4(),
                user_id=user_id,
                product_id=product_id,
                start_date=now,
                environment=ReceiptEnvironment.PRODUCTION,
            )
            session.add(record)
        elif reopening:
            record.start_date = now
            record.expiration_date = None
            record.cancellation_date = None

        if expiration_date is not None:
            if expiration_date < record.start_date:
                raise InvalidTransition(
                    "Expiration date precedes start date",
                    previous_status=current.value,
                    new_status=new_status.value,
                )
            record.expiration_date = expiration_date
        if new_status is SubscriptionStatus.CANCELED and record.cancellation_date is None:
            record.cancellation_date = now

        record.status = new_status
        record.freshness_marker = marker
        await session.flush()

        session.add(build_event(
            user_id,
            SubscriptionEventType.STATUS_CHANGED,
            subscription_id=record.id,
            product_id=product_id,
            previous_status=current,
            new_status=new_status,
            event_data={
                "previous_status": current.value,
                "new_status": new_status.value,
                "reason": REASON_ADMIN_OVERRIDE,
                "actor": actor,
                "expiration_date": expiration_date.isoformat() if expiration_date else None,
            },
        ))
        await session.commit()

        self.log.warning(
            "Subscription %s/%s overridden: %s -> %s by %s",
            user_id,
            product_id,
            current.value,
            new_status.value,
            actor or "unknown",
        )
        return ApplyResult(
            applied=True,
            reason=REASON_ADMIN_OVERRIDE,
            previous_status=current,
            new_status=new_status,
            record=SubscriptionSnapshot.model_validate(record),
        )

    async def _apply_expiration(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        product_id: str,
        now: datetime,
    ) -> ApplyResult:
        record = await self._load_for_update(session, user_id, product_id)
        current = record.status if record else SubscriptionStatus.NONE
        lapsed = (
            record is not None
            and current in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE)
            and record.expiration_date is not None
            and record.expiration_date <= now
        )
        if not lapsed:
            return ApplyResult(
                applied=False,
                reason=REASON_NOT_LAPSED,
                previous_status=current,
                new_status=current,
                record=SubscriptionSnapshot.model_validate(record) if record else None,
            )

        record.status = SubscriptionStatus.EXPIRED
        await session.flush()

        session.add(build_event(
            user_id,
            SubscriptionEventType.STATUS_CHANGED,
            subscription_id=record.id,
            product_id=product_id,
            transaction_id=record.latest_transaction_id,
            previous_status=current,
            new_status=SubscriptionStatus.EXPIRED,
            event_data={
                "previous_status": current.value,
                "new_status": SubscriptionStatus.EXPIRED.value,
                "expiration_date": record.expiration_date.isoformat(),
                "stored_freshness": record.freshness_marker,
                "reason": REASON_EXPIRED,
            },
        ))
        await session.commit()

        self.log.info(
            "Subscription %s/%s: %s -> EXPIRED (expired %s)",
            user_id,
            product_id,
            current.value,
            record.expiration_date.isoformat(),
        )
        return ApplyResult(
            applied=True,
            reason=REASON_EXPIRED,
            previous_status=current,
            new_status=SubscriptionStatus.EXPIRED,
            record=SubscriptionSnapshot.model_validate(record),
        )


def _sqlstate(error: IntegrityError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_unique_violation(error: IntegrityError) -> bool:
    """A duplicate-key insert: the only integrity failure caused by a race."""
    if _sqlstate(error) == "23505":
        return True
    message = str(error.orig)
    return "UNIQUE constraint failed" in message or "duplicate key value" in message


def _is_foreign_key_violation(error: IntegrityError) -> bool:
    if _sqlstate(error) == "23503":
        return True
    return "FOREIGN KEY constraint failed" in str(error.orig) or "foreign key constraint" in str(error.orig)
