"""
Entitlement Gate
================

Answers "may this user use this feature right now?" from the ledger.

The gate never raises to its caller: a backend failure yields a
deny decision with reason ``unavailable``. Every check appends a
``feature-checked`` event; a failed append is logged and does not
change the decision.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Callable, Iterable, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.core.errors import ForeignKeyViolation, StorageUnavailable
from app.core.feature_map import FeatureMap, FeatureRequirement
from app.core.state_machine import STATUS_RANK
from app.db.base import utc_now
from app.models.feature_usage import FeatureUsage
from app.models.subscription import SubscriptionEventType, SubscriptionRecord, SubscriptionStatus
from app.models.user import User
from app.schemas.subscription import Decision, SubscriptionSnapshot, UsageSummary
from app.services.event_log import EventLog

logger = logging.getLogger(__name__)

REASON_ENTITLED = "entitled"
REASON_UNKNOWN_FEATURE = "unknown-feature"
REASON_UNAVAILABLE = "unavailable"
REASON_NO_SUBSCRIPTION = "no-subscription"
REASON_GRACE_NOT_ALLOWED = "grace-not-allowed"


def _rank(record: SubscriptionSnapshot, now: datetime) -> tuple[int, float]:
    expiration = record.expiration_date
    # No expiration means a non-expiring purchase
    expires = expiration.timestamp() if expiration is not None else float("inf")
    return STATUS_RANK[record.effective_status(now)], expires


def best_record(
    records: Iterable[SubscriptionSnapshot],
    requirement: Optional[FeatureRequirement],
    now: datetime,
) -> Optional[SubscriptionSnapshot]:
    """
    The record that best represents the user for ``requirement``.

    Records satisfying the requirement win; ties break on status rank,
    then on the latest expiration.
    """
    candidates = list(records)
    if requirement is not None and requirement.required_product:
        candidates = [r for r in candidates if r.product_id == requirement.required_product]
    if not candidates:
        return None

    def key(record: SubscriptionSnapshot) -> tuple[bool, int, float]:
        satisfied = requirement is not None and requirement.allows(record.effective_status(now))
        return (satisfied, *_rank(record, now))

    return max(candidates, key=key)


def decide(
    feature_name: str,
    requirement: Optional[FeatureRequirement],
    records: Iterable[SubscriptionSnapshot],
    now: datetime,
) -> Decision:
    """Pure access decision over the user's ledger records."""
    if requirement is None:
        return Decision(granted=False, reason=REASON_UNKNOWN_FEATURE, feature_name=feature_name)

    record = best_record(records, requirement, now)
    if record is None:
        return Decision(granted=False, reason=REASON_NO_SUBSCRIPTION, feature_name=feature_name)

    status = record.effective_status(now)
    if requirement.allows(status):
        reason = REASON_ENTITLED
    elif status is SubscriptionStatus.GRACE and status in requirement.required_statuses:
        reason = REASON_GRACE_NOT_ALLOWED
    else:
        reason = f"subscription-{status.value.lower()}"

    return Decision(
        granted=requirement.allows(status),
        reason=reason,
        feature_name=feature_name,
        status=status,
        product_id=record.product_id,
        expiration_date=record.expiration_date,
    )


class EntitlementGate:
    """Feature access decisions backed by the subscription ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feature_map: FeatureMap,
        event_log: EventLog,
        settings: Settings = default_settings,
        log: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.feature_map = feature_map
        self.event_log = event_log
        self.read_timeout = settings.GATE_READ_TIMEOUT_SECONDS
        self.event_timeout = settings.EVENT_LOG_TIMEOUT_SECONDS
        self.storage_timeout = settings.STORAGE_TIMEOUT_SECONDS
        self.log = log or logger
        self.clock = clock

    async def _read_records(self, user_id: uuid.UUID) -> list[SubscriptionSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
            )
            return [SubscriptionSnapshot.model_validate(row) for row in result.scalars().all()]

    async def _decide(self, user_id: uuid.UUID, feature_name: str, now: datetime) -> Decision:
        requirement = self.feature_map.get(feature_name)
        if requirement is None:
            return decide(feature_name, None, [], now)

        try:
            records = await asyncio.wait_for(self._read_records(user_id), timeout=self.read_timeout)
        except Exception as e:
            # Deny on any backend failure; the caller only sees "unavailable"
            self.log.error(
                "Entitlement read failed for user=%s feature=%s: %s: %s",
                user_id,
                feature_name,
                type(e).__name__,
                e,
            )
            return Decision(granted=False, reason=REASON_UNAVAILABLE, feature_name=feature_name)

        return decide(feature_name, requirement, records, now)

    async def check_access(
        self,
        user_id: uuid.UUID,
        feature_name: str,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Grant or deny ``feature_name`` for ``user_id``. Never raises."""
        decision = await self._decide(user_id, feature_name, now or self.clock())

        try:
            await asyncio.wait_for(
                self.event_log.append(
                    user_id,
                    SubscriptionEventType.FEATURE_CHECKED,
                    product_id=decision.product_id,
                    event_data={
                        "feature_name": feature_name,
                        "granted": decision.granted,
                        "reason": decision.reason,
                        "status": decision.status.value,
                    },
                ),
                timeout=self.event_timeout,
            )
        except Exception as e:
            self.log.warning(
                "Could not record feature check for user=%s feature=%s: %s",
                user_id,
                feature_name,
                e,
            )

        self.log.debug(
            "Feature check: user=%s feature=%s granted=%s reason=%s",
            user_id,
            feature_name,
            decision.granted,
            decision.reason,
        )
        return decision

    async def track_usage(
        self,
        user_id: uuid.UUID,
        feature_name: str,
        now: Optional[datetime] = None,
    ) -> UsageSummary:
        """
        Count one use of ``feature_name`` for today.

        The counter is informational; it never feeds back into access
        decisions.

        Raises:
            StorageUnavailable: The counter could not be written.
        """
        now = now or self.clock()
        decision = await self._decide(user_id, feature_name, now)
        requirement = self.feature_map.get(feature_name)
        free_limit = requirement.free_daily_limit if requirement else 0
        today = now.date()

        if requirement is None:
            return UsageSummary(
                feature_name=feature_name,
                usage_date=today,
                usage_count=0,
                had_access=False,
                free_daily_limit=0,
                remaining_free_uses=0,
            )

        try:
            usage_count = await asyncio.wait_for(
                self._increment(user_id, feature_name, today, decision.granted),
                timeout=self.storage_timeout,
            )
        except asyncio.TimeoutError:
            raise StorageUnavailable("Feature usage store timed out")
        except DBAPIError as e:
            raise StorageUnavailable("Feature usage store unavailable") from e

        try:
            await asyncio.wait_for(
                self.event_log.append(
                    user_id,
                    SubscriptionEventType.USAGE_TRACKED,
                    product_id=decision.product_id,
                    event_data={
                        "feature_name": feature_name,
                        "had_access": decision.granted,
                        "usage_count": usage_count,
                        "usage_date": today.isoformat(),
                    },
                ),
                timeout=self.event_timeout,
            )
        except Exception as e:
            self.log.warning("Could not record usage event for user=%s: %s", user_id, e)

        return UsageSummary(
            feature_name=feature_name,
            usage_date=today,
            usage_count=usage_count,
            had_access=decision.granted,
            free_daily_limit=free_limit,
            remaining_free_uses=None if decision.granted else max(0, free_limit - usage_count),
        )

    async def _increment(
        self,
        user_id: uuid.UUID,
        feature_name: str,
        usage_date: date,
        had_access: bool,
    ) -> int:
        for _ in range(2):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FeatureUsage)
                    .where(
                        FeatureUsage.user_id == user_id,
                        FeatureUsage.feature == feature_name,
                        FeatureUsage.usage_date == usage_date,
                    )
                    .with_for_update()
                )
                usage = result.scalar_one_or_none()
                if usage is None:
                    usage = FeatureUsage(
                        user_id=user_id,
                        feature=feature_name,
                        usage_date=usage_date,
                        usage_count=1,
                        had_access=had_access,
                    )
                    session.add(usage)
                else:
                    usage.usage_count += 1
                    usage.had_access = usage.had_access or had_access
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if await session.get(User, user_id) is None:
                        raise ForeignKeyViolation(
                            f"User {user_id} does not exist",
                            user_id=str(user_id),
                        )
                    # Another request created today's row first
                    continue
                return usage.usage_count
        raise StorageUnavailable("Feature usage counter stayed contended")
