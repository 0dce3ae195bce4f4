"""
Scheduled Jobs
==============

Background maintenance for the subscription ledger:
- Subscription expiration sweep

Readers already treat lapsed ACTIVE/GRACE records as EXPIRED; the sweep
makes that durable through ``ledger.expire``, which re-checks the lapse
under the key lock and leaves the freshness marker alone.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import EntitlementError
from app.models.subscription import SubscriptionRecord, SubscriptionStatus
from app.schemas.subscription import SubscriptionSnapshot
from app.services.ledger import SubscriptionLedger


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: SubscriptionLedger,
    ):
        self.session_factory = session_factory
        self.ledger = ledger

    async def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> dict:
        """
        Move ACTIVE/GRACE records past their expiration to EXPIRED.

        Run every few minutes; safe to run concurrently with receipt
        ingestion since every change goes through the ledger.

        Returns:
            Summary of processed subscriptions
        """
        now = now or self.ledger.clock()

        stmt = select(SubscriptionRecord).where(
            and_(
                SubscriptionRecord.status.in_([
                    SubscriptionStatus.ACTIVE,
                    SubscriptionStatus.GRACE,
                ]),
                SubscriptionRecord.expiration_date.isnot(None),
                SubscriptionRecord.expiration_date <= now,
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            lapsed = [SubscriptionSnapshot.model_validate(row) for row in result.scalars().all()]

        expired = 0
        skipped = 0
        errors = []

        for record in lapsed:
            try:
                outcome = await self.ledger.expire(record.user_id, record.product_id, now=now)
            except EntitlementError as e:
                errors.append({
                    "subscription_id": str(record.id),
                    "error": e.code,
                })
                continue

            if outcome.applied:
                expired += 1
            else:
                skipped += 1

        return {
            "job": "expire_lapsed_subscriptions",
            "expired": expired,
            "skipped": skipped,
            "errors": errors,
            "run_at": now.isoformat(),
        }

