"""
Entitlement Engine
==================

Wires the receipt store, validator, ledger, event log and gate into the
operations the API exposes:

    receipt -> store (idempotent) -> validate -> ledger.apply -> events

The gate and the status summary only read the ledger.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional
import uuid

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.core.errors import EntitlementError
from app.core.feature_map import FeatureMap, load_feature_map
from app.db.base import utc_now
from app.models.subscription import SubscriptionEventType, SubscriptionStatus
from app.schemas.receipt import ReceiptSubmission, StoredReceipt
from app.schemas.subscription import (
    ApplyResult,
    Decision,
    IngestResult,
    SubscriptionStatusSummary,
    UsageSummary,
)
from app.services.cache import CacheKeys, CacheManager
from app.services.entitlement_gate import EntitlementGate, best_record
from app.services.event_log import EventLog
from app.services.ledger import SubscriptionLedger
from app.services.receipt_store import ReceiptStore
from app.services.validator import Validator
from app.services.verifiers import PlatformVerifier, default_verifiers

logger = logging.getLogger(__name__)

_PAID_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE)


class EntitlementEngine:
    """Facade over the entitlement components."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
        verifiers: Optional[dict[Any, PlatformVerifier]] = None,
        feature_map: Optional[FeatureMap] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        log: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.log = log or logger
        self.clock = clock

        self.event_log = EventLog(session_factory, settings, log=self.log)
        self.receipts = ReceiptStore(session_factory, settings, log=self.log)
        self.validator = Validator(
            session_factory,
            verifiers if verifiers is not None else default_verifiers(settings, http_client),
            settings,
            log=self.log,
            clock=clock,
        )
        self.ledger = SubscriptionLedger(session_factory, settings, log=self.log, clock=clock)
        self.gate = EntitlementGate(
            session_factory,
            feature_map or load_feature_map(settings.FEATURE_MAP_PATH),
            self.event_log,
            settings,
            log=self.log,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, submission: ReceiptSubmission, now: Optional[datetime] = None) -> IngestResult:
        """
        Store, validate and apply one receipt.

        Duplicate and out-of-order receipts come back with
        ``result.applied == False`` rather than as errors.
        """
        now = now or self.clock()
        stored = await self.receipts.submit(submission)

        try:
            outcome = await self.validator.validate(stored, claimed_user_id=submission.user_id, now=now)
        except EntitlementError as e:
            self._report(e, stored, submission.user_id)
            await self._append_quietly(
                submission.user_id or stored.user_id,
                SubscriptionEventType.REJECTED,
                product_id=stored.product_id,
                transaction_id=stored.transaction_id,
                error_message=e.code,
                event_data={"reason": e.code, "message": e.message, "platform": stored.platform.value},
            )
            raise

        await self._append_quietly(
            outcome.user_id,
            SubscriptionEventType.VALIDATED,
            product_id=outcome.product_id,
            transaction_id=outcome.transaction_id,
            new_status=outcome.status,
            event_data={
                "status": outcome.status.value,
                "freshness": outcome.freshness,
                "platform": stored.platform.value,
                "environment": outcome.environment.value,
            },
        )

        try:
            result = await self.ledger.apply(outcome.user_id, outcome.product_id, outcome)
        except EntitlementError as e:
            self._report(e, stored, submission.user_id)
            raise

        record = result.record
        if record is None:
            record = await self.ledger.get(outcome.user_id, outcome.product_id)
        return IngestResult(receipt=stored, outcome=outcome, result=result, record=record)

    def _report(self, error: EntitlementError, stored: StoredReceipt, claimant: Optional[uuid.UUID]) -> None:
        if error.alert:
            self.log.error(
                "Integrity signal %s for transaction=%s owner=%s claimant=%s: %s",
                error.code,
                stored.transaction_id,
                stored.user_id,
                claimant,
                error.message,
                extra={"alert": True},
            )
        else:
            self.log.warning(
                "Receipt rejected %s for transaction=%s: %s",
                error.code,
                stored.transaction_id,
                error.message,
            )

    async def _append_quietly(self, user_id: uuid.UUID, event_type: SubscriptionEventType, **fields: Any) -> None:
        try:
            await self.event_log.append(user_id, event_type, **fields)
        except EntitlementError as e:
            self.log.warning("Could not record %s event for user=%s: %s", event_type.value, user_id, e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def subscription_status(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SubscriptionStatusSummary:
        """Best subscription the user holds; side-effect free apart from caching."""
        now = now or self.clock()
        cache_key = CacheKeys.subscription_status(str(user_id))

        cached = await CacheManager.get(cache_key)
        if cached is not None:
            summary = SubscriptionStatusSummary.model_validate(cached)
            still_valid = not (
                summary.status in _PAID_STATUSES
                and summary.expiration_date is not None
                and summary.expiration_date <= now
            )
            if still_valid:
                return summary

        records = await self.ledger.list_for_user(user_id)
        if not records:
            summary = SubscriptionStatusSummary(status=SubscriptionStatus.NONE)
        else:
            best = best_record(records, None, now)
            status = best.effective_status(now)
            summary = SubscriptionStatusSummary(
                status=status,
                expiration_date=best.expiration_date,
                product_id=best.product_id,
                has_active_subscription=status in _PAID_STATUSES,
                is_trial=best.is_trial_period,
                trial_end_date=best.trial_end_date,
            )

        await CacheManager.set(
            cache_key,
            summary.model_dump(mode="json"),
            ttl=self.settings.SUBSCRIPTION_STATUS_CACHE_TTL,
        )
        return summary

    async def check_feature_access(self, user_id: uuid.UUID, feature_name: str) -> Decision:
        return await self.gate.check_access(user_id, feature_name)

    async def track_feature_usage(self, user_id: uuid.UUID, feature_name: str) -> UsageSummary:
        return await self.gate.track_usage(user_id, feature_name)

    # ------------------------------------------------------------------
    # Writes outside the receipt path
    # ------------------------------------------------------------------

    async def log_subscription_event(
        self,
        user_id: uuid.UUID,
        event_type: str,
        event_data: Optional[dict[str, Any]] = None,
    ) -> uuid.UUID:
        return await self.event_log.log_subscription_event(user_id, event_type, event_data)

    async def update_subscription_status(
        self,
        user_id: uuid.UUID,
        product_id: str,
        new_status: SubscriptionStatus,
        expiration_date: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> ApplyResult:
        """Administrative override; the transition guard still applies."""
        return await self.ledger.override(user_id, product_id, new_status, expiration_date, actor)

