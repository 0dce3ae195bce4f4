"""
Receipt Validator
=================

Turns a stored receipt into the ledger transition it justifies.

Steps, in order:
1. structural parse and authenticity check by the platform verifier
2. cross-check against other users (receipt reuse detection)
3. status, expiration and trial extraction, plus the freshness marker
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Mapping, Optional
import uuid

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.core.errors import (
    MalformedPayload,
    StorageUnavailable,
    UserProductMismatch,
    VerificationUnavailable,
)
from app.core.state_machine import TERMINAL_STATUSES
from app.db.base import utc_now
from app.models.subscription import Platform, SubscriptionRecord, SubscriptionStatus
from app.schemas.receipt import StoredReceipt, ValidationOutcome, VerifiedPurchase
from app.services.verifiers import PlatformVerifier

logger = logging.getLogger(__name__)


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def derive_status(purchase: VerifiedPurchase, now: datetime) -> tuple[SubscriptionStatus, Optional[datetime]]:
    """
    Status implied by a verified purchase at ``now``, with the expiration
    date the ledger should record for it.
    """
    if purchase.canceled_at is not None:
        return SubscriptionStatus.CANCELED, purchase.expires_at
    if purchase.pending:
        return SubscriptionStatus.PENDING, purchase.expires_at
    if purchase.expires_at is None or purchase.expires_at > now:
        if purchase.in_billing_retry:
            return SubscriptionStatus.GRACE, purchase.expires_at
        return SubscriptionStatus.ACTIVE, purchase.expires_at
    if purchase.grace_expires_at is not None and purchase.grace_expires_at > now:
        return SubscriptionStatus.GRACE, purchase.grace_expires_at
    return SubscriptionStatus.EXPIRED, purchase.expires_at


def derive_freshness(purchase: VerifiedPurchase, status: SubscriptionStatus) -> int:
    """
    Milliseconds of the latest lifecycle event the platform attests to.

    Web receipts carry an explicit sequence number instead.
    """
    if purchase.sequence is not None:
        return purchase.sequence

    moments = [purchase.purchased_at]
    if purchase.canceled_at is not None:
        moments.append(purchase.canceled_at)
    if purchase.expires_at is not None and (
        purchase.in_billing_retry
        or status in (SubscriptionStatus.GRACE, SubscriptionStatus.EXPIRED)
    ):
        # Billing retry starts at the missed renewal
        moments.append(purchase.expires_at)
    if status is SubscriptionStatus.EXPIRED and purchase.grace_expires_at is not None:
        moments.append(purchase.grace_expires_at)
    return max(to_millis(moment) for moment in moments)


class Validator:
    """Verifies receipts and proposes ledger transitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifiers: Mapping[Platform, PlatformVerifier],
        settings: Settings = default_settings,
        log: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.verifiers = verifiers
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS
        self.verify_timeout = settings.VERIFY_TIMEOUT_SECONDS * settings.VERIFY_MAX_ATTEMPTS * 2
        self.log = log or logger
        self.clock = clock

    async def validate(
        self,
        receipt: StoredReceipt,
        claimed_user_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> ValidationOutcome:
        """
        Verify ``receipt`` and derive the transition it justifies.

        ``claimed_user_id`` is the user who submitted the receipt; it
        differs from ``receipt.user_id`` when somebody resubmits a
        transaction already stored for another account.

        Raises:
            MalformedPayload, SignatureInvalid, VerificationUnavailable,
            UserProductMismatch, StorageUnavailable
        """
        now = now or self.clock()

        if claimed_user_id is not None and claimed_user_id != receipt.user_id:
            raise UserProductMismatch(
                "Transaction is already bound to another user",
                transaction_id=receipt.transaction_id,
            )

        verifier = self.verifiers.get(receipt.platform)
        if verifier is None:
            raise MalformedPayload(f"No verifier for platform {receipt.platform.value}")

        try:
            purchase = await asyncio.wait_for(verifier.verify(receipt), timeout=self.verify_timeout)
        except asyncio.TimeoutError:
            raise VerificationUnavailable("Receipt verification timed out")

        self._check_document(receipt, purchase)
        await self._check_other_users(receipt, purchase)

        if purchase.expires_at is not None and purchase.expires_at < purchase.purchased_at:
            raise MalformedPayload(
                "Expiration date precedes purchase date",
                transaction_id=receipt.transaction_id,
            )

        status, expiration = derive_status(purchase, now)
        outcome = ValidationOutcome(
            transaction_id=receipt.transaction_id,
            original_transaction_id=purchase.original_transaction_id,
            user_id=receipt.user_id,
            product_id=receipt.product_id,
            environment=purchase.environment or receipt.environment,
            status=status,
            start_date=purchase.purchased_at,
            expiration_date=expiration,
            is_trial=purchase.is_trial,
            trial_end_date=purchase.trial_ends_at,
            cancellation_date=purchase.canceled_at,
            freshness=derive_freshness(purchase, status),
            receipt_data=receipt.receipt_data,
        )
        self.log.info(
            "Receipt validated: transaction=%s user=%s product=%s status=%s freshness=%d",
            outcome.transaction_id,
            outcome.user_id,
            outcome.product_id,
            outcome.status.value,
            outcome.freshness,
        )
        return outcome

    @staticmethod
    def _check_document(receipt: StoredReceipt, purchase: VerifiedPurchase) -> None:
        if purchase.transaction_id != receipt.transaction_id:
            raise UserProductMismatch(
                "Receipt document names a different transaction",
                transaction_id=receipt.transaction_id,
            )
        if purchase.product_id != receipt.product_id:
            raise UserProductMismatch(
                "Receipt document names a different product",
                transaction_id=receipt.transaction_id,
                product_id=receipt.product_id,
            )

    async def _check_other_users(self, receipt: StoredReceipt, purchase: VerifiedPurchase) -> None:
        """Another user holding a live subscription on this purchase is receipt reuse."""
        lineage = {receipt.transaction_id}
        if purchase.original_transaction_id:
            lineage.add(purchase.original_transaction_id)

        stmt = (
            select(SubscriptionRecord.user_id)
            .where(
                and_(
                    SubscriptionRecord.user_id != receipt.user_id,
                    SubscriptionRecord.status.notin_(TERMINAL_STATUSES),
                    or_(
                        SubscriptionRecord.latest_transaction_id == receipt.transaction_id,
                        SubscriptionRecord.original_transaction_id.in_(lineage),
                    ),
                )
            )
            .limit(1)
        )
        try:
            async with self.session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), timeout=self.timeout)
                holder = result.scalar_one_or_none()
        except asyncio.TimeoutError:
            raise StorageUnavailable("Subscription lookup timed out")
        except DBAPIError as e:
            raise StorageUnavailable("Subscription lookup unavailable") from e

        if holder is not None:
            raise UserProductMismatch(
                "Purchase is already entitling another user",
                transaction_id=receipt.transaction_id,
            )
