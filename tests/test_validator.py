"""
Validator Tests
===============

Tests for status derivation, the freshness marker and the receipt
reuse cross-checks.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import MalformedPayload, SignatureInvalid, UserProductMismatch
from app.models.subscription import SubscriptionStatus as S
from app.schemas.receipt import VerifiedPurchase
from app.services.receipt_store import ReceiptStore
from app.services.validator import Validator, derive_freshness, derive_status, to_millis
from app.services.verifiers import default_verifiers

from conftest import NOW, web_submission

PURCHASED = datetime(2025, 5, 1, tzinfo=timezone.utc)


def _purchase(**overrides) -> VerifiedPurchase:
    fields = {
        "transaction_id": "tx-001",
        "product_id": "premium_monthly",
        "purchased_at": PURCHASED,
        "expires_at": NOW + timedelta(days=30),
    }
    fields.update(overrides)
    return VerifiedPurchase(**fields)


class TestDeriveStatus:
    def test_active(self):
        assert derive_status(_purchase(), NOW) == (S.ACTIVE, NOW + timedelta(days=30))

    def test_no_expiry_is_active(self):
        assert derive_status(_purchase(expires_at=None), NOW) == (S.ACTIVE, None)

    def test_canceled_wins(self):
        status, _ = derive_status(_purchase(canceled_at=NOW, pending=True), NOW)
        assert status is S.CANCELED

    def test_pending(self):
        status, _ = derive_status(_purchase(pending=True), NOW)
        assert status is S.PENDING

    def test_billing_retry_before_expiry_is_grace(self):
        status, expiration = derive_status(_purchase(in_billing_retry=True), NOW)
        assert status is S.GRACE
        assert expiration == NOW + timedelta(days=30)

    def test_lapsed_inside_grace_window(self):
        grace_end = NOW + timedelta(days=3)
        status, expiration = derive_status(
            _purchase(expires_at=NOW - timedelta(days=1), grace_expires_at=grace_end),
            NOW,
        )
        assert status is S.GRACE
        assert expiration == grace_end

    def test_lapsed(self):
        status, expiration = derive_status(_purchase(expires_at=NOW - timedelta(days=1)), NOW)
        assert status is S.EXPIRED
        assert expiration == NOW - timedelta(days=1)


class TestDeriveFreshness:
    def test_active_uses_purchase_time(self):
        assert derive_freshness(_purchase(), S.ACTIVE) == to_millis(PURCHASED)

    def test_cancellation_is_later(self):
        purchase = _purchase(canceled_at=NOW)
        assert derive_freshness(purchase, S.CANCELED) == to_millis(NOW)

    def test_expiry_counts_once_lapsed(self):
        expired = NOW - timedelta(days=1)
        purchase = _purchase(expires_at=expired)
        assert derive_freshness(purchase, S.EXPIRED) == to_millis(expired)

    def test_renewal_is_fresher_than_original(self):
        original = _purchase()
        renewal = _purchase(transaction_id="tx-002", purchased_at=PURCHASED + timedelta(days=30))
        assert derive_freshness(renewal, S.ACTIVE) > derive_freshness(original, S.ACTIVE)

    def test_web_sequence_is_used_verbatim(self):
        assert derive_freshness(_purchase(sequence=42), S.ACTIVE) == 42


@pytest.fixture
def validator(session_factory, test_settings) -> Validator:
    return Validator(session_factory, default_verifiers(test_settings), test_settings, clock=lambda: NOW)


@pytest.fixture
def receipts(session_factory, test_settings) -> ReceiptStore:
    return ReceiptStore(session_factory, test_settings)


class TestValidate:
    @pytest.mark.asyncio
    async def test_active_outcome(self, validator, receipts, user_id):
        stored = await receipts.submit(web_submission(user_id, sequence=3))

        outcome = await validator.validate(stored)

        assert outcome.status is S.ACTIVE
        assert outcome.user_id == user_id
        assert outcome.product_id == "premium_monthly"
        assert outcome.expiration_date == datetime(2025, 12, 31, tzinfo=timezone.utc)
        assert outcome.freshness == 3
        assert outcome.receipt_data == stored.receipt_data

    @pytest.mark.asyncio
    async def test_trial(self, validator, receipts, user_id):
        stored = await receipts.submit(web_submission(user_id, trial=True))

        outcome = await validator.validate(stored)

        assert outcome.is_trial is True
        assert outcome.trial_end_date == outcome.expiration_date

    @pytest.mark.asyncio
    async def test_claimed_by_another_user(self, validator, receipts, user_id, other_user_id):
        stored = await receipts.submit(web_submission(user_id))

        with pytest.raises(UserProductMismatch):
            await validator.validate(stored, claimed_user_id=other_user_id)

    @pytest.mark.asyncio
    async def test_document_for_another_product(self, validator, receipts, user_id):
        submission = web_submission(user_id, product_id="premium_yearly")
        submission = submission.model_copy(update={"product_id": "premium_monthly"})
        stored = await receipts.submit(submission)

        with pytest.raises(UserProductMismatch):
            await validator.validate(stored)

    @pytest.mark.asyncio
    async def test_lineage_held_by_another_user(self, engine, validator, receipts, user_id, other_user_id):
        await engine.ingest(web_submission(user_id, transaction_id="tx-001"))
        stored = await receipts.submit(
            web_submission(other_user_id, transaction_id="tx-002", original_transaction_id="tx-001", sequence=2)
        )

        with pytest.raises(UserProductMismatch):
            await validator.validate(stored)

    @pytest.mark.asyncio
    async def test_expiry_before_purchase(self, validator, receipts, user_id):
        stored = await receipts.submit(
            web_submission(
                user_id,
                purchased_at=datetime(2025, 5, 1, tzinfo=timezone.utc),
                expires_at=datetime(2025, 4, 1, tzinfo=timezone.utc),
            )
        )

        with pytest.raises(MalformedPayload):
            await validator.validate(stored)

    @pytest.mark.asyncio
    async def test_bad_signature(self, validator, receipts, user_id):
        stored = await receipts.submit(web_submission(user_id, secret="forged"))

        with pytest.raises(SignatureInvalid):
            await validator.validate(stored)

    @pytest.mark.asyncio
    async def test_lapsed_receipt_is_expired(self, validator, receipts, user_id):
        stored = await receipts.submit(
            web_submission(user_id, expires_at=NOW - timedelta(days=2))
        )

        outcome = await validator.validate(stored)

        assert outcome.status is S.EXPIRED

