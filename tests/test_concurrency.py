"""
Concurrency Tests
=================

Tests for:
- concurrent and reordered deliveries converging on the fresher receipt
- writers in separate processes racing on one subscription row
- per-key locking
- bounded retry with backoff
"""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from app.core.concurrency import KeyedLock, backoff_delay, retry_with_backoff
from app.core.errors import ForeignKeyViolation, InvalidTransition, StorageUnavailable
from app.models.subscription import ReceiptEnvironment, SubscriptionStatus as S
from app.schemas.receipt import ValidationOutcome
from app.services.ledger import SubscriptionLedger

from conftest import WEBHOOK_SECRET, web_submission

JUNE_30 = datetime(2025, 6, 30, tzinfo=timezone.utc)
JULY_31 = datetime(2025, 7, 31, tzinfo=timezone.utc)


def _deliveries(user_id):
    older = web_submission(user_id, transaction_id="tx-100", sequence=1, expires_at=JUNE_30)
    newer = web_submission(
        user_id,
        transaction_id="tx-101",
        sequence=2,
        purchased_at=datetime(2025, 5, 30, tzinfo=timezone.utc),
        expires_at=JULY_31,
    )
    return older, newer


async def _assert_converged(engine, user_id):
    record = await engine.ledger.get(user_id, "premium_monthly")
    assert record.status is S.ACTIVE
    assert record.latest_transaction_id == "tx-101"
    assert record.expiration_date == JULY_31
    changes = await engine.event_log.list_for_user(user_id, event_type="status-changed")
    assert len(changes) <= 2


@pytest.mark.asyncio
async def test_simultaneous_webhooks_converge(client, engine, user_id):
    headers = {"X-Webhook-Secret": WEBHOOK_SECRET}
    older, newer = _deliveries(user_id)

    responses = await asyncio.gather(
        client.post("/api/v1/webhooks/web", json=older.model_dump(mode="json"), headers=headers),
        client.post("/api/v1/webhooks/web", json=newer.model_dump(mode="json"), headers=headers),
    )

    assert [r.status_code for r in responses] == [200, 200]
    await _assert_converged(engine, user_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("newer_first", [True, False])
async def test_delivery_order_does_not_matter(engine, user_id, newer_first):
    older, newer = _deliveries(user_id)
    ordered = [newer, older] if newer_first else [older, newer]

    for submission in ordered:
        await engine.ingest(submission)

    await _assert_converged(engine, user_id)


@pytest.mark.asyncio
async def test_concurrent_ingest(engine, user_id):
    older, newer = _deliveries(user_id)

    results = await asyncio.gather(engine.ingest(older), engine.ingest(newer))

    assert sum(1 for r in results if r.result.applied) >= 1
    await _assert_converged(engine, user_id)


@pytest.mark.asyncio
async def test_redelivery_storm(engine, user_id):
    submission = web_submission(user_id)

    results = await asyncio.gather(*(engine.ingest(submission) for _ in range(5)))

    assert sum(1 for r in results if r.result.applied) == 1
    assert sum(1 for r in results if r.receipt.created) == 1
    changes = await engine.event_log.list_for_user(user_id, event_type="status-changed")
    assert len(changes) == 1


def _outcome(user_id, freshness, transaction_id):
    return ValidationOutcome(
        transaction_id=transaction_id,
        user_id=user_id,
        product_id="premium_monthly",
        environment=ReceiptEnvironment.PRODUCTION,
        status=S.ACTIVE,
        start_date=datetime(2025, 5, 1, tzinfo=timezone.utc),
        expiration_date=datetime(2025, 5, 1, tzinfo=timezone.utc) + timedelta(days=freshness),
        freshness=freshness,
    )


class InterleavedLedger(SubscriptionLedger):
    """Lets another writer commit between this ledger's read and its write."""

    def __init__(self, *args, rival_write=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rival_write = rival_write
        self.loads = 0

    async def _load_for_update(self, session, user_id, product_id):
        record = await super()._load_for_update(session, user_id, product_id)
        self.loads += 1
        if self.loads == 1 and self.rival_write is not None:
            await self.rival_write()
        return record


class TestCrossProcessRace:
    """Two ledgers with their own key locks, as in two API workers."""

    @pytest.mark.asyncio
    async def test_lost_update_is_retried(self, session_factory, test_settings, user_id):
        rival = SubscriptionLedger(session_factory, test_settings, locks=KeyedLock())
        await rival.apply(user_id, "premium_monthly", _outcome(user_id, 100, "tx-001"))
        ledger = InterleavedLedger(
            session_factory,
            test_settings,
            locks=KeyedLock(),
            rival_write=lambda: rival.apply(user_id, "premium_monthly", _outcome(user_id, 200, "tx-002")),
        )

        result = await ledger.apply(user_id, "premium_monthly", _outcome(user_id, 300, "tx-003"))

        assert result.applied is True
        assert ledger.loads == 2
        record = await ledger.get(user_id, "premium_monthly")
        assert record.latest_transaction_id == "tx-003"
        assert record.freshness_marker == 300
        assert record.version == 3

    @pytest.mark.asyncio
    async def test_losing_writer_respects_fresher_winner(self, session_factory, test_settings, user_id):
        rival = SubscriptionLedger(session_factory, test_settings, locks=KeyedLock())
        await rival.apply(user_id, "premium_monthly", _outcome(user_id, 100, "tx-001"))
        ledger = InterleavedLedger(
            session_factory,
            test_settings,
            locks=KeyedLock(),
            rival_write=lambda: rival.apply(user_id, "premium_monthly", _outcome(user_id, 300, "tx-003")),
        )

        result = await ledger.apply(user_id, "premium_monthly", _outcome(user_id, 200, "tx-002"))

        assert result.applied is False
        assert ledger.loads == 2
        record = await ledger.get(user_id, "premium_monthly")
        assert record.latest_transaction_id == "tx-003"
        assert record.version == 2

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_retried(self, session_factory, test_settings, user_id):
        rival = SubscriptionLedger(session_factory, test_settings, locks=KeyedLock())
        ledger = InterleavedLedger(
            session_factory,
            test_settings,
            locks=KeyedLock(),
            rival_write=lambda: rival.apply(user_id, "premium_monthly", _outcome(user_id, 100, "tx-001")),
        )

        result = await ledger.apply(user_id, "premium_monthly", _outcome(user_id, 200, "tx-002"))

        assert result.applied is True
        assert result.previous_status is S.ACTIVE
        assert ledger.loads == 2
        records = await ledger.list_for_user(user_id)
        assert len(records) == 1
        assert records[0].latest_transaction_id == "tx-002"
        assert records[0].version == 2


def _integrity_error(message):
    return IntegrityError("INSERT INTO user_subscriptions", {}, sqlite3.IntegrityError(message))


class TestConstraintFailures:
    @pytest.mark.asyncio
    async def test_foreign_key_failure_is_not_retried(self, session_factory, test_settings, user_id):
        ledger = SubscriptionLedger(session_factory, test_settings)
        work = AsyncMock(side_effect=_integrity_error("FOREIGN KEY constraint failed"))

        with pytest.raises(ForeignKeyViolation):
            await ledger._run_serialized(user_id, "premium_monthly", work)
        assert work.await_count == 1

    @pytest.mark.asyncio
    async def test_check_failure_is_not_retried(self, session_factory, test_settings, user_id):
        ledger = SubscriptionLedger(session_factory, test_settings)
        work = AsyncMock(side_effect=_integrity_error(
            "CHECK constraint failed: ck_user_subscriptions_expiration_after_start"
        ))

        with pytest.raises(InvalidTransition):
            await ledger._run_serialized(user_id, "premium_monthly", work)
        assert work.await_count == 1

    @pytest.mark.asyncio
    async def test_persistent_duplicate_gives_up(self, session_factory, test_settings, user_id):
        ledger = SubscriptionLedger(session_factory, test_settings)
        work = AsyncMock(side_effect=_integrity_error(
            "UNIQUE constraint failed: user_subscriptions.user_id, user_subscriptions.product_id"
        ))

        with pytest.raises(StorageUnavailable):
            await ledger._run_serialized(user_id, "premium_monthly", work)
        assert work.await_count == ledger.max_attempts


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        running = 0
        overlap = []

        async def worker():
            nonlocal running
            async with locks.hold(("u1", "premium_monthly")):
                running += 1
                overlap.append(running)
                await asyncio.sleep(0)
                running -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        assert max(overlap) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_together(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def first():
            async with locks.hold("a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second():
            async with locks.hold("b"):
                entered.set()

        await asyncio.gather(first(), second())


class TestRetryWithBackoff:
    def test_backoff_is_capped(self):
        assert backoff_delay(0, 0.5, 4) == 0.5
        assert backoff_delay(2, 0.5, 4) == 2
        assert backoff_delay(10, 0.5, 4) == 4

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[httpx.ConnectError("down"), httpx.ConnectError("down"), "ok"])
        sleep = AsyncMock()

        result = await retry_with_backoff(
            func,
            attempts=3,
            base_delay=1,
            max_delay=10,
            retry_on=(httpx.TransportError,),
            sleep=sleep,
        )

        assert result == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up(self):
        func = AsyncMock(side_effect=httpx.ConnectError("down"))

        with pytest.raises(httpx.ConnectError):
            await retry_with_backoff(
                func,
                attempts=2,
                base_delay=0,
                max_delay=0,
                retry_on=(httpx.TransportError,),
                sleep=AsyncMock(),
            )
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad payload"))

        with pytest.raises(ValueError):
            await retry_with_backoff(
                func,
                attempts=5,
                base_delay=0,
                max_delay=0,
                retry_on=(httpx.TransportError,),
            )
        assert func.await_count == 1
