"""
Receipt Store Tests
===================

Tests for the idempotent receipt insert.
"""

import asyncio
import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.errors import ForeignKeyViolation, InvalidReceiptFormat, StorageUnavailable
from app.models.receipt import PurchaseReceipt
from app.models.subscription import Platform, ReceiptEnvironment
from app.models.user import User
from app.services.receipt_store import ReceiptStore

from conftest import web_submission


@pytest.fixture
def store(session_factory, test_settings) -> ReceiptStore:
    return ReceiptStore(session_factory, test_settings)


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(PurchaseReceipt))


@pytest.mark.asyncio
async def test_first_submission_creates_row(store, session_factory, user_id):
    stored = await store.submit(web_submission(user_id))

    assert stored.created is True
    assert stored.transaction_id == "tx-001"
    assert stored.platform is Platform.WEB
    assert stored.environment is ReceiptEnvironment.PRODUCTION
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
async def test_resubmission_returns_original(store, session_factory, user_id):
    first = await store.submit(web_submission(user_id, sequence=1))
    second = await store.submit(web_submission(user_id, sequence=99))

    assert second.created is False
    assert second.id == first.id
    assert second.receipt_data == first.receipt_data
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
async def test_resubmission_by_another_user_keeps_owner(store, user_id, other_user_id):
    await store.submit(web_submission(user_id))
    again = await store.submit(web_submission(other_user_id))

    assert again.user_id == user_id


@pytest.mark.asyncio
async def test_concurrent_submissions_store_one_row(store, session_factory, user_id):
    results = await asyncio.gather(*(store.submit(web_submission(user_id)) for _ in range(5)))

    assert sum(1 for r in results if r.created) == 1
    assert len({r.id for r in results}) == 1
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["transaction_id", "user_id", "product_id", "receipt_data"])
async def test_missing_required_field(store, user_id, field):
    submission = web_submission(user_id).model_copy(update={field: None})

    with pytest.raises(InvalidReceiptFormat) as exc_info:
        await store.submit(submission)
    assert exc_info.value.extra["fields"] == [field]


@pytest.mark.asyncio
async def test_blank_transaction_id(store, user_id):
    submission = web_submission(user_id).model_copy(update={"transaction_id": "   "})

    with pytest.raises(InvalidReceiptFormat):
        await store.submit(submission)


@pytest.mark.asyncio
async def test_unknown_platform(store, user_id):
    submission = web_submission(user_id).model_copy(update={"platform": "blackberry"})

    with pytest.raises(InvalidReceiptFormat):
        await store.submit(submission)


@pytest.mark.asyncio
async def test_unknown_environment(store, user_id):
    submission = web_submission(user_id, environment="staging")

    with pytest.raises(InvalidReceiptFormat):
        await store.submit(submission)


@pytest.mark.asyncio
async def test_unknown_user(store):
    with pytest.raises(ForeignKeyViolation):
        await store.submit(web_submission(uuid.uuid4()))


@pytest.mark.asyncio
async def test_storage_failure_is_retryable(test_settings, user_id):
    broken = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))
    store = ReceiptStore(broken, test_settings)

    with pytest.raises(StorageUnavailable) as exc_info:
        await store.submit(web_submission(user_id))
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_get(store, user_id):
    await store.submit(web_submission(user_id))

    assert (await store.get("tx-001")).user_id == user_id
    assert await store.get("tx-missing") is None


@pytest.mark.asyncio
async def test_user_with_receipts_cannot_be_deleted(store, session_factory, user_id):
    await store.submit(web_submission(user_id))

    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await session.execute(delete(User).where(User.user_id == user_id))
            await session.commit()

    assert await _count(session_factory) == 1
