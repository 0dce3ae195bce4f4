"""
Receipt Store
=============

Durable, append-only record of every purchase receipt ever submitted,
keyed by the platform transaction id.

``submit`` is an idempotent insert: the first submission of a
transaction id writes a row, every later one returns that same row
untouched.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.core.errors import ForeignKeyViolation, InvalidReceiptFormat, StorageUnavailable
from app.models.receipt import PurchaseReceipt
from app.models.subscription import Platform, ReceiptEnvironment
from app.models.user import User
from app.schemas.receipt import ReceiptSubmission, StoredReceipt

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("transaction_id", "user_id", "product_id", "receipt_data")


class ReceiptStore:
    """Idempotent persistence for purchase receipts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
        log: Optional[logging.Logger] = None,
    ):
        self.session_factory = session_factory
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS
        self.log = log or logger

    @staticmethod
    def _check_format(receipt: ReceiptSubmission) -> tuple[Platform, ReceiptEnvironment]:
        missing = [
            name for name in _REQUIRED_FIELDS
            if not (str(getattr(receipt, name) or "")).strip()
        ]
        if missing:
            raise InvalidReceiptFormat(
                f"Missing required receipt fields: {', '.join(missing)}",
                fields=missing,
            )

        try:
            platform = Platform(receipt.platform)
        except ValueError:
            raise InvalidReceiptFormat(
                f"Unknown platform: {receipt.platform!r}",
                fields=["platform"],
            )
        try:
            environment = ReceiptEnvironment(receipt.environment)
        except ValueError:
            raise InvalidReceiptFormat(
                f"Unknown environment: {receipt.environment!r}",
                fields=["environment"],
            )
        return platform, environment

    async def submit(self, receipt: ReceiptSubmission) -> StoredReceipt:
        """
        Persist ``receipt`` unless its transaction id is already stored.

        Raises:
            InvalidReceiptFormat: Required fields are absent or unknown.
            ForeignKeyViolation: The user does not exist.
            StorageUnavailable: Persistence failed or timed out.
        """
        platform, environment = self._check_format(receipt)

        try:
            return await asyncio.wait_for(
                self._insert(receipt, platform, environment),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise StorageUnavailable(
                "Receipt store timed out",
                transaction_id=receipt.transaction_id,
            )
        except DBAPIError as e:
            self.log.error(
                "Receipt store failure for transaction %s: %s",
                receipt.transaction_id,
                e,
            )
            raise StorageUnavailable(
                "Receipt store unavailable",
                transaction_id=receipt.transaction_id,
            ) from e

    async def _insert(
        self,
        receipt: ReceiptSubmission,
        platform: Platform,
        environment: ReceiptEnvironment,
    ) -> StoredReceipt:
        async with self.session_factory() as session:
            existing = await self._find(session, receipt.transaction_id)
            if existing is not None:
                self.log.info(
                    "Receipt %s already stored, returning original",
                    receipt.transaction_id,
                )
                return StoredReceipt.model_validate(existing)

            if await session.get(User, receipt.user_id) is None:
                raise ForeignKeyViolation(
                    f"User {receipt.user_id} does not exist",
                    user_id=str(receipt.user_id),
                )

            row = PurchaseReceipt(
                transaction_id=receipt.transaction_id,
                user_id=receipt.user_id,
                product_id=receipt.product_id,
                receipt_data=receipt.receipt_data,
                receipt_signature=receipt.receipt_signature,
                platform=platform,
                environment=environment,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Lost an insert race on the unique transaction id
                await session.rollback()
                winner = await self._find(session, receipt.transaction_id)
                if winner is None:
                    raise
                return StoredReceipt.model_validate(winner)

            self.log.info(
                "Receipt stored: transaction=%s user=%s product=%s platform=%s",
                row.transaction_id,
                row.user_id,
                row.product_id,
                platform.value,
            )
            return StoredReceipt.model_validate(row).model_copy(update={"created": True})

    @staticmethod
    async def _find(session: AsyncSession, transaction_id: str) -> Optional[PurchaseReceipt]:
        result = await session.execute(
            select(PurchaseReceipt).where(PurchaseReceipt.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get(self, transaction_id: str) -> Optional[StoredReceipt]:
        """Return the stored receipt for ``transaction_id``, if any."""
        try:
            async with self.session_factory() as session:
                row = await asyncio.wait_for(
                    self._find(session, transaction_id),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, DBAPIError) as e:
            raise StorageUnavailable("Receipt store unavailable") from e
        return StoredReceipt.model_validate(row) if row is not None else None
