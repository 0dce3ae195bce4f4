"""
Receipt Schemas
===============

Pydantic schemas for receipt submission and the values passed between
the receipt store, validator and ledger.
"""

from datetime import datetime
from typing import Any, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import Platform, ReceiptEnvironment, SubscriptionStatus


class ReceiptSubmission(BaseModel):
    """
    A purchase receipt as submitted by a client or platform webhook.

    Fields are optional at this level so that the receipt store can
    report missing ones as ``InvalidReceiptFormat``.
    """

    transaction_id: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    product_id: Optional[str] = None
    receipt_data: Optional[str] = Field(
        default=None,
        description="Raw platform payload (base64 receipt or JSON document)",
    )
    receipt_signature: Optional[str] = Field(
        default=None,
        description="Detached signature for play-store and web receipts",
    )
    platform: Optional[str] = Field(default=None, description="app-store | play-store | web")
    environment: str = Field(default=ReceiptEnvironment.PRODUCTION.value)


class StoredReceipt(BaseModel):
    """An immutable row from ``purchase_receipts``."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    transaction_id: str
    user_id: uuid.UUID
    product_id: str
    receipt_data: str
    receipt_signature: Optional[str] = None
    platform: Platform
    environment: ReceiptEnvironment
    submitted_at: datetime
    created: bool = Field(
        default=False,
        description="False when the transaction id had already been stored",
    )


class VerifiedPurchase(BaseModel):
    """Normalized purchase facts returned by a platform verifier."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    original_transaction_id: Optional[str] = None
    product_id: str
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    pending: bool = False
    in_billing_retry: bool = False
    grace_expires_at: Optional[datetime] = None
    sequence: Optional[int] = None
    environment: Optional[ReceiptEnvironment] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ValidationOutcome(BaseModel):
    """
    The transition the validator proposes for one receipt.

    ``freshness`` is monotonically comparable per (user, product): the
    later the platform event it reflects, the larger the value.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    original_transaction_id: Optional[str] = None
    user_id: uuid.UUID
    product_id: str
    environment: ReceiptEnvironment
    status: SubscriptionStatus
    start_date: datetime
    expiration_date: Optional[datetime] = None
    is_trial: bool = False
    trial_end_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None
    freshness: int
    receipt_data: Optional[str] = None
