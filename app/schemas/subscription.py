"""
Subscription Schemas
====================

Pydantic schemas for ledger records, transition results and access
decisions.
"""

from datetime import date, datetime
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.core.state_machine import effective_status
from app.models.subscription import ReceiptEnvironment, SubscriptionStatus
from app.schemas.receipt import StoredReceipt, ValidationOutcome


class SubscriptionSnapshot(BaseModel):
    """Read-only copy of a ``user_subscriptions`` row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    user_id: uuid.UUID
    product_id: str
    status: SubscriptionStatus
    start_date: datetime
    expiration_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None
    latest_transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    environment: ReceiptEnvironment
    is_trial_period: bool = False
    freshness_marker: int = 0
    version: int
    created_at: datetime
    updated_at: datetime

    def effective_status(self, now: datetime) -> SubscriptionStatus:
        """ACTIVE/GRACE past their expiration read as EXPIRED."""
        return effective_status(self.status, self.expiration_date, now)


class ApplyResult(BaseModel):
    """Result of offering a validation outcome to the ledger."""

    model_config = ConfigDict(frozen=True)

    applied: bool
    reason: str = Field(description="applied | stale-receipt | admin-override")
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    record: Optional[SubscriptionSnapshot] = None


class Decision(BaseModel):
    """An entitlement gate decision."""

    model_config = ConfigDict(frozen=True)

    granted: bool
    reason: str
    feature_name: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    product_id: Optional[str] = None
    expiration_date: Optional[datetime] = None


class UsageSummary(BaseModel):
    """Daily usage counter after a track_feature_usage call."""

    feature_name: str
    usage_date: date
    usage_count: int
    had_access: bool
    free_daily_limit: int = 0
    remaining_free_uses: Optional[int] = None


class SubscriptionStatusSummary(BaseModel):
    """Answer of validate_subscription_status."""

    status: SubscriptionStatus
    expiration_date: Optional[datetime] = None
    product_id: Optional[str] = None
    has_active_subscription: bool = False
    is_trial: bool = False
    trial_end_date: Optional[datetime] = None


class IngestResult(BaseModel):
    """Everything the ingestion pipeline produced for one receipt."""

    model_config = ConfigDict(frozen=True)

    receipt: StoredReceipt
    outcome: ValidationOutcome
    result: ApplyResult
    record: Optional[SubscriptionSnapshot] = None
