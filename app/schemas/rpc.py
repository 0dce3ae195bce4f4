"""
RPC Schemas
===========

Request and response bodies for the ``/api/v1/rpc`` endpoints and the
receipt ingestion endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from app.models.subscription import SubscriptionStatus


class UserScopedRequest(BaseModel):
    user_id: uuid.UUID


class ValidateSubscriptionStatusRequest(UserScopedRequest):
    """Body of validate_subscription_status."""


class CheckFeatureAccessRequest(UserScopedRequest):
    """Body of check_feature_access."""

    feature_name: str = Field(..., min_length=1, max_length=100)


class TrackFeatureUsageRequest(UserScopedRequest):
    """Body of track_feature_usage."""

    feature_name: str = Field(..., min_length=1, max_length=100)


class LogSubscriptionEventRequest(UserScopedRequest):
    """Body of log_subscription_event."""

    event_type: str = Field(
        ...,
        pattern=r"^[a-z][a-z0-9_-]{0,63}$",
        description="Lower-case identifier, e.g. purchase_initiated",
    )
    event_data: dict[str, Any] = Field(default_factory=dict)


class UpdateSubscriptionStatusRequest(UserScopedRequest):
    """Body of update_subscription_status (admin only)."""

    product_id: str = Field(..., min_length=1, max_length=255)
    new_status: SubscriptionStatus
    expiration_date: Optional[datetime] = None

    @field_validator("new_status")
    @classmethod
    def validate_new_status(cls, v: SubscriptionStatus) -> SubscriptionStatus:
        """NONE is the absence of a record, not a status one can set."""
        if v is SubscriptionStatus.NONE:
            raise ValueError("new_status cannot be NONE")
        return v

    @field_validator("expiration_date")
    @classmethod
    def validate_expiration_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class FeatureAccessResponse(BaseModel):
    granted: bool
    reason: str


class EventLoggedResponse(BaseModel):
    event_id: uuid.UUID


class StatusUpdateResponse(BaseModel):
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus


class ExpirationSweepResponse(BaseModel):
    job: str
    expired: int
    skipped: int
    errors: list[dict[str, Any]]
    run_at: datetime


class ReceiptIngestResponse(BaseModel):
    """Outcome of submitting one receipt."""

    transaction_id: str
    created: bool = Field(description="False when the receipt had been stored before")
    applied: bool = Field(description="False for duplicate or out-of-order receipts")
    reason: str
    status: SubscriptionStatus
    product_id: str
    expiration_date: Optional[datetime] = None
    is_trial: bool = False
