"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.user import User
from app.models.subscription import (
    Platform,
    ReceiptEnvironment,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.models.receipt import PurchaseReceipt
from app.models.feature_usage import FeatureUsage

__all__ = [
    # User
    "User",
    # Subscription
    "SubscriptionRecord",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "SubscriptionEventType",
    "Platform",
    "ReceiptEnvironment",
    # Receipts
    "PurchaseReceipt",
    # Feature usage
    "FeatureUsage",
]
