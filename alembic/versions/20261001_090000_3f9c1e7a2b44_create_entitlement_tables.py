"""Create entitlement tables

Creates users, purchase_receipts, user_subscriptions,
subscription_events and premium_feature_usage.

Revision ID: 3f9c1e7a2b44
Revises:
Create Date: 2026-10-01 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1e7a2b44"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


STATUS_VALUES = ("NONE", "PENDING", "ACTIVE", "GRACE", "EXPIRED", "CANCELED")
PLATFORM_VALUES = ("app-store", "play-store", "web")
ENVIRONMENT_VALUES = ("sandbox", "production")


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # Enum types (created once, shared by several tables)
    # ------------------------------------------------------------------
    sa.Enum(*STATUS_VALUES, name="subscription_status").create(op.get_bind(), checkfirst=True)
    sa.Enum(*PLATFORM_VALUES, name="receipt_platform").create(op.get_bind(), checkfirst=True)
    sa.Enum(*ENVIRONMENT_VALUES, name="subscription_environment").create(op.get_bind(), checkfirst=True)

    subscription_status = postgresql.ENUM(name="subscription_status", create_type=False)
    receipt_platform = postgresql.ENUM(name="receipt_platform", create_type=False)
    subscription_environment = postgresql.ENUM(name="subscription_environment", create_type=False)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ------------------------------------------------------------------
    # purchase_receipts (write-once)
    # ------------------------------------------------------------------
    op.create_table(
        "purchase_receipts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("receipt_data", sa.Text(), nullable=False),
        sa.Column("receipt_signature", sa.Text(), nullable=True),
        sa.Column("platform", receipt_platform, nullable=False),
        sa.Column("environment", subscription_environment, nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index("ix_purchase_receipts_user_id", "purchase_receipts", ["user_id"])

    # ------------------------------------------------------------------
    # user_subscriptions (one row per user and product)
    # ------------------------------------------------------------------
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("latest_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("receipt_data", sa.Text(), nullable=True),
        sa.Column("environment", subscription_environment, nullable=False),
        sa.Column("is_trial_period", sa.Boolean(), nullable=False),
        sa.Column("freshness_marker", sa.BigInteger(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "expiration_date IS NULL OR expiration_date >= start_date",
            name="ck_user_subscriptions_expiration_after_start",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "product_id", name="uq_user_subscriptions_user_product"),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index(
        "ix_user_subscriptions_latest_transaction_id",
        "user_subscriptions",
        ["latest_transaction_id"],
    )
    op.create_index(
        "ix_user_subscriptions_original_transaction_id",
        "user_subscriptions",
        ["original_transaction_id"],
    )
    op.create_index(
        "idx_user_subscriptions_status_expiration",
        "user_subscriptions",
        ["status", "expiration_date"],
    )

    # ------------------------------------------------------------------
    # subscription_events (append-only)
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_subscription_events_user_created",
        "subscription_events",
        ["user_id", "created_at"],
    )
    op.create_index(
        "idx_subscription_events_type_created",
        "subscription_events",
        ["event_type", "created_at"],
    )
    op.create_index(
        "idx_subscription_events_transaction",
        "subscription_events",
        ["transaction_id"],
    )

    # ------------------------------------------------------------------
    # premium_feature_usage
    # ------------------------------------------------------------------
    op.create_table(
        "premium_feature_usage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("feature", sa.String(length=100), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("had_access", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "feature", "usage_date", name="uq_feature_usage_user_feature_day"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("premium_feature_usage")
    op.drop_index("idx_subscription_events_transaction", table_name="subscription_events")
    op.drop_index("idx_subscription_events_type_created", table_name="subscription_events")
    op.drop_index("idx_subscription_events_user_created", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("idx_user_subscriptions_status_expiration", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_original_transaction_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_latest_transaction_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_index("ix_purchase_receipts_user_id", table_name="purchase_receipts")
    op.drop_table("purchase_receipts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS subscription_status")
    op.execute("DROP TYPE IF EXISTS receipt_platform")
    op.execute("DROP TYPE IF EXISTS subscription_environment")
