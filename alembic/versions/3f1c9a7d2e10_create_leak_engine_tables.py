"""create leak engine tables

Revision ID: 3f1c9a7d2e10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3f1c9a7d2e10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _account_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["account_id"], ["connected_accounts.id"], ondelete="CASCADE")


def upgrade() -> None:
    op.create_table(
        "connected_accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("stripe_account_id", sa.String(length=120), nullable=True),
        sa.Column("webhook_token", sa.String(length=64), nullable=False),
        sa.Column("webhook_secret", sa.String(length=255), nullable=True),
        sa.Column("webhook_status", sa.String(length=20), server_default=sa.text("'inactive'"), nullable=False),
        sa.Column("owner_email", sa.String(length=255), nullable=True),
        sa.Column("email_reports_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("webhook_token"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "account_memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "user_id", name="uq_account_memberships_account_user"),
    )

    op.create_table(
        "invoices_cache",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("invoice_id", sa.String(length=120), nullable=False),
        sa.Column("customer_id", sa.String(length=120), nullable=True),
        sa.Column("subscription_id", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("amount_due_cents", sa.BigInteger(), nullable=False),
        sa.Column("amount_paid_cents", sa.BigInteger(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("next_payment_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hosted_invoice_url", sa.Text(), nullable=True),
        sa.Column("created_at_stripe", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "invoice_id", name="uq_invoices_cache_account_invoice"),
    )
    op.create_index(
        "ix_invoices_cache_account_created", "invoices_cache", ["account_id", "created_at_stripe"], unique=False
    )

    op.create_table(
        "subscriptions_cache",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=120), nullable=False),
        sa.Column("customer_id", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("mrr_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("interval", sa.String(length=20), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("price_id", sa.String(length=120), nullable=True),
        sa.Column("plan_name", sa.String(length=200), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("created_at_stripe", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "subscription_id", name="uq_subscriptions_cache_account_subscription"
        ),
    )

    op.create_table(
        "metrics_snapshots",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("mrr", sa.Float(), nullable=False),
        sa.Column("churn_rate", sa.Float(), nullable=False),
        sa.Column("net_revenue_retention", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "snapshot_date", name="uq_metrics_snapshots_account_date"),
    )

    op.create_table(
        "revenue_leaks",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("leak_type", sa.String(length=40), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("lost_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("recoverable_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("recommended_action", sa.Text(), nullable=False),
        sa.Column("evidence", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "leak_type", "period_end", name="uq_revenue_leaks_account_type_period_end"
        ),
    )
    op.create_index("ix_revenue_leaks_account_created", "revenue_leaks", ["account_id", "created_at"], unique=False)

    op.create_table(
        "revenue_recovery_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("invoice_id", sa.String(length=120), nullable=False),
        sa.Column("recovered_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("leak_type", sa.String(length=40), nullable=True),
        sa.Column("leak_id", sa.String(length=36), nullable=True),
        sa.Column("source_event_type", sa.String(length=80), nullable=False),
        sa.Column("source_event_id", sa.String(length=120), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id",
            "invoice_id",
            "source_event_id",
            name="uq_recovery_events_account_invoice_source_event",
        ),
    )
    op.create_index(
        "ix_recovery_events_account_recovered_at",
        "revenue_recovery_events",
        ["account_id", "recovered_at"],
        unique=False,
    )

    op.create_table(
        "leak_notifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("leak_id", sa.String(length=36), nullable=True),
        sa.Column("leak_type", sa.String(length=40), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("provider_message_id", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        _account_fk(),
        sa.ForeignKeyConstraint(["leak_id"], ["revenue_leaks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("leak_id", "channel", name="uq_leak_notifications_leak_channel"),
    )
    op.create_index(
        "ix_leak_notifications_account_created", "leak_notifications", ["account_id", "created_at"], unique=False
    )

    op.create_table(
        "processor_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=120), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("livemode", sa.Boolean(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_count", sa.Integer(), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "event_id", name="uq_processor_events_account_event"),
    )

    op.create_table(
        "leak_scan_runtime",
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("last_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_manual_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_trigger", sa.String(length=20), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        _account_fk(),
        sa.PrimaryKeyConstraint("account_id"),
    )


def downgrade() -> None:
    op.drop_table("leak_scan_runtime")
    op.drop_table("processor_events")
    op.drop_index("ix_leak_notifications_account_created", table_name="leak_notifications")
    op.drop_table("leak_notifications")
    op.drop_index("ix_recovery_events_account_recovered_at", table_name="revenue_recovery_events")
    op.drop_table("revenue_recovery_events")
    op.drop_index("ix_revenue_leaks_account_created", table_name="revenue_leaks")
    op.drop_table("revenue_leaks")
    op.drop_table("metrics_snapshots")
    op.drop_table("subscriptions_cache")
    op.drop_index("ix_invoices_cache_account_created", table_name="invoices_cache")
    op.drop_table("invoices_cache")
    op.drop_table("account_memberships")
    op.drop_table("users")
    op.drop_table("connected_accounts")
