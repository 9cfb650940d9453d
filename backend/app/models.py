from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db import Base


# -------------------------
# Helpers
# -------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


# -------------------------
# Accounts & identity
# -------------------------

class ConnectedAccount(Base):
    """
    A payment-processor account connected to the dashboard.
    Every cache row, leak, recovery and notification hangs off one of these.
    """
    __tablename__ = "connected_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    # opaque routing token used in the webhook URL
    webhook_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, default=uuid_str)
    webhook_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    webhook_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'inactive'"),
        default="inactive",
    )

    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_reports_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    memberships = relationship(
        "AccountMembership",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AccountMembership(Base):
    __tablename__ = "account_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    account = relationship("ConnectedAccount", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("account_id", "user_id", name="uq_account_memberships_account_user"),
    )


# -------------------------
# Processor caches (owned by the cache ingestor / bulk sync)
# -------------------------

class InvoiceCache(Base):
    __tablename__ = "invoices_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_id: Mapped[str] = mapped_column(String(120), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False)  # draft/open/paid/uncollectible/void
    amount_due_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_payment_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at_stripe: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "invoice_id", name="uq_invoices_cache_account_invoice"),
        Index("ix_invoices_cache_account_created", "account_id", "created_at_stripe"),
    )


class SubscriptionCache(Base):
    __tablename__ = "subscriptions_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscription_id: Mapped[str] = mapped_column(String(120), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    # recurring amount normalized to one month, minor units
    mrr_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    interval: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    price_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    plan_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at_stripe: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "subscription_id", name="uq_subscriptions_cache_account_subscription"),
    )


class MetricSnapshot(Base):
    """
    Daily metrics written by the bulk sync job.
    mrr is in major currency units; churn_rate and net_revenue_retention are percentages.
    """
    __tablename__ = "metrics_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    mrr: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    churn_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_revenue_retention: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "snapshot_date", name="uq_metrics_snapshots_account_date"),
    )


# -------------------------
# Leak engine output
# -------------------------

class RevenueLeak(Base):
    """
    One row per (account, leak_type, period_end). Rows are replaced, never updated.
    """
    __tablename__ = "revenue_leaks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )

    leak_type: Mapped[str] = mapped_column(String(40), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    lost_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    recoverable_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="low")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    recommended_action: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "leak_type", "period_end", name="uq_revenue_leaks_account_type_period_end"),
        Index("ix_revenue_leaks_account_created", "account_id", "created_at"),
    )


class RevenueRecoveryEvent(Base):
    """
    Append-only log of revenue actually collected after being at risk.
    """
    __tablename__ = "revenue_recovery_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_id: Mapped[str] = mapped_column(String(120), nullable=False)
    recovered_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    recovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    leak_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # id of the leak at attribution time; that row may since have been replaced
    leak_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source_event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    source_event_id: Mapped[str] = mapped_column(String(120), nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "invoice_id",
            "source_event_id",
            name="uq_recovery_events_account_invoice_source_event",
        ),
        Index("ix_recovery_events_account_recovered_at", "account_id", "recovered_at"),
    )


class LeakNotification(Base):
    __tablename__ = "leak_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    # kept as history when the leak row is replaced
    leak_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("revenue_leaks.id", ondelete="SET NULL"),
        nullable=True,
    )
    leak_type: Mapped[str] = mapped_column(String(40), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="in_app")  # in_app | email
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("leak_id", "channel", name="uq_leak_notifications_leak_channel"),
        Index("ix_leak_notifications_account_created", "account_id", "created_at"),
    )


class ProcessorEvent(Base):
    """
    Receipt log of verified webhook envelopes. Redeliveries are detected here
    but still re-processed; every downstream write is idempotent.
    """
    __tablename__ = "processor_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_id: Mapped[str] = mapped_column(String(120), nullable=False)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("account_id", "event_id", name="uq_processor_events_account_event"),
    )


class LeakScanRuntime(Base):
    __tablename__ = "leak_scan_runtime"

    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_manual_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_trigger: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # webhook | manual | scheduled
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LeakActionState(Base):
    """
    Per-user checklist progress for playbook steps in the leak action center.
    """
    __tablename__ = "leak_action_state"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    action_key: Mapped[str] = mapped_column(String(120), nullable=False)
    leak_type: Mapped[str] = mapped_column(String(40), nullable=False)
    is_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "account_id", "action_key", name="uq_leak_action_state_user_account_action"),
        Index("ix_leak_action_state_account_user", "account_id", "user_id"),
    )
