from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select

from backend.app.integrations.base import NormalizedInvoice, NormalizedSubscription
from backend.app.leaks.policy import LeakPolicy
from backend.app.models import InvoiceCache, MetricSnapshot, SubscriptionCache
from backend.app.services import cache_ingest_service, leak_detection_service


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _invoice(invoice_id="inv_1", status="open", amount_due=500_000, age_days=10):
    return NormalizedInvoice(
        invoice_id=invoice_id,
        customer_id="cus_1",
        subscription_id=None,
        status=status,
        paid=status == "paid",
        amount_due_cents=amount_due,
        amount_paid_cents=amount_due if status == "paid" else 0,
        attempt_count=1,
        next_payment_attempt=None,
        hosted_invoice_url=None,
        created_at=NOW - timedelta(days=age_days),
        paid_at=None,
    )


def _subscription(sub_id="sub_1", status="active", mrr=10_000):
    return NormalizedSubscription(
        subscription_id=sub_id,
        customer_id="cus_1",
        status=status,
        mrr_amount_cents=mrr,
        interval="month",
        currency="USD",
        price_id="price_basic",
        plan_name="Basic",
        quantity=1,
        created_at=NOW - timedelta(days=200),
        canceled_at=None,
        ended_at=None,
    )


def test_upsert_invoice_reports_previous_status(db_session, account):
    first = cache_ingest_service.upsert_invoice(db_session, account_id=account.id, invoice=_invoice(), now=NOW)
    second = cache_ingest_service.upsert_invoice(
        db_session, account_id=account.id, invoice=_invoice(status="paid"), now=NOW
    )
    db_session.commit()

    assert first.inserted is True
    assert first.previous_status is None
    assert second.inserted is False
    assert second.previous_status == "open"
    assert second.status == "paid"

    rows = db_session.execute(select(InvoiceCache)).scalars().all()
    assert len(rows) == 1
    assert rows[0].amount_paid_cents == 500_000


def test_upsert_subscription_overwrites_by_external_id(db_session, account):
    cache_ingest_service.upsert_subscription(db_session, account_id=account.id, subscription=_subscription(), now=NOW)
    cache_ingest_service.upsert_subscription(
        db_session,
        account_id=account.id,
        subscription=_subscription(status="canceled", mrr=12_000),
        now=NOW,
    )
    db_session.commit()

    count = db_session.execute(select(func.count()).select_from(SubscriptionCache)).scalar_one()
    row = db_session.execute(select(SubscriptionCache)).scalar_one()
    assert count == 1
    assert row.status == "canceled"
    assert row.mrr_amount_cents == 12_000


def test_load_cached_state_reads_bounded_window(db_session, account):
    cache_ingest_service.upsert_invoice(db_session, account_id=account.id, invoice=_invoice("inv_new", age_days=2), now=NOW)
    cache_ingest_service.upsert_invoice(db_session, account_id=account.id, invoice=_invoice("inv_old", age_days=45), now=NOW)
    cache_ingest_service.upsert_subscription(db_session, account_id=account.id, subscription=_subscription(), now=NOW)
    for offset in (40, 20, 1):
        db_session.add(
            MetricSnapshot(
                account_id=account.id,
                snapshot_date=NOW.date() - timedelta(days=offset),
                mrr=1000.0,
                churn_rate=1.0,
                net_revenue_retention=100.0,
            )
        )
    db_session.commit()

    state = leak_detection_service.load_cached_state(db_session, account.id, NOW, LeakPolicy())

    assert [row.invoice_id for row in state.invoices] == ["inv_new"]
    assert state.invoices[0].created_at.tzinfo is not None
    assert [row.subscription_id for row in state.subscriptions] == ["sub_1"]
    assert [row.snapshot_date for row in state.snapshots] == [date(2026, 2, 23), date(2026, 3, 14)]
