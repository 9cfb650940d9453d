from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.integrations.base import NormalizedInvoice, NormalizedSubscription
from backend.app.models import InvoiceCache, SubscriptionCache


CacheRow = TypeVar("CacheRow", InvoiceCache, SubscriptionCache)


@dataclass(frozen=True)
class InvoiceUpsertResult:
    invoice_id: str
    inserted: bool
    previous_status: Optional[str]
    status: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _invoice_values(invoice: NormalizedInvoice, now: datetime) -> Dict[str, Any]:
    return {
        "customer_id": invoice.customer_id,
        "subscription_id": invoice.subscription_id,
        "status": invoice.status,
        "amount_due_cents": invoice.amount_due_cents,
        "amount_paid_cents": invoice.amount_paid_cents,
        "attempt_count": invoice.attempt_count,
        "next_payment_attempt": invoice.next_payment_attempt,
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "created_at_stripe": invoice.created_at,
        "synced_at": now,
    }


def _subscription_values(sub: NormalizedSubscription, now: datetime) -> Dict[str, Any]:
    return {
        "customer_id": sub.customer_id,
        "status": sub.status,
        "mrr_amount_cents": sub.mrr_amount_cents,
        "interval": sub.interval,
        "currency": sub.currency,
        "price_id": sub.price_id,
        "plan_name": sub.plan_name,
        "quantity": sub.quantity,
        "created_at_stripe": sub.created_at,
        "canceled_at": sub.canceled_at,
        "ended_at": sub.ended_at,
        "synced_at": now,
    }


def _find(db: Session, model: Type[CacheRow], account_id: str, key_column: str, key: str) -> Optional[CacheRow]:
    return db.execute(
        select(model).where(
            model.account_id == account_id,
            getattr(model, key_column) == key,
        )
    ).scalar_one_or_none()


def _upsert(
    db: Session,
    model: Type[CacheRow],
    *,
    account_id: str,
    key_column: str,
    key: str,
    values: Dict[str, Any],
) -> tuple[CacheRow, bool, Optional[str]]:
    """Overwrite-by-external-id. Returns (row, inserted, previous status)."""
    existing = _find(db, model, account_id, key_column, key)
    if existing is None:
        row = model(account_id=account_id, **{key_column: key}, **values)
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
            return row, True, None
        except IntegrityError:
            # a concurrent delivery inserted it first; fall through to overwrite
            existing = _find(db, model, account_id, key_column, key)
            if existing is None:
                raise

    previous_status = existing.status
    for name, value in values.items():
        setattr(existing, name, value)
    db.flush()
    return existing, False, previous_status


def upsert_invoice(
    db: Session,
    *,
    account_id: str,
    invoice: NormalizedInvoice,
    now: Optional[datetime] = None,
) -> InvoiceUpsertResult:
    row, inserted, previous_status = _upsert(
        db,
        InvoiceCache,
        account_id=account_id,
        key_column="invoice_id",
        key=invoice.invoice_id,
        values=_invoice_values(invoice, now or _now()),
    )
    return InvoiceUpsertResult(
        invoice_id=row.invoice_id,
        inserted=inserted,
        previous_status=previous_status,
        status=row.status,
    )


def upsert_subscription(
    db: Session,
    *,
    account_id: str,
    subscription: NormalizedSubscription,
    now: Optional[datetime] = None,
) -> SubscriptionCache:
    row, _, _ = _upsert(
        db,
        SubscriptionCache,
        account_id=account_id,
        key_column="subscription_id",
        key=subscription.subscription_id,
        values=_subscription_values(subscription, now or _now()),
    )
    return row
