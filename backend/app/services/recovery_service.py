from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    RecoveryTimelineItem,
    RecoveryTimelineLeak,
    RecoveryTotals,
    StripeEventEnvelope,
)
from backend.app.integrations.base import NormalizedInvoice
from backend.app.leaks.policy import LeakPolicy
from backend.app.models import RevenueLeak, RevenueRecoveryEvent


logger = logging.getLogger(__name__)

FAILED_STATUSES = {"open", "uncollectible"}
MAX_TOTALS_DAYS = 90
MAX_TIMELINE_LIMIT = 200
UNKNOWN_LEAK_TYPE = "unknown"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def infer_leak_type(previous_status: Optional[str]) -> Optional[str]:
    if previous_status in FAILED_STATUSES:
        return "failed_payments"
    return None


def recovered_amount_cents(invoice: NormalizedInvoice) -> int:
    return int(invoice.amount_paid_cents or invoice.amount_due_cents or 0)


def _latest_leak(
    db: Session,
    account_id: str,
    leak_type: str,
    since: datetime,
) -> Optional[RevenueLeak]:
    return (
        db.execute(
            select(RevenueLeak)
            .where(
                RevenueLeak.account_id == account_id,
                RevenueLeak.leak_type == leak_type,
                RevenueLeak.created_at >= since,
            )
            .order_by(RevenueLeak.created_at.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def record_recovery(
    db: Session,
    *,
    account_id: str,
    invoice: NormalizedInvoice,
    previous_status: Optional[str],
    envelope: StripeEventEnvelope,
    policy: LeakPolicy,
    now: Optional[datetime] = None,
) -> Optional[RevenueRecoveryEvent]:
    """
    Record revenue collected on an invoice that just became paid.

    Returns None when nothing should be recorded: the invoice is not paid, it was
    already paid in the cache, or there is no positive amount.
    """
    now = _normalize_dt(now) or _now()
    if not invoice.paid:
        return None
    if previous_status == "paid":
        return None

    amount = recovered_amount_cents(invoice)
    if amount <= 0:
        logger.info(
            "Skipping recovery for invoice_id=%s account_id=%s: non-positive amount",
            invoice.invoice_id,
            account_id,
        )
        return None

    existing = db.execute(
        select(RevenueRecoveryEvent).where(
            RevenueRecoveryEvent.account_id == account_id,
            RevenueRecoveryEvent.invoice_id == invoice.invoice_id,
            RevenueRecoveryEvent.source_event_id == envelope.id,
        )
    ).scalar_one_or_none()
    if existing:
        return existing

    leak_type = infer_leak_type(previous_status)
    leak: Optional[RevenueLeak] = None
    if leak_type:
        since = now - timedelta(days=policy.attribution_lookback_days)
        leak = _latest_leak(db, account_id, leak_type, since)

    meta: Dict[str, Any] = {
        "prev_status": previous_status,
        "status": invoice.status,
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "leak_period_end": leak.period_end.isoformat() if leak else None,
        "leak_title": leak.title if leak else None,
    }
    row = RevenueRecoveryEvent(
        account_id=account_id,
        invoice_id=invoice.invoice_id,
        recovered_amount_cents=amount,
        recovered_at=invoice.paid_at or envelope.occurred_at or now,
        leak_type=leak_type,
        leak_id=leak.id if leak else None,
        source_event_type=envelope.type,
        source_event_id=envelope.id,
        meta=meta,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        return db.execute(
            select(RevenueRecoveryEvent).where(
                RevenueRecoveryEvent.account_id == account_id,
                RevenueRecoveryEvent.invoice_id == invoice.invoice_id,
                RevenueRecoveryEvent.source_event_id == envelope.id,
            )
        ).scalar_one_or_none()

    logger.info(
        "Recorded recovery invoice_id=%s account_id=%s amount_cents=%s leak_type=%s leak_id=%s",
        invoice.invoice_id,
        account_id,
        amount,
        leak_type,
        row.leak_id,
    )
    return row


def _clamp_days(days: int) -> int:
    return max(1, min(MAX_TOTALS_DAYS, int(days or 1)))


def recovered_totals(
    db: Session,
    account_id: str,
    *,
    days: int = 30,
    group_by_type: bool = True,
    now: Optional[datetime] = None,
) -> RecoveryTotals:
    days = _clamp_days(days)
    since = (_normalize_dt(now) or _now()) - timedelta(days=days)

    rows = db.execute(
        select(RevenueRecoveryEvent.leak_type, func.sum(RevenueRecoveryEvent.recovered_amount_cents))
        .where(
            RevenueRecoveryEvent.account_id == account_id,
            RevenueRecoveryEvent.recovered_at >= since,
        )
        .group_by(RevenueRecoveryEvent.leak_type)
    ).all()

    totals: Dict[str, int] = {}
    for leak_type, amount in rows:
        key = leak_type or UNKNOWN_LEAK_TYPE
        totals[key] = totals.get(key, 0) + int(amount or 0)
    return RecoveryTotals(
        days=days,
        total_recovered_cents=sum(totals.values()),
        totals=totals if group_by_type else {},
    )


def _period_key(event: RevenueRecoveryEvent) -> Optional[Tuple[str, str]]:
    period_end = (event.meta or {}).get("leak_period_end")
    if not event.leak_type or not period_end:
        return None
    return event.leak_type, str(period_end)


def _replacement_leaks(
    db: Session,
    account_id: str,
    events: List[RevenueRecoveryEvent],
) -> Dict[Tuple[str, str], RevenueLeak]:
    """
    Leaks are replaced on every detection run, so an attributed leak id can go
    stale. The (leak_type, period_end) recorded at attribution time still names
    the current row for that period.
    """
    keys = {key for key in (_period_key(event) for event in events) if key}
    if not keys:
        return {}
    rows = (
        db.execute(
            select(RevenueLeak)
            .where(
                RevenueLeak.account_id == account_id,
                RevenueLeak.leak_type.in_({leak_type for leak_type, _ in keys}),
                RevenueLeak.period_end.in_({date.fromisoformat(period_end) for _, period_end in keys}),
            )
        )
        .scalars()
        .all()
    )
    return {(row.leak_type, row.period_end.isoformat()): row for row in rows}


def recovery_timeline(
    db: Session,
    account_id: str,
    *,
    days: int = 30,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> List[RecoveryTimelineItem]:
    days = _clamp_days(days)
    limit = max(1, min(MAX_TIMELINE_LIMIT, int(limit or 1)))
    since = (_normalize_dt(now) or _now()) - timedelta(days=days)

    rows = db.execute(
        select(RevenueRecoveryEvent, RevenueLeak)
        .outerjoin(RevenueLeak, RevenueLeak.id == RevenueRecoveryEvent.leak_id)
        .where(
            RevenueRecoveryEvent.account_id == account_id,
            RevenueRecoveryEvent.recovered_at >= since,
        )
        .order_by(RevenueRecoveryEvent.recovered_at.desc(), RevenueRecoveryEvent.id.asc())
        .limit(limit)
    ).all()

    replacements = _replacement_leaks(db, account_id, [event for event, leak in rows if leak is None])

    items: List[RecoveryTimelineItem] = []
    for event, leak in rows:
        if leak is None:
            leak = replacements.get(_period_key(event))
        items.append(
            RecoveryTimelineItem(
                id=event.id,
                invoice_id=event.invoice_id,
                recovered_amount_cents=int(event.recovered_amount_cents or 0),
                recovered_at=_normalize_dt(event.recovered_at),
                leak_type=event.leak_type,
                leak_id=event.leak_id,
                meta=event.meta or {},
                leak=(
                    RecoveryTimelineLeak(
                        id=leak.id,
                        leak_type=leak.leak_type,
                        title=leak.title,
                        severity=leak.severity,
                    )
                    if leak
                    else None
                ),
            )
        )
    return items
