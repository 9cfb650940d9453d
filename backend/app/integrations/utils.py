from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.domain.contracts import StripeEventEnvelope
from backend.app.models import ProcessorEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_processor_event(
    db: Session,
    *,
    account_id: str,
    envelope: StripeEventEnvelope,
) -> bool:
    """Log receipt of an event. Returns True on first delivery, False on a redelivery."""
    existing = db.execute(
        select(ProcessorEvent).where(
            ProcessorEvent.account_id == account_id,
            ProcessorEvent.event_id == envelope.id,
        )
    ).scalar_one_or_none()
    if existing:
        existing.delivery_count = (existing.delivery_count or 0) + 1
        db.flush()
        return False

    try:
        with db.begin_nested():
            db.add(
                ProcessorEvent(
                    account_id=account_id,
                    event_id=envelope.id,
                    event_type=envelope.type,
                    livemode=envelope.livemode,
                    occurred_at=envelope.occurred_at,
                    received_at=utcnow(),
                )
            )
            db.flush()
    except IntegrityError:
        return False
    return True


def mark_processor_event_processed(db: Session, *, account_id: str, event_id: str) -> None:
    row = db.execute(
        select(ProcessorEvent).where(
            ProcessorEvent.account_id == account_id,
            ProcessorEvent.event_id == event_id,
        )
    ).scalar_one_or_none()
    if row:
        row.processed_at = utcnow()
        db.flush()
