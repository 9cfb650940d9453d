from __future__ import annotations

from datetime import date
import logging
from typing import List, Optional

from sqlalchemy import case, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.leaks.errors import TransientStorageError
from backend.app.leaks.schema import (
    SEVERITY_RANK,
    LeakCandidate,
    LeakChange,
    PreviousLeak,
    clamp_confidence,
)
from backend.app.models import RevenueLeak


logger = logging.getLogger(__name__)

MATERIAL_CHANGE_RATIO = 0.15


def _loss_ratio(previous: int, current: int) -> float:
    if previous > 0:
        return abs(current - previous) / previous
    # nothing to divide by; any new loss counts as a full change
    return 1.0 if current > 0 else 0.0


def is_material_change(previous: Optional[PreviousLeak], candidate: LeakCandidate) -> bool:
    if previous is None:
        return True
    prev_rank = SEVERITY_RANK.get(previous.severity, 0)
    new_rank = SEVERITY_RANK.get(candidate.severity, 0)
    if new_rank > prev_rank:
        return True
    ratio = _loss_ratio(int(previous.lost_amount_cents or 0), int(candidate.lost_amount_cents or 0))
    return ratio >= MATERIAL_CHANGE_RATIO


def _snapshot(row: RevenueLeak) -> PreviousLeak:
    return PreviousLeak(
        id=row.id,
        severity=row.severity,
        lost_amount_cents=int(row.lost_amount_cents or 0),
        recoverable_amount_cents=int(row.recoverable_amount_cents or 0),
        created_at=row.created_at,
    )


def reconcile(db: Session, candidate: LeakCandidate) -> LeakChange:
    """
    Replace the leak stored for (account, leak_type, period_end) with candidate.

    Read the previous row, delete every row with that key, insert the new one and
    report whether the new computation is worth alerting on.
    """
    key_filter = (
        RevenueLeak.account_id == candidate.account_id,
        RevenueLeak.leak_type == candidate.leak_type,
        RevenueLeak.period_end == candidate.period_end,
    )
    existing = (
        db.execute(select(RevenueLeak).where(*key_filter).order_by(RevenueLeak.created_at.desc()))
        .scalars()
        .first()
    )
    previous = _snapshot(existing) if existing else None

    db.execute(delete(RevenueLeak).where(*key_filter).execution_options(synchronize_session="fetch"))

    candidate.confidence = clamp_confidence(candidate.confidence)
    row = RevenueLeak(
        account_id=candidate.account_id,
        leak_type=candidate.leak_type,
        period_start=candidate.period_start,
        period_end=candidate.period_end,
        lost_amount_cents=int(candidate.lost_amount_cents),
        recoverable_amount_cents=int(candidate.recoverable_amount_cents),
        severity=candidate.severity,
        confidence=candidate.confidence,
        title=candidate.title,
        summary=candidate.summary,
        recommended_action=candidate.recommended_action,
        evidence=candidate.evidence or {},
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError as exc:
        logger.warning(
            "Concurrent reconcile for account_id=%s leak_type=%s period_end=%s",
            candidate.account_id,
            candidate.leak_type,
            candidate.period_end,
        )
        raise TransientStorageError(
            f"leak {candidate.leak_type} for {candidate.period_end} was written concurrently"
        ) from exc

    return LeakChange(
        leak_id=row.id,
        candidate=candidate,
        changed=is_material_change(previous, candidate),
        previous=previous,
    )


def list_leaks(
    db: Session,
    account_id: str,
    *,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
) -> List[RevenueLeak]:
    severity_order = case(
        {severity: rank for severity, rank in SEVERITY_RANK.items()},
        value=RevenueLeak.severity,
        else_=0,
    )
    stmt = select(RevenueLeak).where(RevenueLeak.account_id == account_id)
    if period_start is not None:
        stmt = stmt.where(RevenueLeak.period_start >= period_start)
    if period_end is not None:
        stmt = stmt.where(RevenueLeak.period_end <= period_end)
    stmt = stmt.order_by(RevenueLeak.period_end.desc(), severity_order.desc(), RevenueLeak.created_at.desc())
    return list(db.execute(stmt).scalars().all())
