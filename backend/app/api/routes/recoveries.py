from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backend.app.api.deps import require_membership_dep
from backend.app.db import get_db
from backend.app.domain.contracts import RecoveryTimelineItem, RecoveryTotals
from backend.app.services import recovery_service


router = APIRouter(prefix="/api/recoveries", tags=["recoveries"])


@router.get(
    "/{account_id}/by-type",
    response_model=RecoveryTotals,
    dependencies=[Depends(require_membership_dep())],
)
def recovered_by_type(
    account_id: str,
    days: int = Query(30, ge=1, le=recovery_service.MAX_TOTALS_DAYS),
    group_by_type: bool = Query(True),
    db: Session = Depends(get_db),
):
    return recovery_service.recovered_totals(db, account_id, days=days, group_by_type=group_by_type)


@router.get(
    "/{account_id}/timeline",
    response_model=List[RecoveryTimelineItem],
    dependencies=[Depends(require_membership_dep())],
)
def recovery_timeline(
    account_id: str,
    days: int = Query(30, ge=1, le=recovery_service.MAX_TOTALS_DAYS),
    limit: int = Query(50, ge=1, le=recovery_service.MAX_TIMELINE_LIMIT),
    db: Session = Depends(get_db),
):
    return recovery_service.recovery_timeline(db, account_id, days=days, limit=limit)
