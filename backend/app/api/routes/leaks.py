from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import (
    get_email_sender,
    require_account,
    require_membership_dep,
    require_sweep_token,
)
from backend.app.db import get_db
from backend.app.domain.contracts import (
    DetectionRunContract,
    LeakActionStateOut,
    LeakActionUpdate,
    LeakContract,
    NotificationContract,
    SweepResult,
)
from backend.app.leaks.playbooks import get_playbook
from backend.app.models import AccountMembership
from backend.app.services import (
    leak_action_service,
    leak_detection_service,
    leak_store_service,
    notification_service,
)
from backend.app.services.notification_service import EmailSender


router = APIRouter(prefix="/api/leaks", tags=["leaks"])


class PlaybookOut(BaseModel):
    leak_type: str
    title: str
    goal: str
    steps: List[str]


class MarkReadIn(BaseModel):
    ids: List[str] = Field(default_factory=list)


class MarkReadOut(BaseModel):
    updated: int


@router.get("/playbooks/{leak_type}", response_model=PlaybookOut)
def get_leak_playbook(leak_type: str):
    playbook = get_playbook(leak_type)
    if not playbook:
        raise HTTPException(status_code=404, detail="unknown leak type")
    return PlaybookOut(leak_type=leak_type, **playbook)


@router.get(
    "/{account_id}",
    response_model=List[LeakContract],
    dependencies=[Depends(require_membership_dep())],
)
def list_leaks(
    account_id: str,
    period_start: Optional[date] = Query(None),
    period_end: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    if period_start and period_end and period_start > period_end:
        raise HTTPException(status_code=400, detail="period_start must be on or before period_end")
    rows = leak_store_service.list_leaks(db, account_id, period_start=period_start, period_end=period_end)
    return [LeakContract.model_validate(row) for row in rows]


@router.post(
    "/{account_id}/scan",
    response_model=DetectionRunContract,
    dependencies=[Depends(require_membership_dep(min_role="member"))],
)
def run_scan(
    account_id: str,
    db: Session = Depends(get_db),
    sender: Optional[EmailSender] = Depends(get_email_sender),
):
    account = require_account(db, account_id)
    return leak_detection_service.run_manual_scan(db, account, sender=sender)


@router.get(
    "/{account_id}/notifications",
    response_model=List[NotificationContract],
    dependencies=[Depends(require_membership_dep())],
)
def list_notifications(
    account_id: str,
    unread_only: bool = Query(False),
    since: Optional[datetime] = Query(None),
    limit: int = Query(notification_service.DEFAULT_LIST_LIMIT, ge=1, le=notification_service.MAX_LIST_LIMIT),
    db: Session = Depends(get_db),
):
    rows = notification_service.list_notifications(
        db,
        account_id,
        unread_only=unread_only,
        since=since,
        limit=limit,
    )
    return [NotificationContract.model_validate(row) for row in rows]


@router.post(
    "/{account_id}/notifications/mark-read",
    response_model=MarkReadOut,
    dependencies=[Depends(require_membership_dep())],
)
def mark_notifications_read(account_id: str, req: MarkReadIn, db: Session = Depends(get_db)):
    return MarkReadOut(updated=notification_service.mark_read(db, account_id, req.ids))


@router.get(
    "/{account_id}/notifications/undelivered-email",
    response_model=List[NotificationContract],
    dependencies=[Depends(require_membership_dep(min_role="owner"))],
)
def list_undelivered_email(account_id: str, db: Session = Depends(get_db)):
    rows = notification_service.list_undelivered_email(db, account_id)
    return [NotificationContract.model_validate(row) for row in rows]


@router.post(
    "/sweep",
    response_model=SweepResult,
    dependencies=[Depends(require_sweep_token)],
)
def run_sweep(
    limit: int = Query(leak_detection_service.SWEEP_BATCH_LIMIT, ge=1, le=200),
    db: Session = Depends(get_db),
    sender: Optional[EmailSender] = Depends(get_email_sender),
):
    return leak_detection_service.run_scheduled_sweep(db, sender=sender, limit=limit)


@router.get("/{account_id}/actions", response_model=LeakActionStateOut)
def get_action_state(
    account_id: str,
    membership: AccountMembership = Depends(require_membership_dep()),
    db: Session = Depends(get_db),
):
    done = leak_action_service.list_action_state(db, account_id, membership.user_id)
    return LeakActionStateOut(account_id=account_id, done=done)


@router.post("/{account_id}/actions", response_model=LeakActionStateOut)
def set_action_state(
    account_id: str,
    req: LeakActionUpdate,
    membership: AccountMembership = Depends(require_membership_dep()),
    db: Session = Depends(get_db),
):
    if not get_playbook(req.leak_type):
        raise HTTPException(status_code=400, detail="unknown leak type")
    leak_action_service.set_action_state(
        db,
        account_id=account_id,
        user_id=membership.user_id,
        action_key=req.action_key,
        leak_type=req.leak_type,
        is_done=req.is_done,
    )
    done = leak_action_service.list_action_state(db, account_id, membership.user_id)
    return LeakActionStateOut(account_id=account_id, done=done)
