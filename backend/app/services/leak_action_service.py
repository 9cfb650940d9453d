from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import LeakActionState


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lookup(db: Session, account_id: str, user_id: str, action_key: str) -> Optional[LeakActionState]:
    return db.execute(
        select(LeakActionState).where(
            LeakActionState.account_id == account_id,
            LeakActionState.user_id == user_id,
            LeakActionState.action_key == action_key,
        )
    ).scalar_one_or_none()


def list_action_state(db: Session, account_id: str, user_id: str) -> Dict[str, bool]:
    rows = db.execute(
        select(LeakActionState.action_key, LeakActionState.is_done).where(
            LeakActionState.account_id == account_id,
            LeakActionState.user_id == user_id,
        )
    ).all()
    return {action_key: bool(is_done) for action_key, is_done in rows}


def set_action_state(
    db: Session,
    *,
    account_id: str,
    user_id: str,
    action_key: str,
    leak_type: str,
    is_done: bool,
    now: Optional[datetime] = None,
) -> LeakActionState:
    """Upsert one checklist item on (user, account, action_key) and commit."""
    now = now or _now()
    row = _lookup(db, account_id, user_id, action_key)
    if row is None:
        try:
            with db.begin_nested():
                row = LeakActionState(
                    account_id=account_id,
                    user_id=user_id,
                    action_key=action_key,
                    leak_type=leak_type,
                    is_done=is_done,
                    updated_at=now,
                )
                db.add(row)
                db.flush()
        except IntegrityError:
            # concurrent toggle won the insert
            row = _lookup(db, account_id, user_id, action_key)

    row.leak_type = leak_type
    row.is_done = is_done
    row.updated_at = now
    db.commit()
    logger.info(
        "Leak action %s for account_id=%s user_id=%s set is_done=%s",
        action_key,
        account_id,
        user_id,
        is_done,
    )
    return row
