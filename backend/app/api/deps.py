# backend/app/api/deps.py
from __future__ import annotations

from datetime import datetime, timezone
import hmac
import logging
import os
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.leaks.errors import ConfigurationError
from backend.app.models import AccountMembership, ConnectedAccount, User
from backend.app.services.notification_service import EmailSender, email_sender_from_env


logger = logging.getLogger(__name__)

ROLE_ORDER = {
    "viewer": 1,
    "member": 2,
    "owner": 3,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _user_for_email(db: Session, raw_email: str) -> User:
    email = raw_email.strip().lower()
    if not email:
        raise HTTPException(status_code=401, detail="Invalid X-User-Email header")

    user = db.execute(select(User).where(User.email == email)).scalars().first()
    if user:
        return user

    now = utcnow()
    user = User(email=email, name=email.split("@")[0], created_at=now, updated_at=now)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """Dashboard identity from X-User-Email (auto-provisioned) or X-User-Id."""
    email = request.headers.get("X-User-Email")
    if email is not None:
        return _user_for_email(db, email)

    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Email or X-User-Id header")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown X-User-Id")
    return user


def require_account(db: Session, account_id: str) -> ConnectedAccount:
    account = db.get(ConnectedAccount, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="account not found")
    return account


def require_membership(
    db: Session,
    account_id: str,
    user: User,
    *,
    min_role: str = "viewer",
) -> AccountMembership:
    require_account(db, account_id)
    membership = db.execute(
        select(AccountMembership).where(
            AccountMembership.account_id == account_id,
            AccountMembership.user_id == user.id,
        )
    ).scalar_one_or_none()
    if not membership:
        raise HTTPException(status_code=403, detail="membership required")

    if ROLE_ORDER.get(membership.role or "", 0) < ROLE_ORDER.get(min_role, 0):
        raise HTTPException(status_code=403, detail="insufficient role")
    return membership


def require_membership_dep(min_role: str = "viewer") -> Callable[..., AccountMembership]:
    """Dependency factory for routes keyed by an {account_id} path parameter."""

    def _dep(
        account_id: str,
        db: Session = Depends(get_db),
        user: User = Depends(get_current_user),
    ) -> AccountMembership:
        return require_membership(db, account_id, user, min_role=min_role)

    return _dep


def require_sweep_token(authorization: Optional[str] = Header(None)) -> None:
    """
    Scheduler auth: `Authorization: Bearer <LEAK_SWEEP_SECRET>`.
    An unset secret disables the sweep endpoint entirely.
    """
    expected = os.getenv("LEAK_SWEEP_SECRET", "").strip()
    if not expected:
        raise ConfigurationError("LEAK_SWEEP_SECRET is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        logger.warning("Rejected leak sweep request with missing or invalid token")
        raise HTTPException(status_code=401, detail="invalid sweep token")


def get_email_sender() -> Optional[EmailSender]:
    return email_sender_from_env()
