from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import html
import logging
import os
from typing import Any, List, Optional, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.leaks.schema import SEVERITY_RANK, LeakCandidate, LeakChange
from backend.app.models import ConnectedAccount, LeakNotification


logger = logging.getLogger(__name__)

CHANNEL_IN_APP = "in_app"
CHANNEL_EMAIL = "email"
EMAIL_SEVERITIES = {"high", "critical"}
DEFAULT_LIST_LIMIT = 25
MAX_LIST_LIMIT = 200
RESEND_BASE_URL = "https://api.resend.com"
PRODUCT_NAME = "RevPilot"


@dataclass(frozen=True)
class NotificationDecision:
    leak_id: str
    channel: str
    candidate: LeakCandidate


@dataclass
class NotificationOutcome:
    in_app_created: int = 0
    email_created: int = 0
    email_sent: bool = False
    provider_message_id: Optional[str] = None
    notification_ids: List[str] = field(default_factory=list)

    @property
    def created(self) -> int:
        return self.in_app_created + self.email_created


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------
# Outbound email seam
# -------------------------

class EmailSender(Protocol):
    def send(self, *, to: str, subject: str, html_body: str) -> Optional[str]:
        """Deliver one email; return the provider message id."""
        ...


def _build_httpx_client(base_url: str):
    import httpx

    return httpx.Client(base_url=base_url, timeout=20.0)


class ResendEmailSender:
    def __init__(self, *, api_key: str, from_email: str, client: Optional[Any] = None):
        self.api_key = api_key
        self.from_email = from_email
        self._client = client or _build_httpx_client(os.getenv("RESEND_BASE_URL") or RESEND_BASE_URL)

    def send(self, *, to: str, subject: str, html_body: str) -> Optional[str]:
        response = self._client.post(
            "/emails",
            json={"from": self.from_email, "to": to, "subject": subject, "html": html_body},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        response.raise_for_status()
        payload = response.json() if response.content else {}
        return (payload or {}).get("id")


def email_sender_from_env() -> Optional[EmailSender]:
    api_key = os.getenv("RESEND_API_KEY")
    from_email = os.getenv("LEAK_ALERT_FROM_EMAIL")
    if not api_key or not from_email:
        return None
    return ResendEmailSender(api_key=api_key, from_email=from_email)


def build_alert_email(candidate: LeakCandidate) -> tuple[str, str]:
    severity = str(candidate.severity).upper()
    subject = f"{PRODUCT_NAME} Alert: {candidate.title} ({severity})"
    body = (
        '<div style="font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto; '
        'line-height:1.5; color:#0f172a">'
        f'<h2 style="margin:0 0 8px 0;">{PRODUCT_NAME}: Instant Revenue Leak Alert</h2>'
        '<p style="margin:0 0 14px 0; color:#475569;">A high-impact leak was detected from live Stripe activity.</p>'
        '<div style="padding:12px 14px; border:1px solid #e2e8f0; border-radius:12px;">'
        f'<div style="font-weight:700;">{html.escape(candidate.title)}</div>'
        f'<div style="margin-top:6px; color:#334155;">{html.escape(candidate.summary)}</div>'
        f'<div style="margin-top:10px;"><b>Fix:</b> {html.escape(candidate.recommended_action)}</div>'
        '<div style="margin-top:10px; font-size:12px; color:#64748b;">'
        f"Severity: {severity} &middot; Confidence {candidate.confidence * 100:.0f}%</div>"
        "</div>"
        '<p style="margin:14px 0 0 0; font-size:12px; color:#64748b;">'
        "Open your dashboard and go to Revenue Leak Detector for details.</p>"
        "</div>"
    )
    return subject, body


# -------------------------
# Classification
# -------------------------

def classify_changes(changes: Sequence[LeakChange], *, email_allowed: bool) -> List[NotificationDecision]:
    decisions: List[NotificationDecision] = []
    for change in changes:
        if not change.changed:
            continue
        decisions.append(NotificationDecision(change.leak_id, CHANNEL_IN_APP, change.candidate))
        if email_allowed and change.candidate.severity in EMAIL_SEVERITIES:
            decisions.append(NotificationDecision(change.leak_id, CHANNEL_EMAIL, change.candidate))
    return decisions


def email_allowed_for(account: ConnectedAccount) -> bool:
    return bool(account.email_reports_enabled and (account.owner_email or "").strip())


def _insert_notification(
    db: Session,
    account_id: str,
    decision: NotificationDecision,
) -> Optional[LeakNotification]:
    """Check-then-insert on (leak_id, channel). Returns None when the row already exists."""
    existing = db.execute(
        select(LeakNotification.id).where(
            LeakNotification.leak_id == decision.leak_id,
            LeakNotification.channel == decision.channel,
        )
    ).scalar_one_or_none()
    if existing:
        return None

    candidate = decision.candidate
    row = LeakNotification(
        account_id=account_id,
        leak_id=decision.leak_id,
        leak_type=candidate.leak_type,
        channel=decision.channel,
        severity=candidate.severity,
        title=candidate.title,
        message=candidate.summary,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        return None
    return row


def _top_candidate(decisions: Sequence[NotificationDecision]) -> LeakCandidate:
    # max() keeps the first of equal-rank candidates
    return max(
        (decision.candidate for decision in decisions),
        key=lambda candidate: SEVERITY_RANK.get(candidate.severity, 0),
    )


def notify_changes(
    db: Session,
    account: ConnectedAccount,
    changes: Sequence[LeakChange],
    *,
    sender: Optional[EmailSender] = None,
) -> NotificationOutcome:
    """
    Persist notifications for changed leaks, commit, then attempt email delivery.

    Delivery failures are logged and leave email rows with a null provider id.
    """
    outcome = NotificationOutcome()
    decisions = classify_changes(changes, email_allowed=email_allowed_for(account))
    if not decisions:
        return outcome

    email_rows: List[LeakNotification] = []
    email_decisions: List[NotificationDecision] = []
    for decision in decisions:
        row = _insert_notification(db, account.id, decision)
        if row is None:
            continue
        outcome.notification_ids.append(row.id)
        if decision.channel == CHANNEL_EMAIL:
            outcome.email_created += 1
            email_rows.append(row)
            email_decisions.append(decision)
        else:
            outcome.in_app_created += 1
    db.commit()

    if not email_rows:
        return outcome
    if sender is None:
        logger.info(
            "No email sender configured; %s email notifications for account_id=%s left undelivered",
            len(email_rows),
            account.id,
        )
        return outcome

    subject, body = build_alert_email(_top_candidate(email_decisions))
    try:
        message_id = sender.send(to=account.owner_email, subject=subject, html_body=body)
    except Exception:
        logger.exception("Leak alert email failed for account_id=%s", account.id)
        return outcome

    for row in email_rows:
        row.provider_message_id = message_id
    db.commit()
    outcome.email_sent = True
    outcome.provider_message_id = message_id
    return outcome


# -------------------------
# Read interfaces
# -------------------------

def list_notifications(
    db: Session,
    account_id: str,
    *,
    unread_only: bool = False,
    since: Optional[datetime] = None,
    channel: Optional[str] = CHANNEL_IN_APP,
    limit: int = DEFAULT_LIST_LIMIT,
) -> List[LeakNotification]:
    stmt = select(LeakNotification).where(LeakNotification.account_id == account_id)
    if channel:
        stmt = stmt.where(LeakNotification.channel == channel)
    if unread_only:
        stmt = stmt.where(LeakNotification.read_at.is_(None))
    if since is not None:
        stmt = stmt.where(LeakNotification.created_at >= since)
    limit = max(1, min(MAX_LIST_LIMIT, int(limit or DEFAULT_LIST_LIMIT)))
    stmt = stmt.order_by(LeakNotification.created_at.desc(), LeakNotification.id.asc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def mark_read(db: Session, account_id: str, notification_ids: Sequence[str]) -> int:
    ids = [item for item in notification_ids if item]
    if not ids:
        return 0
    result = db.execute(
        update(LeakNotification)
        .where(
            LeakNotification.account_id == account_id,
            LeakNotification.id.in_(ids),
            LeakNotification.read_at.is_(None),
        )
        .values(read_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


def list_undelivered_email(db: Session, account_id: str) -> List[LeakNotification]:
    return list(
        db.execute(
            select(LeakNotification)
            .where(
                LeakNotification.account_id == account_id,
                LeakNotification.channel == CHANNEL_EMAIL,
                LeakNotification.provider_message_id.is_(None),
            )
            .order_by(LeakNotification.created_at.asc(), LeakNotification.id.asc())
        )
        .scalars()
        .all()
    )
