from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.domain.contracts import StripeEventEnvelope, WebhookResult
from backend.app.integrations import get_adapter
from backend.app.integrations.stripe import parse_body
from backend.app.integrations.utils import mark_processor_event_processed, record_processor_event
from backend.app.leaks.errors import (
    AccountNotFoundError,
    AuthenticationError,
    ConfigurationError,
    TransientStorageError,
    ValidationError,
)
from backend.app.leaks.policy import LeakPolicy, load_policy
from backend.app.models import ConnectedAccount
from backend.app.services import cache_ingest_service, leak_detection_service, recovery_service
from backend.app.services.notification_service import EmailSender


logger = logging.getLogger(__name__)

INVOICE_EVENT_TYPES = {
    "invoice.payment_failed",
    "invoice.finalized",
    "invoice.updated",
}
INVOICE_PAID_EVENT_TYPES = {
    "invoice.payment_succeeded",
    "invoice.paid",
}
SUBSCRIPTION_EVENT_TYPES = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
RELEVANT_EVENT_TYPES = INVOICE_EVENT_TYPES | INVOICE_PAID_EVENT_TYPES | SUBSCRIPTION_EVENT_TYPES


def _now() -> datetime:
    return datetime.now(timezone.utc)


def require_account_by_token(db: Session, webhook_token: str) -> ConnectedAccount:
    token = (webhook_token or "").strip()
    account = None
    if token:
        account = db.execute(
            select(ConnectedAccount).where(ConnectedAccount.webhook_token == token)
        ).scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError("unknown webhook token")
    return account


def _parse_envelope(body: bytes) -> StripeEventEnvelope:
    payload = parse_body(body)
    try:
        return StripeEventEnvelope.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"malformed stripe event: {exc.error_count()} validation errors") from exc


def process_stripe_webhook(
    db: Session,
    *,
    webhook_token: str,
    headers: Dict[str, str],
    body: bytes,
    now: Optional[datetime] = None,
    policy: Optional[LeakPolicy] = None,
    sender: Optional[EmailSender] = None,
) -> WebhookResult:
    """
    received -> signature-verified -> cache-updated -> (recovery-checked)
    -> detectors-run -> reconciled -> classified -> acknowledged
    """
    now = now or _now()
    account = require_account_by_token(db, webhook_token)
    if not account.webhook_secret:
        raise ConfigurationError("webhook secret is not configured for this account")

    adapter = get_adapter("stripe")
    verification = adapter.verify_webhook(headers, body, secret=account.webhook_secret, now=now)
    if not verification.ok:
        logger.warning(
            "Rejected stripe webhook for account_id=%s: %s", account.id, verification.reason
        )
        raise AuthenticationError(f"webhook verification failed: {verification.reason}")

    try:
        envelope = _parse_envelope(body)
    except ValidationError as exc:
        logger.warning("Ignoring malformed stripe webhook for account_id=%s: %s", account.id, exc.message)
        return WebhookResult(processed=False, reason="malformed_event")

    if envelope.type not in RELEVANT_EVENT_TYPES:
        logger.info("Ignoring stripe event type=%s id=%s", envelope.type, envelope.id)
        return WebhookResult(
            processed=False,
            event_id=envelope.id,
            event_type=envelope.type,
            reason="ignored_event_type",
        )

    try:
        if envelope.type in SUBSCRIPTION_EVENT_TYPES:
            subscription = adapter.normalize_subscription(envelope.data.object)
            invoice = None
        else:
            invoice = adapter.normalize_invoice(envelope.data.object)
            subscription = None
    except ValidationError as exc:
        logger.warning(
            "Ignoring stripe event id=%s type=%s: %s", envelope.id, envelope.type, exc.message
        )
        return WebhookResult(
            processed=False,
            event_id=envelope.id,
            event_type=envelope.type,
            reason="malformed_event",
        )

    policy = policy or load_policy()
    recovery_event_id: Optional[str] = None
    try:
        first_delivery = record_processor_event(db, account_id=account.id, envelope=envelope)
        if not first_delivery:
            logger.info("Redelivery of stripe event id=%s for account_id=%s", envelope.id, account.id)

        if subscription is not None:
            cache_ingest_service.upsert_subscription(
                db, account_id=account.id, subscription=subscription, now=now
            )
        else:
            upsert = cache_ingest_service.upsert_invoice(
                db, account_id=account.id, invoice=invoice, now=now
            )
            if envelope.type in INVOICE_PAID_EVENT_TYPES:
                recovery = recovery_service.record_recovery(
                    db,
                    account_id=account.id,
                    invoice=invoice,
                    previous_status=upsert.previous_status,
                    envelope=envelope,
                    policy=policy,
                    now=now,
                )
                recovery_event_id = recovery.id if recovery else None

        if account.webhook_status != "active":
            account.webhook_status = "active"
        # cache writes must survive a failure further down the pipeline
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Cache update failed for stripe event id=%s", envelope.id)
        raise TransientStorageError("cache update failed") from exc

    detection = leak_detection_service.run_detection(
        db,
        account,
        trigger="webhook",
        now=now,
        policy=policy,
        sender=sender,
    )

    try:
        mark_processor_event_processed(db, account_id=account.id, event_id=envelope.id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStorageError("could not mark event processed") from exc

    return WebhookResult(
        processed=True,
        event_id=envelope.id,
        event_type=envelope.type,
        redelivery=not first_delivery,
        recovery_event_id=recovery_event_id,
        detection=detection,
    )
