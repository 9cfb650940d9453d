from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import os
from typing import Any, Dict, List, Optional

from backend.app.integrations.base import (
    NormalizedInvoice,
    NormalizedSubscription,
    WebhookVerificationResult,
)
from backend.app.leaks.errors import ValidationError


SIGNATURE_HEADER = "stripe-signature"
SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def webhook_tolerance_seconds() -> int:
    raw = os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    if not raw:
        return DEFAULT_TOLERANCE_SECONDS
    try:
        return max(0, int(raw))
    except ValueError:
        return DEFAULT_TOLERANCE_SECONDS


def compute_signature(secret: str, body: bytes, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def sign_payload(secret: str, body: bytes, timestamp: int) -> str:
    """Build a Stripe-Signature header value for body (local tooling and tests)."""
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(secret, body, timestamp)}"


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _parse_signature_header(value: str) -> tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in value.split(","):
        key, _, item = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(item)
            except ValueError:
                return None, []
        elif key == SIGNATURE_SCHEME and item:
            signatures.append(item)
    return timestamp, signatures


def _ts(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _ref_id(value: Any) -> Optional[str]:
    # Stripe sends either the id string or the expanded object
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def monthly_amount_cents(subscription: Dict[str, Any]) -> int:
    """Approximate monthly recurring amount from subscription items."""
    items = ((subscription.get("items") or {}).get("data")) or []
    total = 0.0
    for item in items:
        price = item.get("price") or {}
        unit = _int(price.get("unit_amount"))
        qty = _int(item.get("quantity")) or 1
        amount = unit * qty
        recurring = price.get("recurring") or {}
        interval = recurring.get("interval")
        count = _int(recurring.get("interval_count")) or 1
        if interval == "month":
            total += amount / count
        elif interval == "year":
            total += amount / (12 * count)
        else:
            total += amount
    return round(total)


class StripeAdapter:
    provider = "stripe"

    def verify_webhook(
        self,
        headers: Dict[str, str],
        body: bytes,
        *,
        secret: str,
        now: Optional[datetime] = None,
    ) -> WebhookVerificationResult:
        header = _header(headers, SIGNATURE_HEADER)
        if not header:
            return WebhookVerificationResult(ok=False, reason="missing_signature_header")
        timestamp, signatures = _parse_signature_header(header)
        if timestamp is None or not signatures:
            return WebhookVerificationResult(ok=False, reason="malformed_signature_header")

        expected = compute_signature(secret, body, timestamp)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            return WebhookVerificationResult(ok=False, reason="signature_mismatch")

        tolerance = webhook_tolerance_seconds()
        current = int((now or datetime.now(timezone.utc)).timestamp())
        if tolerance and abs(current - timestamp) > tolerance:
            return WebhookVerificationResult(ok=False, reason="timestamp_outside_tolerance")
        return WebhookVerificationResult(ok=True, reason="verified")

    def normalize_invoice(self, obj: Dict[str, Any]) -> NormalizedInvoice:
        invoice_id = str(obj.get("id") or "").strip()
        if not invoice_id:
            raise ValidationError("stripe invoice object missing id")
        status = str(obj.get("status") or "draft")
        transitions = obj.get("status_transitions") or {}
        return NormalizedInvoice(
            invoice_id=invoice_id,
            customer_id=_ref_id(obj.get("customer")),
            subscription_id=_ref_id(obj.get("subscription")),
            status=status,
            paid=status == "paid" or obj.get("paid") is True,
            amount_due_cents=_int(obj.get("amount_due")),
            amount_paid_cents=_int(obj.get("amount_paid")),
            attempt_count=_int(obj.get("attempt_count")),
            next_payment_attempt=_ts(obj.get("next_payment_attempt")),
            hosted_invoice_url=obj.get("hosted_invoice_url") or None,
            created_at=_ts(obj.get("created")),
            paid_at=_ts(transitions.get("paid_at")) if isinstance(transitions, dict) else None,
        )

    def normalize_subscription(self, obj: Dict[str, Any]) -> NormalizedSubscription:
        subscription_id = str(obj.get("id") or "").strip()
        if not subscription_id:
            raise ValidationError("stripe subscription object missing id")
        items = ((obj.get("items") or {}).get("data")) or []
        first = items[0] if items else {}
        price = first.get("price") or {}
        return NormalizedSubscription(
            subscription_id=subscription_id,
            customer_id=_ref_id(obj.get("customer")),
            status=str(obj.get("status") or "incomplete"),
            mrr_amount_cents=monthly_amount_cents(obj),
            interval=(price.get("recurring") or {}).get("interval"),
            currency=str(obj.get("currency") or "usd").upper(),
            price_id=price.get("id"),
            plan_name=price.get("nickname"),
            quantity=_int(first.get("quantity")) or 1,
            created_at=_ts(obj.get("created")),
            canceled_at=_ts(obj.get("canceled_at")),
            ended_at=_ts(obj.get("ended_at")),
        )


def parse_body(body: bytes) -> dict:
    if not body:
        raise ValidationError("empty webhook body")
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"webhook body is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("webhook body must be a JSON object")
    return payload
