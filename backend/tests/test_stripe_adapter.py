from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest

from backend.app.integrations import get_adapter
from backend.app.integrations.stripe import (
    StripeAdapter,
    compute_signature,
    monthly_amount_cents,
    parse_body,
    sign_payload,
)
from backend.app.leaks.errors import ValidationError


SECRET = "whsec_unit"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
BODY = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode("utf-8")


def _verify(headers, body=BODY, now=NOW):
    return StripeAdapter().verify_webhook(headers, body, secret=SECRET, now=now)


def test_valid_signature_verifies():
    header = sign_payload(SECRET, BODY, int(NOW.timestamp()))

    result = _verify({"Stripe-Signature": header})

    assert result.ok is True
    assert result.reason == "verified"


def test_any_matching_v1_signature_is_accepted():
    ts = int(NOW.timestamp())
    header = f"t={ts},v1={'0' * 64},v1={compute_signature(SECRET, BODY, ts)}"

    assert _verify({"stripe-signature": header}).ok is True


@pytest.mark.parametrize(
    "headers,reason",
    [
        ({}, "missing_signature_header"),
        ({"Stripe-Signature": "garbage"}, "malformed_signature_header"),
        ({"Stripe-Signature": "t=abc,v1=deadbeef"}, "malformed_signature_header"),
    ],
)
def test_missing_or_malformed_header_is_rejected(headers, reason):
    result = _verify(headers)

    assert result.ok is False
    assert result.reason == reason


def test_tampered_body_and_wrong_secret_are_rejected():
    ts = int(NOW.timestamp())
    header = sign_payload(SECRET, BODY, ts)

    assert _verify({"Stripe-Signature": header}, body=BODY + b" ").reason == "signature_mismatch"
    wrong = sign_payload("whsec_other", BODY, ts)
    assert _verify({"Stripe-Signature": wrong}).reason == "signature_mismatch"


def test_stale_timestamp_is_rejected(monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", raising=False)
    header = sign_payload(SECRET, BODY, int(NOW.timestamp()) - 301)

    assert _verify({"Stripe-Signature": header}).reason == "timestamp_outside_tolerance"

    monkeypatch.setenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "600")
    assert _verify({"Stripe-Signature": header}).ok is True


def test_normalize_invoice_reads_stripe_fields():
    invoice = StripeAdapter().normalize_invoice(
        {
            "id": "in_1",
            "customer": {"id": "cus_1", "object": "customer"},
            "subscription": "sub_1",
            "status": "paid",
            "amount_due": 4900,
            "amount_paid": 4900,
            "attempt_count": 2,
            "next_payment_attempt": None,
            "hosted_invoice_url": "https://invoice.stripe.test/in_1",
            "created": int(NOW.timestamp()),
            "status_transitions": {"paid_at": int(NOW.timestamp()) + 60},
        }
    )

    assert invoice.invoice_id == "in_1"
    assert invoice.customer_id == "cus_1"
    assert invoice.subscription_id == "sub_1"
    assert invoice.paid is True
    assert invoice.amount_due_cents == 4900
    assert invoice.created_at == NOW
    assert invoice.paid_at == datetime(2026, 3, 15, 12, 1, tzinfo=timezone.utc)


def test_normalize_invoice_defaults_and_paid_flag():
    invoice = StripeAdapter().normalize_invoice({"id": "in_2", "paid": True})

    assert invoice.status == "draft"
    assert invoice.paid is True
    assert invoice.amount_paid_cents == 0
    assert invoice.created_at is None

    with pytest.raises(ValidationError):
        StripeAdapter().normalize_invoice({"status": "open"})


def test_monthly_amount_normalizes_intervals():
    subscription = {
        "items": {
            "data": [
                {"quantity": 2, "price": {"unit_amount": 1000, "recurring": {"interval": "month"}}},
                {"quantity": 1, "price": {"unit_amount": 120000, "recurring": {"interval": "year"}}},
                {"quantity": 1, "price": {"unit_amount": 3000, "recurring": {"interval": "month", "interval_count": 3}}},
                {"price": {"unit_amount": 500, "recurring": {"interval": "week"}}},
            ]
        }
    }

    # 2000 + 10000 + 1000 + 500
    assert monthly_amount_cents(subscription) == 13_500


def test_normalize_subscription_uses_first_item_price():
    sub = StripeAdapter().normalize_subscription(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "currency": "eur",
            "created": int(NOW.timestamp()),
            "items": {
                "data": [
                    {
                        "quantity": 3,
                        "price": {
                            "id": "price_team",
                            "nickname": "Team",
                            "unit_amount": 2500,
                            "recurring": {"interval": "month"},
                        },
                    }
                ]
            },
        }
    )

    assert sub.mrr_amount_cents == 7_500
    assert sub.currency == "EUR"
    assert sub.price_id == "price_team"
    assert sub.plan_name == "Team"
    assert sub.quantity == 3
    assert sub.interval == "month"


def test_parse_body_rejects_non_objects():
    with pytest.raises(ValidationError):
        parse_body(b"")
    with pytest.raises(ValidationError):
        parse_body(b"{not json")
    with pytest.raises(ValidationError):
        parse_body(b"[1, 2]")
    assert parse_body(BODY)["id"] == "evt_1"


def test_get_adapter_rejects_unknown_provider():
    assert get_adapter("Stripe").provider == "stripe"
    with pytest.raises(ValueError):
        get_adapter("paypal")


def test_parse_failure_is_a_client_error():
    with pytest.raises(ValidationError) as excinfo:
        parse_body(b"{not json")

    assert excinfo.value.status_code == 422
