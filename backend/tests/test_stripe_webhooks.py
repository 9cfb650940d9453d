from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
import time

from sqlalchemy import func, select

from backend.app.domain.contracts import WebhookResult
from backend.app.integrations.stripe import sign_payload
from backend.app.leaks import detectors
from backend.app.leaks.detectors import DetectorDefinition
from backend.app.models import (
    ConnectedAccount,
    InvoiceCache,
    LeakNotification,
    ProcessorEvent,
    RevenueLeak,
    RevenueRecoveryEvent,
    SubscriptionCache,
)
from backend.app.services import webhook_service


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _invoice_event(event_id, event_type, *, status, amount_due, amount_paid=0, created=None, invoice_id="inv_1"):
    now = datetime.now(timezone.utc)
    return {
        "id": event_id,
        "type": event_type,
        "created": _ts(now),
        "livemode": False,
        "data": {
            "object": {
                "id": invoice_id,
                "object": "invoice",
                "customer": "cus_1",
                "subscription": "sub_1",
                "status": status,
                "paid": status == "paid",
                "amount_due": amount_due,
                "amount_paid": amount_paid,
                "attempt_count": 2,
                "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
                "created": _ts(created or now - timedelta(days=10)),
            }
        },
    }


def _post(api_client, account, payload, *, secret=None, raw=None, timestamp=None):
    body = raw if raw is not None else json.dumps(payload).encode("utf-8")
    header = sign_payload(secret or account.webhook_secret, body, timestamp or int(time.time()))
    return api_client.post(
        f"/api/webhooks/stripe/{account.webhook_token}",
        content=body,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


def _count(db_session, model):
    return db_session.execute(select(func.count()).select_from(model)).scalar_one()


def test_unknown_token_is_404(api_client, account):
    resp = api_client.post("/api/webhooks/stripe/not-a-token", content=b"{}")
    assert resp.status_code == 404


def test_missing_secret_is_412(api_client, db_session):
    account = ConnectedAccount(name="No Secret", webhook_secret=None)
    db_session.add(account)
    db_session.commit()

    resp = api_client.post(f"/api/webhooks/stripe/{account.webhook_token}", content=b"{}")
    assert resp.status_code == 412


def test_bad_signature_is_400_without_side_effects(api_client, db_session, account):
    payload = _invoice_event("evt_fail_1", "invoice.payment_failed", status="open", amount_due=500_000)

    wrong_secret = _post(api_client, account, payload, secret="whsec_wrong")
    stale = _post(api_client, account, payload, timestamp=int(time.time()) - 3600)
    unsigned = api_client.post(
        f"/api/webhooks/stripe/{account.webhook_token}",
        content=json.dumps(payload).encode("utf-8"),
    )

    assert wrong_secret.status_code == 400
    assert stale.status_code == 400
    assert unsigned.status_code == 400
    assert _count(db_session, InvoiceCache) == 0
    assert _count(db_session, ProcessorEvent) == 0
    assert _count(db_session, RevenueLeak) == 0


def test_malformed_and_irrelevant_events_are_acknowledged_as_no_ops(api_client, db_session, account):
    not_json = _post(api_client, account, None, raw=b"{oops")
    no_object = _post(api_client, account, {"id": "evt_x", "type": "invoice.paid", "created": 1, "data": {}})
    other_type = _post(
        api_client,
        account,
        {"id": "evt_c", "type": "charge.refunded", "created": 1, "data": {"object": {"id": "ch_1"}}},
    )
    no_invoice_id = _post(
        api_client,
        account,
        {"id": "evt_n", "type": "invoice.updated", "created": 1, "data": {"object": {"status": "open"}}},
    )

    for resp in (not_json, no_object, no_invoice_id):
        assert resp.status_code == 200
        assert resp.json()["processed"] is False
        assert resp.json()["reason"] == "malformed_event"
    assert other_type.status_code == 200
    assert other_type.json()["reason"] == "ignored_event_type"
    assert _count(db_session, InvoiceCache) == 0
    assert _count(db_session, RevenueLeak) == 0


def test_failed_then_paid_invoice_end_to_end(api_client, db_session, account, email_outbox):
    failed = _invoice_event("evt_fail_1", "invoice.payment_failed", status="open", amount_due=500_000)

    resp = _post(api_client, account, failed)
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] is True
    assert body["detection"]["leaks_detected"] == 2
    assert body["detection"]["notifications_created"] == 2

    leaks = {row.leak_type: row for row in db_session.execute(select(RevenueLeak)).scalars().all()}
    assert set(leaks) == {"failed_payments", "recovery_gap"}
    for leak in leaks.values():
        assert leak.lost_amount_cents == 500_000
        assert leak.severity == "medium"
    assert _count(db_session, LeakNotification) == 2
    assert email_outbox.sent == []

    # redelivered failure reconciles to the same numbers: no new alerts
    again = _post(api_client, account, failed)
    assert again.json()["redelivery"] is True
    assert again.json()["detection"]["leaks_changed"] == 0
    assert _count(db_session, LeakNotification) == 2
    failed_leak_id = db_session.execute(
        select(RevenueLeak.id).where(RevenueLeak.leak_type == "failed_payments")
    ).scalar_one()

    paid = _invoice_event(
        "evt_paid_1",
        "invoice.payment_succeeded",
        status="paid",
        amount_due=500_000,
        amount_paid=500_000,
    )
    resp = _post(api_client, account, paid)
    assert resp.status_code == 200
    assert resp.json()["recovery_event_id"]

    recovery = db_session.execute(select(RevenueRecoveryEvent)).scalar_one()
    assert recovery.leak_type == "failed_payments"
    assert recovery.leak_id == failed_leak_id
    assert recovery.recovered_amount_cents == 500_000
    assert recovery.source_event_id == "evt_paid_1"
    assert recovery.meta["prev_status"] == "open"

    # redelivery: cached status is already paid
    resp = _post(api_client, account, paid)
    assert resp.status_code == 200
    assert resp.json()["recovery_event_id"] is None
    assert _count(db_session, RevenueRecoveryEvent) == 1
    assert _count(db_session, LeakNotification) == 2

    receipt = db_session.execute(
        select(ProcessorEvent).where(ProcessorEvent.event_id == "evt_paid_1")
    ).scalar_one()
    assert receipt.delivery_count == 2
    assert receipt.processed_at is not None


def test_critical_failure_emails_the_owner_once(api_client, db_session, account, email_outbox):
    payload = _invoice_event("evt_big", "invoice.payment_failed", status="uncollectible", amount_due=6_000_000)

    _post(api_client, account, payload)
    _post(api_client, account, payload)

    assert len(email_outbox.sent) == 1
    assert email_outbox.sent[0]["subject"] == "RevPilot Alert: Failed payments are leaking revenue (CRITICAL)"
    emails = db_session.execute(
        select(LeakNotification).where(LeakNotification.channel == "email")
    ).scalars().all()
    assert len(emails) == 2
    assert {row.provider_message_id for row in emails} == {"msg_test_1"}


def test_email_reports_disabled_still_notifies_in_app(api_client, db_session, account, email_outbox):
    account.email_reports_enabled = False
    db_session.commit()
    payload = _invoice_event("evt_big", "invoice.payment_failed", status="open", amount_due=6_000_000)

    resp = _post(api_client, account, payload)

    assert resp.status_code == 200
    assert email_outbox.sent == []
    channels = db_session.execute(select(LeakNotification.channel)).scalars().all()
    assert sorted(channels) == ["in_app", "in_app"]


def test_first_seen_paid_invoice_records_unattributed_recovery(api_client, db_session, account):
    paid = _invoice_event(
        "evt_paid_new",
        "invoice.paid",
        status="paid",
        amount_due=9_900,
        amount_paid=9_900,
        invoice_id="inv_new",
    )

    resp = _post(api_client, account, paid)

    assert resp.status_code == 200
    recovery = db_session.execute(select(RevenueRecoveryEvent)).scalar_one()
    assert recovery.leak_type is None
    assert recovery.leak_id is None


def test_subscription_event_updates_cache(api_client, db_session, account):
    payload = {
        "id": "evt_sub_1",
        "type": "customer.subscription.updated",
        "created": int(time.time()),
        "livemode": False,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "currency": "usd",
                "created": int(time.time()) - 86400 * 200,
                "items": {
                    "data": [
                        {
                            "quantity": 1,
                            "price": {
                                "id": "price_annual",
                                "unit_amount": 120_000,
                                "recurring": {"interval": "year"},
                            },
                        }
                    ]
                },
            },
            "previous_attributes": {"status": "trialing"},
        },
    }

    resp = _post(api_client, account, payload)

    assert resp.status_code == 200
    sub = db_session.execute(select(SubscriptionCache)).scalar_one()
    assert sub.mrr_amount_cents == 10_000
    assert sub.interval == "year"
    assert _count(db_session, RevenueLeak) == 0
    db_session.refresh(account)
    assert account.webhook_status == "active"


def test_recovery_keeps_its_leak_when_other_invoices_still_fail(api_client, db_session, account, viewer_headers):
    _post(api_client, account, _invoice_event("evt_fail_1", "invoice.payment_failed", status="open", amount_due=500_000))
    _post(
        api_client,
        account,
        _invoice_event("evt_fail_2", "invoice.payment_failed", status="open", amount_due=300_000, invoice_id="inv_2"),
    )
    linked_id = db_session.execute(
        select(RevenueLeak.id).where(RevenueLeak.leak_type == "failed_payments")
    ).scalar_one()

    paid = _invoice_event(
        "evt_paid_1",
        "invoice.payment_succeeded",
        status="paid",
        amount_due=500_000,
        amount_paid=500_000,
    )
    assert _post(api_client, account, paid).status_code == 200

    # inv_2 still fails, so the run after the recovery replaced the leak row
    current = db_session.execute(
        select(RevenueLeak).where(RevenueLeak.leak_type == "failed_payments")
    ).scalar_one()
    assert current.id != linked_id
    assert current.lost_amount_cents == 300_000

    db_session.expire_all()
    recovery = db_session.execute(select(RevenueRecoveryEvent)).scalar_one()
    assert recovery.leak_id == linked_id
    assert recovery.leak_type == "failed_payments"

    timeline = api_client.get(f"/api/recoveries/{account.id}/timeline", headers=viewer_headers).json()
    assert len(timeline) == 1
    assert timeline[0]["leak_id"] == linked_id
    assert timeline[0]["leak"]["id"] == current.id
    assert timeline[0]["leak"]["leak_type"] == "failed_payments"


def test_webhook_processing_runs_off_the_event_loop(api_client, account, monkeypatch):
    seen = {}

    def _fake_process(db, **kwargs):
        try:
            asyncio.get_running_loop()
            seen["on_loop"] = True
        except RuntimeError:
            seen["on_loop"] = False
        seen["body"] = kwargs["body"]
        return WebhookResult(processed=False, reason="ignored_event_type")

    monkeypatch.setattr(webhook_service, "process_stripe_webhook", _fake_process)

    resp = api_client.post(f"/api/webhooks/stripe/{account.webhook_token}", content=b'{"id": "evt_1"}')

    assert resp.status_code == 200
    assert seen == {"on_loop": False, "body": b'{"id": "evt_1"}'}


def test_broken_detector_does_not_block_the_webhook(api_client, db_session, account, monkeypatch):
    def _explode(state, now, policy):
        raise ZeroDivisionError("bad baseline")

    monkeypatch.setattr(
        detectors,
        "DETECTOR_DEFINITIONS",
        [DetectorDefinition("detect_broken", "churn_spike", _explode)] + list(detectors.DETECTOR_DEFINITIONS),
    )
    payload = _invoice_event("evt_fail_1", "invoice.payment_failed", status="open", amount_due=500_000)

    resp = _post(api_client, account, payload)

    assert resp.status_code == 200
    detection = resp.json()["detection"]
    broken = [row for row in detection["detectors"] if row["detector_id"] == "detect_broken"]
    assert broken[0]["ran"] is False
    assert broken[0]["error"] == "ZeroDivisionError: bad baseline"
    assert detection["leaks_detected"] == 2
    leak_types = set(db_session.execute(select(RevenueLeak.leak_type)).scalars().all())
    assert leak_types == {"failed_payments", "recovery_gap"}
    assert _count(db_session, LeakNotification) == 2
    assert db_session.execute(select(ProcessorEvent.processed_at)).scalar_one() is not None
