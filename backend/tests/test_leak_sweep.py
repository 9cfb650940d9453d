from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from backend.app.leaks.errors import TransientStorageError
from backend.app.models import (
    ConnectedAccount,
    LeakNotification,
    LeakScanRuntime,
    MetricSnapshot,
    RevenueLeak,
)
from backend.app.services import leak_detection_service


def _add_account(db_session, name, *, is_active=True):
    row = ConnectedAccount(name=name, owner_email=f"{name.lower()}@example.test", is_active=is_active)
    db_session.add(row)
    db_session.commit()
    return row


def _seed_churn_spike(db_session, account_id):
    today = datetime.now(timezone.utc).date()
    rates = [1.0] * 14 + [2.5] * 7
    start = today - timedelta(days=len(rates) - 1)
    for idx, rate in enumerate(rates):
        db_session.add(
            MetricSnapshot(
                account_id=account_id,
                snapshot_date=start + timedelta(days=idx),
                mrr=10000.0,
                churn_rate=rate,
                net_revenue_retention=100.0,
            )
        )
    db_session.commit()


def test_sweep_scans_active_accounts_only(db_session, account, email_outbox):
    quiet = _add_account(db_session, "Quiet")
    paused = _add_account(db_session, "Paused", is_active=False)
    _seed_churn_spike(db_session, account.id)

    result = leak_detection_service.run_scheduled_sweep(db_session, sender=email_outbox)

    assert result.scanned == 2
    assert result.failed == 0
    assert result.leaks_detected == 1
    by_id = {row.account_id: row for row in result.results}
    assert set(by_id) == {account.id, quiet.id}
    assert paused.id not in by_id
    assert by_id[account.id].leak_types == ["churn_spike"]
    assert by_id[quiet.id].leak_types == []

    runtime = db_session.get(LeakScanRuntime, account.id)
    assert runtime.last_trigger == "scheduled"
    leak = db_session.execute(select(RevenueLeak)).scalar_one()
    assert leak.account_id == account.id


def test_sweep_prefers_accounts_never_scanned(db_session, account):
    fresh = _add_account(db_session, "Fresh")
    db_session.add(
        LeakScanRuntime(
            account_id=account.id,
            last_scan_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            last_trigger="webhook",
        )
    )
    db_session.commit()

    result = leak_detection_service.run_scheduled_sweep(db_session, limit=1)

    assert [row.account_id for row in result.results] == [fresh.id]


def test_sweep_isolates_failing_account(db_session, account, monkeypatch):
    healthy = _add_account(db_session, "Healthy")
    real_run = leak_detection_service.run_detection

    def flaky(db, target, **kwargs):
        if target.id == account.id:
            raise TransientStorageError("leak detection could not be persisted")
        return real_run(db, target, **kwargs)

    monkeypatch.setattr(leak_detection_service, "run_detection", flaky)

    result = leak_detection_service.run_scheduled_sweep(db_session)

    assert result.scanned == 2
    assert result.failed == 1
    by_id = {row.account_id: row for row in result.results}
    assert by_id[account.id].status == "error"
    assert by_id[account.id].error == "TransientStorageError: leak detection could not be persisted"
    assert by_id[healthy.id].status == "success"
    assert db_session.get(LeakScanRuntime, healthy.id).last_trigger == "scheduled"


def test_sweep_route_requires_configured_secret(api_client, account, monkeypatch):
    monkeypatch.delenv("LEAK_SWEEP_SECRET", raising=False)

    resp = api_client.post("/api/leaks/sweep", headers={"Authorization": "Bearer anything"})

    assert resp.status_code == 412


def test_sweep_route_rejects_bad_token(api_client, account, monkeypatch):
    monkeypatch.setenv("LEAK_SWEEP_SECRET", "sweep-secret")

    assert api_client.post("/api/leaks/sweep").status_code == 401
    wrong = api_client.post("/api/leaks/sweep", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    basic = api_client.post("/api/leaks/sweep", headers={"Authorization": "Basic sweep-secret"})
    assert basic.status_code == 401


def test_sweep_route_runs_detection(api_client, db_session, account, monkeypatch):
    monkeypatch.setenv("LEAK_SWEEP_SECRET", "sweep-secret")
    _seed_churn_spike(db_session, account.id)

    resp = api_client.post("/api/leaks/sweep", headers={"Authorization": "Bearer sweep-secret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["scanned"] == 1
    assert body["failed"] == 0
    assert body["results"][0]["account_id"] == account.id
    assert body["results"][0]["leak_types"] == ["churn_spike"]
    notification = db_session.execute(select(LeakNotification)).scalar_one()
    assert notification.channel == "in_app"
