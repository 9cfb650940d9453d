from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import math
import os
from typing import List, Optional

from sqlalchemy import nulls_first, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    DetectionRunContract,
    DetectorResultContract,
    SweepAccountResult,
    SweepResult,
)
from backend.app.leaks.detectors import run_leak_detectors_with_summary
from backend.app.leaks.errors import RateLimitedError, TransientStorageError
from backend.app.leaks.policy import LeakPolicy, load_policy
from backend.app.leaks.schema import (
    CachedAccountState,
    InvoiceRow,
    LeakChange,
    MetricRow,
    SubscriptionRow,
)
from backend.app.models import (
    ConnectedAccount,
    InvoiceCache,
    LeakScanRuntime,
    MetricSnapshot,
    SubscriptionCache,
)
from backend.app.services import leak_store_service, notification_service
from backend.app.services.notification_service import EmailSender


logger = logging.getLogger(__name__)

DEFAULT_SCAN_COOLDOWN_SECONDS = 60
SWEEP_BATCH_LIMIT = 25


def scan_cooldown_seconds() -> int:
    raw = os.getenv("LEAK_SCAN_COOLDOWN_SECONDS")
    if not raw:
        return DEFAULT_SCAN_COOLDOWN_SECONDS
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning("Ignoring invalid LEAK_SCAN_COOLDOWN_SECONDS=%r", raw)
        return DEFAULT_SCAN_COOLDOWN_SECONDS


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def load_cached_state(
    db: Session,
    account_id: str,
    now: datetime,
    policy: LeakPolicy,
) -> CachedAccountState:
    """Read the bounded window of cache rows the detectors evaluate."""
    cutoff = now - timedelta(days=policy.window_days)

    invoices = (
        db.execute(
            select(InvoiceCache)
            .where(
                InvoiceCache.account_id == account_id,
                InvoiceCache.created_at_stripe >= cutoff,
            )
            .order_by(InvoiceCache.created_at_stripe.desc())
        )
        .scalars()
        .all()
    )
    subscriptions = (
        db.execute(select(SubscriptionCache).where(SubscriptionCache.account_id == account_id))
        .scalars()
        .all()
    )
    snapshots = (
        db.execute(
            select(MetricSnapshot)
            .where(
                MetricSnapshot.account_id == account_id,
                MetricSnapshot.snapshot_date >= cutoff.date(),
            )
            .order_by(MetricSnapshot.snapshot_date.asc())
        )
        .scalars()
        .all()
    )

    return CachedAccountState(
        account_id=account_id,
        invoices=[
            InvoiceRow(
                invoice_id=row.invoice_id,
                status=row.status,
                amount_due_cents=int(row.amount_due_cents or 0),
                amount_paid_cents=int(row.amount_paid_cents or 0),
                attempt_count=int(row.attempt_count or 0),
                next_payment_attempt=_normalize_dt(row.next_payment_attempt),
                hosted_invoice_url=row.hosted_invoice_url,
                created_at=_normalize_dt(row.created_at_stripe),
            )
            for row in invoices
        ],
        subscriptions=[
            SubscriptionRow(
                subscription_id=row.subscription_id,
                status=row.status,
                mrr_amount_cents=int(row.mrr_amount_cents or 0),
                price_id=row.price_id,
                plan_name=row.plan_name,
                created_at=_normalize_dt(row.created_at_stripe),
                canceled_at=_normalize_dt(row.canceled_at),
            )
            for row in subscriptions
        ],
        snapshots=[
            MetricRow(
                snapshot_date=row.snapshot_date,
                mrr=float(row.mrr or 0.0),
                churn_rate=float(row.churn_rate or 0.0),
                net_revenue_retention=float(row.net_revenue_retention or 0.0),
            )
            for row in snapshots
        ],
    )


def _get_or_create_runtime(db: Session, account_id: str) -> LeakScanRuntime:
    runtime = db.get(LeakScanRuntime, account_id)
    if runtime:
        return runtime
    runtime = LeakScanRuntime(account_id=account_id)
    db.add(runtime)
    db.flush()
    return runtime


def run_detection(
    db: Session,
    account: ConnectedAccount,
    *,
    trigger: str,
    now: Optional[datetime] = None,
    policy: Optional[LeakPolicy] = None,
    sender: Optional[EmailSender] = None,
) -> DetectionRunContract:
    """
    Run every detector over the cached state, reconcile each candidate and
    notify on material changes. Leaks are committed before any email goes out.
    """
    now = _normalize_dt(now) or _now()
    policy = policy or load_policy()

    try:
        state = load_cached_state(db, account.id, now, policy)
        summary = run_leak_detectors_with_summary(state, now, policy)
        changes: List[LeakChange] = [
            leak_store_service.reconcile(db, candidate) for candidate in summary.candidates
        ]

        runtime = _get_or_create_runtime(db, account.id)
        runtime.last_scan_at = now
        runtime.last_trigger = trigger
        runtime.updated_at = now
        db.commit()

        outcome = notification_service.notify_changes(db, account, changes, sender=sender)
    except TransientStorageError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Leak detection storage failure for account_id=%s", account.id)
        raise TransientStorageError("leak detection could not be persisted") from exc

    logger.info(
        "Leak detection account_id=%s trigger=%s detected=%s changed=%s notifications=%s",
        account.id,
        trigger,
        len(changes),
        sum(1 for change in changes if change.changed),
        outcome.created,
    )
    return DetectionRunContract(
        account_id=account.id,
        trigger=trigger,
        leaks_detected=len(changes),
        leaks_changed=sum(1 for change in changes if change.changed),
        notifications_created=outcome.created,
        leak_ids=[change.leak_id for change in changes],
        detectors=[
            DetectorResultContract(
                detector_id=row.detector_id,
                leak_type=row.leak_type,
                ran=row.ran,
                fired=row.fired,
                severity=row.severity,
                error=row.error,
            )
            for row in summary.detectors
        ],
    )


def run_manual_scan(
    db: Session,
    account: ConnectedAccount,
    *,
    now: Optional[datetime] = None,
    policy: Optional[LeakPolicy] = None,
    sender: Optional[EmailSender] = None,
    cooldown_seconds: Optional[int] = None,
) -> DetectionRunContract:
    """Dashboard "run scan": same pipeline as a webhook, no cache mutation, rate limited."""
    now = _normalize_dt(now) or _now()
    cooldown = scan_cooldown_seconds() if cooldown_seconds is None else cooldown_seconds

    runtime = _get_or_create_runtime(db, account.id)
    last_manual = _normalize_dt(runtime.last_manual_scan_at)
    if cooldown > 0 and last_manual is not None:
        elapsed = (now - last_manual).total_seconds()
        if elapsed < cooldown:
            db.rollback()
            raise RateLimitedError(
                "manual scan is rate limited",
                retry_after_seconds=max(1, math.ceil(cooldown - elapsed)),
            )

    runtime.last_manual_scan_at = now
    return run_detection(db, account, trigger="manual", now=now, policy=policy, sender=sender)


def run_scheduled_sweep(
    db: Session,
    *,
    now: Optional[datetime] = None,
    policy: Optional[LeakPolicy] = None,
    sender: Optional[EmailSender] = None,
    limit: int = SWEEP_BATCH_LIMIT,
) -> SweepResult:
    """
    Scheduled detection over active accounts, least recently scanned first.
    A failing account is recorded and skipped; the rest of the batch still runs.
    """
    now = _normalize_dt(now) or _now()
    policy = policy or load_policy()

    accounts = (
        db.execute(
            select(ConnectedAccount)
            .outerjoin(LeakScanRuntime, LeakScanRuntime.account_id == ConnectedAccount.id)
            .where(ConnectedAccount.is_active.is_(True))
            .order_by(nulls_first(LeakScanRuntime.last_scan_at.asc()), ConnectedAccount.created_at.asc())
            .limit(max(1, int(limit)))
        )
        .scalars()
        .all()
    )

    results: List[SweepAccountResult] = []
    leaks_detected = 0
    for account in accounts:
        try:
            run = run_detection(
                db,
                account,
                trigger="scheduled",
                now=now,
                policy=policy,
                sender=sender,
            )
        except Exception as exc:  # noqa: BLE001 - one account must not stop the sweep
            db.rollback()
            logger.exception("Scheduled leak detection failed for account_id=%s", account.id)
            results.append(
                SweepAccountResult(
                    account_id=account.id,
                    name=account.name,
                    status="error",
                    error=f"{type(exc).__name__}: {exc}",
                )
            )
            continue

        leaks_detected += run.leaks_detected
        results.append(
            SweepAccountResult(
                account_id=account.id,
                name=account.name,
                status="success",
                leak_types=[row.leak_type for row in run.detectors if row.fired],
            )
        )

    failed = sum(1 for row in results if row.status == "error")
    logger.info(
        "Scheduled leak sweep scanned=%s leaks=%s failed=%s", len(results), leaks_detected, failed
    )
    return SweepResult(
        scanned=len(results),
        leaks_detected=leaks_detected,
        failed=failed,
        results=results,
    )
