from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from statistics import mean
from typing import Callable, Dict, List, Optional

from backend.app.leaks.policy import LeakPolicy
from backend.app.leaks.schema import (
    CachedAccountState,
    DetectorRunResult,
    DetectorRunSummary,
    InvoiceRow,
    LeakCandidate,
    MetricRow,
    SubscriptionRow,
    severity_from_loss,
)


logger = logging.getLogger(__name__)

FAILED_INVOICE_STATUSES = {"open", "uncollectible"}
ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}
SAMPLE_SIZE = 5


@dataclass(frozen=True)
class DetectorDefinition:
    detector_id: str
    leak_type: str
    runner: Callable[[CachedAccountState, datetime, LeakPolicy], Optional[LeakCandidate]]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _period(now: datetime, policy: LeakPolicy) -> tuple[date, date]:
    return (now - timedelta(days=policy.window_days)).date(), now.date()


def _age_days(created_at: Optional[datetime], now: datetime) -> float:
    created = _as_utc(created_at)
    if created is None:
        return 0.0
    return (now - created).total_seconds() / 86400.0


def _dollars(cents: int) -> str:
    return f"${cents / 100:.0f}"


def _invoices_in_window(invoices: List[InvoiceRow], now: datetime, policy: LeakPolicy) -> List[InvoiceRow]:
    cutoff = now - timedelta(days=policy.window_days)
    rows = [inv for inv in invoices if inv.created_at is not None and _as_utc(inv.created_at) >= cutoff]
    return sorted(rows, key=lambda inv: _as_utc(inv.created_at), reverse=True)


def _snapshots_in_window(snapshots: List[MetricRow], now: datetime, policy: LeakPolicy) -> List[MetricRow]:
    period_start, _ = _period(now, policy)
    rows = [snap for snap in snapshots if snap.snapshot_date >= period_start]
    return sorted(rows, key=lambda snap: snap.snapshot_date)


def _failed_invoices(state: CachedAccountState, now: datetime, policy: LeakPolicy) -> List[InvoiceRow]:
    return [
        inv
        for inv in _invoices_in_window(state.invoices, now, policy)
        if inv.status in FAILED_INVOICE_STATUSES
    ]


def _invoice_sample(invoices: List[InvoiceRow]) -> List[Dict[str, object]]:
    return [
        {
            "invoice_id": inv.invoice_id,
            "status": inv.status,
            "amount_due_cents": inv.amount_due_cents,
            "amount_paid_cents": inv.amount_paid_cents,
            "attempt_count": inv.attempt_count,
            "next_payment_attempt": inv.next_payment_attempt.isoformat() if inv.next_payment_attempt else None,
            "hosted_invoice_url": inv.hosted_invoice_url,
            "created_at": inv.created_at.isoformat() if inv.created_at else None,
        }
        for inv in invoices[:SAMPLE_SIZE]
    ]


def _sum_due(invoices: List[InvoiceRow]) -> int:
    return sum(int(inv.amount_due_cents or 0) for inv in invoices)


def detect_failed_payments(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> Optional[LeakCandidate]:
    failed = _failed_invoices(state, now, policy)
    loss = _sum_due(failed)
    if loss <= 0:
        return None

    period_start, period_end = _period(now, policy)
    return LeakCandidate(
        account_id=state.account_id,
        leak_type="failed_payments",
        period_start=period_start,
        period_end=period_end,
        lost_amount_cents=loss,
        recoverable_amount_cents=round(loss * policy.failed_payments_recoverable_ratio),
        severity=severity_from_loss(loss),
        confidence=policy.failed_payments_confidence,
        title="Failed payments are leaking revenue",
        summary=(
            f"You have {len(failed)} open/uncollectible invoices in the last {policy.window_days} days, "
            f"representing ~{_dollars(loss)} at risk."
        ),
        recommended_action=(
            "Improve dunning: enable smart retries, card update reminders, and in-app prompts. "
            "Track recovery weekly."
        ),
        evidence={
            "failed_invoice_count": len(failed),
            "sample_invoices": _invoice_sample(failed),
        },
    )


def detect_recovery_gap(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> Optional[LeakCandidate]:
    threshold = policy.recovery_gap_stale_days
    stuck = [
        inv
        for inv in _failed_invoices(state, now, policy)
        if _age_days(inv.created_at, now) >= threshold
    ]
    loss = _sum_due(stuck)
    if loss <= 0:
        return None

    period_start, period_end = _period(now, policy)
    return LeakCandidate(
        account_id=state.account_id,
        leak_type="recovery_gap",
        period_start=period_start,
        period_end=period_end,
        lost_amount_cents=loss,
        recoverable_amount_cents=round(loss * policy.recovery_gap_recoverable_ratio),
        severity=severity_from_loss(loss),
        confidence=policy.recovery_gap_confidence,
        title="Recovery gap: failed invoices are not being recovered",
        summary=(
            f"You have {len(stuck)} failed invoices older than {threshold} days. "
            "This usually indicates weak retry + reminder flow."
        ),
        recommended_action=(
            "Add a 3-step dunning sequence (email + in-app), verify retry rules, enable card updater, "
            "and pause access until payment is updated."
        ),
        evidence={
            "stuck_days_threshold": threshold,
            "stuck_invoice_count": len(stuck),
            "sample_invoices": _invoice_sample(stuck),
        },
    )


def detect_churn_spike(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> Optional[LeakCandidate]:
    snaps = _snapshots_in_window(state.snapshots, now, policy)
    if len(snaps) < policy.churn_spike_min_snapshots:
        return None

    recent_n = policy.churn_spike_recent_days
    recent = snaps[-recent_n:]
    baseline = snaps[-(recent_n + policy.churn_spike_baseline_days):-recent_n]
    if len(baseline) < policy.churn_spike_min_baseline_snapshots:
        return None

    recent_churn = mean(float(s.churn_rate or 0.0) for s in recent)
    baseline_churn = mean(float(s.churn_rate or 0.0) for s in baseline)
    if not (
        baseline_churn > 0
        and recent_churn >= baseline_churn * policy.churn_spike_multiplier
        and recent_churn >= policy.churn_spike_floor_pct
    ):
        return None

    latest_mrr = float(snaps[-1].mrr or 0.0)
    # mrr is in major units, loss is stored in minor units
    loss = max(0, round(latest_mrr * (recent_churn - baseline_churn) / 100 * 100))

    period_start, period_end = _period(now, policy)
    return LeakCandidate(
        account_id=state.account_id,
        leak_type="churn_spike",
        period_start=period_start,
        period_end=period_end,
        lost_amount_cents=loss,
        recoverable_amount_cents=round(loss * policy.churn_spike_recoverable_ratio),
        severity=severity_from_loss(loss),
        confidence=policy.churn_spike_confidence,
        title="Churn spike detected",
        summary=(
            f"Your churn rate ({recent_n}d avg) is ~{recent_churn:.1f}% vs baseline ~{baseline_churn:.1f}%. "
            "This indicates a sudden retention issue."
        ),
        recommended_action=(
            "Investigate which plan/cohort churned. Review recent product changes, pricing updates, "
            "and payment failures. Trigger save-offers for at-risk cancels."
        ),
        evidence={
            "recent_churn_avg_pct": round(recent_churn, 4),
            "baseline_churn_avg_pct": round(baseline_churn, 4),
            "latest_mrr": latest_mrr,
            "recent_window": {"start": recent[0].snapshot_date.isoformat(), "end": recent[-1].snapshot_date.isoformat()},
            "baseline_window": {
                "start": baseline[0].snapshot_date.isoformat(),
                "end": baseline[-1].snapshot_date.isoformat(),
            },
        },
    )


def detect_silent_churn(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> Optional[LeakCandidate]:
    snaps = _snapshots_in_window(state.snapshots, now, policy)
    window = policy.silent_churn_window_days
    if len(snaps) < window:
        return None

    recent = snaps[-window:]
    start_nrr = float(recent[0].net_revenue_retention or 0.0)
    end_nrr = float(recent[-1].net_revenue_retention or 0.0)
    if not (start_nrr > 0 and end_nrr > 0 and end_nrr < start_nrr - policy.silent_churn_nrr_drop_pts):
        return None

    latest_mrr = float(snaps[-1].mrr or 0.0)
    loss = max(0, round(latest_mrr * (start_nrr - end_nrr) / 100 * 100))

    period_start, period_end = _period(now, policy)
    return LeakCandidate(
        account_id=state.account_id,
        leak_type="silent_churn",
        period_start=period_start,
        period_end=period_end,
        lost_amount_cents=loss,
        recoverable_amount_cents=round(loss * policy.silent_churn_recoverable_ratio),
        severity=severity_from_loss(loss),
        confidence=policy.silent_churn_confidence,
        title="Possible silent churn / untracked revenue loss",
        summary=(
            f"Your NRR dropped from ~{start_nrr:.0f}% to ~{end_nrr:.0f}% in the last {window} days. "
            "This often indicates downgrades, proration issues, or silent churn."
        ),
        recommended_action=(
            "Enable subscription event tracking (upgrades/downgrades). Review plan changes, proration "
            "invoices, and unpaid subscriptions to explain the drop."
        ),
        evidence={
            "nrr_start_pct": start_nrr,
            "nrr_end_pct": end_nrr,
            "latest_mrr": latest_mrr,
        },
    )


def detect_expansion_opportunity(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> Optional[LeakCandidate]:
    active: List[SubscriptionRow] = [
        sub
        for sub in state.subscriptions
        if sub.status in ACTIVE_SUBSCRIPTION_STATUSES and int(sub.mrr_amount_cents or 0) > 0
    ]
    if len(active) < policy.expansion_min_active_subscriptions:
        return None

    lowest = min(int(sub.mrr_amount_cents) for sub in active)
    long_tenure = [
        sub
        for sub in active
        if int(sub.mrr_amount_cents) == lowest
        and _age_days(sub.created_at, now) >= policy.expansion_min_tenure_days
    ]
    if len(long_tenure) < policy.expansion_min_long_tenure:
        return None

    current_mrr = sum(int(sub.mrr_amount_cents) for sub in long_tenure)
    potential = round(current_mrr * policy.expansion_upgrade_share * policy.expansion_uplift)
    if potential < policy.expansion_floor_cents:
        return None

    period_start, period_end = _period(now, policy)
    return LeakCandidate(
        account_id=state.account_id,
        leak_type="expansion_opportunity",
        period_start=period_start,
        period_end=period_end,
        lost_amount_cents=potential,
        recoverable_amount_cents=potential,
        severity=severity_from_loss(potential),
        confidence=policy.expansion_confidence,
        title="Expansion opportunity: long-tenure customers on lowest tier",
        summary=(
            f"{len(long_tenure)} long-tenure customers are still on your lowest tier. "
            f"A small upsell campaign could unlock ~{_dollars(potential)}/month."
        ),
        recommended_action=(
            "Identify power users on the lowest tier and offer a clear upgrade path (feature gating, "
            "usage-based tier, annual discount). Add in-app upgrade prompts."
        ),
        evidence={
            "lowest_tier_mrr_cents": lowest,
            "lowest_tier_price_ids": sorted({sub.price_id for sub in long_tenure if sub.price_id}),
            "long_tenure_low_tier_count": len(long_tenure),
            "estimated_current_mrr_cents": current_mrr,
            "estimated_potential_mrr_cents": potential,
        },
    )


DETECTOR_DEFINITIONS: List[DetectorDefinition] = [
    DetectorDefinition("detect_failed_payments", "failed_payments", detect_failed_payments),
    DetectorDefinition("detect_recovery_gap", "recovery_gap", detect_recovery_gap),
    DetectorDefinition("detect_churn_spike", "churn_spike", detect_churn_spike),
    DetectorDefinition("detect_silent_churn", "silent_churn", detect_silent_churn),
    DetectorDefinition("detect_expansion_opportunity", "expansion_opportunity", detect_expansion_opportunity),
]


def run_leak_detectors_with_summary(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
    *,
    detectors: Optional[List[DetectorDefinition]] = None,
) -> DetectorRunSummary:
    now = _as_utc(now)
    candidates: List[LeakCandidate] = []
    results: List[DetectorRunResult] = []

    for detector in detectors if detectors is not None else DETECTOR_DEFINITIONS:
        try:
            candidate = detector.runner(state, now, policy)
        except Exception as exc:
            # one broken detector must not take the others down
            logger.exception(
                "Leak detector %s failed for account_id=%s", detector.detector_id, state.account_id
            )
            results.append(
                DetectorRunResult(
                    detector_id=detector.detector_id,
                    leak_type=detector.leak_type,
                    ran=False,
                    fired=False,
                    severity=None,
                    error=f"{type(exc).__name__}: {exc}",
                )
            )
            continue

        results.append(
            DetectorRunResult(
                detector_id=detector.detector_id,
                leak_type=detector.leak_type,
                ran=True,
                fired=candidate is not None,
                severity=candidate.severity if candidate else None,
            )
        )
        if candidate is not None:
            candidates.append(candidate)

    return DetectorRunSummary(candidates=candidates, detectors=results)


def run_leak_detectors(
    state: CachedAccountState,
    now: datetime,
    policy: LeakPolicy,
) -> List[LeakCandidate]:
    return run_leak_detectors_with_summary(state, now, policy).candidates
