from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

LeakType = Literal[
    "failed_payments",
    "recovery_gap",
    "churn_spike",
    "silent_churn",
    "expansion_opportunity",
]
Severity = Literal["low", "medium", "high", "critical"]

LEAK_TYPES: tuple[str, ...] = (
    "failed_payments",
    "recovery_gap",
    "churn_spike",
    "silent_churn",
    "expansion_opportunity",
)

SEVERITY_RANK: Dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}

# (minimum monthly loss in minor units, severity), checked top-down
SEVERITY_BANDS: tuple[tuple[int, str], ...] = (
    (5_000_000, "critical"),
    (1_000_000, "high"),
    (200_000, "medium"),
)

CONFIDENCE_MIN = 0.2
CONFIDENCE_MAX = 0.95


def severity_from_loss(loss_cents: int) -> str:
    for floor, severity in SEVERITY_BANDS:
        if loss_cents >= floor:
            return severity
    return "low"


def clamp_confidence(value: float) -> float:
    return max(CONFIDENCE_MIN, min(CONFIDENCE_MAX, float(value)))


@dataclass(frozen=True)
class InvoiceRow:
    invoice_id: str
    status: str
    amount_due_cents: int
    amount_paid_cents: int
    attempt_count: int
    next_payment_attempt: Optional[datetime]
    hosted_invoice_url: Optional[str]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionRow:
    subscription_id: str
    status: str
    mrr_amount_cents: int
    price_id: Optional[str]
    plan_name: Optional[str]
    created_at: Optional[datetime]
    canceled_at: Optional[datetime]


@dataclass(frozen=True)
class MetricRow:
    snapshot_date: date
    mrr: float
    churn_rate: float
    net_revenue_retention: float


@dataclass(frozen=True)
class CachedAccountState:
    """Everything the detectors are allowed to see for one account."""

    account_id: str
    invoices: List[InvoiceRow] = field(default_factory=list)
    subscriptions: List[SubscriptionRow] = field(default_factory=list)
    snapshots: List[MetricRow] = field(default_factory=list)


@dataclass
class LeakCandidate:
    account_id: str
    leak_type: str
    period_start: date
    period_end: date
    lost_amount_cents: int
    recoverable_amount_cents: int
    severity: str
    confidence: float
    title: str
    summary: str
    recommended_action: str
    evidence: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PreviousLeak:
    id: str
    severity: str
    lost_amount_cents: int
    recoverable_amount_cents: int
    created_at: Optional[datetime]


@dataclass(frozen=True)
class LeakChange:
    leak_id: str
    candidate: LeakCandidate
    changed: bool
    previous: Optional[PreviousLeak]


@dataclass(frozen=True)
class DetectorRunResult:
    detector_id: str
    leak_type: str
    ran: bool
    fired: bool
    severity: Optional[str]
    error: Optional[str] = None


@dataclass(frozen=True)
class DetectorRunSummary:
    candidates: List[LeakCandidate]
    detectors: List[DetectorRunResult]
