"""
Tunable leak heuristics.

These numbers are product policy rather than derived statistics. The silent churn
and expansion constants in particular have no validation behind them and are kept
for parity with the numbers customers already see.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
import os
from typing import Mapping, Optional


logger = logging.getLogger(__name__)

ENV_PREFIX = "LEAK_POLICY_"


@dataclass(frozen=True)
class LeakPolicy:
    window_days: int = 30

    failed_payments_recoverable_ratio: float = 0.65
    failed_payments_confidence: float = 0.82

    recovery_gap_stale_days: int = 7
    recovery_gap_recoverable_ratio: float = 0.45
    recovery_gap_confidence: float = 0.78

    churn_spike_min_snapshots: int = 14
    churn_spike_recent_days: int = 7
    churn_spike_baseline_days: int = 14
    churn_spike_min_baseline_snapshots: int = 7
    churn_spike_multiplier: float = 2.0
    churn_spike_floor_pct: float = 2.0
    churn_spike_recoverable_ratio: float = 0.25
    churn_spike_confidence: float = 0.70

    silent_churn_window_days: int = 7
    silent_churn_nrr_drop_pts: float = 10.0
    silent_churn_recoverable_ratio: float = 0.15
    silent_churn_confidence: float = 0.55

    expansion_min_active_subscriptions: int = 10
    expansion_min_tenure_days: int = 180
    expansion_min_long_tenure: int = 5
    expansion_upgrade_share: float = 0.5
    expansion_uplift: float = 0.2
    expansion_floor_cents: int = 50_000
    expansion_confidence: float = 0.50

    attribution_lookback_days: int = 30


def load_policy(environ: Optional[Mapping[str, str]] = None) -> LeakPolicy:
    """Defaults, overridden by LEAK_POLICY_<FIELD_NAME> environment variables."""
    env = os.environ if environ is None else environ
    policy = LeakPolicy()
    overrides = {}
    for item in fields(LeakPolicy):
        raw = env.get(f"{ENV_PREFIX}{item.name.upper()}")
        if raw is None or not raw.strip():
            continue
        caster = int if isinstance(getattr(policy, item.name), int) else float
        try:
            overrides[item.name] = caster(raw.strip())
        except ValueError:
            logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, item.name.upper(), raw)
    return replace(policy, **overrides) if overrides else policy
