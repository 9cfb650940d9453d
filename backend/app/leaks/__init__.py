from .detectors import (
    DETECTOR_DEFINITIONS,
    detect_churn_spike,
    detect_expansion_opportunity,
    detect_failed_payments,
    detect_recovery_gap,
    detect_silent_churn,
    run_leak_detectors,
    run_leak_detectors_with_summary,
)
from .policy import LeakPolicy, load_policy
from .schema import (
    CachedAccountState,
    LeakCandidate,
    LeakChange,
    clamp_confidence,
    severity_from_loss,
)

__all__ = [
    "CachedAccountState",
    "DETECTOR_DEFINITIONS",
    "LeakCandidate",
    "LeakChange",
    "LeakPolicy",
    "clamp_confidence",
    "detect_churn_spike",
    "detect_expansion_opportunity",
    "detect_failed_payments",
    "detect_recovery_gap",
    "detect_silent_churn",
    "load_policy",
    "run_leak_detectors",
    "run_leak_detectors_with_summary",
    "severity_from_loss",
]
