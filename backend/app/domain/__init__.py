"""Domain contracts and shared types."""

from backend.app.domain.contracts import (  # noqa: F401
    DetectionRunContract,
    DetectorResultContract,
    LeakActionStateOut,
    LeakActionUpdate,
    LeakContract,
    NotificationContract,
    RecoveryTimelineItem,
    RecoveryTimelineLeak,
    RecoveryTotals,
    StripeEventData,
    StripeEventEnvelope,
    SweepAccountResult,
    SweepResult,
    WebhookResult,
)
