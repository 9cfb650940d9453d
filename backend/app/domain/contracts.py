from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEventEnvelope(BaseModel):
    """Minimum shape of a Stripe event we are willing to process."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: int
    livemode: bool = False
    data: StripeEventData

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class LeakContract(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
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
    evidence: Dict[str, Any]
    created_at: Optional[datetime] = None


class NotificationContract(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    leak_id: Optional[str] = None
    leak_type: str
    channel: str
    severity: str
    title: str
    message: str
    provider_message_id: Optional[str] = None
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class RecoveryTimelineLeak(BaseModel):
    id: str
    leak_type: str
    title: str
    severity: str


class RecoveryTimelineItem(BaseModel):
    id: str
    invoice_id: str
    recovered_amount_cents: int
    recovered_at: datetime
    leak_type: Optional[str] = None
    leak_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    leak: Optional[RecoveryTimelineLeak] = None


class RecoveryTotals(BaseModel):
    days: int
    total_recovered_cents: int
    totals: Dict[str, int] = Field(default_factory=dict)


class DetectorResultContract(BaseModel):
    detector_id: str
    leak_type: str
    ran: bool
    fired: bool
    severity: Optional[str] = None
    error: Optional[str] = None


class DetectionRunContract(BaseModel):
    account_id: str
    trigger: str
    leaks_detected: int
    leaks_changed: int
    notifications_created: int
    leak_ids: List[str] = Field(default_factory=list)
    detectors: List[DetectorResultContract] = Field(default_factory=list)


class WebhookResult(BaseModel):
    ok: bool = True
    processed: bool
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    redelivery: bool = False
    reason: Optional[str] = None
    recovery_event_id: Optional[str] = None
    detection: Optional[DetectionRunContract] = None


class SweepAccountResult(BaseModel):
    account_id: str
    name: str
    status: str  # success | error
    leak_types: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class SweepResult(BaseModel):
    scanned: int
    leaks_detected: int
    failed: int
    results: List[SweepAccountResult] = Field(default_factory=list)


class LeakActionStateOut(BaseModel):
    account_id: str
    done: Dict[str, bool] = Field(default_factory=dict)


class LeakActionUpdate(BaseModel):
    action_key: str = Field(..., min_length=1, max_length=120)
    leak_type: str = Field(..., min_length=1, max_length=40)
    is_done: bool = False
