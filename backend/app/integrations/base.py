from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


ProviderName = str


@dataclass(frozen=True)
class WebhookVerificationResult:
    ok: bool
    reason: str


@dataclass(frozen=True)
class NormalizedInvoice:
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: str
    paid: bool
    amount_due_cents: int
    amount_paid_cents: int
    attempt_count: int
    next_payment_attempt: Optional[datetime]
    hosted_invoice_url: Optional[str]
    created_at: Optional[datetime]
    paid_at: Optional[datetime]


@dataclass(frozen=True)
class NormalizedSubscription:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    mrr_amount_cents: int
    interval: Optional[str]
    currency: str
    price_id: Optional[str]
    plan_name: Optional[str]
    quantity: int
    created_at: Optional[datetime]
    canceled_at: Optional[datetime]
    ended_at: Optional[datetime]


class IntegrationAdapter(Protocol):
    provider: ProviderName

    def verify_webhook(
        self,
        headers: Dict[str, str],
        body: bytes,
        *,
        secret: str,
        now: Optional[datetime] = None,
    ) -> WebhookVerificationResult:
        ...

    def normalize_invoice(self, obj: Dict[str, Any]) -> NormalizedInvoice:
        ...

    def normalize_subscription(self, obj: Dict[str, Any]) -> NormalizedSubscription:
        ...
