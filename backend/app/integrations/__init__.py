from __future__ import annotations

from backend.app.integrations.base import (
    IntegrationAdapter,
    NormalizedInvoice,
    NormalizedSubscription,
    ProviderName,
    WebhookVerificationResult,
)
from backend.app.integrations.stripe import StripeAdapter


ADAPTERS = {
    "stripe": StripeAdapter(),
}


def get_adapter(provider: ProviderName) -> IntegrationAdapter:
    key = (provider or "").strip().lower()
    adapter = ADAPTERS.get(key)
    if not adapter:
        raise ValueError(f"unsupported provider: {provider}")
    return adapter


__all__ = [
    "ADAPTERS",
    "IntegrationAdapter",
    "NormalizedInvoice",
    "NormalizedSubscription",
    "ProviderName",
    "WebhookVerificationResult",
    "get_adapter",
]
