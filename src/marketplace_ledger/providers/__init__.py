"""Payment gateway adapters.

The gateway set is closed: ``build_gateway`` matches every
``ProviderName`` explicitly, so adding a gateway means adding a case.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace_ledger.errors import ValidationError
from marketplace_ledger.providers.base import (
    ChargeVerification,
    NotificationKind,
    PaymentGateway,
    ProviderName,
    SubscriptionSnapshot,
    SubscriptionStatusResult,
    TransferRequest,
    TransferResult,
    WebhookNotification,
)
from marketplace_ledger.providers.flutterwave import FlutterwaveGateway
from marketplace_ledger.providers.paypal import PayPalGateway
from marketplace_ledger.providers.paystack import PaystackGateway
from marketplace_ledger.providers.sandbox import SandboxGateway
from marketplace_ledger.providers.stripe import StripeGateway

if TYPE_CHECKING:
    from marketplace_ledger.config import Settings

GatewayRegistry = dict[ProviderName, PaymentGateway]


def resolve_provider(name: str | ProviderName | None) -> ProviderName:
    """Parse a provider name, rejecting anything outside the closed set."""
    if isinstance(name, ProviderName):
        return name
    try:
        return ProviderName(str(name or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported payment provider: {name!r}",
            context={"provider": name},
        )


def build_gateway(provider: ProviderName, settings: Settings, **kwargs: Any) -> PaymentGateway:
    """Construct the adapter for one provider from settings."""
    match provider:
        case ProviderName.STRIPE:
            return StripeGateway(settings.stripe_webhook_secret, **kwargs)
        case ProviderName.PAYPAL:
            return PayPalGateway(
                settings.paypal_webhook_id, settings.paypal_webhook_secret, **kwargs
            )
        case ProviderName.FLUTTERWAVE:
            return FlutterwaveGateway(settings.flutterwave_secret_hash, **kwargs)
        case ProviderName.PAYSTACK:
            return PaystackGateway(settings.paystack_secret_key, **kwargs)
        case _:
            raise ValueError(f"Unhandled provider: {provider}")


def build_gateways(settings: Settings, **kwargs: Any) -> GatewayRegistry:
    """One adapter per provider."""
    return {provider: build_gateway(provider, settings, **kwargs) for provider in ProviderName}


__all__ = [
    "ChargeVerification",
    "FlutterwaveGateway",
    "GatewayRegistry",
    "NotificationKind",
    "PayPalGateway",
    "PaymentGateway",
    "PaystackGateway",
    "ProviderName",
    "SandboxGateway",
    "StripeGateway",
    "SubscriptionSnapshot",
    "SubscriptionStatusResult",
    "TransferRequest",
    "TransferResult",
    "WebhookNotification",
    "build_gateway",
    "build_gateways",
    "resolve_provider",
]
