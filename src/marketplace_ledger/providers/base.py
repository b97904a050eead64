"""Base protocol and types for payment gateway providers.

All gateway adapters must implement the PaymentGateway protocol. The
engines only ever see these normalized types, never wire payloads.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Protocol


class ProviderName(str, enum.Enum):
    """Closed set of supported gateways."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    FLUTTERWAVE = "flutterwave"
    PAYSTACK = "paystack"


class NotificationKind(str, enum.Enum):
    """What a webhook means to the ledger, independent of gateway."""

    CHECKOUT_COMPLETED = "checkout_completed"
    CHARGE_FAILED = "charge_failed"
    REFUND = "refund"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    DROP_IN_PURCHASE = "drop_in_purchase"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Gateway view of a subscription carried by a webhook."""

    external_subscription_id: str | None
    provider_status: str
    scope: str | None = None
    owner_id: str | None = None
    plan_code: str | None = None
    external_customer_id: str | None = None
    external_plan_id: str | None = None
    billing_cycle: str | None = None
    currency: str | None = None
    amount_minor: int | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None


@dataclass(frozen=True)
class WebhookNotification:
    """Normalized, signature-verified webhook."""

    provider: ProviderName
    event_id: str
    event_type: str
    kind: NotificationKind
    occurred_at: datetime | None = None
    reference: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    provider_fee_minor: int | None = None
    subscription: SubscriptionSnapshot | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeVerification:
    """Result of verifying a one-off charge with the gateway."""

    reference: str
    succeeded: bool
    status: str
    amount_minor: int = 0
    currency: str = "USD"
    provider_fee_minor: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionStatusResult:
    """Result of polling a gateway for a subscription's status."""

    external_subscription_id: str
    status: str
    external_plan_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class TransferRequest:
    """Payout transfer instruction."""

    payout_id: str
    idempotency_key: str
    amount_minor: int
    currency: str
    destination: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransferResult:
    """Result of submitting a transfer."""

    provider_reference: str
    accepted: bool
    message: str = ""


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    Each gateway has its own adapter implementing this protocol. The
    engines use these adapters without knowing gateway specifics.
    """

    provider_name: ProviderName

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the webhook signature over the raw body.

        Must be called before any byte of the payload is trusted.
        """
        ...

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookNotification:
        """Normalize a verified webhook payload."""
        ...

    def verify_transaction(self, reference: str) -> ChargeVerification:
        """Look up a one-off charge by reference."""
        ...

    def get_subscription_status(self, external_subscription_id: str) -> SubscriptionStatusResult | None:
        """Fetch authoritative subscription status. None if unknown."""
        ...

    def create_transfer(self, request: TransferRequest) -> TransferResult:
        """Submit a payout transfer.

        Raises:
            GatewayError: if the gateway rejects or cannot be reached.
        """
        ...


# ---------------------------------------------------------------------------
# Payload helpers shared by the adapters
# ---------------------------------------------------------------------------


def to_minor(value: Any) -> int | None:
    """Major-unit decimal (``"12.99"``, ``12.99``) to minor units."""
    if value is None or value == "":
        return None
    amount = Decimal(str(value)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_timestamp(value: Any) -> datetime | None:
    """Epoch seconds or ISO-8601 to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def read_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def read_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup over any mapping."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


# Charge metadata ``type`` values that mark a drop-in credit purchase.
DROP_IN_METADATA_TYPES = frozenset({"drop_in_credit_purchase", "drop_in_upload"})


def classify_charge(metadata: Mapping[str, Any]) -> NotificationKind:
    """Decide what a successful one-off charge paid for."""
    charge_type = str(metadata.get("type") or "").strip().lower()
    if charge_type in DROP_IN_METADATA_TYPES:
        return NotificationKind.DROP_IN_PURCHASE
    if read_str(metadata.get("subscription_scope")):
        return NotificationKind.SUBSCRIPTION_CHARGE
    return NotificationKind.CHECKOUT_COMPLETED


def manual_charge_snapshot(
    metadata: Mapping[str, Any],
    *,
    amount_minor: int | None,
    currency: str | None,
) -> SubscriptionSnapshot:
    """Snapshot for a one-off charge that pays a manual-renewal period."""
    return SubscriptionSnapshot(
        external_subscription_id=None,
        provider_status="active",
        scope=read_str(metadata.get("subscription_scope")),
        owner_id=read_str(metadata.get("owner_id")),
        plan_code=read_str(metadata.get("plan_code")),
        billing_cycle=read_str(metadata.get("billing_cycle")),
        currency=currency,
        amount_minor=amount_minor,
    )
