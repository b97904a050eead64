"""Paystack gateway adapter.

Signature: ``x-paystack-signature`` is HMAC-SHA512 (hex) of the raw body
keyed by the secret key. Paystack amounts are already in minor units
(kobo, pesewas, cents).
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping

from marketplace_ledger.providers.base import (
    NotificationKind,
    ProviderName,
    SubscriptionSnapshot,
    WebhookNotification,
    classify_charge,
    header_value,
    manual_charge_snapshot,
    parse_timestamp,
    read_bool,
    read_str,
)
from marketplace_ledger.providers.sandbox import SandboxGateway

SUBSCRIPTION_EVENTS = frozenset({
    "subscription.create",
    "subscription.disable",
    "subscription.not_renew",
    "subscription.expiring_cards",
})


class PaystackGateway(SandboxGateway):
    """Paystack adapter (sandbox transport)."""

    provider_name = ProviderName.PAYSTACK
    reference_prefix = "pstk"

    def __init__(self, secret_key: str | None, **kwargs: Any):
        super().__init__(**kwargs)
        self.secret_key = secret_key

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.secret_key:
            return False
        signature = header_value(headers, "x-paystack-signature")
        if not signature:
            return False
        return hmac.compare_digest(self._sign(body), signature.lower())

    def signature_headers(self, body: bytes) -> dict[str, str]:
        if not self.secret_key:
            raise ValueError("secret_key is not configured")
        return {"x-paystack-signature": self._sign(body)}

    def _sign(self, body: bytes) -> str:
        assert self.secret_key is not None
        return hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookNotification:
        event_type = str(payload.get("event") or "")
        data = payload.get("data") or {}
        metadata = dict(data.get("metadata") or {}) if isinstance(data.get("metadata"), dict) else {}
        common = {
            "provider": self.provider_name,
            "event_id": str(data.get("id") or data.get("reference") or ""),
            "event_type": event_type,
            "occurred_at": parse_timestamp(data.get("paid_at") or data.get("created_at")),
        }
        amount_minor = _int_or_none(data.get("amount"))
        currency = read_str(data.get("currency"))

        match event_type:
            case "charge.success":
                kind = classify_charge(metadata)
                return WebhookNotification(
                    kind=kind,
                    reference=read_str(data.get("reference")),
                    amount_minor=amount_minor,
                    currency=currency,
                    provider_fee_minor=_int_or_none(data.get("fees")),
                    subscription=(
                        manual_charge_snapshot(metadata, amount_minor=amount_minor, currency=currency)
                        if kind is NotificationKind.SUBSCRIPTION_CHARGE
                        else None
                    ),
                    metadata=metadata,
                    **common,
                )
            case "charge.failed":
                return WebhookNotification(
                    kind=NotificationKind.CHARGE_FAILED,
                    reference=read_str(data.get("reference")),
                    metadata=metadata,
                    **common,
                )
            case "refund.processed":
                return WebhookNotification(
                    kind=NotificationKind.REFUND,
                    reference=read_str(data.get("transaction_reference")),
                    amount_minor=amount_minor,
                    currency=currency,
                    metadata=metadata,
                    **common,
                )
            case event if event in SUBSCRIPTION_EVENTS:
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=_subscription_snapshot(data, metadata),
                    metadata=metadata,
                    **common,
                )
            case "invoice.update" | "invoice.create" if read_bool(data.get("paid")):
                sub = data.get("subscription") or {}
                snapshot = SubscriptionSnapshot(
                    external_subscription_id=read_str(sub.get("subscription_code")),
                    provider_status=str(sub.get("status") or "active"),
                    scope=read_str(metadata.get("subscription_scope")),
                    owner_id=read_str(metadata.get("owner_id")),
                    plan_code=read_str(metadata.get("plan_code")),
                    currency=currency,
                    amount_minor=amount_minor,
                    current_period_start=parse_timestamp(data.get("period_start")),
                    current_period_end=parse_timestamp(data.get("period_end")),
                )
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHARGE,
                    reference=read_str(data.get("invoice_code")),
                    amount_minor=amount_minor,
                    currency=currency,
                    subscription=snapshot,
                    metadata=metadata,
                    **common,
                )
            case _:
                return WebhookNotification(kind=NotificationKind.IGNORED, metadata=metadata, **common)


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(round(float(value)))


def _subscription_snapshot(data: dict[str, Any], metadata: dict[str, Any]) -> SubscriptionSnapshot:
    plan = data.get("plan") or {}
    customer = data.get("customer") or {}
    status = str(data.get("status") or "")
    return SubscriptionSnapshot(
        external_subscription_id=read_str(data.get("subscription_code")),
        provider_status=status,
        scope=read_str(metadata.get("subscription_scope")),
        owner_id=read_str(metadata.get("owner_id")),
        plan_code=read_str(metadata.get("plan_code")),
        external_customer_id=read_str(customer.get("customer_code")),
        external_plan_id=read_str(plan.get("plan_code")),
        billing_cycle=read_str(plan.get("interval")),
        currency=read_str(plan.get("currency")),
        amount_minor=_int_or_none(data.get("amount") or plan.get("amount")),
        current_period_start=parse_timestamp(data.get("createdAt") or data.get("created_at")),
        current_period_end=parse_timestamp(data.get("next_payment_date")),
        cancel_at_period_end=status.lower() == "non-renewing",
        canceled_at=parse_timestamp(data.get("cancelledAt")),
    )
