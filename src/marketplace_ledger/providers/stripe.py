"""Stripe gateway adapter.

Signature: ``Stripe-Signature: t=<unix>,v1=<hex>`` where ``v1`` is
HMAC-SHA256 of ``"{t}.{body}"`` with the endpoint secret. Amounts on
Stripe payloads are already in minor units.
"""

from __future__ import annotations

import hashlib
import hmac
import time
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


class StripeGateway(SandboxGateway):
    """Stripe adapter (sandbox transport)."""

    provider_name = ProviderName.STRIPE
    reference_prefix = "stripe"
    signature_tolerance_seconds = 300

    def __init__(self, webhook_secret: str | None, **kwargs: Any):
        super().__init__(**kwargs)
        self.webhook_secret = webhook_secret

    def verify_webhook_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        now: float | None = None,
    ) -> bool:
        if not self.webhook_secret:
            return False
        header = header_value(headers, "stripe-signature")
        if not header:
            return False

        timestamp: int | None = None
        signatures: list[str] = []
        for item in header.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    return False
            elif key == "v1":
                signatures.append(value)
        if timestamp is None or not signatures:
            return False

        current = time.time() if now is None else now
        if abs(current - timestamp) > self.signature_tolerance_seconds:
            return False

        expected = self._sign(timestamp, body)
        return any(hmac.compare_digest(expected, sig) for sig in signatures)

    def signature_headers(self, body: bytes, timestamp: int | None = None) -> dict[str, str]:
        """Build a valid ``Stripe-Signature`` header (sandbox and tests)."""
        if not self.webhook_secret:
            raise ValueError("webhook_secret is not configured")
        ts = int(time.time()) if timestamp is None else timestamp
        return {"Stripe-Signature": f"t={ts},v1={self._sign(ts, body)}"}

    def _sign(self, timestamp: int, body: bytes) -> str:
        assert self.webhook_secret is not None
        message = f"{timestamp}.".encode() + body
        return hmac.new(self.webhook_secret.encode(), message, hashlib.sha256).hexdigest()

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookNotification:
        event_type = str(payload.get("type") or "")
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = dict(obj.get("metadata") or {})
        common = {
            "provider": self.provider_name,
            "event_id": str(payload.get("id") or ""),
            "event_type": event_type,
            "occurred_at": parse_timestamp(payload.get("created")),
        }

        match event_type:
            case "checkout.session.completed" | "payment_intent.succeeded":
                amount = obj.get("amount_total", obj.get("amount_received", obj.get("amount")))
                kind = classify_charge(metadata)
                amount_minor = int(amount) if amount is not None else None
                currency = _currency(obj.get("currency"))
                return WebhookNotification(
                    kind=kind,
                    reference=read_str(obj.get("payment_intent")) or read_str(obj.get("id")),
                    amount_minor=amount_minor,
                    currency=currency,
                    subscription=(
                        manual_charge_snapshot(metadata, amount_minor=amount_minor, currency=currency)
                        if kind is NotificationKind.SUBSCRIPTION_CHARGE
                        else None
                    ),
                    metadata=metadata,
                    **common,
                )
            case "payment_intent.payment_failed":
                return WebhookNotification(
                    kind=NotificationKind.CHARGE_FAILED,
                    reference=read_str(obj.get("id")),
                    metadata=metadata,
                    **common,
                )
            case "charge.refunded":
                refunded = obj.get("amount_refunded", obj.get("amount"))
                return WebhookNotification(
                    kind=NotificationKind.REFUND,
                    reference=read_str(obj.get("payment_intent")) or read_str(obj.get("id")),
                    amount_minor=int(refunded) if refunded is not None else None,
                    currency=_currency(obj.get("currency")),
                    metadata=metadata,
                    **common,
                )
            case (
                "customer.subscription.created"
                | "customer.subscription.updated"
                | "customer.subscription.deleted"
            ):
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=_subscription_snapshot(obj, metadata),
                    metadata=metadata,
                    **common,
                )
            case "invoice.paid" | "invoice.payment_succeeded":
                sub_metadata = dict(
                    (obj.get("subscription_details") or {}).get("metadata") or metadata
                )
                snapshot = SubscriptionSnapshot(
                    external_subscription_id=read_str(obj.get("subscription")),
                    provider_status="active",
                    scope=read_str(sub_metadata.get("subscription_scope")),
                    owner_id=read_str(sub_metadata.get("owner_id")),
                    plan_code=read_str(sub_metadata.get("plan_code")),
                    external_customer_id=read_str(obj.get("customer")),
                    currency=_currency(obj.get("currency")),
                    amount_minor=_int_or_none(obj.get("amount_paid")),
                    current_period_start=parse_timestamp(obj.get("period_start")),
                    current_period_end=parse_timestamp(obj.get("period_end")),
                )
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHARGE,
                    reference=read_str(obj.get("id")),
                    amount_minor=snapshot.amount_minor,
                    currency=snapshot.currency,
                    subscription=snapshot,
                    metadata=sub_metadata,
                    **common,
                )
            case "invoice.payment_failed":
                sub_metadata = dict(
                    (obj.get("subscription_details") or {}).get("metadata") or metadata
                )
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=SubscriptionSnapshot(
                        external_subscription_id=read_str(obj.get("subscription")),
                        provider_status="past_due",
                        scope=read_str(sub_metadata.get("subscription_scope")),
                        owner_id=read_str(sub_metadata.get("owner_id")),
                        plan_code=read_str(sub_metadata.get("plan_code")),
                    ),
                    metadata=sub_metadata,
                    **common,
                )
            case _:
                return WebhookNotification(kind=NotificationKind.IGNORED, metadata=metadata, **common)


def _currency(value: Any) -> str | None:
    text = read_str(value)
    return text.upper() if text else None


def _int_or_none(value: Any) -> int | None:
    return int(value) if value is not None else None


def _subscription_snapshot(obj: dict[str, Any], metadata: dict[str, Any]) -> SubscriptionSnapshot:
    plan = obj.get("plan") or {}
    return SubscriptionSnapshot(
        external_subscription_id=read_str(obj.get("id")),
        provider_status=str(obj.get("status") or ""),
        scope=read_str(metadata.get("subscription_scope")),
        owner_id=read_str(metadata.get("owner_id")),
        plan_code=read_str(metadata.get("plan_code")),
        external_customer_id=read_str(obj.get("customer")),
        external_plan_id=read_str(plan.get("id")),
        billing_cycle=read_str(plan.get("interval")),
        currency=_currency(plan.get("currency") or obj.get("currency")),
        amount_minor=_int_or_none(plan.get("amount")),
        current_period_start=parse_timestamp(obj.get("current_period_start")),
        current_period_end=parse_timestamp(obj.get("current_period_end")),
        cancel_at_period_end=read_bool(obj.get("cancel_at_period_end")),
        canceled_at=parse_timestamp(obj.get("canceled_at")),
    )
