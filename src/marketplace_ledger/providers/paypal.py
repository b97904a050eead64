"""PayPal gateway adapter.

Signature: ``paypal-transmission-sig`` is HMAC-SHA256 (hex) over
``"{transmission_id}|{transmission_time}|{webhook_id}|{crc32(body)}"``,
the message PayPal's own verification endpoint signs. PayPal amounts
are major-unit decimal strings.

Subscriptions carry ``custom_id`` as ``"{scope}:{owner_id}:{plan_code}"``.
"""

from __future__ import annotations

import hashlib
import hmac
import zlib
from datetime import datetime, timezone
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
    read_str,
    to_minor,
)
from marketplace_ledger.providers.sandbox import SandboxGateway

SUBSCRIPTION_EVENTS = frozenset({
    "BILLING.SUBSCRIPTION.CREATED",
    "BILLING.SUBSCRIPTION.ACTIVATED",
    "BILLING.SUBSCRIPTION.UPDATED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.EXPIRED",
})


class PayPalGateway(SandboxGateway):
    """PayPal adapter (sandbox transport)."""

    provider_name = ProviderName.PAYPAL
    reference_prefix = "paypal"

    def __init__(self, webhook_id: str | None, webhook_secret: str | None, **kwargs: Any):
        super().__init__(**kwargs)
        self.webhook_id = webhook_id
        self.webhook_secret = webhook_secret

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_id or not self.webhook_secret:
            return False
        transmission_id = header_value(headers, "paypal-transmission-id")
        transmission_time = header_value(headers, "paypal-transmission-time")
        signature = header_value(headers, "paypal-transmission-sig")
        if not transmission_id or not transmission_time or not signature:
            return False
        expected = self._sign(transmission_id, transmission_time, body)
        return hmac.compare_digest(expected, signature)

    def signature_headers(
        self,
        body: bytes,
        transmission_id: str = "sandbox-transmission",
        transmission_time: str | None = None,
    ) -> dict[str, str]:
        """Build valid PayPal transmission headers (sandbox and tests)."""
        if not self.webhook_id or not self.webhook_secret:
            raise ValueError("webhook_id and webhook_secret must be configured")
        sent_at = transmission_time or datetime.now(timezone.utc).isoformat()
        return {
            "paypal-transmission-id": transmission_id,
            "paypal-transmission-time": sent_at,
            "paypal-transmission-sig": self._sign(transmission_id, sent_at, body),
        }

    def _sign(self, transmission_id: str, transmission_time: str, body: bytes) -> str:
        assert self.webhook_secret is not None
        crc = zlib.crc32(body) & 0xFFFFFFFF
        message = f"{transmission_id}|{transmission_time}|{self.webhook_id}|{crc}"
        return hmac.new(self.webhook_secret.encode(), message.encode(), hashlib.sha256).hexdigest()

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookNotification:
        event_type = str(payload.get("event_type") or "")
        resource = payload.get("resource") or {}
        metadata = dict(resource.get("metadata") or {})
        common = {
            "provider": self.provider_name,
            "event_id": str(payload.get("id") or ""),
            "event_type": event_type,
            "occurred_at": parse_timestamp(payload.get("create_time")),
        }
        amount = resource.get("amount") or {}

        match event_type:
            case "PAYMENT.CAPTURE.COMPLETED":
                fee = ((resource.get("seller_receivable_breakdown") or {}).get("paypal_fee") or {})
                kind = classify_charge(metadata)
                amount_minor = to_minor(amount.get("value"))
                currency = read_str(amount.get("currency_code"))
                return WebhookNotification(
                    kind=kind,
                    reference=_capture_reference(resource),
                    amount_minor=amount_minor,
                    currency=currency,
                    provider_fee_minor=to_minor(fee.get("value")),
                    subscription=(
                        manual_charge_snapshot(metadata, amount_minor=amount_minor, currency=currency)
                        if kind is NotificationKind.SUBSCRIPTION_CHARGE
                        else None
                    ),
                    metadata=metadata,
                    **common,
                )
            case "PAYMENT.CAPTURE.DENIED":
                return WebhookNotification(
                    kind=NotificationKind.CHARGE_FAILED,
                    reference=_capture_reference(resource),
                    metadata=metadata,
                    **common,
                )
            case "PAYMENT.CAPTURE.REFUNDED":
                return WebhookNotification(
                    kind=NotificationKind.REFUND,
                    reference=_capture_reference(resource),
                    amount_minor=to_minor(amount.get("value")),
                    currency=read_str(amount.get("currency_code")),
                    metadata=metadata,
                    **common,
                )
            case event if event in SUBSCRIPTION_EVENTS:
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=_subscription_snapshot(resource, str(resource.get("status") or "")),
                    metadata=metadata,
                    **common,
                )
            case "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=_subscription_snapshot(resource, "PAYMENT_FAILED"),
                    metadata=metadata,
                    **common,
                )
            case "PAYMENT.SALE.COMPLETED":
                sale_amount = resource.get("amount") or {}
                scope, owner_id, plan_code = _split_custom_id(resource.get("custom"))
                snapshot = SubscriptionSnapshot(
                    external_subscription_id=read_str(resource.get("billing_agreement_id")),
                    provider_status="ACTIVE",
                    scope=scope,
                    owner_id=owner_id,
                    plan_code=plan_code,
                    currency=read_str(sale_amount.get("currency")),
                    amount_minor=to_minor(sale_amount.get("total")),
                )
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHARGE,
                    reference=read_str(resource.get("id")),
                    amount_minor=snapshot.amount_minor,
                    currency=snapshot.currency,
                    subscription=snapshot,
                    metadata=metadata,
                    **common,
                )
            case _:
                return WebhookNotification(kind=NotificationKind.IGNORED, metadata=metadata, **common)


def _capture_reference(resource: dict[str, Any]) -> str | None:
    related = ((resource.get("supplementary_data") or {}).get("related_ids") or {})
    return (
        read_str(resource.get("custom_id"))
        or read_str(related.get("order_id"))
        or read_str(resource.get("id"))
    )


def _split_custom_id(value: Any) -> tuple[str | None, str | None, str | None]:
    parts = (read_str(value) or "").split(":")
    parts += [""] * (3 - len(parts))
    scope, owner_id, plan_code = parts[:3]
    return scope or None, owner_id or None, plan_code or None


def _subscription_snapshot(resource: dict[str, Any], provider_status: str) -> SubscriptionSnapshot:
    scope, owner_id, plan_code = _split_custom_id(resource.get("custom_id"))
    billing = resource.get("billing_info") or {}
    last_payment = billing.get("last_payment") or {}
    last_amount = last_payment.get("amount") or {}
    return SubscriptionSnapshot(
        external_subscription_id=read_str(resource.get("id")),
        provider_status=provider_status,
        scope=scope,
        owner_id=owner_id,
        plan_code=plan_code,
        external_customer_id=read_str((resource.get("subscriber") or {}).get("payer_id")),
        external_plan_id=read_str(resource.get("plan_id")),
        currency=read_str(last_amount.get("currency_code")),
        amount_minor=to_minor(last_amount.get("value")),
        current_period_start=parse_timestamp(last_payment.get("time") or resource.get("start_time")),
        current_period_end=parse_timestamp(billing.get("next_billing_time")),
        canceled_at=(
            parse_timestamp(resource.get("status_update_time"))
            if provider_status.upper() == "CANCELLED"
            else None
        ),
    )
