"""Flutterwave gateway adapter.

Signature: the ``verif-hash`` header must equal the secret hash set on
the dashboard. Flutterwave amounts are major-unit numbers; event ids are
``"{event}:{data.id or tx_ref}"`` because Flutterwave reuses ``data.id``
across event types.
"""

from __future__ import annotations

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
    read_str,
    to_minor,
)
from marketplace_ledger.providers.sandbox import SandboxGateway


class FlutterwaveGateway(SandboxGateway):
    """Flutterwave adapter (sandbox transport)."""

    provider_name = ProviderName.FLUTTERWAVE
    reference_prefix = "flw"

    def __init__(self, secret_hash: str | None, **kwargs: Any):
        super().__init__(**kwargs)
        self.secret_hash = secret_hash

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.secret_hash:
            return False
        provided = header_value(headers, "verif-hash")
        if not provided:
            return False
        return hmac.compare_digest(provided.encode(), self.secret_hash.encode())

    def signature_headers(self, body: bytes) -> dict[str, str]:
        if not self.secret_hash:
            raise ValueError("secret_hash is not configured")
        return {"verif-hash": self.secret_hash}

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookNotification:
        event_type = str(payload.get("event") or "")
        data = payload.get("data") or {}
        metadata = dict(data.get("meta") or payload.get("meta_data") or {})
        reference = read_str(data.get("tx_ref"))
        common = {
            "provider": self.provider_name,
            "event_id": f"{event_type}:{data.get('id') or reference or 'unknown'}",
            "event_type": event_type,
            "occurred_at": parse_timestamp(data.get("created_at")),
        }
        status = str(data.get("status") or "").lower()
        amount_minor = to_minor(data.get("amount"))
        currency = read_str(data.get("currency"))

        match event_type:
            case "charge.completed" if status == "successful":
                kind = classify_charge(metadata)
                return WebhookNotification(
                    kind=kind,
                    reference=reference,
                    amount_minor=amount_minor,
                    currency=currency,
                    provider_fee_minor=to_minor(data.get("app_fee")),
                    subscription=(
                        manual_charge_snapshot(metadata, amount_minor=amount_minor, currency=currency)
                        if kind is NotificationKind.SUBSCRIPTION_CHARGE
                        else None
                    ),
                    metadata=metadata,
                    **common,
                )
            case "charge.completed":
                return WebhookNotification(
                    kind=NotificationKind.CHARGE_FAILED,
                    reference=reference,
                    metadata=metadata,
                    **common,
                )
            case "refund.completed":
                return WebhookNotification(
                    kind=NotificationKind.REFUND,
                    reference=read_str(data.get("tx_ref") or data.get("flw_ref")),
                    amount_minor=to_minor(data.get("amount_refunded") or data.get("amount")),
                    currency=currency,
                    metadata=metadata,
                    **common,
                )
            case "subscription.cancelled":
                return WebhookNotification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    subscription=SubscriptionSnapshot(
                        external_subscription_id=read_str(data.get("id")),
                        provider_status="cancelled",
                        scope=read_str(metadata.get("subscription_scope")),
                        owner_id=read_str(metadata.get("owner_id")),
                        plan_code=read_str(metadata.get("plan_code")),
                        external_plan_id=read_str((data.get("plan") or {}).get("id")),
                        canceled_at=parse_timestamp(data.get("created_at")),
                    ),
                    metadata=metadata,
                    **common,
                )
            case _:
                return WebhookNotification(kind=NotificationKind.IGNORED, metadata=metadata, **common)
