"""Webhook processing.

    verify signature -> parse -> claim -> dispatch -> mark processed | failed

The claim is committed before any domain work, so a redelivery of an
event we already recorded is acknowledged without reapplying effects.
Domain work for one event runs in one database transaction: the journal
write and everything derived from it commit together or not at all.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.errors import (
    AuthorizationError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from marketplace_ledger.models import (
    DropInCreditPurchase,
    FlowType,
    Transaction,
    TransactionStatus,
    WebhookStatus,
)
from marketplace_ledger.providers import (
    ChargeVerification,
    GatewayRegistry,
    NotificationKind,
    ProviderName,
    WebhookNotification,
    resolve_provider,
)
from marketplace_ledger.providers.base import read_bool, read_str
from marketplace_ledger.services.settlements import SettlementService
from marketplace_ledger.services.subscriptions import SubscriptionService
from marketplace_ledger.services.webhook_ledger import WebhookLedgerService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """Acknowledgement returned to the gateway."""

    provider: str
    event_id: str
    status: str
    replay: bool = False
    kind: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": True,
            "replay": self.replay,
            "status": self.status,
            "provider": self.provider,
            "event_id": self.event_id,
        }


def parse_media_ids(value: Any) -> list[str]:
    """``media_ids`` arrive as a list or a comma string (gateway metadata is flat)."""
    if not value:
        return []
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            decoded = value.split(",")
        value = decoded if isinstance(decoded, list) else [decoded]
    return [str(v).strip() for v in value if str(v).strip()]


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class WebhookProcessor:
    """Turns verified gateway notifications into ledger writes."""

    def __init__(
        self,
        db: Session,
        *,
        gateways: GatewayRegistry,
        settlements: SettlementService | None = None,
        subscriptions: SubscriptionService | None = None,
    ):
        self.db = db
        self.gateways = gateways
        self.ledger = WebhookLedgerService(db)
        self.settlements = settlements or SettlementService(db)
        self.subscriptions = subscriptions or SubscriptionService(db, journal=self.settlements.journal)

    def handle(self, provider: str | ProviderName, body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """Verify, claim and process one delivery.

        Raises:
            ValidationError: unknown provider or malformed payload
            AuthorizationError: signature check failed
            ServiceUnavailableError: no adapter configured for the provider
        """
        provider = resolve_provider(provider)
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ServiceUnavailableError(f"{provider.value} webhooks are not configured")

        if not gateway.verify_webhook_signature(body, headers):
            logger.warning("Rejected %s webhook with invalid signature", provider.value)
            raise AuthorizationError("Invalid webhook signature", context={"provider": provider.value})

        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        notification = gateway.parse_webhook(payload)
        if not notification.event_id:
            raise ValidationError("Webhook event has no id", context={"provider": provider.value})

        claim = self.ledger.claim(
            provider=provider.value,
            external_event_id=notification.event_id,
            event_type=notification.event_type,
            payload=payload,
        )
        self.db.commit()

        if not claim.should_process:
            logger.info("Webhook replay %s/%s (%s)", provider.value, notification.event_id, claim.status)
            return WebhookOutcome(
                provider=provider.value,
                event_id=notification.event_id,
                status=claim.status,
                replay=True,
                kind=notification.kind.value,
            )
        return self._process(claim.row_id, notification)

    def replay_failed(self, limit: int = 50) -> list[WebhookOutcome]:
        """Re-dispatch stored payloads of failed events (operator remediation)."""
        outcomes = []
        for row in self.ledger.list_failed(limit):
            row_id, provider_value, event_id = row.id, row.provider, row.external_event_id
            if not self.ledger.reclaim(row):
                continue
            self.db.commit()
            try:
                gateway = self.gateways[resolve_provider(provider_value)]
                notification = gateway.parse_webhook(dict(row.payload or {}))
            except Exception as exc:
                logger.exception("Cannot re-parse stored webhook %s/%s", provider_value, event_id)
                self.ledger.mark_failed(row_id, str(exc))
                self.db.commit()
                outcomes.append(
                    WebhookOutcome(
                        provider=provider_value,
                        event_id=event_id,
                        status=WebhookStatus.FAILED.value,
                        error=str(exc),
                    )
                )
                continue
            outcomes.append(self._process(row_id, notification))
        return outcomes

    def _process(self, row_id: UUID, notification: WebhookNotification) -> WebhookOutcome:
        provider = notification.provider.value
        try:
            self.dispatch(notification)
            self.ledger.mark_processed(row_id)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception(
                "Webhook %s/%s (%s) failed", provider, notification.event_id, notification.event_type
            )
            self.ledger.mark_failed(row_id, str(exc) or exc.__class__.__name__)
            self.db.commit()
            return WebhookOutcome(
                provider=provider,
                event_id=notification.event_id,
                status=WebhookStatus.FAILED.value,
                kind=notification.kind.value,
                error=str(exc),
            )
        return WebhookOutcome(
            provider=provider,
            event_id=notification.event_id,
            status=WebhookStatus.PROCESSED.value,
            kind=notification.kind.value,
        )

    def dispatch(self, notification: WebhookNotification) -> None:
        """Apply one notification. The caller commits."""
        match notification.kind:
            case NotificationKind.CHECKOUT_COMPLETED:
                self._on_checkout_completed(notification)
            case NotificationKind.CHARGE_FAILED:
                self._on_charge_failed(notification)
            case NotificationKind.REFUND:
                self._on_refund(notification)
            case NotificationKind.SUBSCRIPTION_CHANGED:
                self._on_subscription_changed(notification)
            case NotificationKind.SUBSCRIPTION_CHARGE:
                self._on_subscription_charge(notification)
            case NotificationKind.DROP_IN_PURCHASE:
                self._on_drop_in_purchase(notification)
            case NotificationKind.IGNORED:
                logger.debug("Ignoring %s event %s", notification.provider.value, notification.event_type)
            case _:
                raise ValueError(f"Unhandled notification kind: {notification.kind}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, n: WebhookNotification) -> None:
        reference = self._require_reference(n)
        tx = self._find_transaction(n.provider, reference)
        if tx is None:
            tx = self._create_transaction(n, reference)

        if tx.status == TransactionStatus.REFUNDED.value:
            logger.info("Checkout for refunded transaction %s ignored", tx.id)
            return
        if not tx.gross_amount_minor and n.amount_minor:
            tx.gross_amount_minor = n.amount_minor
        if n.provider_fee_minor:
            tx.provider_fee_minor = n.provider_fee_minor
        tx.status = TransactionStatus.SUCCEEDED.value
        self.db.flush()
        self.settlements.settle_transaction(tx, metadata={"webhook_event_id": n.event_id})

    def _on_charge_failed(self, n: WebhookNotification) -> None:
        if not n.reference:
            return
        tx = self._find_transaction(n.provider, n.reference)
        if tx is not None and tx.status == TransactionStatus.PENDING.value:
            tx.status = TransactionStatus.FAILED.value
        purchase = self._find_drop_in(n.provider, n.reference)
        if purchase is not None and purchase.status == "pending":
            purchase.status = "failed"
        self.db.flush()

    def _on_refund(self, n: WebhookNotification) -> None:
        reference = self._require_reference(n)
        tx = self._find_transaction(n.provider, reference)
        if tx is None:
            raise NotFoundError(
                f"No transaction for refunded charge {reference}",
                context={"provider": n.provider.value, "reference": reference},
            )
        if tx.status not in (TransactionStatus.SUCCEEDED.value, TransactionStatus.REFUNDED.value):
            raise ValidationError(
                f"Refund for unsettled transaction {tx.id} ({tx.status})",
                context={"transaction_id": str(tx.id)},
            )
        tx.status = TransactionStatus.REFUNDED.value
        self.db.flush()
        self.settlements.refund_transaction(tx, metadata={"webhook_event_id": n.event_id})

    def _on_subscription_changed(self, n: WebhookNotification) -> None:
        if n.subscription is None:
            raise ValidationError("Subscription event carries no subscription")
        self.subscriptions.apply_snapshot(
            n.provider,
            n.subscription,
            event_at=n.occurred_at,
            event_type=n.event_type,
        )

    def _on_subscription_charge(self, n: WebhookNotification) -> None:
        snapshot = n.subscription
        if snapshot is None:
            raise ValidationError("Subscription charge carries no subscription")

        if snapshot.external_subscription_id is None:
            # One-off charge paying a manual-renewal period
            reference = self._require_reference(n)
            self.subscriptions.activate_manual_renewal(
                scope=snapshot.scope,
                owner_id=snapshot.owner_id or "",
                plan_code=snapshot.plan_code or "",
                provider=n.provider,
                verification=ChargeVerification(
                    reference=reference,
                    succeeded=True,
                    status="success",
                    amount_minor=n.amount_minor or 0,
                    currency=n.currency or snapshot.currency or "USD",
                    provider_fee_minor=n.provider_fee_minor or 0,
                    metadata=dict(n.metadata),
                ),
                billing_cycle=snapshot.billing_cycle or "monthly",
            )
            return

        upsert = self.subscriptions.apply_snapshot(
            n.provider, snapshot, event_at=n.occurred_at, event_type=n.event_type
        )
        if upsert.subscription is None:
            raise ValidationError(
                f"Cannot record charge for unknown subscription {snapshot.external_subscription_id}"
            )
        self.subscriptions.record_charge(
            upsert.subscription,
            amount_minor=n.amount_minor,
            currency=n.currency,
            period_start=snapshot.current_period_start,
            metadata={
                "external_subscription_id": snapshot.external_subscription_id,
                "invoice_reference": n.reference,
                "webhook_event_id": n.event_id,
            },
        )

    def _on_drop_in_purchase(self, n: WebhookNotification) -> None:
        reference = self._require_reference(n)
        purchase = self._find_drop_in(n.provider, reference)
        if purchase is None:
            attendee_id = read_str(n.metadata.get("attendee_id"))
            if not attendee_id:
                raise NotFoundError(
                    f"No drop-in purchase for charge {reference}",
                    context={"provider": n.provider.value, "reference": reference},
                )
            self.db.execute(
                insert_ignore(self.db, DropInCreditPurchase)
                .values(
                    attendee_id=attendee_id,
                    provider=n.provider.value,
                    provider_reference=reference,
                    credits=_int(n.metadata.get("credits")),
                    amount_minor=n.amount_minor or 0,
                    currency=(n.currency or "USD").upper(),
                    status="pending",
                    created_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["provider", "provider_reference"])
            )
            purchase = self._find_drop_in(n.provider, reference)
            assert purchase is not None

        if purchase.status != "active":
            purchase.status = "active"
            purchase.activated_at = utcnow()
        self.db.flush()
        self.settlements.record_drop_in(purchase, metadata={"webhook_event_id": n.event_id})

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_reference(self, n: WebhookNotification) -> str:
        if not n.reference:
            raise ValidationError(
                f"{n.event_type} carries no payment reference",
                context={"provider": n.provider.value, "event_id": n.event_id},
            )
        return n.reference

    def _find_transaction(self, provider: ProviderName, reference: str) -> Transaction | None:
        return self.db.scalars(
            select(Transaction)
            .where(Transaction.provider == provider.value, Transaction.provider_reference == reference)
            .execution_options(populate_existing=True)
        ).one_or_none()

    def _find_drop_in(self, provider: ProviderName, reference: str) -> DropInCreditPurchase | None:
        return self.db.scalars(
            select(DropInCreditPurchase)
            .where(
                DropInCreditPurchase.provider == provider.value,
                DropInCreditPurchase.provider_reference == reference,
            )
            .execution_options(populate_existing=True)
        ).one_or_none()

    def _create_transaction(self, n: WebhookNotification, reference: str) -> Transaction:
        """Checkout that arrived before (or without) its pending transaction row."""
        metadata = n.metadata
        creator_id = read_str(metadata.get("creator_id"))
        if not creator_id:
            raise NotFoundError(
                f"No transaction for charge {reference}",
                context={"provider": n.provider.value, "reference": reference},
            )
        tip_id = read_str(metadata.get("tip_id"))
        is_tip = bool(tip_id) or str(metadata.get("type") or "").lower() == "tip"
        tx_metadata: dict[str, Any] = {
            "media_ids": parse_media_ids(metadata.get("media_ids")),
            "unlock_all": read_bool(metadata.get("unlock_all")),
        }
        if tip_id:
            tx_metadata["tip_id"] = tip_id
        gross = n.amount_minor or 0
        platform_fee = _int(metadata.get("platform_fee_minor"))

        self.db.execute(
            insert_ignore(self.db, Transaction)
            .values(
                provider=n.provider.value,
                provider_reference=reference,
                flow_type=FlowType.TIP.value if is_tip else FlowType.PHOTO_PURCHASE.value,
                creator_id=creator_id,
                buyer_id=read_str(metadata.get("buyer_id")),
                event_id=read_str(metadata.get("event_id")),
                status=TransactionStatus.PENDING.value,
                currency=(n.currency or "USD").upper(),
                gross_amount_minor=gross,
                platform_fee_minor=platform_fee,
                provider_fee_minor=n.provider_fee_minor or 0,
                net_amount_minor=_int(metadata.get("net_amount_minor")),
                metadata=tx_metadata,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["provider", "provider_reference"])
        )
        tx = self._find_transaction(n.provider, reference)
        assert tx is not None
        return tx
