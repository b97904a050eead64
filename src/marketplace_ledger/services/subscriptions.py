"""Subscription lifecycle.

One implementation for all three scopes. Scope differences are reduced to
the capability flags in ``SCOPE_CAPABILITIES``.

Sources of change:
- Gateway webhooks (upsert by scope + provider + external id)
- Reconciliation polling (SubscriptionReconciler)
- Manual renewal (one-off charge extends ``current_period_end``)
- User cancellation (straight to canceled, regardless of timers)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.database import ensure_utc, insert_ignore, utcnow
from marketplace_ledger.errors import NotFoundError, ValidationError
from marketplace_ledger.models import (
    LIVE_STATUSES,
    SCOPE_CAPABILITIES,
    TERMINAL_STATUSES,
    IdempotencyStatus,
    RenewalMode,
    Subscription,
    SubscriptionScope,
    SubscriptionStatus,
)
from marketplace_ledger.providers import (
    ChargeVerification,
    PaymentGateway,
    ProviderName,
    SubscriptionSnapshot,
)
from marketplace_ledger.services.financial_flows import (
    build_subscription_charge_entry,
    subscription_charge_source_id,
)
from marketplace_ledger.services.idempotency import IdempotencyService, compute_request_hash
from marketplace_ledger.services.journal import JournalService, PostResult

logger = logging.getLogger(__name__)

BILLING_PERIODS: dict[str, timedelta] = {
    "week": timedelta(days=7),
    "weekly": timedelta(days=7),
    "month": timedelta(days=30),
    "monthly": timedelta(days=30),
    "quarterly": timedelta(days=90),
    "year": timedelta(days=365),
    "yearly": timedelta(days=365),
    "annual": timedelta(days=365),
}

MANUAL_RENEWAL_SCOPE = "subscription.manual_renewal"

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


def map_provider_status(raw: str | None) -> SubscriptionStatus | None:
    """Gateway status -> local status. None means unmapped: do not guess.

    Order matters: "cancel" is checked before "past_due" so
    "cancelled_past_due"-style values resolve to canceled.
    """
    value = str(raw or "").strip().lower()
    if not value:
        return None
    if "cancel" in value:
        return SubscriptionStatus.CANCELED
    if "suspend" in value or "past_due" in value or "failed" in value:
        return SubscriptionStatus.PAST_DUE
    if "trial" in value:
        return SubscriptionStatus.TRIALING
    if value in ("active", "completed", "success", "successful"):
        return SubscriptionStatus.ACTIVE
    if "expired" in value:
        return SubscriptionStatus.EXPIRED
    return None


def resolve_scope(value: str | SubscriptionScope | None) -> SubscriptionScope:
    if isinstance(value, SubscriptionScope):
        return value
    try:
        return SubscriptionScope(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown subscription scope: {value!r}")


def capability_flags(scope: SubscriptionScope | str, enabled: bool) -> dict[str, bool]:
    """All paid-capability flags for a scope set to ``enabled``."""
    return {flag: enabled for flag in SCOPE_CAPABILITIES[resolve_scope(scope)]}


def is_manual_renewal_row(row: Subscription) -> bool:
    if row.renewal_mode == RenewalMode.MANUAL_RENEWAL.value:
        return True
    metadata = row.metadata_json or {}
    return metadata.get("renewal_mode") == RenewalMode.MANUAL_RENEWAL.value or metadata.get("manual_renewal") is True


@dataclass(frozen=True)
class SubscriptionUpsert:
    """Outcome of applying a gateway snapshot."""

    subscription: Subscription | None
    action: str  # created / updated / unchanged / stale / unmapped_status

    @property
    def changed(self) -> bool:
        return self.action in ("created", "updated")


@dataclass(frozen=True)
class ManualRenewalResult:
    subscription: Subscription
    journal: PostResult | None
    replayed: bool


class SubscriptionService:
    """Subscription state changes. The caller commits."""

    def __init__(self, db: Session, journal: JournalService | None = None):
        self.db = db
        self.journal = journal or JournalService(db)
        self.idempotency = IdempotencyService(db)

    def get(self, subscription_id: UUID) -> Subscription:
        row = self.db.get(Subscription, subscription_id)
        if row is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return row

    def apply_snapshot(
        self,
        provider: ProviderName,
        snapshot: SubscriptionSnapshot,
        *,
        event_at: datetime | None = None,
        event_type: str | None = None,
    ) -> SubscriptionUpsert:
        """Upsert a provider-recurring subscription from a gateway snapshot.

        Order-tolerant: an event older than ``last_webhook_event_at``
        never regresses the row.
        """
        if not snapshot.external_subscription_id:
            raise ValidationError("Subscription snapshot is missing external_subscription_id")
        mapped = map_provider_status(snapshot.provider_status)

        row = self._find_for_snapshot(provider, snapshot)
        if row is None:
            if mapped is None:
                return SubscriptionUpsert(subscription=None, action="unmapped_status")
            row = self._create_from_snapshot(provider, snapshot, mapped)
            if row.last_webhook_event_at is None:
                self._apply_fields(row, snapshot, mapped, event_at, event_type)
                self.db.flush()
                return SubscriptionUpsert(subscription=row, action="created")

        last_seen = ensure_utc(row.last_webhook_event_at)
        event_at = ensure_utc(event_at)
        if last_seen is not None and event_at is not None and event_at < last_seen:
            logger.info(
                "Ignoring stale %s event for subscription %s", event_type or "subscription", row.id
            )
            return SubscriptionUpsert(subscription=row, action="stale")
        if mapped is None:
            return SubscriptionUpsert(subscription=row, action="unmapped_status")

        changed = self._apply_fields(row, snapshot, mapped, event_at, event_type)
        self.db.flush()
        return SubscriptionUpsert(subscription=row, action="updated" if changed else "unchanged")

    def record_charge(
        self,
        row: Subscription,
        *,
        amount_minor: int | None = None,
        currency: str | None = None,
        period_start: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PostResult | None:
        """Journal the charge for one billing period (once per period).

        ``period_start`` defaults to the row's current period.
        """
        amount = int(amount_minor if amount_minor is not None else row.amount_minor or 0)
        if amount <= 0:
            return None
        period_start = ensure_utc(period_start or row.current_period_start)
        source_id = subscription_charge_source_id(row.id, period_start)
        draft = build_subscription_charge_entry(
            scope=row.scope,
            source_id=source_id,
            owner_id=row.owner_id,
            amount_minor=amount,
            currency=currency or row.currency,
            provider=row.payment_provider,
            metadata={"subscription_id": str(row.id), **(metadata or {})},
        )
        return self.journal.record(draft)

    def activate_manual_renewal(
        self,
        *,
        scope: SubscriptionScope | str,
        owner_id: str,
        plan_code: str,
        provider: ProviderName,
        reference: str | None = None,
        gateway: PaymentGateway | None = None,
        verification: ChargeVerification | None = None,
        billing_cycle: str = "monthly",
        now: datetime | None = None,
    ) -> ManualRenewalResult:
        """Apply a verified one-off charge to a manual-renewal subscription.

        The charge is looked up through ``gateway`` unless the caller
        already holds a ``verification`` (a signature-checked webhook).
        Extends from the current period end when the row is still live,
        otherwise starts a fresh period now.

        Each payment reference is applied at most once, claimed in the
        idempotency store in the same transaction as the extension.
        Re-submitting any already applied reference is a no-op, and one
        reference can never pay a second owner's subscription.

        Raises:
            ValidationError: unverified charge, missing owner/plan, bad cycle
            IdempotencyKeyReusedError: reference already paid another subscription
        """
        scope = resolve_scope(scope)
        if verification is None:
            if gateway is None or not reference:
                raise ValidationError("A payment reference and gateway are required to verify the charge")
            verification = gateway.verify_transaction(reference)
        if not verification.succeeded:
            raise ValidationError(
                f"Payment {verification.reference} is not successful ({verification.status})",
                context={"reference": verification.reference},
            )
        if not owner_id or not plan_code:
            raise ValidationError("owner_id and plan_code are required for manual renewal")
        period = BILLING_PERIODS.get(billing_cycle.lower())
        if period is None:
            raise ValidationError(f"Unsupported billing cycle: {billing_cycle}")

        claim = self.idempotency.claim(
            operation_scope=MANUAL_RENEWAL_SCOPE,
            actor_id=provider.value,
            idempotency_key=verification.reference,
            request_hash=compute_request_hash({"scope": scope.value, "owner_id": owner_id}),
        )
        if claim.replayed:
            applied_to = (claim.stored_payload or {}).get("subscription_id")
            return ManualRenewalResult(subscription=self.get(UUID(applied_to)), journal=None, replayed=True)

        now = now or utcnow()
        row = self.db.scalars(
            select(Subscription)
            .where(
                Subscription.scope == scope.value,
                Subscription.owner_id == owner_id,
                Subscription.payment_provider == provider.value,
                Subscription.renewal_mode == RenewalMode.MANUAL_RENEWAL.value,
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        ).first()

        if row is None:
            row = Subscription(
                scope=scope.value,
                owner_id=owner_id,
                plan_code=plan_code,
                status=SubscriptionStatus.ACTIVE.value,
                payment_provider=provider.value,
                renewal_mode=RenewalMode.MANUAL_RENEWAL.value,
                external_subscription_id=None,
                metadata_json={},
                capability_flags={},
            )
            self.db.add(row)

        current_end = ensure_utc(row.current_period_end)
        live = row.status in LIVE_STATUSES and current_end is not None and current_end > now
        start = current_end if live else now

        row.plan_code = plan_code
        row.status = SubscriptionStatus.ACTIVE.value
        row.billing_cycle = billing_cycle.lower()
        row.currency = verification.currency.upper()
        row.amount_minor = verification.amount_minor
        row.current_period_start = start
        row.current_period_end = start + period
        row.cancel_at_period_end = True
        row.canceled_at = None
        row.capability_flags = capability_flags(scope, True)
        row.metadata_json = {
            **(row.metadata_json or {}),
            "renewal_mode": RenewalMode.MANUAL_RENEWAL.value,
            "last_payment_reference": verification.reference,
        }
        self.db.flush()

        journal = self.record_charge(
            row,
            amount_minor=verification.amount_minor,
            currency=verification.currency,
            metadata={"payment_reference": verification.reference},
        )
        self.idempotency.finalize(
            operation_scope=MANUAL_RENEWAL_SCOPE,
            actor_id=provider.value,
            idempotency_key=verification.reference,
            status=IdempotencyStatus.COMPLETED,
            response_code=200,
            payload={
                "subscription_id": str(row.id),
                "current_period_end": row.current_period_end.isoformat(),
            },
        )
        return ManualRenewalResult(subscription=row, journal=journal, replayed=False)

    def cancel(
        self,
        scope: SubscriptionScope | str,
        subscription_id: UUID,
        *,
        now: datetime | None = None,
    ) -> Subscription:
        """User cancellation: canceled immediately, capabilities revoked."""
        row = self.get(subscription_id)
        if row.scope != resolve_scope(scope).value:
            raise NotFoundError(f"Subscription {subscription_id} not found in {scope}")
        if row.status in TERMINAL_STATUSES:
            return row
        row.status = SubscriptionStatus.CANCELED.value
        row.canceled_at = now or utcnow()
        row.cancel_at_period_end = False
        row.capability_flags = capability_flags(row.scope, False)
        self.db.flush()
        return row

    def expire(self, row: Subscription, *, now: datetime | None = None) -> Subscription:
        """Manual-renewal expiry: status expired, capabilities revoked."""
        now = now or utcnow()
        row.status = SubscriptionStatus.EXPIRED.value
        row.canceled_at = now
        row.cancel_at_period_end = True
        row.capability_flags = capability_flags(row.scope, False)
        row.metadata_json = {
            **(row.metadata_json or {}),
            "renewal_mode": RenewalMode.MANUAL_RENEWAL.value,
            "auto_renew_preference": False,
            "manual_renewal_expired_at": now.isoformat(),
        }
        self.db.flush()
        return row

    def apply_polled_status(
        self,
        row: Subscription,
        mapped: SubscriptionStatus,
        *,
        provider_status: str,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
        external_plan_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Heal a row from gateway polling. Returns True if anything changed."""
        snapshot = SubscriptionSnapshot(
            external_subscription_id=row.external_subscription_id,
            provider_status=provider_status,
            external_plan_id=external_plan_id,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=(
                row.cancel_at_period_end if cancel_at_period_end is None else cancel_at_period_end
            ),
            canceled_at=now or utcnow() if mapped is SubscriptionStatus.CANCELED else None,
        )
        changed = self._apply_fields(row, snapshot, mapped, None, "reconcile.poll")
        if changed:
            row.metadata_json = {**(row.metadata_json or {}), "reconcile_provider_status": provider_status}
        self.db.flush()
        return changed

    def _find_for_snapshot(self, provider: ProviderName, snapshot: SubscriptionSnapshot) -> Subscription | None:
        assert snapshot.external_subscription_id is not None
        query = select(Subscription).where(
            Subscription.payment_provider == provider.value,
            Subscription.external_subscription_id == snapshot.external_subscription_id,
        )
        if snapshot.scope:
            query = query.where(Subscription.scope == resolve_scope(snapshot.scope).value)
        return self.db.scalars(query.limit(1)).first()

    def _create_from_snapshot(
        self,
        provider: ProviderName,
        snapshot: SubscriptionSnapshot,
        mapped: SubscriptionStatus,
    ) -> Subscription:
        scope = resolve_scope(snapshot.scope)
        if not snapshot.owner_id or not snapshot.plan_code:
            raise ValidationError(
                "New subscription requires owner_id and plan_code",
                context={"external_subscription_id": snapshot.external_subscription_id},
            )
        # Concurrent deliveries for a new subscription race on the unique key.
        self.db.execute(
            insert_ignore(self.db, Subscription)
            .values(
                scope=scope.value,
                owner_id=snapshot.owner_id,
                plan_code=snapshot.plan_code,
                status=mapped.value,
                payment_provider=provider.value,
                renewal_mode=RenewalMode.PROVIDER_RECURRING.value,
                external_subscription_id=snapshot.external_subscription_id,
                currency=(snapshot.currency or "USD").upper(),
                amount_minor=snapshot.amount_minor or 0,
                capability_flags={},
                metadata={},
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(
                index_elements=["scope", "payment_provider", "external_subscription_id"]
            )
        )
        row = self.db.scalars(
            select(Subscription)
            .where(
                Subscription.scope == scope.value,
                Subscription.payment_provider == provider.value,
                Subscription.external_subscription_id == snapshot.external_subscription_id,
            )
            .execution_options(populate_existing=True)
        ).one()
        return row

    def _apply_fields(
        self,
        row: Subscription,
        snapshot: SubscriptionSnapshot,
        mapped: SubscriptionStatus,
        event_at: datetime | None,
        event_type: str | None,
    ) -> bool:
        before = (
            row.status,
            ensure_utc(row.current_period_start),
            ensure_utc(row.current_period_end),
            row.cancel_at_period_end,
            row.external_plan_id,
        )
        row.status = mapped.value
        if snapshot.current_period_start is not None:
            row.current_period_start = snapshot.current_period_start
        if snapshot.current_period_end is not None:
            row.current_period_end = snapshot.current_period_end
        row.cancel_at_period_end = bool(snapshot.cancel_at_period_end)
        if snapshot.external_plan_id:
            row.external_plan_id = snapshot.external_plan_id
        if snapshot.external_customer_id:
            row.external_customer_id = snapshot.external_customer_id
        if snapshot.billing_cycle:
            row.billing_cycle = snapshot.billing_cycle.lower()
        if snapshot.amount_minor:
            row.amount_minor = snapshot.amount_minor
        if snapshot.currency:
            row.currency = snapshot.currency.upper()
        if snapshot.plan_code:
            row.plan_code = snapshot.plan_code

        if mapped.value in ENTITLED_STATUSES:
            row.capability_flags = capability_flags(row.scope, True)
        elif mapped.value in TERMINAL_STATUSES:
            row.capability_flags = capability_flags(row.scope, False)
            row.canceled_at = snapshot.canceled_at or row.canceled_at or utcnow()

        if event_at is not None:
            row.last_webhook_event_at = event_at
        if event_type:
            row.metadata_json = {**(row.metadata_json or {}), "last_event_type": event_type}

        after = (
            row.status,
            ensure_utc(row.current_period_start),
            ensure_utc(row.current_period_end),
            row.cancel_at_period_end,
            row.external_plan_id,
        )
        return before != after
