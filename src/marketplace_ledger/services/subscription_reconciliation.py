"""Subscription reconciliation sweep.

Runs on a schedule. For every live subscription row:

1. Manual-renewal rows advance their own lifecycle from
   ``current_period_end``: reminders inside the configured windows, then
   expiry once the grace period has passed.
2. Provider-recurring rows are polled against the gateway and healed
   when the mapped status or period bounds drifted (missed webhooks).

Each row is its own unit of work: errors are recorded per row and the
sweep carries on. Safe to re-run at any frequency; notifications are
deduplicated by stable keys and expired rows leave the live set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.database import ensure_utc, utcnow
from marketplace_ledger.models import Subscription, SubscriptionScope, SubscriptionStatus
from marketplace_ledger.policies import ManualRenewalPolicy
from marketplace_ledger.providers import GatewayRegistry, ProviderName, resolve_provider
from marketplace_ledger.services.notifications import NotificationEmitter
from marketplace_ledger.services.subscriptions import (
    SubscriptionService,
    is_manual_renewal_row,
    map_provider_status,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200

EXPIRED_TEMPLATE = "subscription_expired"
REMINDER_TEMPLATE = "subscription_renewal_reminder"

# Vault storage has no trial period.
SWEEP_STATUSES: dict[SubscriptionScope, tuple[str, ...]] = {
    SubscriptionScope.CREATOR: ("active", "trialing", "past_due"),
    SubscriptionScope.ATTENDEE: ("active", "trialing", "past_due"),
    SubscriptionScope.VAULT: ("active", "past_due"),
}


def expiry_dedupe_key(scope: str, subscription_id: Any, period_end: datetime) -> str:
    return f"manual_renewal_expired:{scope}:{subscription_id}:{period_end.date().isoformat()}"


def reminder_dedupe_key(scope: str, subscription_id: Any, window: timedelta) -> str:
    hours = int(window.total_seconds() // 3600)
    return f"manual_renewal_reminder:{scope}:{subscription_id}:{hours}"


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return min(max(int(limit), 1), MAX_LIMIT)


@dataclass
class RowOutcome:
    scope: str
    subscription_id: str
    action: str
    changed: bool = False
    provider: str | None = None
    provider_status: str | None = None
    mapped_status: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class SubscriptionReconcileResult:
    """Counts and per-row details for one sweep."""

    dry_run: bool
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "details": self.details,
        }


class SubscriptionReconciler:
    """Manual-renewal lifecycle plus gateway drift healing.

    Commits after each row so one failure never rolls back another row's
    progress. In dry-run mode nothing is written or emitted.
    """

    def __init__(
        self,
        db: Session,
        *,
        gateways: GatewayRegistry,
        emitter: NotificationEmitter,
        policy: ManualRenewalPolicy | None = None,
        subscriptions: SubscriptionService | None = None,
    ):
        self.db = db
        self.gateways = gateways
        self.emitter = emitter
        self.policy = policy or ManualRenewalPolicy()
        self.subscriptions = subscriptions or SubscriptionService(db)

    def run(
        self,
        *,
        provider: str | ProviderName | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> SubscriptionReconcileResult:
        provider_filter = resolve_provider(provider) if provider else None
        limit = clamp_limit(limit)
        now = now or utcnow()
        result = SubscriptionReconcileResult(dry_run=dry_run)

        for scope in SubscriptionScope:
            for row_id in self._candidate_ids(scope, provider_filter, limit):
                result.processed += 1
                try:
                    row = self.db.get(Subscription, row_id, populate_existing=True)
                    if row is None:
                        continue
                    outcome = self._reconcile_row(row, now=now, dry_run=dry_run)
                    if dry_run:
                        self.db.rollback()
                    else:
                        self.db.commit()
                except Exception as exc:
                    self.db.rollback()
                    logger.exception("Subscription reconcile failed for %s %s", scope.value, row_id)
                    result.errors += 1
                    result.details.append(
                        RowOutcome(
                            scope=scope.value,
                            subscription_id=str(row_id),
                            action="error",
                            reason=str(exc),
                        ).to_dict()
                    )
                    continue

                if outcome.changed:
                    result.updated += 1
                else:
                    result.skipped += 1
                result.details.append(outcome.to_dict())

        logger.info(
            "Subscription reconcile done: processed=%d updated=%d skipped=%d errors=%d dry_run=%s",
            result.processed, result.updated, result.skipped, result.errors, dry_run,
        )
        return result

    def _candidate_ids(self, scope: SubscriptionScope, provider: ProviderName | None, limit: int) -> list:
        query = (
            select(Subscription.id)
            .where(
                Subscription.scope == scope.value,
                Subscription.status.in_(SWEEP_STATUSES[scope]),
            )
            .order_by(Subscription.updated_at, Subscription.id)
            .limit(limit)
        )
        if provider is not None:
            query = query.where(Subscription.payment_provider == provider.value)
        return list(self.db.scalars(query))

    def _reconcile_row(self, row: Subscription, *, now: datetime, dry_run: bool) -> RowOutcome:
        if is_manual_renewal_row(row):
            return self._advance_manual_renewal(row, now=now, dry_run=dry_run)
        return self._poll_gateway(row, now=now, dry_run=dry_run)

    def _advance_manual_renewal(self, row: Subscription, *, now: datetime, dry_run: bool) -> RowOutcome:
        outcome = RowOutcome(
            scope=row.scope,
            subscription_id=str(row.id),
            action="manual_renewal_noop",
            provider=row.payment_provider,
        )
        period_end = ensure_utc(row.current_period_end)
        if period_end is None:
            outcome.action = "skipped"
            outcome.reason = "Missing current period end"
            return outcome

        until_expiry = period_end - now

        if until_expiry <= -self.policy.grace_period:
            outcome.action = "manual_renewal_expired"
            outcome.changed = True
            if dry_run:
                return outcome
            self.subscriptions.expire(row, now=now)
            self.emitter.emit(
                user_id=row.owner_id,
                template_code=EXPIRED_TEMPLATE,
                dedupe_key=expiry_dedupe_key(row.scope, row.id, period_end),
                metadata={
                    "scope": row.scope,
                    "subscription_id": str(row.id),
                    "plan_code": row.plan_code,
                    "current_period_end": period_end.isoformat(),
                },
            )
            return outcome

        if until_expiry <= timedelta(0):
            outcome.reason = "Within grace period"
            return outcome

        window = next((w for w in self.policy.reminder_windows if until_expiry <= w), None)
        if window is None:
            return outcome

        hours = int(window.total_seconds() // 3600)
        outcome.action = f"manual_renewal_reminder_{hours}h"
        if dry_run:
            outcome.changed = True
            return outcome
        sent = self.emitter.emit(
            user_id=row.owner_id,
            template_code=REMINDER_TEMPLATE,
            dedupe_key=reminder_dedupe_key(row.scope, row.id, window),
            metadata={
                "scope": row.scope,
                "subscription_id": str(row.id),
                "plan_code": row.plan_code,
                "current_period_end": period_end.isoformat(),
                "reminder_window_hours": hours,
            },
        )
        outcome.changed = sent.sent
        if not sent.sent:
            outcome.reason = "Reminder already sent"
        return outcome

    def _poll_gateway(self, row: Subscription, *, now: datetime, dry_run: bool) -> RowOutcome:
        outcome = RowOutcome(
            scope=row.scope,
            subscription_id=str(row.id),
            action="skipped",
            provider=row.payment_provider,
        )
        if not row.external_subscription_id:
            outcome.reason = "No external subscription id"
            return outcome

        provider = resolve_provider(row.payment_provider)
        gateway = self.gateways.get(provider)
        if gateway is None:
            outcome.reason = f"No gateway configured for {provider.value}"
            return outcome

        remote = gateway.get_subscription_status(row.external_subscription_id)
        if remote is None:
            outcome.reason = "Provider status lookup failed"
            return outcome

        outcome.provider_status = remote.status
        mapped = map_provider_status(remote.status)
        if mapped is None:
            outcome.reason = "Unmapped provider status"
            return outcome
        outcome.mapped_status = mapped.value

        drifted = (
            mapped.value != row.status
            or _differs(remote.current_period_start, row.current_period_start)
            or _differs(remote.current_period_end, row.current_period_end)
        )
        if not drifted:
            outcome.action = "in_sync"
            return outcome

        outcome.action = "provider_status_synced"
        outcome.changed = True
        if dry_run:
            return outcome
        self.subscriptions.apply_polled_status(
            row,
            mapped,
            provider_status=remote.status,
            current_period_start=remote.current_period_start,
            current_period_end=remote.current_period_end,
            cancel_at_period_end=remote.cancel_at_period_end,
            external_plan_id=remote.external_plan_id,
            now=now,
        )
        if mapped is SubscriptionStatus.CANCELED:
            logger.info("Subscription %s canceled at gateway, healed locally", row.id)
        return outcome


def _differs(remote: datetime | None, local: datetime | None) -> bool:
    """Only a reported bound can drift; missing remote bounds are ignored."""
    if remote is None:
        return False
    return ensure_utc(remote) != ensure_utc(local)
