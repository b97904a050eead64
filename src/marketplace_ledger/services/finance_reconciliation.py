"""Finance reconciliation sweep.

Finds succeeded money movements with no journal entry, heals them with
an ``auto_healed`` marker, and records one issue per gap. Issue keys are
stable per (issue_type, source_kind, source_id), so repeated runs update
the same issue rather than adding new ones.

Checks (each bounded by ``limit``):
- succeeded transactions without a settlement entry
- refunded transactions without a refund entry
- active drop-in credit purchases without an entry
- recently-billed paid subscriptions without a charge for the current period
- completed payouts without a payout entry
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.models import (
    DropInCreditPurchase,
    FlowType,
    Payout,
    PayoutStatus,
    ReconciliationIssue,
    ReconciliationRun,
    Subscription,
    Transaction,
    TransactionStatus,
    Wallet,
)
from marketplace_ledger.policies import ReconciliationPolicy
from marketplace_ledger.services.financial_flows import subscription_charge_source_id
from marketplace_ledger.services.journal import JournalService
from marketplace_ledger.services.settlements import SettlementService, settlement_source
from marketplace_ledger.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Gap:
    """A money movement with no journal entry."""

    issue_type: str
    source_kind: str
    source_id: str
    severity: str
    details: dict[str, Any]
    heal: Callable[[dict[str, Any]], object]

    @property
    def issue_key(self) -> str:
        return f"{self.issue_type}:{self.source_kind}:{self.source_id}"


@dataclass
class FinanceReconcileResult:
    run_id: UUID
    run_key: str
    dry_run: bool
    limit: int
    checked: int = 0
    issues: int = 0
    auto_healed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "run_key": self.run_key,
            "dry_run": self.dry_run,
            "limit": self.limit,
            "checked": self.checked,
            "issues": self.issues,
            "auto_healed": self.auto_healed,
        }


def make_run_key(now: datetime) -> str:
    return f"finance-reconcile:{now.isoformat()}:{secrets.token_hex(3)}"


class FinanceReconciler:
    """Journal gap detection and healing.

    Each gap is its own unit of work: heal, upsert the issue, commit. A
    heal that raises rolls back that gap only and leaves its issue open.
    """

    def __init__(
        self,
        db: Session,
        *,
        policy: ReconciliationPolicy | None = None,
        settlements: SettlementService | None = None,
        subscriptions: SubscriptionService | None = None,
    ):
        self.db = db
        self.policy = policy or ReconciliationPolicy()
        self.journal = JournalService(db)
        self.settlements = settlements or SettlementService(db, journal=self.journal)
        self.subscriptions = subscriptions or SubscriptionService(db, journal=self.journal)

    def run(
        self,
        *,
        limit: int | None = None,
        dry_run: bool = False,
        trigger_source: str = "cron",
        now: datetime | None = None,
    ) -> FinanceReconcileResult:
        now = now or utcnow()
        limit = self.policy.clamp(limit)
        run = ReconciliationRun(
            run_key=make_run_key(now),
            trigger_source=trigger_source,
            status="processing",
            metadata_json={"dry_run": dry_run, "limit": limit},
            started_at=now,
        )
        self.db.add(run)
        self.db.commit()

        result = FinanceReconcileResult(run_id=run.id, run_key=run.run_key, dry_run=dry_run, limit=limit)
        checks = (
            self._settlement_gaps,
            self._refund_gaps,
            self._drop_in_gaps,
            self._subscription_charge_gaps,
            self._payout_gaps,
        )
        for check in checks:
            for gap in check(limit, now, result):
                healed = False if dry_run else self._heal(gap, run.id)
                self._upsert_issue(gap, run.id, healed=healed, dry_run=dry_run, now=now)
                self.db.commit()
                result.issues += 1
                if healed:
                    result.auto_healed += 1

        run.status = "completed"
        run.completed_at = utcnow()
        run.metadata_json = {
            "dry_run": dry_run,
            "limit": limit,
            "checked": result.checked,
            "issues": result.issues,
            "auto_healed": result.auto_healed,
        }
        self.db.commit()
        logger.info(
            "Finance reconcile %s: checked=%d issues=%d auto_healed=%d dry_run=%s",
            run.run_key, result.checked, result.issues, result.auto_healed, dry_run,
        )
        return result

    def _heal(self, gap: Gap, run_id: UUID) -> bool:
        try:
            gap.heal({"auto_healed": True, "reconcile_run_id": str(run_id)})
            self.db.flush()
        except Exception:
            self.db.rollback()
            logger.exception("Failed to heal %s", gap.issue_key)
            return False
        return True

    def _upsert_issue(self, gap: Gap, run_id: UUID, *, healed: bool, dry_run: bool, now: datetime) -> None:
        values = {
            "run_id": run_id,
            "issue_type": gap.issue_type,
            "severity": gap.severity,
            "source_kind": gap.source_kind,
            "source_id": gap.source_id,
            "status": "resolved" if healed else "open",
            "auto_healed": healed,
            "details": {**gap.details, "dry_run": dry_run},
            "resolved_at": now if healed else None,
        }
        inserted = self.db.execute(
            insert_ignore(self.db, ReconciliationIssue)
            .values(issue_key=gap.issue_key, detected_at=now, **values)
            .on_conflict_do_nothing(index_elements=["issue_key"])
        ).rowcount == 1
        if not inserted:
            self.db.execute(
                update(ReconciliationIssue)
                .where(ReconciliationIssue.issue_key == gap.issue_key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def _settlement_gaps(self, limit: int, now: datetime, result: FinanceReconcileResult) -> Iterable[Gap]:
        rows = self.db.scalars(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.SUCCEEDED.value)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        ).all()
        for tx in rows:
            result.checked += 1
            source_kind, source_id = settlement_source(tx)
            if self.journal.find_by_source(source_kind, source_id, tx.flow_type):
                continue
            yield Gap(
                issue_type="missing_settlement_journal",
                source_kind="transaction",
                source_id=str(tx.id),
                severity="high",
                details={"transaction_id": str(tx.id), "flow_type": tx.flow_type},
                heal=lambda meta, tx=tx: self.settlements.settle_transaction(
                    tx, apply_side_effects=False, metadata=meta
                ),
            )

    def _refund_gaps(self, limit: int, now: datetime, result: FinanceReconcileResult) -> Iterable[Gap]:
        rows = self.db.scalars(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.REFUNDED.value)
            .order_by(Transaction.updated_at.desc())
            .limit(limit)
        ).all()
        for tx in rows:
            result.checked += 1
            source_kind, source_id = settlement_source(tx)
            if self.journal.find_by_source(source_kind, source_id, FlowType.REFUND):
                continue
            yield Gap(
                issue_type="missing_refund_journal",
                source_kind="transaction",
                source_id=str(tx.id),
                severity="medium",
                details={"transaction_id": str(tx.id)},
                heal=lambda meta, tx=tx: self.settlements.refund_transaction(
                    tx, apply_side_effects=False, metadata=meta
                ),
            )

    def _drop_in_gaps(self, limit: int, now: datetime, result: FinanceReconcileResult) -> Iterable[Gap]:
        rows = self.db.scalars(
            select(DropInCreditPurchase)
            .where(DropInCreditPurchase.status == "active")
            .order_by(DropInCreditPurchase.created_at.desc())
            .limit(limit)
        ).all()
        for purchase in rows:
            result.checked += 1
            if purchase.amount_minor <= 0:
                continue
            if self.journal.find_by_source(
                "drop_in_credit_purchase", str(purchase.id), FlowType.DROP_IN_CREDIT_PURCHASE
            ):
                continue
            yield Gap(
                issue_type="missing_dropin_purchase_journal",
                source_kind="drop_in_credit_purchase",
                source_id=str(purchase.id),
                severity="high",
                details={
                    "purchase_id": str(purchase.id),
                    "attendee_id": purchase.attendee_id,
                    "amount_minor": purchase.amount_minor,
                    "currency": purchase.currency,
                },
                heal=lambda meta, p=purchase: self.settlements.record_drop_in(p, metadata=meta),
            )

    def _subscription_charge_gaps(
        self, limit: int, now: datetime, result: FinanceReconcileResult
    ) -> Iterable[Gap]:
        since = now - self.policy.subscription_lookback
        rows = self.db.scalars(
            select(Subscription)
            .where(
                Subscription.status.in_(("active", "trialing")),
                Subscription.last_webhook_event_at.is_not(None),
                Subscription.last_webhook_event_at >= since,
            )
            .order_by(Subscription.last_webhook_event_at.desc())
            .limit(limit)
        ).all()
        for sub in rows:
            result.checked += 1
            if (sub.plan_code or "free").lower() == "free" or sub.amount_minor <= 0:
                continue
            source_id = subscription_charge_source_id(sub.id, sub.current_period_start)
            if self.journal.find_by_source(sub.scope, source_id, FlowType.SUBSCRIPTION_CHARGE):
                continue
            yield Gap(
                issue_type="missing_subscription_charge_journal",
                source_kind=sub.scope,
                source_id=str(sub.id),
                severity="high",
                details={
                    "subscription_id": str(sub.id),
                    "external_subscription_id": sub.external_subscription_id,
                    "source_ref": source_id,
                    "amount_minor": sub.amount_minor,
                    "currency": sub.currency,
                    "provider": sub.payment_provider,
                },
                heal=lambda meta, sub=sub: self.subscriptions.record_charge(sub, metadata=meta),
            )

    def _payout_gaps(self, limit: int, now: datetime, result: FinanceReconcileResult) -> Iterable[Gap]:
        rows = self.db.execute(
            select(Payout, Wallet)
            .join(Wallet, Wallet.id == Payout.wallet_id)
            .where(Payout.status == PayoutStatus.COMPLETED.value)
            .order_by(Payout.completed_at.desc())
            .limit(limit)
        ).all()
        for payout, wallet in rows:
            result.checked += 1
            if self.journal.find_by_source("payout", str(payout.id), FlowType.PAYOUT):
                continue
            yield Gap(
                issue_type="missing_payout_journal",
                source_kind="payout",
                source_id=str(payout.id),
                severity="high",
                details={"payout_id": str(payout.id), "wallet_id": str(wallet.id)},
                heal=lambda meta, p=payout, w=wallet: self.settlements.record_payout(p, w, metadata=meta),
            )
