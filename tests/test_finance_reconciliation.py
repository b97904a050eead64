"""Tests for journal gap detection and healing."""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marketplace_ledger.database import utcnow
from marketplace_ledger.models import (
    JournalEntry,
    ReconciliationIssue,
    ReconciliationRun,
    WalletBalance,
)
from marketplace_ledger.services.finance_reconciliation import FinanceReconciler
from marketplace_ledger.services.settlements import SettlementService
from tests.conftest import LedgerTestData


def _issues(db: Session) -> list[ReconciliationIssue]:
    return list(
        db.scalars(select(ReconciliationIssue).execution_options(populate_existing=True))
    )


def _entries(db: Session, flow_type: str) -> list[JournalEntry]:
    return list(db.scalars(select(JournalEntry).where(JournalEntry.flow_type == flow_type)))


class TestSettlementGaps:
    def test_missing_settlement_is_healed_without_crediting_wallet(self, db: Session, data: LedgerTestData):
        wallet = data.wallet("creator-1")
        tx = data.transaction(creator_id="creator-1")

        result = FinanceReconciler(db).run()

        assert result.issues == 1
        assert result.auto_healed == 1
        [entry] = _entries(db, "photo_purchase")
        assert entry.source_id == str(tx.id)
        assert entry.metadata_json["auto_healed"] is True
        assert entry.metadata_json["reconcile_run_id"] == str(result.run_id)

        [issue] = _issues(db)
        assert issue.issue_key == f"missing_settlement_journal:transaction:{tx.id}"
        assert issue.status == "resolved"
        assert issue.auto_healed is True
        assert issue.severity == "high"

        balance = db.scalars(select(WalletBalance).where(WalletBalance.wallet_id == wallet.id)).one()
        assert balance.available_minor == 0

    def test_second_run_is_clean(self, db: Session, data: LedgerTestData):
        data.transaction()
        reconciler = FinanceReconciler(db)
        reconciler.run()

        again = reconciler.run()

        assert again.checked == 1
        assert again.issues == 0
        assert len(_entries(db, "photo_purchase")) == 1

    def test_journaled_transaction_is_not_an_issue(self, db: Session, data: LedgerTestData):
        tx = data.transaction()
        SettlementService(db).settle_transaction(tx)
        db.commit()

        result = FinanceReconciler(db).run()
        assert result.checked == 1
        assert result.issues == 0

    def test_tip_is_checked_against_tip_id(self, db: Session, data: LedgerTestData):
        tx = data.transaction(flow_type="tip", platform_fee_minor=0, metadata={"tip_id": "tip-7"})
        SettlementService(db).settle_transaction(tx)
        db.commit()

        assert FinanceReconciler(db).run().issues == 0


class TestDryRun:
    def test_dry_run_leaves_issue_open(self, db: Session, data: LedgerTestData):
        data.transaction()

        result = FinanceReconciler(db).run(dry_run=True)

        assert result.issues == 1
        assert result.auto_healed == 0
        assert _entries(db, "photo_purchase") == []
        [issue] = _issues(db)
        assert issue.status == "open"
        assert issue.details["dry_run"] is True

    def test_issue_key_is_stable_across_runs(self, db: Session, data: LedgerTestData):
        data.transaction()
        reconciler = FinanceReconciler(db)
        reconciler.run(dry_run=True)
        reconciler.run(dry_run=True)
        healed = reconciler.run()

        assert healed.auto_healed == 1
        [issue] = _issues(db)
        assert issue.status == "resolved"
        assert issue.run_id == healed.run_id
        assert issue.resolved_at is not None

    def test_runs_are_recorded(self, db: Session, data: LedgerTestData):
        result = FinanceReconciler(db).run(trigger_source="manual")

        run = db.get(ReconciliationRun, result.run_id)
        assert run.status == "completed"
        assert run.trigger_source == "manual"
        assert run.run_key.startswith("finance-reconcile:")
        assert run.metadata_json["issues"] == 0


class TestOtherGaps:
    def test_refund_gap(self, db: Session, data: LedgerTestData):
        tx = data.transaction(status="refunded")

        result = FinanceReconciler(db).run()

        assert result.auto_healed == 1
        [entry] = _entries(db, "refund")
        assert entry.source_id == str(tx.id)
        assert _issues(db)[0].issue_type == "missing_refund_journal"

    def test_drop_in_gap(self, db: Session, data: LedgerTestData):
        purchase = data.drop_in(amount_minor=2000)
        data.drop_in(status="pending")

        result = FinanceReconciler(db).run()

        assert result.checked == 1
        assert result.auto_healed == 1
        [entry] = _entries(db, "drop_in_credit_purchase")
        assert entry.source_id == str(purchase.id)
        assert entry.currency == "GHS"

    def test_subscription_charge_gap(self, db: Session, data: LedgerTestData):
        row = data.subscription(last_webhook_event_at=utcnow())
        data.subscription(owner_id="owner-2", plan_code="free", amount_minor=0, last_webhook_event_at=utcnow())
        data.subscription(owner_id="owner-3")

        result = FinanceReconciler(db).run()

        assert result.checked == 2
        assert result.issues == 1
        [entry] = _entries(db, "subscription_charge")
        assert entry.source_kind == "creator_subscription"
        assert entry.source_id.startswith(f"{row.id}:")
        assert _issues(db)[0].source_id == str(row.id)

    def test_payout_gap(self, db: Session, data: LedgerTestData):
        wallet = data.wallet("creator-5")
        payout = data.payout(wallet, amount_minor=7000)
        data.payout(wallet, status="failed")

        result = FinanceReconciler(db).run()

        assert result.auto_healed == 1
        [entry] = _entries(db, "payout")
        assert entry.source_id == str(payout.id)
        assert {p.amount_minor for p in entry.postings} == {7000}

    def test_failed_heal_leaves_issue_open(self, db: Session, data: LedgerTestData, monkeypatch):
        wallet = data.wallet("creator-5")
        data.payout(wallet)
        data.transaction()
        reconciler = FinanceReconciler(db)

        def boom(*args, **kwargs):
            raise RuntimeError("journal unavailable")

        monkeypatch.setattr(reconciler.settlements, "record_payout", boom)
        result = reconciler.run()

        assert result.issues == 2
        assert result.auto_healed == 1
        statuses = {i.issue_type: i.status for i in _issues(db)}
        assert statuses == {
            "missing_settlement_journal": "resolved",
            "missing_payout_journal": "open",
        }
        assert db.scalar(select(func.count()).select_from(JournalEntry)) == 1
