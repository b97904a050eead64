"""Tests for the append-only double-entry journal.

Tests verify:
1. Posting builders always balance
2. Idempotent recording (retries produce no duplicates)
3. Unbalanced or malformed entries are rejected before any write
4. Account and creator balance views
"""

from uuid import uuid4

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marketplace_ledger.errors import UnbalancedJournalError, ValidationError
from marketplace_ledger.models import Direction, JournalEntry, Posting
from marketplace_ledger.services.financial_flows import (
    build_payout_entry,
    build_refund_entry,
    build_settlement_entry,
    derive_settlement_amounts,
)
from marketplace_ledger.services.journal import (
    CHART_OF_ACCOUNTS,
    JournalDraft,
    JournalService,
    PostingLine,
    normalize_draft,
    validate_draft,
)

ALL_ACCOUNTS = [code for code, _, _ in CHART_OF_ACCOUNTS]


def _totals(draft: JournalDraft) -> tuple[int, int]:
    debits = sum(p.amount_minor for p in draft.postings if Direction(p.direction) is Direction.DEBIT)
    credits = sum(p.amount_minor for p in draft.postings if Direction(p.direction) is Direction.CREDIT)
    return debits, credits


def _draft(key: str, *lines: PostingLine, currency: str = "USD") -> JournalDraft:
    return JournalDraft(
        idempotency_key=key,
        source_kind="test",
        source_id=str(uuid4()),
        flow_type="photo_purchase",
        currency=currency,
        postings=tuple(lines),
    )


class TestSettlementAmounts:
    """Split of a gross charge into creator net and fees."""

    def test_net_is_gross_minus_fees(self):
        amounts = derive_settlement_amounts(1299, platform_fee_minor=260, provider_fee_minor=68)
        assert amounts.creator_net_minor == 971
        assert amounts.platform_credit_minor == 260

    def test_explicit_net_wins(self):
        """A positive explicit net overrides the fee arithmetic."""
        amounts = derive_settlement_amounts(1000, platform_fee_minor=100, net_minor=850)
        assert amounts.creator_net_minor == 850
        # The unallocated remainder goes to the platform
        assert amounts.platform_credit_minor == 150

    def test_fees_never_exceed_gross(self):
        amounts = derive_settlement_amounts(500, platform_fee_minor=400, provider_fee_minor=900)
        assert amounts.provider_fee_minor == 500
        assert amounts.platform_fee_minor == 0
        assert amounts.creator_net_minor == 0


class TestPostingBuildersBalance:
    """Every builder yields a balanced entry, whatever the gateway reports."""

    @settings(max_examples=200, deadline=None)
    @given(
        gross=st.integers(min_value=1, max_value=10**9),
        platform_fee=st.integers(min_value=0, max_value=10**9),
        provider_fee=st.integers(min_value=0, max_value=10**9),
        net=st.one_of(st.none(), st.integers(min_value=-10, max_value=10**9)),
    )
    def test_settlement_and_refund_balance(self, gross, platform_fee, provider_fee, net):
        amounts = derive_settlement_amounts(gross, platform_fee, provider_fee, net)
        common = dict(
            source_kind="transaction",
            source_id="tx-1",
            currency="USD",
            amounts=amounts,
            creator_id="creator-1",
            provider="stripe",
        )
        for draft in (
            build_settlement_entry(flow_type="photo_purchase", **common),
            build_refund_entry(**common),
        ):
            normalized = normalize_draft(draft)
            debits, credits = _totals(normalized)
            assert debits == credits == gross
            assert all(p.amount_minor > 0 for p in normalized.postings)
            validate_draft(normalized, ALL_ACCOUNTS)

    @given(amount=st.integers(min_value=1, max_value=10**12))
    def test_payout_balances(self, amount):
        draft = build_payout_entry(
            payout_id="p-1", creator_id="creator-1", amount_minor=amount, currency="USD", provider="stripe"
        )
        assert _totals(draft) == (amount, amount)

    def test_refund_mirrors_settlement(self):
        amounts = derive_settlement_amounts(2000, platform_fee_minor=400, provider_fee_minor=100)
        common = dict(
            source_kind="transaction",
            source_id="tx-9",
            currency="USD",
            amounts=amounts,
            creator_id="creator-1",
            provider="paystack",
        )
        settlement = build_settlement_entry(flow_type="photo_purchase", **common)
        refund = build_refund_entry(**common)

        assert settlement.idempotency_key == "ledger:photo_purchase:settlement:transaction:tx-9"
        assert refund.idempotency_key == "ledger:refund:transaction:tx-9"
        for forward, back in zip(settlement.postings, refund.postings):
            assert forward.amount_minor == back.amount_minor
            assert forward.direction != back.direction
        assert refund.postings[2].account_code == "refunds_contra_revenue"


class TestJournalRecord:
    """Recording entries through JournalService."""

    def test_record_creates_entry_with_postings(self, db: Session):
        journal = JournalService(db)
        result = journal.record(
            _draft(
                "test:record:1",
                PostingLine("platform_cash_clearing", Direction.DEBIT, 1000),
                PostingLine("platform_revenue", Direction.CREDIT, 1000),
            )
        )
        db.commit()

        assert result.is_new is True
        entry = journal.get(result.entry_id)
        assert entry is not None
        assert [p.line_no for p in entry.postings] == [1, 2]
        assert {p.currency for p in entry.postings} == {"USD"}

    def test_record_is_idempotent(self, db: Session):
        """Same idempotency key returns the existing entry."""
        journal = JournalService(db)
        lines = (
            PostingLine("platform_cash_clearing", Direction.DEBIT, 500),
            PostingLine("platform_revenue", Direction.CREDIT, 500),
        )
        first = journal.record(_draft("test:idem:1", *lines))
        db.commit()
        second = journal.record(_draft("test:idem:1", *lines))
        db.commit()

        assert second.entry_id == first.entry_id
        assert second.is_new is False
        assert db.scalar(select(func.count()).select_from(JournalEntry)) == 1
        assert db.scalar(select(func.count()).select_from(Posting)) == 2

    def test_unbalanced_entry_rejected_before_write(self, db: Session):
        journal = JournalService(db)
        with pytest.raises(UnbalancedJournalError) as exc_info:
            journal.record(
                _draft(
                    "test:unbalanced",
                    PostingLine("platform_cash_clearing", Direction.DEBIT, 1000),
                    PostingLine("platform_revenue", Direction.CREDIT, 900),
                )
            )
        assert exc_info.value.context["debits"] == 1000
        assert exc_info.value.context["credits"] == 900
        assert journal.get_by_idempotency_key("test:unbalanced") is None

    def test_zero_legs_are_dropped(self, db: Session):
        """Optional fee legs of zero never become postings."""
        journal = JournalService(db)
        result = journal.record(
            _draft(
                "test:zero-leg",
                PostingLine("platform_cash_clearing", Direction.DEBIT, 700),
                PostingLine("creator_payable", Direction.CREDIT, 700),
                PostingLine("provider_fee_expense", Direction.CREDIT, 0),
            )
        )
        entry = journal.get(result.entry_id)
        assert len(entry.postings) == 2

    def test_single_posting_rejected(self, db: Session):
        journal = JournalService(db)
        with pytest.raises(ValidationError, match="at least two postings"):
            journal.record(_draft("test:single", PostingLine("platform_cash_clearing", Direction.DEBIT, 10)))

    def test_unknown_account_rejected(self, db: Session):
        journal = JournalService(db)
        with pytest.raises(ValidationError, match="Unknown or inactive account"):
            journal.record(
                _draft(
                    "test:unknown-account",
                    PostingLine("platform_cash_clearing", Direction.DEBIT, 10),
                    PostingLine("suspense", Direction.CREDIT, 10),
                )
            )

    def test_negative_amount_rejected(self, db: Session):
        journal = JournalService(db)
        with pytest.raises(ValidationError, match="positive"):
            journal.record(
                _draft(
                    "test:negative",
                    PostingLine("platform_cash_clearing", Direction.DEBIT, -10),
                    PostingLine("platform_revenue", Direction.CREDIT, -10),
                )
            )

    def test_currency_and_source_normalized(self, db: Session):
        journal = JournalService(db)
        draft = JournalDraft(
            idempotency_key="  test:normalize  ",
            source_kind="Transaction",
            source_id="tx-1",
            flow_type="PHOTO_PURCHASE",
            currency="usd",
            provider="Stripe",
            postings=(
                PostingLine("platform_cash_clearing", Direction.DEBIT, 10),
                PostingLine("platform_revenue", Direction.CREDIT, 10),
            ),
        )
        journal.record(draft)
        entry = journal.get_by_idempotency_key("test:normalize")
        assert entry.currency == "USD"
        assert entry.source_kind == "transaction"
        assert entry.flow_type == "photo_purchase"
        assert entry.provider == "stripe"
        assert journal.find_by_source("transaction", "tx-1", "photo_purchase").id == entry.id


class TestBalances:
    """Account and creator balance views."""

    def test_account_balances_and_creator_settlements(self, db: Session):
        journal = JournalService(db)
        amounts = derive_settlement_amounts(1299, platform_fee_minor=260)
        journal.record(
            build_settlement_entry(
                flow_type="photo_purchase",
                source_kind="transaction",
                source_id="tx-1",
                currency="USD",
                amounts=amounts,
                creator_id="creator-1",
                provider="stripe",
            )
        )
        journal.record(
            build_payout_entry(
                payout_id="payout-1", creator_id="creator-1", amount_minor=1000, currency="USD", provider="stripe"
            )
        )
        db.commit()

        balances = {b.account_code: b for b in journal.account_balances("usd")}
        assert balances["platform_cash_clearing"].net_minor == 1299
        assert balances["platform_revenue"].credit_minor == 260
        assert balances["creator_payable"].credit_minor == 1039
        assert balances["creator_payable"].debit_minor == 1000
        assert balances["creator_payouts"].credit_minor == 1000
        assert sum(b.net_minor for b in balances.values()) == 0

        [settlement] = journal.creator_settlements("creator-1")
        assert settlement.accrued_minor == 1039
        assert settlement.released_minor == 1000
        assert settlement.outstanding_minor == 39

    def test_balances_filter_by_currency(self, db: Session):
        journal = JournalService(db)
        journal.record(
            _draft(
                "test:ghs",
                PostingLine("platform_cash_clearing", Direction.DEBIT, 5000),
                PostingLine("platform_revenue", Direction.CREDIT, 5000),
                currency="GHS",
            )
        )
        db.commit()
        assert journal.account_balances("USD") == []
        assert {b.currency for b in journal.account_balances("GHS")} == {"GHS"}
