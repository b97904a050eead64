"""Financial journal - append-only double-entry writer.

Provides idempotent posting of journal entries with:
- Double-entry balance per entry (sum debits == sum credits)
- Idempotency via unique ``idempotency_key``
- Correction by new entries only (no updates/deletes)
- Account and creator balance views
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore
from marketplace_ledger.errors import UnbalancedJournalError, ValidationError
from marketplace_ledger.models import Direction, FlowType, JournalEntry, LedgerAccount, Posting

logger = logging.getLogger(__name__)


# code, name, normal side
CHART_OF_ACCOUNTS: tuple[tuple[str, str, str], ...] = (
    ("platform_cash_clearing", "Platform cash clearing", "debit"),
    ("platform_revenue", "Platform revenue", "credit"),
    ("provider_fee_expense", "Payment provider fees", "debit"),
    ("creator_payable", "Creator payable", "credit"),
    ("attendee_credit_liability", "Attendee drop-in credit liability", "credit"),
    ("creator_payouts", "Creator payouts clearing", "credit"),
    ("refunds_contra_revenue", "Refunds (contra revenue)", "debit"),
)


def seed_chart_of_accounts(db: Session) -> int:
    """Insert the fixed chart of accounts. Safe to run repeatedly.

    Returns the number of accounts created.
    """
    created = 0
    for code, name, normal_side in CHART_OF_ACCOUNTS:
        stmt = (
            insert_ignore(db, LedgerAccount)
            .values(code=code, name=name, normal_side=normal_side, is_active=True)
            .on_conflict_do_nothing(index_elements=["code"])
        )
        created += db.execute(stmt).rowcount
    return created


@dataclass(frozen=True)
class PostingLine:
    """One debit or credit line. Currency comes from the entry."""

    account_code: str
    direction: Direction
    amount_minor: int
    counterparty_type: str | None = None
    counterparty_id: str | None = None


@dataclass(frozen=True)
class JournalDraft:
    """Journal entry to be recorded."""

    idempotency_key: str
    source_kind: str
    source_id: str
    flow_type: FlowType | str
    currency: str
    postings: tuple[PostingLine, ...]
    provider: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_metadata(self, **extra: Any) -> JournalDraft:
        return replace(self, metadata={**self.metadata, **extra})


@dataclass(frozen=True)
class PostResult:
    """Result of a journal write.

    IMPORTANT: Always check `is_new` before running side effects.
    If `is_new=False`, this was a retry and the existing entry was returned.
    """

    entry_id: UUID
    is_new: bool
    flow_type: str


@dataclass(frozen=True)
class AccountBalance:
    account_code: str
    currency: str
    debit_minor: int
    credit_minor: int

    @property
    def net_minor(self) -> int:
        """Debits minus credits."""
        return self.debit_minor - self.credit_minor


@dataclass(frozen=True)
class CreatorSettlement:
    creator_id: str
    currency: str
    accrued_minor: int
    released_minor: int

    @property
    def outstanding_minor(self) -> int:
        return self.accrued_minor - self.released_minor


def normalize_draft(draft: JournalDraft) -> JournalDraft:
    """Canonical casing; zero-amount legs dropped (optional fee legs)."""
    flow = draft.flow_type.value if isinstance(draft.flow_type, FlowType) else str(draft.flow_type)
    return replace(
        draft,
        idempotency_key=(draft.idempotency_key or "").strip(),
        source_kind=(draft.source_kind or "").strip().lower(),
        source_id=str(draft.source_id or "").strip(),
        flow_type=flow.strip().lower(),
        currency=(draft.currency or "").strip().upper(),
        provider=draft.provider.strip().lower() if draft.provider else None,
        postings=tuple(p for p in draft.postings if p.amount_minor != 0),
    )


def validate_draft(draft: JournalDraft, active_accounts: Iterable[str]) -> None:
    """Reject a normalized draft before any write.

    Raises:
        ValidationError: missing fields, bad postings, unknown accounts
        UnbalancedJournalError: debits != credits
    """
    for name in ("idempotency_key", "source_kind", "source_id", "flow_type", "currency"):
        if not getattr(draft, name):
            raise ValidationError(f"Journal entry {name} is required")
    if draft.flow_type not in {f.value for f in FlowType}:
        raise ValidationError(f"Unknown flow type: {draft.flow_type}")
    if len(draft.currency) != 3:
        raise ValidationError(f"Invalid currency: {draft.currency}")
    if len(draft.postings) < 2:
        raise ValidationError("Journal entry requires at least two postings")

    known = set(active_accounts)
    debits = credits = 0
    for line in draft.postings:
        if isinstance(line.amount_minor, bool) or not isinstance(line.amount_minor, int):
            raise ValidationError("Posting amount must be an integer number of minor units")
        if line.amount_minor <= 0:
            raise ValidationError("Posting amount must be positive")
        if line.account_code not in known:
            raise ValidationError(f"Unknown or inactive account: {line.account_code}")
        if Direction(line.direction) is Direction.DEBIT:
            debits += line.amount_minor
        else:
            credits += line.amount_minor

    if debits != credits:
        raise UnbalancedJournalError(
            f"Unbalanced journal entry: debits {debits} != credits {credits}",
            context={
                "idempotency_key": draft.idempotency_key,
                "debits": debits,
                "credits": credits,
                "currency": draft.currency,
            },
        )


class JournalService:
    """Append-only double-entry journal writer.

    Notes:
    - financial_journal_entries is append-only; corrections are new entries.
    - idempotency_key is globally unique.
    - The journal has no side effects; callers act on ``is_new``.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(self, draft: JournalDraft) -> PostResult:
        """Record a journal entry, idempotent on its idempotency key.

        Returns:
            PostResult with the entry id and whether it was newly written
        """
        draft = normalize_draft(draft)
        try:
            validate_draft(draft, self._active_account_codes(draft.postings))
        except UnbalancedJournalError:
            logger.warning("Rejected unbalanced journal entry %s", draft.idempotency_key)
            raise

        entry_id = uuid.uuid4()
        stmt = (
            insert_ignore(self.db, JournalEntry)
            .values(
                id=entry_id,
                idempotency_key=draft.idempotency_key,
                source_kind=draft.source_kind,
                source_id=draft.source_id,
                flow_type=draft.flow_type,
                currency=draft.currency,
                provider=draft.provider,
                description=draft.description,
                metadata=dict(draft.metadata),
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
        )
        if self.db.execute(stmt).rowcount == 1:
            self.db.add_all(
                Posting(
                    journal_entry_id=entry_id,
                    line_no=index,
                    account_code=line.account_code,
                    direction=Direction(line.direction).value,
                    amount_minor=line.amount_minor,
                    currency=draft.currency,
                    counterparty_type=line.counterparty_type,
                    counterparty_id=line.counterparty_id,
                )
                for index, line in enumerate(draft.postings, start=1)
            )
            self.db.flush()
            return PostResult(entry_id=entry_id, is_new=True, flow_type=str(draft.flow_type))

        existing = self.get_by_idempotency_key(draft.idempotency_key)
        if existing is None:
            raise RuntimeError("Journal write failed unexpectedly - no entry created or found")
        logger.debug("Journal replay for %s", draft.idempotency_key)
        return PostResult(entry_id=existing.id, is_new=False, flow_type=existing.flow_type)

    def get(self, entry_id: UUID) -> JournalEntry | None:
        return self.db.get(JournalEntry, entry_id)

    def get_by_idempotency_key(self, idempotency_key: str) -> JournalEntry | None:
        return self.db.scalars(
            select(JournalEntry).where(JournalEntry.idempotency_key == idempotency_key)
        ).one_or_none()

    def find_by_source(
        self,
        source_kind: str,
        source_id: str,
        flow_type: FlowType | str | None = None,
    ) -> JournalEntry | None:
        """Gap-detection lookup on the mandatory (source_kind, source_id) pair."""
        query = select(JournalEntry).where(
            JournalEntry.source_kind == source_kind.lower(),
            JournalEntry.source_id == str(source_id),
        )
        if flow_type is not None:
            query = query.where(JournalEntry.flow_type == FlowType(flow_type).value)
        return self.db.scalars(query.order_by(JournalEntry.created_at).limit(1)).first()

    def account_balances(self, currency: str | None = None) -> list[AccountBalance]:
        """Per (account, currency) debit and credit totals."""
        debit = func.coalesce(
            func.sum(case((Posting.direction == "debit", Posting.amount_minor), else_=0)), 0
        )
        credit = func.coalesce(
            func.sum(case((Posting.direction == "credit", Posting.amount_minor), else_=0)), 0
        )
        query = (
            select(Posting.account_code, Posting.currency, debit, credit)
            .group_by(Posting.account_code, Posting.currency)
            .order_by(Posting.account_code, Posting.currency)
        )
        if currency:
            query = query.where(Posting.currency == currency.upper())
        return [
            AccountBalance(account_code=row[0], currency=row[1], debit_minor=int(row[2]), credit_minor=int(row[3]))
            for row in self.db.execute(query).all()
        ]

    def creator_settlements(self, creator_id: str | None = None) -> list[CreatorSettlement]:
        """Creator payable accrued (credits) vs released (debits)."""
        accrued = func.coalesce(
            func.sum(case((Posting.direction == "credit", Posting.amount_minor), else_=0)), 0
        )
        released = func.coalesce(
            func.sum(case((Posting.direction == "debit", Posting.amount_minor), else_=0)), 0
        )
        query = (
            select(Posting.counterparty_id, Posting.currency, accrued, released)
            .where(
                Posting.account_code == "creator_payable",
                Posting.counterparty_type == "creator",
                Posting.counterparty_id.is_not(None),
            )
            .group_by(Posting.counterparty_id, Posting.currency)
            .order_by(Posting.counterparty_id)
        )
        if creator_id:
            query = query.where(Posting.counterparty_id == str(creator_id))
        return [
            CreatorSettlement(
                creator_id=row[0], currency=row[1], accrued_minor=int(row[2]), released_minor=int(row[3])
            )
            for row in self.db.execute(query).all()
        ]

    def _active_account_codes(self, postings: Iterable[PostingLine]) -> list[str]:
        codes = {p.account_code for p in postings}
        if not codes:
            return []
        return list(
            self.db.scalars(
                select(LedgerAccount.code).where(
                    LedgerAccount.code.in_(codes), LedgerAccount.is_active.is_(True)
                )
            ).all()
        )
