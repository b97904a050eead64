"""Financial journal models.

- Ledger accounts (fixed chart of accounts)
- Journal entries (append-only, unique idempotency key)
- Postings (debit/credit lines; balanced per entry)
"""

from __future__ import annotations

import enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class FlowType(str, enum.Enum):
    PHOTO_PURCHASE = "photo_purchase"
    TIP = "tip"
    REFUND = "refund"
    DROP_IN_CREDIT_PURCHASE = "drop_in_credit_purchase"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    PAYOUT = "payout"


class Direction(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class LedgerAccount(Base):
    """Chart of accounts row."""

    __tablename__ = "ledger_accounts"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    normal_side: Mapped[str] = mapped_column(String(6), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("normal_side IN ('debit', 'credit')", name="ledger_accounts_side_ck"),
    )


class JournalEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Append-only journal entry.

    Never updated or deleted. Corrections are new entries.
    """

    __tablename__ = "financial_journal_entries"

    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    source_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    flow_type: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32))
    description: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    postings: Mapped[list[Posting]] = relationship(
        back_populates="entry",
        order_by="Posting.line_no",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "flow_type IN ('photo_purchase', 'tip', 'refund', 'drop_in_credit_purchase', "
            "'subscription_charge', 'payout')",
            name="financial_journal_entries_flow_ck",
        ),
        Index("financial_journal_entries_source_idx", "source_kind", "source_id", "flow_type"),
    )


class Posting(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One debit or credit line of a journal entry."""

    __tablename__ = "financial_journal_postings"

    journal_entry_id: Mapped[UUID] = mapped_column(
        ForeignKey("financial_journal_entries.id"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    account_code: Mapped[str] = mapped_column(
        ForeignKey("ledger_accounts.code"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(6), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    counterparty_type: Mapped[str | None] = mapped_column(String(32))
    counterparty_id: Mapped[str | None] = mapped_column(Text)

    entry: Mapped[JournalEntry] = relationship(back_populates="postings")

    __table_args__ = (
        CheckConstraint("direction IN ('debit', 'credit')", name="financial_journal_postings_dir_ck"),
        CheckConstraint("amount_minor > 0", name="financial_journal_postings_amount_ck"),
        Index("financial_journal_postings_account_idx", "account_code", "currency"),
    )

