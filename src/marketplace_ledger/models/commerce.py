"""Commerce collaborators the ledger handlers touch.

Covers the minimal persistence the money flows need:
- Transactions (photo purchases and tips)
- Entitlements (media unlocked by a transaction)
- Drop-in credit purchases
- Creator wallets and wallet balances
- Payouts
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_ledger.database import utcnow
from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class PayoutFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


ALL_MEDIA = "*"


class Transaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A photo purchase or tip paid through a gateway."""

    __tablename__ = "transactions"

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_reference: Mapped[str] = mapped_column(Text, nullable=False)
    flow_type: Mapped[str] = mapped_column(String(32), nullable=False, default="photo_purchase")
    creator_id: Mapped[str] = mapped_column(Text, nullable=False)
    buyer_id: Mapped[str | None] = mapped_column(Text)
    event_id: Mapped[str | None] = mapped_column(Text)
    wallet_id: Mapped[UUID | None] = mapped_column(ForeignKey("wallets.id"))
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.PENDING.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gross_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    provider_fee_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_reference", name="transactions_provider_ref_uq"),
        CheckConstraint("flow_type IN ('photo_purchase', 'tip')", name="transactions_flow_ck"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'refunded')",
            name="transactions_status_ck",
        ),
        CheckConstraint("gross_amount_minor >= 0", name="transactions_gross_ck"),
        Index("transactions_status_idx", "status", "updated_at"),
    )


class Entitlement(UUIDPrimaryKeyMixin, Base):
    """Media access granted by a transaction. ``media_key='*'`` unlocks all."""

    __tablename__ = "entitlements"

    transaction_id: Mapped[UUID] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    buyer_id: Mapped[str | None] = mapped_column(Text)
    event_id: Mapped[str | None] = mapped_column(Text)
    media_key: Mapped[str] = mapped_column(Text, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", "media_key", name="entitlements_transaction_media_uq"),
    )


class DropInCreditPurchase(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Attendee credit pack bought ahead of drop-in uploads."""

    __tablename__ = "drop_in_credit_purchases"

    attendee_id: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_reference: Mapped[str] = mapped_column(Text, nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("provider", "provider_reference", name="drop_in_purchases_ref_uq"),
        CheckConstraint(
            "status IN ('pending', 'active', 'failed')", name="drop_in_purchases_status_ck"
        ),
    )


class Wallet(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Creator wallet bound to one payout gateway."""

    __tablename__ = "wallets"

    creator_id: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    provider_account_ref: Mapped[str | None] = mapped_column(Text)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payout_frequency: Mapped[str | None] = mapped_column(String(16))
    payout_threshold_minor: Mapped[int | None] = mapped_column(BigInteger)

    balance: Mapped[WalletBalance] = relationship(back_populates="wallet", uselist=False)

    __table_args__ = (
        UniqueConstraint("creator_id", "provider", "currency", name="wallets_creator_uq"),
        CheckConstraint(
            "payout_frequency IS NULL OR payout_frequency IN ('daily', 'weekly', 'monthly')",
            name="wallets_frequency_ck",
        ),
    )


class WalletBalance(Base):
    """Derived wallet balance. Mutated only alongside a journal write."""

    __tablename__ = "wallet_balances"

    wallet_id: Mapped[UUID] = mapped_column(ForeignKey("wallets.id"), primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    available_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_payout_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_earnings_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_paid_out_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    wallet: Mapped[Wallet] = relationship(back_populates="balance")

    __table_args__ = (
        CheckConstraint("available_minor >= 0", name="wallet_balances_available_ck"),
        CheckConstraint("pending_payout_minor >= 0", name="wallet_balances_pending_ck"),
    )


class Payout(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Transfer of a creator's available balance to their gateway account."""

    __tablename__ = "payouts"

    wallet_id: Mapped[UUID] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    identity_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PayoutStatus.PENDING.value
    )
    trigger: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    provider_reference: Mapped[str | None] = mapped_column(Text)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    retry_of_id: Mapped[UUID | None] = mapped_column(ForeignKey("payouts.id"))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'superseded')",
            name="payouts_status_ck",
        ),
        CheckConstraint("amount_minor > 0", name="payouts_amount_ck"),
        Index("payouts_status_idx", "status", "updated_at"),
    )
