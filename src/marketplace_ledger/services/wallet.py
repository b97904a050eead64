"""Creator wallet balances.

Balances are derived state: every mutation here runs in the same
database transaction as the journal write (or payout step) it mirrors.
All movements are single conditional UPDATEs so concurrent workers can
never overdraw ``available`` or ``pending_payout``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.models import Wallet, WalletBalance


class WalletService:
    """Atomic wallet balance movements. The caller commits."""

    def __init__(self, db: Session):
        self.db = db

    def get_wallet(self, wallet_id: UUID) -> Wallet | None:
        return self.db.get(Wallet, wallet_id)

    def find_wallet(self, creator_id: str, currency: str, provider: str | None = None) -> Wallet | None:
        """Creator's wallet for a currency, preferring the given provider."""
        wallets = self.db.scalars(
            select(Wallet)
            .where(Wallet.creator_id == creator_id, Wallet.currency == currency.upper())
            .order_by(Wallet.created_at)
        ).all()
        for wallet in wallets:
            if provider and wallet.provider == provider:
                return wallet
        return wallets[0] if wallets else None

    def ensure_balance(self, wallet: Wallet) -> WalletBalance:
        self.db.execute(
            insert_ignore(self.db, WalletBalance)
            .values(wallet_id=wallet.id, currency=wallet.currency, updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["wallet_id"])
        )
        return self.get_balance(wallet.id)

    def get_balance(self, wallet_id: UUID) -> WalletBalance:
        balance = self.db.scalars(
            select(WalletBalance)
            .where(WalletBalance.wallet_id == wallet_id)
            .execution_options(populate_existing=True)
        ).one_or_none()
        if balance is None:
            raise LookupError(f"No balance row for wallet {wallet_id}")
        return balance

    def credit_earnings(self, wallet: Wallet, amount_minor: int) -> None:
        """Settled sale: available and lifetime earnings both grow."""
        if amount_minor <= 0:
            return
        self.ensure_balance(wallet)
        self._update(
            wallet.id,
            available_minor=WalletBalance.available_minor + amount_minor,
            total_earnings_minor=WalletBalance.total_earnings_minor + amount_minor,
        )

    def debit_refund(self, wallet: Wallet, amount_minor: int) -> None:
        """Refund claws back available balance, floored at zero."""
        if amount_minor <= 0:
            return
        self.ensure_balance(wallet)
        self._update(
            wallet.id,
            available_minor=case(
                (WalletBalance.available_minor > amount_minor, WalletBalance.available_minor - amount_minor),
                else_=0,
            ),
            total_earnings_minor=case(
                (
                    WalletBalance.total_earnings_minor > amount_minor,
                    WalletBalance.total_earnings_minor - amount_minor,
                ),
                else_=0,
            ),
        )

    def reserve_for_payout(self, wallet_id: UUID, amount_minor: int) -> bool:
        """available -> pending_payout. False if the balance is insufficient."""
        return self._update(
            wallet_id,
            WalletBalance.available_minor >= amount_minor,
            available_minor=WalletBalance.available_minor - amount_minor,
            pending_payout_minor=WalletBalance.pending_payout_minor + amount_minor,
        )

    def complete_payout(self, wallet_id: UUID, amount_minor: int) -> bool:
        """pending_payout -> paid out."""
        return self._update(
            wallet_id,
            WalletBalance.pending_payout_minor >= amount_minor,
            pending_payout_minor=WalletBalance.pending_payout_minor - amount_minor,
            total_paid_out_minor=WalletBalance.total_paid_out_minor + amount_minor,
        )

    def release_payout(self, wallet_id: UUID, amount_minor: int) -> bool:
        """pending_payout -> available (transfer failed)."""
        return self._update(
            wallet_id,
            WalletBalance.pending_payout_minor >= amount_minor,
            pending_payout_minor=WalletBalance.pending_payout_minor - amount_minor,
            available_minor=WalletBalance.available_minor + amount_minor,
        )

    def _update(self, wallet_id: UUID, *conditions: object, **values: object) -> bool:
        result = self.db.execute(
            update(WalletBalance)
            .where(WalletBalance.wallet_id == wallet_id, *conditions)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
