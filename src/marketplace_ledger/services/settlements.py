"""Journal writes for the commerce records.

Webhook handlers and the finance reconciler both go through here, so a
healed entry and a late webhook produce the same idempotency key and
never double-post.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from marketplace_ledger.models import (
    DropInCreditPurchase,
    FlowType,
    Payout,
    Transaction,
    Wallet,
)
from marketplace_ledger.services.entitlements import EntitlementService
from marketplace_ledger.services.financial_flows import (
    SettlementAmounts,
    build_drop_in_entry,
    build_payout_entry,
    build_refund_entry,
    build_settlement_entry,
    derive_settlement_amounts,
)
from marketplace_ledger.services.journal import JournalService, PostResult
from marketplace_ledger.services.wallet import WalletService

logger = logging.getLogger(__name__)


def settlement_source(transaction: Transaction) -> tuple[str, str]:
    """(source_kind, source_id) of a transaction's journal entries.

    Tips are journaled against the tip id when the checkout carried one.
    """
    tip_id = (transaction.metadata_json or {}).get("tip_id")
    if transaction.flow_type == FlowType.TIP.value and tip_id:
        return "tip", str(tip_id)
    return "transaction", str(transaction.id)


def transaction_amounts(transaction: Transaction) -> SettlementAmounts:
    return derive_settlement_amounts(
        transaction.gross_amount_minor,
        platform_fee_minor=transaction.platform_fee_minor,
        provider_fee_minor=transaction.provider_fee_minor,
        net_minor=transaction.net_amount_minor,
    )


class SettlementService:
    """Journal + derived-state writes for transactions, drop-ins and payouts.

    Wallet credits and entitlement grants only run when the journal
    write is new, inside the caller's transaction.
    """

    def __init__(
        self,
        db: Session,
        journal: JournalService | None = None,
        wallets: WalletService | None = None,
        entitlements: EntitlementService | None = None,
    ):
        self.db = db
        self.journal = journal or JournalService(db)
        self.wallets = wallets or WalletService(db)
        self.entitlements = entitlements or EntitlementService(db)

    def settle_transaction(
        self,
        transaction: Transaction,
        *,
        apply_side_effects: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> PostResult:
        """Record the settlement of a succeeded purchase or tip.

        With ``apply_side_effects`` the creator wallet is credited and
        entitlements granted, once, when the entry is new.
        """
        amounts = transaction_amounts(transaction)
        source_kind, source_id = settlement_source(transaction)
        draft = build_settlement_entry(
            flow_type=transaction.flow_type,
            source_kind=source_kind,
            source_id=source_id,
            currency=transaction.currency,
            amounts=amounts,
            creator_id=transaction.creator_id,
            provider=transaction.provider,
            metadata={
                "transaction_id": str(transaction.id),
                "provider_reference": transaction.provider_reference,
                **(metadata or {}),
            },
        )
        result = self.journal.record(draft)
        if result.is_new and apply_side_effects:
            wallet = self._wallet_for(transaction)
            if wallet is not None:
                self.wallets.credit_earnings(wallet, amounts.creator_net_minor)
            else:
                logger.info("No wallet for creator %s; earnings stay on the journal", transaction.creator_id)
            self.entitlements.grant_for_transaction(transaction)
        return result

    def refund_transaction(
        self,
        transaction: Transaction,
        *,
        apply_side_effects: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> PostResult:
        """Record the reversal of a settlement; claws back the creator net."""
        amounts = transaction_amounts(transaction)
        source_kind, source_id = settlement_source(transaction)
        draft = build_refund_entry(
            source_kind=source_kind,
            source_id=source_id,
            currency=transaction.currency,
            amounts=amounts,
            creator_id=transaction.creator_id,
            provider=transaction.provider,
            metadata={"transaction_id": str(transaction.id), **(metadata or {})},
        )
        result = self.journal.record(draft)
        if result.is_new and apply_side_effects:
            wallet = self._wallet_for(transaction)
            if wallet is not None:
                self.wallets.debit_refund(wallet, amounts.creator_net_minor)
        return result

    def record_drop_in(
        self,
        purchase: DropInCreditPurchase,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> PostResult:
        return self.journal.record(
            build_drop_in_entry(
                purchase_id=str(purchase.id),
                attendee_id=purchase.attendee_id,
                amount_minor=purchase.amount_minor,
                currency=purchase.currency,
                provider=purchase.provider,
                metadata={
                    "provider_reference": purchase.provider_reference,
                    "credits": purchase.credits,
                    **(metadata or {}),
                },
            )
        )

    def record_payout(
        self,
        payout: Payout,
        wallet: Wallet,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> PostResult:
        return self.journal.record(
            build_payout_entry(
                payout_id=str(payout.id),
                creator_id=wallet.creator_id,
                amount_minor=payout.amount_minor,
                currency=payout.currency,
                provider=payout.provider,
                metadata={
                    "payout_id": str(payout.id),
                    "wallet_id": str(wallet.id),
                    **(metadata or {}),
                },
            )
        )

    def _wallet_for(self, transaction: Transaction) -> Wallet | None:
        if transaction.wallet_id is not None:
            return self.wallets.get_wallet(transaction.wallet_id)
        return self.wallets.find_wallet(transaction.creator_id, transaction.currency, transaction.provider)
