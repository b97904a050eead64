"""Posting builders for each money flow.

Every builder returns a balanced JournalDraft with a deterministic
idempotency key, so recording "the same event" twice is a no-op.

Settlement:    Dr platform_cash_clearing   gross
               Cr creator_payable          creator net
               Cr platform_revenue         platform fee (+ any remainder)
               Cr provider_fee_expense     provider fee
Refund:        mirror image of settlement
Drop-in:       Dr platform_cash_clearing / Cr attendee_credit_liability
Subscription:  Dr platform_cash_clearing / Cr platform_revenue
Payout:        Dr creator_payable / Cr creator_payouts
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from marketplace_ledger.models import Direction, FlowType
from marketplace_ledger.services.journal import JournalDraft, PostingLine

DEBIT = Direction.DEBIT
CREDIT = Direction.CREDIT


@dataclass(frozen=True)
class SettlementAmounts:
    """Split of a gross charge. All values in minor units, never negative."""

    gross_minor: int
    platform_fee_minor: int
    provider_fee_minor: int
    creator_net_minor: int

    @property
    def platform_credit_minor(self) -> int:
        """Platform fee plus whatever the other legs leave unallocated.

        Keeps the entry balanced when gateway-reported fees do not add up.
        """
        return max(0, self.gross_minor - self.creator_net_minor - self.provider_fee_minor)


def derive_settlement_amounts(
    gross_minor: int,
    platform_fee_minor: int = 0,
    provider_fee_minor: int = 0,
    net_minor: int | None = None,
) -> SettlementAmounts:
    """Resolve the creator net for a settlement.

    Explicit net wins when positive; otherwise gross minus both fees,
    floored at zero. Fees are clamped so no leg exceeds gross.
    """
    gross = max(0, int(gross_minor or 0))
    provider_fee = min(max(0, int(provider_fee_minor or 0)), gross)
    platform_fee = min(max(0, int(platform_fee_minor or 0)), gross - provider_fee)
    if net_minor is not None and int(net_minor) > 0:
        creator_net = min(int(net_minor), gross - provider_fee)
    else:
        creator_net = max(0, gross - platform_fee - provider_fee)
    return SettlementAmounts(
        gross_minor=gross,
        platform_fee_minor=platform_fee,
        provider_fee_minor=provider_fee,
        creator_net_minor=creator_net,
    )


def _settlement_legs(
    amounts: SettlementAmounts,
    creator_id: str | None,
    *,
    reverse: bool,
) -> tuple[PostingLine, ...]:
    cash_side, split_side = (CREDIT, DEBIT) if reverse else (DEBIT, CREDIT)
    return (
        PostingLine("platform_cash_clearing", cash_side, amounts.gross_minor),
        PostingLine(
            "creator_payable",
            split_side,
            amounts.creator_net_minor,
            counterparty_type="creator" if creator_id else None,
            counterparty_id=creator_id,
        ),
        PostingLine(
            "refunds_contra_revenue" if reverse else "platform_revenue",
            split_side,
            amounts.platform_credit_minor,
        ),
        PostingLine("provider_fee_expense", split_side, amounts.provider_fee_minor),
    )


def settlement_key(flow_type: FlowType | str, source_kind: str, source_id: str) -> str:
    flow = FlowType(flow_type).value
    return f"ledger:{flow}:settlement:{source_kind}:{source_id}"


def refund_key(source_kind: str, source_id: str) -> str:
    return f"ledger:refund:{source_kind}:{source_id}"


def drop_in_key(purchase_id: str) -> str:
    return f"ledger:dropin_credit_purchase:{purchase_id}:success"


def subscription_charge_key(provider: str, scope: str, source_id: str) -> str:
    return f"ledger:subscription_charge:{provider}:{scope}:{source_id}"


def payout_key(payout_id: str) -> str:
    return f"ledger:payout:{payout_id}"


def subscription_charge_source_id(subscription_id: Any, period_start: Any) -> str:
    """Stable source id for one billing period of a subscription."""
    period = period_start.date().isoformat() if period_start is not None else "initial"
    return f"{subscription_id}:{period}"


def build_settlement_entry(
    *,
    flow_type: FlowType | str,
    source_kind: str,
    source_id: str,
    currency: str,
    amounts: SettlementAmounts,
    creator_id: str | None,
    provider: str | None,
    metadata: dict[str, Any] | None = None,
) -> JournalDraft:
    """Photo purchase or tip settlement."""
    return JournalDraft(
        idempotency_key=settlement_key(flow_type, source_kind, source_id),
        source_kind=source_kind,
        source_id=str(source_id),
        flow_type=FlowType(flow_type),
        currency=currency,
        postings=_settlement_legs(amounts, creator_id, reverse=False),
        provider=provider,
        description=f"{FlowType(flow_type).value} settlement",
        metadata=dict(metadata or {}),
    )


def build_refund_entry(
    *,
    source_kind: str,
    source_id: str,
    currency: str,
    amounts: SettlementAmounts,
    creator_id: str | None,
    provider: str | None,
    metadata: dict[str, Any] | None = None,
) -> JournalDraft:
    """Reverse a settlement. Platform share lands in refunds_contra_revenue."""
    return JournalDraft(
        idempotency_key=refund_key(source_kind, source_id),
        source_kind=source_kind,
        source_id=str(source_id),
        flow_type=FlowType.REFUND,
        currency=currency,
        postings=_settlement_legs(amounts, creator_id, reverse=True),
        provider=provider,
        description="refund",
        metadata=dict(metadata or {}),
    )


def build_drop_in_entry(
    *,
    purchase_id: str,
    attendee_id: str,
    amount_minor: int,
    currency: str,
    provider: str | None,
    metadata: dict[str, Any] | None = None,
) -> JournalDraft:
    return JournalDraft(
        idempotency_key=drop_in_key(purchase_id),
        source_kind="drop_in_credit_purchase",
        source_id=str(purchase_id),
        flow_type=FlowType.DROP_IN_CREDIT_PURCHASE,
        currency=currency,
        postings=(
            PostingLine("platform_cash_clearing", DEBIT, amount_minor),
            PostingLine(
                "attendee_credit_liability",
                CREDIT,
                amount_minor,
                counterparty_type="attendee",
                counterparty_id=attendee_id,
            ),
        ),
        provider=provider,
        description="drop-in credit purchase",
        metadata=dict(metadata or {}),
    )


def build_subscription_charge_entry(
    *,
    scope: str,
    source_id: str,
    owner_id: str,
    amount_minor: int,
    currency: str,
    provider: str,
    metadata: dict[str, Any] | None = None,
) -> JournalDraft:
    return JournalDraft(
        idempotency_key=subscription_charge_key(provider, scope, source_id),
        source_kind=scope,
        source_id=source_id,
        flow_type=FlowType.SUBSCRIPTION_CHARGE,
        currency=currency,
        postings=(
            PostingLine("platform_cash_clearing", DEBIT, amount_minor),
            PostingLine(
                "platform_revenue",
                CREDIT,
                amount_minor,
                counterparty_type="subscriber",
                counterparty_id=owner_id,
            ),
        ),
        provider=provider,
        description=f"{scope} charge",
        metadata=dict(metadata or {}),
    )


def build_payout_entry(
    *,
    payout_id: str,
    creator_id: str,
    amount_minor: int,
    currency: str,
    provider: str,
    metadata: dict[str, Any] | None = None,
) -> JournalDraft:
    return JournalDraft(
        idempotency_key=payout_key(payout_id),
        source_kind="payout",
        source_id=str(payout_id),
        flow_type=FlowType.PAYOUT,
        currency=currency,
        postings=(
            PostingLine(
                "creator_payable",
                DEBIT,
                amount_minor,
                counterparty_type="creator",
                counterparty_id=creator_id,
            ),
            PostingLine(
                "creator_payouts",
                CREDIT,
                amount_minor,
                counterparty_type="creator",
                counterparty_id=creator_id,
            ),
        ),
        provider=provider,
        description="creator payout",
        metadata=dict(metadata or {}),
    )
