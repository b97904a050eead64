"""Journal balance views."""

from fastapi import APIRouter

from marketplace_ledger.api.dependencies import DbSession, OpsAuth
from marketplace_ledger.api.schemas import (
    AccountBalanceResponse,
    BalancesResponse,
    CreatorSettlementResponse,
)
from marketplace_ledger.services.journal import JournalService

router = APIRouter(prefix="/ledger", tags=["ledger"], dependencies=[OpsAuth])


@router.get("/balances", response_model=BalancesResponse)
def get_balances(
    db: DbSession,
    currency: str | None = None,
    creator_id: str | None = None,
) -> BalancesResponse:
    """Per-account totals and creator payable positions."""
    journal = JournalService(db)
    return BalancesResponse(
        accounts=[
            AccountBalanceResponse(
                account_code=b.account_code,
                currency=b.currency,
                debit_minor=b.debit_minor,
                credit_minor=b.credit_minor,
                net_minor=b.net_minor,
            )
            for b in journal.account_balances(currency)
        ],
        creators=[
            CreatorSettlementResponse(
                creator_id=s.creator_id,
                currency=s.currency,
                accrued_minor=s.accrued_minor,
                released_minor=s.released_minor,
                outstanding_minor=s.outstanding_minor,
            )
            for s in journal.creator_settlements(creator_id)
        ],
    )
