"""Health check endpoints.

``/health`` reads the ledger tables: a database without the full chart of
accounts cannot post journals, so it reports ``degraded``. The backlog
counters (open reconciliation issues, failed webhook events, payouts still
processing) are informational and never change the status.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace_ledger import __version__
from marketplace_ledger.api.dependencies import DbSession
from marketplace_ledger.models import (
    LedgerAccount,
    Payout,
    PayoutStatus,
    ReconciliationIssue,
    WebhookEvent,
    WebhookStatus,
)
from marketplace_ledger.services.journal import CHART_OF_ACCOUNTS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

SERVICE_NAME = "marketplace-ledger"


class LedgerBacklog(BaseModel):
    """Work waiting on a sweep or an operator."""

    open_reconciliation_issues: int
    failed_webhook_events: int
    processing_payouts: int


class HealthResponse(BaseModel):
    """Health check response."""

    service: str
    version: str
    status: str
    timestamp: datetime
    database: str
    ledger_accounts_expected: int
    ledger_accounts_seeded: int | None = None
    backlog: LedgerBacklog | None = None


def _seeded_account_count(db: Session) -> int:
    codes = [code for code, _, _ in CHART_OF_ACCOUNTS]
    return db.scalar(
        select(func.count()).select_from(LedgerAccount).where(
            LedgerAccount.code.in_(codes), LedgerAccount.is_active.is_(True)
        )
    ) or 0


def _count(db: Session, model, *criteria) -> int:
    return db.scalar(select(func.count()).select_from(model).where(*criteria)) or 0


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
def health_check(db: DbSession) -> HealthResponse:
    """Check the database and the ledger tables."""
    expected = len(CHART_OF_ACCOUNTS)
    try:
        seeded = _seeded_account_count(db)
        backlog = LedgerBacklog(
            open_reconciliation_issues=_count(db, ReconciliationIssue, ReconciliationIssue.status == "open"),
            failed_webhook_events=_count(db, WebhookEvent, WebhookEvent.status == WebhookStatus.FAILED.value),
            processing_payouts=_count(db, Payout, Payout.status == PayoutStatus.PROCESSING.value),
        )
    except SQLAlchemyError:
        logger.exception("Health check could not read the ledger tables")
        return HealthResponse(
            service=SERVICE_NAME,
            version=__version__,
            status="degraded",
            timestamp=datetime.now(timezone.utc),
            database="unhealthy",
            ledger_accounts_expected=expected,
        )

    return HealthResponse(
        service=SERVICE_NAME,
        version=__version__,
        status="healthy" if seeded == expected else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy",
        ledger_accounts_expected=expected,
        ledger_accounts_seeded=seeded,
        backlog=backlog,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: DbSession, response: Response) -> dict[str, str]:
    """Ready once the chart of accounts is in place."""
    try:
        ready = _seeded_account_count(db) == len(CHART_OF_ACCOUNTS)
    except SQLAlchemyError:
        logger.exception("Readiness check could not read ledger_accounts")
        ready = False
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "service": SERVICE_NAME}
    return {"status": "ready", "service": SERVICE_NAME}


@router.get("/live", status_code=status.HTTP_200_OK)
def liveness_check() -> dict[str, str]:
    """Process is up. Touches nothing."""
    return {"status": "alive", "service": SERVICE_NAME}
