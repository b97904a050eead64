"""Reconciliation sweep endpoints (cron)."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from marketplace_ledger.api.dependencies import (
    DbSession,
    Emitter,
    Gateways,
    OpsAuth,
    get_manual_renewal_policy,
    get_reconciliation_policy,
)
from marketplace_ledger.api.schemas import (
    ErrorResponse,
    FinanceReconcileResponse,
    SubscriptionReconcileResponse,
)
from marketplace_ledger.policies import ManualRenewalPolicy, ReconciliationPolicy
from marketplace_ledger.services.finance_reconciliation import FinanceReconciler
from marketplace_ledger.services.subscription_reconciliation import SubscriptionReconciler

router = APIRouter(
    prefix="/reconciliation",
    tags=["reconciliation"],
    dependencies=[OpsAuth],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.post("/finance", response_model=FinanceReconcileResponse)
def reconcile_finance(
    db: DbSession,
    policy: Annotated[ReconciliationPolicy, Depends(get_reconciliation_policy)],
    limit: Annotated[int | None, Query(ge=1)] = None,
    dry_run: Annotated[bool, Query(alias="dryRun")] = False,
) -> FinanceReconcileResponse:
    """Find and heal journal gaps."""
    result = FinanceReconciler(db, policy=policy).run(limit=limit, dry_run=dry_run)
    return FinanceReconcileResponse(**result.to_dict())


@router.post("/subscriptions", response_model=SubscriptionReconcileResponse)
def reconcile_subscriptions(
    db: DbSession,
    gateways: Gateways,
    emitter: Emitter,
    policy: Annotated[ManualRenewalPolicy, Depends(get_manual_renewal_policy)],
    provider: str | None = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
    dry_run: Annotated[bool, Query(alias="dryRun")] = False,
) -> SubscriptionReconcileResponse:
    """Advance manual renewals and heal drift against the gateways."""
    reconciler = SubscriptionReconciler(db, gateways=gateways, emitter=emitter, policy=policy)
    result = reconciler.run(provider=provider, limit=limit, dry_run=dry_run)
    return SubscriptionReconcileResponse(**result.to_dict())
