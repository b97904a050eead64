"""Subscription operator endpoints."""

from uuid import UUID

from fastapi import APIRouter, Path

from marketplace_ledger.api.dependencies import DbSession, Gateways, OpsAuth
from marketplace_ledger.api.schemas import (
    ErrorResponse,
    ManualRenewalRequest,
    ManualRenewalResponse,
    SubscriptionResponse,
)
from marketplace_ledger.providers import ProviderName
from marketplace_ledger.services.subscriptions import SubscriptionService

router = APIRouter(
    prefix="/subscriptions",
    tags=["subscriptions"],
    dependencies=[OpsAuth],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.post(
    "/manual-renewals",
    response_model=ManualRenewalResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def activate_manual_renewal(
    payload: ManualRenewalRequest,
    db: DbSession,
    gateways: Gateways,
) -> ManualRenewalResponse:
    """Verify a one-off charge with the gateway and extend the paid period."""
    provider = ProviderName(payload.provider)
    result = SubscriptionService(db).activate_manual_renewal(
        scope=payload.scope,
        owner_id=payload.owner_id,
        plan_code=payload.plan_code,
        provider=provider,
        reference=payload.reference,
        gateway=gateways.get(provider),
        billing_cycle=payload.billing_cycle,
    )
    db.commit()
    return ManualRenewalResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        journal_entry_id=result.journal.entry_id if result.journal else None,
        replayed=result.replayed,
    )


@router.post(
    "/{scope}/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    responses={404: {"model": ErrorResponse}},
)
def cancel_subscription(
    db: DbSession,
    scope: str = Path(...),
    subscription_id: UUID = Path(...),
) -> SubscriptionResponse:
    """User cancellation: canceled immediately, capabilities revoked."""
    row = SubscriptionService(db).cancel(scope, subscription_id)
    db.commit()
    return SubscriptionResponse.model_validate(row)
