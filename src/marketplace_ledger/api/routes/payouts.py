"""Payout endpoints (operator and cron)."""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from marketplace_ledger.api.dependencies import (
    ActorId,
    DbSession,
    Gateways,
    OpsAuth,
    get_idempotency_policy,
    get_payout_policy,
)
from marketplace_ledger.api.schemas import (
    BatchPayoutResponse,
    ErrorResponse,
    ManualPayoutRequest,
    ManualPayoutResponse,
    PayoutBatchRequest,
    PayoutQueueResponse,
)
from marketplace_ledger.errors import ValidationError
from marketplace_ledger.policies import IdempotencyPolicy, PayoutPolicy
from marketplace_ledger.services.payouts import PayoutService

router = APIRouter(
    prefix="/payouts",
    tags=["payouts"],
    dependencies=[OpsAuth],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


def get_payout_service(
    db: DbSession,
    gateways: Gateways,
    policy: Annotated[PayoutPolicy, Depends(get_payout_policy)],
    idempotency_policy: Annotated[IdempotencyPolicy, Depends(get_idempotency_policy)],
) -> PayoutService:
    return PayoutService(db, gateways=gateways, policy=policy, idempotency_policy=idempotency_policy)


Payouts = Annotated[PayoutService, Depends(get_payout_service)]


def resolve_idempotency_key(header_key: str | None, body_key: str | None) -> str:
    """Header takes precedence; both present and different is rejected."""
    header_key = (header_key or "").strip() or None
    body_key = (body_key or "").strip() or None
    if header_key and body_key and header_key != body_key:
        raise ValidationError(
            "Idempotency-Key header and body idempotency_key do not match",
            context={"header": header_key, "body": body_key},
        )
    key = header_key or body_key
    if not key:
        raise ValidationError("An idempotency key is required (Idempotency-Key header or body)")
    return key


@router.post(
    "/manual",
    response_model=ManualPayoutResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ManualPayoutResponse},
    },
)
def request_manual_payout(
    payload: ManualPayoutRequest,
    service: Payouts,
    actor_id: ActorId,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> JSONResponse:
    """Pay out one wallet, at most once per idempotency key."""
    key = resolve_idempotency_key(idempotency_key, payload.idempotency_key)
    response = service.request_manual_payout(
        actor_id=actor_id,
        wallet_id=payload.wallet_id,
        idempotency_key=key,
        amount_minor=payload.amount_minor,
    )
    headers = {"Idempotency-Replayed": "true"} if response.replayed else None
    return JSONResponse(status_code=response.status_code, content=response.body, headers=headers)


@router.post("/batch", response_model=BatchPayoutResponse)
def process_pending_payouts(payload: PayoutBatchRequest, service: Payouts) -> BatchPayoutResponse:
    """Pay out every eligible wallet for a mode. Safe to re-run."""
    return BatchPayoutResponse(**service.process_pending_payouts(payload.mode).to_dict())


@router.post("/retry", response_model=BatchPayoutResponse)
def retry_failed_payouts(service: Payouts) -> BatchPayoutResponse:
    """Re-attempt recent failed payouts."""
    return BatchPayoutResponse(**service.retry_failed_payouts().to_dict())


@router.get("/queue", response_model=PayoutQueueResponse, status_code=status.HTTP_200_OK)
def get_payout_queue(service: Payouts) -> PayoutQueueResponse:
    """Wallets with money waiting to be paid out."""
    return PayoutQueueResponse(**service.get_payout_queue().to_dict())
