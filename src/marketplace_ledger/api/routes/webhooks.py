"""Gateway webhook receiver."""

from fastapi import APIRouter, Path, Request, status
from starlette.concurrency import run_in_threadpool

from marketplace_ledger.api.dependencies import DbSession, Gateways
from marketplace_ledger.api.schemas import ErrorResponse, WebhookAck
from marketplace_ledger.services.webhook_processor import WebhookProcessor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def receive_webhook(
    request: Request,
    db: DbSession,
    gateways: Gateways,
    provider: str = Path(..., description="stripe, paypal, flutterwave or paystack"),
) -> WebhookAck:
    """Verify, claim and process a gateway notification.

    Returns 200 once the event is durably claimed, even if domain
    processing failed; the stored event is then replayed by operators
    rather than redelivered by the gateway.
    """
    body = await request.body()
    processor = WebhookProcessor(db, gateways=gateways)
    outcome = await run_in_threadpool(processor.handle, provider, body, dict(request.headers))
    return WebhookAck(**outcome.to_dict())
