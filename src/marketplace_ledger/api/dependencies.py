"""FastAPI dependencies for dependency injection."""

import hmac
from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from marketplace_ledger.config import Settings, get_settings
from marketplace_ledger.database import init_db
from marketplace_ledger.errors import AuthorizationError, ServiceUnavailableError
from marketplace_ledger.policies import (
    IdempotencyPolicy,
    ManualRenewalPolicy,
    PayoutPolicy,
    ReconciliationPolicy,
)
from marketplace_ledger.providers import GatewayRegistry, build_gateways
from marketplace_ledger.services.notifications import (
    DatabaseNotificationEmitter,
    NotificationEmitter,
)


def get_db_session() -> Generator[Session, None, None]:
    """Get database session dependency."""
    _, factory = init_db()
    session = factory()
    try:
        yield session
    finally:
        session.close()


def get_app_settings() -> Settings:
    return get_settings()


@lru_cache(maxsize=1)
def get_gateways() -> GatewayRegistry:
    """One adapter per provider for the life of the process."""
    return build_gateways(get_settings())


def get_notification_emitter(
    db: Annotated[Session, Depends(get_db_session)],
) -> NotificationEmitter:
    return DatabaseNotificationEmitter(db)


def get_manual_renewal_policy(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ManualRenewalPolicy:
    return ManualRenewalPolicy.from_settings(settings)


def get_payout_policy(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> PayoutPolicy:
    return PayoutPolicy.from_settings(settings)


def get_idempotency_policy(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> IdempotencyPolicy:
    return IdempotencyPolicy.from_settings(settings)


def get_reconciliation_policy() -> ReconciliationPolicy:
    return ReconciliationPolicy()


def require_ops_secret(
    settings: Annotated[Settings, Depends(get_app_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Operational endpoints take ``Authorization: Bearer <CRON_SECRET>``.

    Disabled (503) until the secret is configured.
    """
    if not settings.cron_secret:
        raise ServiceUnavailableError("CRON_SECRET is not configured. Endpoint is disabled.")
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise AuthorizationError("Unauthorized")


def get_actor_id(
    x_actor_id: Annotated[str | None, Header()] = None,
) -> str:
    """Operator performing a manual action."""
    return (x_actor_id or "").strip() or "operator"


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Gateways = Annotated[GatewayRegistry, Depends(get_gateways)]
Emitter = Annotated[NotificationEmitter, Depends(get_notification_emitter)]
ActorId = Annotated[str, Depends(get_actor_id)]
OpsAuth = Depends(require_ops_secret)
