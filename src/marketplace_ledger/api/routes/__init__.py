"""API routes."""

from marketplace_ledger.api.routes.health import router as health_router
from marketplace_ledger.api.routes.ledger import router as ledger_router
from marketplace_ledger.api.routes.payouts import router as payouts_router
from marketplace_ledger.api.routes.reconciliation import router as reconciliation_router
from marketplace_ledger.api.routes.subscriptions import router as subscriptions_router
from marketplace_ledger.api.routes.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "ledger_router",
    "payouts_router",
    "reconciliation_router",
    "subscriptions_router",
    "webhooks_router",
]
