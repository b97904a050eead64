"""Ledger services.

Leaves first:
- Idempotency key store and webhook event ledger
- Financial journal (append-only double entry) and posting builders
- Wallet balances, entitlements, notifications
- Subscription lifecycle and reconciliation
- Finance reconciliation (journal gap healing)
- Payout queue and processor
- Webhook processing
"""

from marketplace_ledger.services.entitlements import EntitlementService
from marketplace_ledger.services.finance_reconciliation import (
    FinanceReconciler,
    FinanceReconcileResult,
)
from marketplace_ledger.services.financial_flows import (
    SettlementAmounts,
    derive_settlement_amounts,
)
from marketplace_ledger.services.idempotency import (
    IdempotencyClaim,
    IdempotencyService,
    compute_request_hash,
)
from marketplace_ledger.services.journal import (
    AccountBalance,
    CreatorSettlement,
    JournalDraft,
    JournalService,
    PostingLine,
    PostResult,
    seed_chart_of_accounts,
)
from marketplace_ledger.services.notifications import (
    DatabaseNotificationEmitter,
    EmitResult,
    NotificationEmitter,
)
from marketplace_ledger.services.payouts import (
    BatchPayoutResult,
    ManualPayoutResponse,
    PayoutOutcome,
    PayoutQueue,
    PayoutService,
)
from marketplace_ledger.services.settlements import SettlementService
from marketplace_ledger.services.subscription_reconciliation import (
    SubscriptionReconciler,
    SubscriptionReconcileResult,
)
from marketplace_ledger.services.subscriptions import (
    ManualRenewalResult,
    SubscriptionService,
    SubscriptionUpsert,
    map_provider_status,
)
from marketplace_ledger.services.wallet import WalletService
from marketplace_ledger.services.webhook_ledger import WebhookClaim, WebhookLedgerService
from marketplace_ledger.services.webhook_processor import WebhookOutcome, WebhookProcessor

__all__ = [
    # Idempotency
    "IdempotencyService",
    "IdempotencyClaim",
    "compute_request_hash",
    # Webhook ledger
    "WebhookLedgerService",
    "WebhookClaim",
    # Journal
    "JournalService",
    "JournalDraft",
    "PostingLine",
    "PostResult",
    "AccountBalance",
    "CreatorSettlement",
    "seed_chart_of_accounts",
    "SettlementAmounts",
    "derive_settlement_amounts",
    "SettlementService",
    # Derived state
    "WalletService",
    "EntitlementService",
    # Notifications
    "NotificationEmitter",
    "DatabaseNotificationEmitter",
    "EmitResult",
    # Subscriptions
    "SubscriptionService",
    "SubscriptionUpsert",
    "ManualRenewalResult",
    "map_provider_status",
    "SubscriptionReconciler",
    "SubscriptionReconcileResult",
    # Finance reconciliation
    "FinanceReconciler",
    "FinanceReconcileResult",
    # Payouts
    "PayoutService",
    "PayoutOutcome",
    "PayoutQueue",
    "BatchPayoutResult",
    "ManualPayoutResponse",
    # Webhooks
    "WebhookProcessor",
    "WebhookOutcome",
]
