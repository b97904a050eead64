"""SQLAlchemy ORM models for the marketplace ledger."""

from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin
from marketplace_ledger.models.commerce import (
    ALL_MEDIA,
    DropInCreditPurchase,
    Entitlement,
    Payout,
    PayoutFrequency,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    Wallet,
    WalletBalance,
)
from marketplace_ledger.models.idempotency import (
    IdempotencyKey,
    IdempotencyStatus,
    WebhookEvent,
    WebhookStatus,
)
from marketplace_ledger.models.ledger import Direction, FlowType, JournalEntry, LedgerAccount, Posting
from marketplace_ledger.models.reconciliation import (
    Notification,
    ReconciliationIssue,
    ReconciliationRun,
)
from marketplace_ledger.models.subscriptions import (
    LIVE_STATUSES,
    SCOPE_CAPABILITIES,
    TERMINAL_STATUSES,
    RenewalMode,
    Subscription,
    SubscriptionScope,
    SubscriptionStatus,
)

__all__ = [
    "ALL_MEDIA",
    "Base",
    "Direction",
    "DropInCreditPurchase",
    "Entitlement",
    "FlowType",
    "IdempotencyKey",
    "IdempotencyStatus",
    "JSONType",
    "JournalEntry",
    "LIVE_STATUSES",
    "LedgerAccount",
    "Notification",
    "Payout",
    "PayoutFrequency",
    "PayoutStatus",
    "Posting",
    "ReconciliationIssue",
    "ReconciliationRun",
    "RenewalMode",
    "SCOPE_CAPABILITIES",
    "Subscription",
    "SubscriptionScope",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "TimestampMixin",
    "Transaction",
    "TransactionStatus",
    "UUIDPrimaryKeyMixin",
    "Wallet",
    "WalletBalance",
    "WebhookEvent",
    "WebhookStatus",
]
