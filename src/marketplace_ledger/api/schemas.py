"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Errors
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway once the event is claimed."""

    received: bool = True
    replay: bool
    status: str
    provider: str
    event_id: str


# ============================================================================
# Reconciliation
# ============================================================================


class FinanceReconcileResponse(BaseModel):
    run_id: UUID
    run_key: str
    dry_run: bool
    limit: int
    checked: int
    issues: int
    auto_healed: int


class SubscriptionReconcileResponse(BaseModel):
    dry_run: bool
    processed: int
    updated: int
    skipped: int
    errors: int
    details: list[dict[str, Any]]


# ============================================================================
# Payouts
# ============================================================================


class ManualPayoutRequest(BaseModel):
    """Manual payout. The idempotency key may also come from the header."""

    wallet_id: UUID
    amount_minor: int | None = Field(default=None, gt=0)
    idempotency_key: str | None = Field(default=None, max_length=255)


class PayoutBatchRequest(BaseModel):
    mode: Literal["threshold", "daily", "weekly", "monthly"] = "threshold"


class PayoutDetail(BaseModel):
    payout_id: UUID
    wallet_id: UUID
    status: str
    amount_minor: int
    currency: str
    provider: str
    provider_reference: str | None = None
    failure_reason: str | None = None
    journal_entry_id: UUID | None = None


class ManualPayoutResponse(BaseModel):
    """Result of a manual payout, first time or replayed."""

    payout: PayoutDetail | None = None
    replayed: bool
    detail: str | None = None
    code: str | None = None


class BatchPayoutResponse(BaseModel):
    mode: str
    processed: int
    succeeded: int
    failed: int
    skipped: int
    recovered: int = 0
    errors: list[dict[str, str]]
    payouts: list[PayoutDetail]


class PayoutQueueResponse(BaseModel):
    pending: int
    total_amount_minor: int
    by_provider: dict[str, dict[str, int]]
    by_currency: dict[str, int]


# ============================================================================
# Subscriptions
# ============================================================================


class ManualRenewalRequest(BaseModel):
    """Activate or extend a manual-renewal subscription from a one-off charge."""

    scope: Literal["creator_subscription", "attendee_subscription", "vault_subscription"]
    owner_id: str = Field(min_length=1)
    plan_code: str = Field(min_length=1)
    provider: Literal["stripe", "paypal", "flutterwave", "paystack"]
    reference: str = Field(min_length=1)
    billing_cycle: str = "monthly"


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    scope: str
    owner_id: str
    plan_code: str
    status: str
    payment_provider: str
    renewal_mode: str
    external_subscription_id: str | None = None
    billing_cycle: str
    currency: str
    amount_minor: int
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    capability_flags: dict[str, bool]


class ManualRenewalResponse(BaseModel):
    subscription: SubscriptionResponse
    journal_entry_id: UUID | None = None
    replayed: bool


# ============================================================================
# Ledger
# ============================================================================


class AccountBalanceResponse(BaseModel):
    account_code: str
    currency: str
    debit_minor: int
    credit_minor: int
    net_minor: int


class CreatorSettlementResponse(BaseModel):
    creator_id: str
    currency: str
    accrued_minor: int
    released_minor: int
    outstanding_minor: int


class BalancesResponse(BaseModel):
    accounts: list[AccountBalanceResponse]
    creators: list[CreatorSettlementResponse]
