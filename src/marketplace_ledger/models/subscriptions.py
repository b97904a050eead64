"""Subscription model.

One table for all three scopes (creator, attendee, vault). Scope-specific
capability flags are projected from ``SCOPE_CAPABILITIES``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_ledger.database import utcnow
from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionScope(str, enum.Enum):
    CREATOR = "creator_subscription"
    ATTENDEE = "attendee_subscription"
    VAULT = "vault_subscription"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class RenewalMode(str, enum.Enum):
    PROVIDER_RECURRING = "provider_recurring"
    MANUAL_RENEWAL = "manual_renewal"


SCOPE_CAPABILITIES: dict[SubscriptionScope, tuple[str, ...]] = {
    SubscriptionScope.CREATOR: ("paid_plan_features",),
    SubscriptionScope.ATTENDEE: (
        "can_discover_non_contacts",
        "can_upload_drop_ins",
        "can_receive_all_drop_ins",
        "can_search_social_media",
    ),
    SubscriptionScope.VAULT: ("paid_storage_quota",),
}

LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
})

# "cancelled" appears in rows written by older clients.
TERMINAL_STATUSES = frozenset({"canceled", "cancelled", "expired"})


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A paid plan held by a creator, attendee or vault owner.

    ``external_subscription_id`` is null for manual-renewal rows; their
    lifecycle is driven by ``current_period_end``.
    """

    __tablename__ = "subscriptions"

    scope: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    plan_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    renewal_mode: Mapped[str] = mapped_column(
        String(24), nullable=False, default=RenewalMode.PROVIDER_RECURRING.value
    )
    external_subscription_id: Mapped[str | None] = mapped_column(Text)
    external_customer_id: Mapped[str | None] = mapped_column(Text)
    external_plan_id: Mapped[str | None] = mapped_column(Text)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_webhook_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    capability_flags: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "scope", "payment_provider", "external_subscription_id",
            name="subscriptions_external_uq",
        ),
        CheckConstraint(
            "scope IN ('creator_subscription', 'attendee_subscription', 'vault_subscription')",
            name="subscriptions_scope_ck",
        ),
        CheckConstraint(
            "renewal_mode IN ('provider_recurring', 'manual_renewal')",
            name="subscriptions_renewal_mode_ck",
        ),
        Index("subscriptions_owner_idx", "scope", "owner_id"),
        Index("subscriptions_status_idx", "status", "renewal_mode"),
    )

    @property
    def is_manual_renewal(self) -> bool:
        return self.renewal_mode == RenewalMode.MANUAL_RENEWAL.value
