"""Ledger policy objects.

Explicit policy for the engines. No hidden defaults that move money.

Pattern:
    payouts = PayoutService(
        db,
        gateways=gateways,
        policy=PayoutPolicy(minimums_by_currency={"USD": 5000}),
    )

Rules:
    1. Engines never read env vars. Policy is passed in.
    2. Immutable after creation (frozen dataclasses).
    3. Settings -> policy conversion lives in ``from_settings``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from marketplace_ledger.config import Settings


DEFAULT_PAYOUT_MINIMUMS: Mapping[str, int] = MappingProxyType({
    "USD": 5000,
    "GHS": 10000,
    "NGN": 500000,
    "KES": 100000,
    "GBP": 4000,
    "EUR": 4500,
    "ZAR": 50000,
    "UGX": 10000000,
    "RWF": 5000000,
    "TZS": 5000000,
})


@dataclass(frozen=True)
class ManualRenewalPolicy:
    """
    Manual-renewal lifecycle policy.

    Attributes:
        grace_period: How long after period end a row stays usable before
            it is expired. Default 0.
        reminder_windows: Reminder windows before expiry, smallest first.
            Default 24h and 72h.
    """

    grace_period: timedelta = timedelta(0)
    reminder_windows: tuple[timedelta, ...] = (timedelta(hours=24), timedelta(hours=72))

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.grace_period < timedelta(0):
            raise ValueError("grace_period cannot be negative")
        if any(w <= timedelta(0) for w in self.reminder_windows):
            raise ValueError("reminder windows must be positive")
        # Smallest window first so the tightest unmet window is matched.
        object.__setattr__(self, "reminder_windows", tuple(sorted(set(self.reminder_windows))))

    @classmethod
    def from_settings(cls, settings: Settings) -> ManualRenewalPolicy:
        return cls(
            grace_period=timedelta(hours=settings.manual_renewal_grace_hours),
            reminder_windows=tuple(
                timedelta(hours=h) for h in settings.manual_renewal_reminder_hours
            ),
        )


@dataclass(frozen=True)
class PayoutPolicy:
    """
    Payout batching policy.

    Attributes:
        minimums_by_currency: Minimum available balance (minor units)
            before a threshold payout fires, per currency.
        default_minimum_minor: Minimum for currencies not listed.
        retry_lookback: How far back failed payouts are retried.
        stuck_after: A payout still ``processing`` after this long is
            re-driven by the recovery pass.
    """

    minimums_by_currency: Mapping[str, int] = field(default_factory=lambda: DEFAULT_PAYOUT_MINIMUMS)
    default_minimum_minor: int = 5000
    retry_lookback: timedelta = timedelta(hours=24)
    stuck_after: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.default_minimum_minor < 0:
            raise ValueError("default_minimum_minor cannot be negative")
        if self.retry_lookback <= timedelta(0):
            raise ValueError("retry_lookback must be positive")
        if self.stuck_after <= timedelta(0):
            raise ValueError("stuck_after must be positive")

    def minimum_for(self, currency: str) -> int:
        """Threshold for a currency, falling back to the default."""
        return int(self.minimums_by_currency.get(currency.upper(), self.default_minimum_minor))

    @classmethod
    def from_settings(cls, settings: Settings) -> PayoutPolicy:
        return cls(
            default_minimum_minor=settings.payout_default_minimum_minor,
            retry_lookback=timedelta(hours=settings.payout_retry_lookback_hours),
            stuck_after=timedelta(minutes=settings.payout_stuck_after_minutes),
        )


@dataclass(frozen=True)
class ReconciliationPolicy:
    """
    Reconciliation sweep bounds.

    Attributes:
        default_limit: Rows per check when the caller gives no limit.
        max_limit: Hard cap on the per-check limit.
        subscription_lookback: Only subscriptions with a webhook inside
            this window are checked for missing charge journals.
    """

    default_limit: int = 200
    max_limit: int = 1000
    subscription_lookback: timedelta = timedelta(days=45)

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.default_limit < 1 or self.default_limit > self.max_limit:
            raise ValueError("default_limit must be between 1 and max_limit")

    def clamp(self, limit: int | None) -> int:
        """Clamp a requested limit into [1, max_limit]."""
        if limit is None:
            return self.default_limit
        return min(max(int(limit), 1), self.max_limit)


@dataclass(frozen=True)
class IdempotencyPolicy:
    """
    Idempotency key policy.

    Attributes:
        stale_after: When set, a key stuck in ``processing`` longer than
            this can be re-claimed by a new attempt with the same request
            hash. None keeps stuck keys for operator remediation.
    """

    stale_after: timedelta | None = None

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.stale_after is not None and self.stale_after <= timedelta(0):
            raise ValueError("stale_after must be positive or None")

    @classmethod
    def from_settings(cls, settings: Settings) -> IdempotencyPolicy:
        seconds = settings.idempotency_stale_after_seconds
        return cls(stale_after=timedelta(seconds=seconds) if seconds > 0 else None)
