"""In-memory gateway state for local development and testing.

Each gateway adapter verifies signatures and parses payloads for real;
the outbound calls (verify charge, poll subscription, transfer) are
served from this in-memory state. Replace with the gateway SDK calls
for production.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from marketplace_ledger.errors import GatewayError
from marketplace_ledger.providers.base import (
    ChargeVerification,
    ProviderName,
    SubscriptionStatusResult,
    TransferRequest,
    TransferResult,
)


class SandboxGateway:
    """Shared in-memory behaviour for the four sandbox adapters."""

    provider_name: ProviderName
    reference_prefix = "sbx"

    def __init__(self, *, fail_transfers: bool = False):
        """Initialize sandbox state.

        Args:
            fail_transfers: If True, every transfer is rejected with a
                GatewayError until ``simulate_transfer_failure(False)``.
        """
        self.fail_transfers = fail_transfers
        self._charges: dict[str, ChargeVerification] = {}
        self._subscriptions: dict[str, SubscriptionStatusResult] = {}
        self._transfers: dict[str, TransferResult] = {}
        # Every create_transfer call, accepted or not
        self.transfer_calls: list[TransferRequest] = []

    def verify_transaction(self, reference: str) -> ChargeVerification:
        """Return the simulated charge, or a not-found verification."""
        charge = self._charges.get(reference)
        if charge is None:
            return ChargeVerification(reference=reference, succeeded=False, status="not_found")
        return charge

    def get_subscription_status(self, external_subscription_id: str) -> SubscriptionStatusResult | None:
        return self._subscriptions.get(external_subscription_id)

    def create_transfer(self, request: TransferRequest) -> TransferResult:
        """Submit a transfer (sandbox).

        Transfers are idempotent on ``request.idempotency_key`` the way
        real gateways dedupe on their idempotency header.
        """
        self.transfer_calls.append(request)
        if self.fail_transfers:
            raise GatewayError(
                f"{self.provider_name.value} rejected transfer",
                context={"payout_id": request.payout_id, "provider": self.provider_name.value},
            )

        existing = self._transfers.get(request.idempotency_key)
        if existing is not None:
            return existing

        result = TransferResult(
            provider_reference=f"{self.reference_prefix}_tr_{uuid.uuid4().hex[:16]}",
            accepted=True,
            message=f"{self.provider_name.value} sandbox accepted",
        )
        self._transfers[request.idempotency_key] = result
        return result

    @property
    def accepted_transfers(self) -> list[TransferResult]:
        return list(self._transfers.values())

    def simulate_charge(
        self,
        reference: str,
        *,
        amount_minor: int,
        currency: str = "USD",
        succeeded: bool = True,
        provider_fee_minor: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeVerification:
        """Register a charge the gateway will report on verification (for testing)."""
        charge = ChargeVerification(
            reference=reference,
            succeeded=succeeded,
            status="success" if succeeded else "failed",
            amount_minor=amount_minor,
            currency=currency.upper(),
            provider_fee_minor=provider_fee_minor,
            metadata=dict(metadata or {}),
        )
        self._charges[reference] = charge
        return charge

    def simulate_subscription_status(
        self,
        external_subscription_id: str,
        status: str,
        *,
        external_plan_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
    ) -> SubscriptionStatusResult:
        """Set the status the gateway reports for a subscription (for testing)."""
        existing = self._subscriptions.get(external_subscription_id)
        if existing is not None:
            result = replace(
                existing,
                status=status,
                external_plan_id=external_plan_id or existing.external_plan_id,
                current_period_start=current_period_start or existing.current_period_start,
                current_period_end=current_period_end or existing.current_period_end,
                cancel_at_period_end=cancel_at_period_end,
            )
        else:
            result = SubscriptionStatusResult(
                external_subscription_id=external_subscription_id,
                status=status,
                external_plan_id=external_plan_id,
                current_period_start=current_period_start,
                current_period_end=current_period_end,
                cancel_at_period_end=cancel_at_period_end,
            )
        self._subscriptions[external_subscription_id] = result
        return result

    def simulate_transfer_failure(self, enabled: bool = True) -> None:
        """Make subsequent transfers fail (or succeed again) (for testing)."""
        self.fail_transfers = enabled
