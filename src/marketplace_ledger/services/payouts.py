"""Payout queue and processor.

Moves creator wallet balances to their gateway accounts.

Modes:
- threshold: every payout-enabled wallet whose available balance reaches
  the currency minimum (or the wallet's own higher threshold)
- daily / weekly / monthly: wallets on that payout frequency

Each payout is one unit of work:

    reserve balance -> transfer -> complete (journal) | release

The reservation is committed before the gateway call, so a crash
mid-transfer leaves the money in ``pending_payout`` rather than
available twice. ``recover_stuck_payouts`` re-drives such rows with the
same gateway idempotency key (the payout id).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.errors import GatewayError, LedgerError, NotFoundError, ValidationError
from marketplace_ledger.models import IdempotencyStatus, Payout, PayoutStatus, Wallet, WalletBalance
from marketplace_ledger.policies import IdempotencyPolicy, PayoutPolicy
from marketplace_ledger.providers import GatewayRegistry, TransferRequest, resolve_provider
from marketplace_ledger.services.idempotency import IdempotencyService, compute_request_hash
from marketplace_ledger.services.settlements import SettlementService

logger = logging.getLogger(__name__)

PAYOUT_MODES = ("threshold", "daily", "weekly", "monthly")
MANUAL_SCOPE = "payout.manual"
RETRY_SCOPE = "payout.retry"
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class PayoutOutcome:
    payout_id: UUID
    wallet_id: UUID
    status: str
    amount_minor: int
    currency: str
    provider: str
    provider_reference: str | None = None
    failure_reason: str | None = None
    journal_entry_id: UUID | None = None
    existing: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == PayoutStatus.COMPLETED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "payout_id": str(self.payout_id),
            "wallet_id": str(self.wallet_id),
            "status": self.status,
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "provider": self.provider,
            "provider_reference": self.provider_reference,
            "failure_reason": self.failure_reason,
            "journal_entry_id": str(self.journal_entry_id) if self.journal_entry_id else None,
        }


@dataclass
class BatchPayoutResult:
    mode: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    payouts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "recovered": self.recovered,
            "errors": self.errors,
            "payouts": self.payouts,
        }


@dataclass(frozen=True)
class PayoutQueue:
    pending: int
    total_amount_minor: int
    by_provider: dict[str, dict[str, int]]
    by_currency: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "total_amount_minor": self.total_amount_minor,
            "by_provider": self.by_provider,
            "by_currency": self.by_currency,
        }


@dataclass(frozen=True)
class ManualPayoutResponse:
    """What the caller sees, first time or on replay."""

    status_code: int
    body: dict[str, Any]
    replayed: bool


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


def schedule_bucket(mode: str, now: datetime) -> str:
    """Period a scheduled payout belongs to. Re-runs in the same period collide."""
    if mode == "daily":
        return now.date().isoformat()
    if mode == "weekly":
        year, week, _ = now.isocalendar()
        return f"{year}-W{week:02d}"
    if mode == "monthly":
        return now.strftime("%Y-%m")
    return now.isoformat()


class PayoutService:
    """Payout engine.

    Usage:
        service = PayoutService(db, gateways=gateways)
        result = service.process_pending_payouts("threshold")
    """

    def __init__(
        self,
        db: Session,
        *,
        gateways: GatewayRegistry,
        policy: PayoutPolicy | None = None,
        idempotency_policy: IdempotencyPolicy | None = None,
        settlements: SettlementService | None = None,
    ):
        self.db = db
        self.gateways = gateways
        self.policy = policy or PayoutPolicy()
        self.settlements = settlements or SettlementService(db)
        self.wallets = self.settlements.wallets
        self.idempotency = IdempotencyService(db, idempotency_policy)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def get_payout_queue(self) -> PayoutQueue:
        """Wallets with money waiting to be paid out."""
        rows = self.db.execute(
            select(Wallet.provider, WalletBalance.currency, WalletBalance.available_minor)
            .join(WalletBalance, WalletBalance.wallet_id == Wallet.id)
            .where(Wallet.payouts_enabled.is_(True), WalletBalance.available_minor > 0)
        ).all()

        by_provider: dict[str, dict[str, int]] = {}
        by_currency: dict[str, int] = {}
        total = 0
        for provider, currency, available in rows:
            total += available
            bucket = by_provider.setdefault(provider, {"count": 0, "amount_minor": 0})
            bucket["count"] += 1
            bucket["amount_minor"] += available
            by_currency[currency] = by_currency.get(currency, 0) + available
        return PayoutQueue(
            pending=len(rows),
            total_amount_minor=total,
            by_provider=by_provider,
            by_currency=by_currency,
        )

    def eligible_wallets(self, mode: str) -> list[tuple[Wallet, int]]:
        """(wallet, available) pairs due for a payout in ``mode``."""
        if mode not in PAYOUT_MODES:
            raise ValidationError(f"Unknown payout mode: {mode}", context={"modes": list(PAYOUT_MODES)})

        query = (
            select(Wallet, WalletBalance.available_minor)
            .join(WalletBalance, WalletBalance.wallet_id == Wallet.id)
            .where(Wallet.payouts_enabled.is_(True), WalletBalance.available_minor > 0)
            .order_by(Wallet.created_at)
        )
        if mode != "threshold":
            query = query.where(Wallet.payout_frequency == mode)

        eligible = []
        for wallet, available in self.db.execute(query).all():
            if mode == "threshold":
                threshold = max(self.policy.minimum_for(wallet.currency), wallet.payout_threshold_minor or 0)
                if available < threshold:
                    continue
            eligible.append((wallet, available))
        return eligible

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def process_pending_payouts(self, mode: str, *, now: datetime | None = None) -> BatchPayoutResult:
        """Pay out every eligible wallet. One wallet failing never stops the batch."""
        now = now or utcnow()
        result = BatchPayoutResult(mode=mode)
        bucket = schedule_bucket(mode, now)

        for wallet, available in self.eligible_wallets(mode):
            result.processed += 1
            wallet_id = wallet.id
            try:
                outcome = self.process_payout(
                    wallet_id,
                    available,
                    identity_key=f"{SYSTEM_ACTOR}:{mode}:{wallet_id}:{bucket}",
                    trigger=mode,
                )
            except LedgerError as exc:
                self.db.rollback()
                result.failed += 1
                result.errors.append({"wallet_id": str(wallet_id), "error": exc.message})
                continue
            except Exception as exc:
                logger.exception("Payout for wallet %s failed unexpectedly", wallet_id)
                self.db.rollback()
                result.failed += 1
                result.errors.append({"wallet_id": str(wallet_id), "error": _describe(exc)})
                continue

            if outcome.existing:
                result.skipped += 1
            elif outcome.succeeded:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append({"wallet_id": str(wallet_id), "error": outcome.failure_reason or "failed"})
            result.payouts.append(outcome.to_dict())

        logger.info(
            "Payout batch %s: processed=%d succeeded=%d failed=%d skipped=%d",
            mode, result.processed, result.succeeded, result.failed, result.skipped,
        )
        return result

    def recover_stuck_payouts(self, *, now: datetime | None = None, limit: int = 50) -> BatchPayoutResult:
        """Re-drive payouts left ``processing`` by a crash mid-transfer.

        A row counts as stuck once ``updated_at`` is older than
        ``policy.stuck_after``. Each row is claimed with a conditional
        UPDATE that bumps ``updated_at``, so concurrent recovery passes
        never drive the same payout. The transfer is re-sent with the
        payout id as gateway idempotency key: a transfer that did land is
        returned as-is instead of being paid again.
        """
        now = now or utcnow()
        cutoff = now - self.policy.stuck_after
        stuck = self.db.scalars(
            select(Payout)
            .where(Payout.status == PayoutStatus.PROCESSING.value, Payout.updated_at < cutoff)
            .order_by(Payout.updated_at)
            .limit(limit)
        ).all()

        result = BatchPayoutResult(mode="recover")
        for payout in stuck:
            result.processed += 1
            payout_id = payout.id
            claimed = self.db.execute(
                update(Payout)
                .where(
                    Payout.id == payout_id,
                    Payout.status == PayoutStatus.PROCESSING.value,
                    Payout.updated_at < cutoff,
                )
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not claimed:
                self.db.rollback()
                result.skipped += 1
                continue
            self.db.commit()

            logger.warning("Recovering payout %s stuck in processing", payout_id)
            try:
                payout = self.db.scalars(
                    select(Payout).where(Payout.id == payout_id).execution_options(populate_existing=True)
                ).one()
                wallet = self.wallets.get_wallet(payout.wallet_id)
                outcome = self._transfer(payout, wallet, trigger=payout.trigger)
            except Exception as exc:
                logger.exception("Recovery of payout %s failed", payout_id)
                self.db.rollback()
                result.failed += 1
                result.errors.append({"payout_id": str(payout_id), "error": _describe(exc)})
                continue

            if outcome.succeeded:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append({"payout_id": str(payout_id), "error": outcome.failure_reason or "failed"})
            result.payouts.append(outcome.to_dict())
        return result

    def retry_failed_payouts(self, *, now: datetime | None = None, limit: int = 50) -> BatchPayoutResult:
        """Re-attempt recent failed payouts; a successful retry supersedes the original.

        Stuck ``processing`` payouts are recovered first, so one that
        turns out rejected is retried in the same pass.
        """
        now = now or utcnow()
        recovery = self.recover_stuck_payouts(now=now, limit=limit)
        since = now - self.policy.retry_lookback
        failed = self.db.scalars(
            select(Payout)
            .where(Payout.status == PayoutStatus.FAILED.value, Payout.created_at >= since)
            .order_by(Payout.created_at)
            .limit(limit)
        ).all()

        result = BatchPayoutResult(mode="retry", recovered=recovery.succeeded + recovery.failed)
        result.errors.extend(recovery.errors)
        result.payouts.extend(recovery.payouts)
        for original in failed:
            result.processed += 1
            original_id = original.id
            try:
                claim = self.idempotency.claim(
                    operation_scope=RETRY_SCOPE,
                    actor_id=SYSTEM_ACTOR,
                    idempotency_key=str(original_id),
                    request_hash=compute_request_hash(
                        {"payout_id": str(original_id), "amount_minor": original.amount_minor}
                    ),
                )
                self.db.commit()
            except LedgerError:
                self.db.rollback()
                result.skipped += 1
                continue
            if claim.replayed:
                result.skipped += 1
                continue

            try:
                outcome = self.process_payout(
                    original.wallet_id,
                    original.amount_minor,
                    identity_key=f"{SYSTEM_ACTOR}:retry:{original_id}",
                    trigger="retry",
                    retry_of_id=original_id,
                )
            except LedgerError as exc:
                self.db.rollback()
                self._finalize(RETRY_SCOPE, SYSTEM_ACTOR, str(original_id), exc.status_code, exc.to_dict())
                result.failed += 1
                result.errors.append({"payout_id": str(original_id), "error": exc.message})
                continue
            except Exception as exc:
                logger.exception("Retry of payout %s failed unexpectedly", original_id)
                self.db.rollback()
                self._finalize(
                    RETRY_SCOPE, SYSTEM_ACTOR, str(original_id), 500,
                    {"detail": _describe(exc), "code": "INTERNAL_ERROR", "context": {}},
                )
                result.failed += 1
                result.errors.append({"payout_id": str(original_id), "error": _describe(exc)})
                continue

            if outcome.succeeded:
                original = self.db.get(Payout, original_id)
                original.status = PayoutStatus.SUPERSEDED.value
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append({"payout_id": str(original_id), "error": outcome.failure_reason or "failed"})
            self._finalize(
                RETRY_SCOPE, SYSTEM_ACTOR, str(original_id),
                200 if outcome.succeeded else 502,
                {"payout": outcome.to_dict()},
            )
            result.payouts.append(outcome.to_dict())
        return result

    # ------------------------------------------------------------------
    # Single payout
    # ------------------------------------------------------------------

    def request_manual_payout(
        self,
        *,
        actor_id: str,
        wallet_id: UUID,
        idempotency_key: str,
        amount_minor: int | None = None,
    ) -> ManualPayoutResponse:
        """Admin-triggered payout, at most once per (actor, idempotency key).

        ``amount_minor`` defaults to the full available balance.

        Raises:
            IdempotencyKeyReusedError: key reused for a different request
            IdempotencyInFlightError: the first attempt is still running
            LedgerError: validation failures (also stored for replay)
        """
        request_hash = compute_request_hash(
            {"wallet_id": str(wallet_id), "amount_minor": amount_minor}
        )
        claim = self.idempotency.claim(
            operation_scope=MANUAL_SCOPE,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        self.db.commit()

        if claim.replayed:
            return ManualPayoutResponse(
                status_code=claim.response_code or 200,
                body={**(claim.stored_payload or {}), "replayed": True},
                replayed=True,
            )

        try:
            if amount_minor is None:
                wallet = self.wallets.get_wallet(wallet_id)
                if wallet is None:
                    raise NotFoundError(f"Wallet {wallet_id} not found")
                amount_minor = self.wallets.ensure_balance(wallet).available_minor
            outcome = self.process_payout(
                wallet_id,
                amount_minor,
                identity_key=f"{actor_id}:{idempotency_key}",
                trigger="manual",
            )
        except LedgerError as exc:
            self.db.rollback()
            self._finalize(MANUAL_SCOPE, actor_id, idempotency_key, exc.status_code, exc.to_dict())
            raise
        except Exception:
            self.db.rollback()
            self._finalize(
                MANUAL_SCOPE, actor_id, idempotency_key, 500,
                {"detail": "Payout failed unexpectedly", "code": "INTERNAL_ERROR", "context": {}},
            )
            raise

        if outcome.succeeded:
            status_code = 200
        else:
            status_code = 502
        body = {"payout": outcome.to_dict()}
        if not outcome.succeeded:
            body.update(detail=outcome.failure_reason or "Transfer failed", code=GatewayError.code)
        self._finalize(MANUAL_SCOPE, actor_id, idempotency_key, status_code, body)
        return ManualPayoutResponse(status_code=status_code, body={**body, "replayed": False}, replayed=False)

    def process_payout(
        self,
        wallet_id: UUID,
        amount_minor: int,
        *,
        identity_key: str,
        trigger: str,
        retry_of_id: UUID | None = None,
    ) -> PayoutOutcome:
        """Pay ``amount_minor`` out of one wallet. Commits at each step.

        A second call with the same ``identity_key`` returns the existing
        payout without touching the balance or the gateway.

        Raises:
            NotFoundError: unknown wallet
            ValidationError: payouts disabled, bad amount, insufficient balance
        """
        wallet = self.wallets.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        if not wallet.payouts_enabled:
            raise ValidationError("Payouts are not enabled for this wallet", context={"wallet_id": str(wallet_id)})
        if amount_minor <= 0:
            raise ValidationError("Payout amount must be positive", context={"wallet_id": str(wallet_id)})

        inserted = self.db.execute(
            insert_ignore(self.db, Payout)
            .values(
                wallet_id=wallet.id,
                identity_key=identity_key,
                amount_minor=amount_minor,
                currency=wallet.currency,
                provider=wallet.provider,
                status=PayoutStatus.PENDING.value,
                trigger=trigger,
                retry_of_id=retry_of_id,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["identity_key"])
        ).rowcount == 1
        payout = self.db.scalars(
            select(Payout)
            .where(Payout.identity_key == identity_key)
            .execution_options(populate_existing=True)
        ).one()
        if not inserted:
            return self._outcome(payout, existing=True)

        self.wallets.ensure_balance(wallet)
        if not self.wallets.reserve_for_payout(wallet.id, amount_minor):
            self.db.rollback()
            raise ValidationError(
                "Insufficient available balance for payout",
                context={"wallet_id": str(wallet_id), "amount_minor": amount_minor},
            )
        payout.status = PayoutStatus.PROCESSING.value
        self.db.commit()
        return self._transfer(payout, wallet, trigger=trigger)

    def _transfer(self, payout: Payout, wallet: Wallet, *, trigger: str) -> PayoutOutcome:
        """Send a reserved ``processing`` payout to the gateway and settle it.

        Anything the gateway call raises counts as a failed transfer: the
        reservation goes back to available and the payout is marked failed
        for the retry pass.
        """
        amount_minor = payout.amount_minor
        try:
            gateway = self.gateways.get(resolve_provider(wallet.provider))
            if gateway is None:
                raise GatewayError(f"No gateway configured for {wallet.provider}")
            transfer = gateway.create_transfer(
                TransferRequest(
                    payout_id=str(payout.id),
                    idempotency_key=str(payout.id),
                    amount_minor=amount_minor,
                    currency=wallet.currency,
                    destination=wallet.provider_account_ref,
                    metadata={"wallet_id": str(wallet.id), "trigger": trigger},
                )
            )
            if not transfer.accepted:
                raise GatewayError(transfer.message or "Transfer rejected")
        except LedgerError as exc:
            logger.warning("Payout %s transfer failed: %s", payout.id, exc.message)
            return self._fail(payout, exc.message)
        except Exception as exc:
            logger.exception("Payout %s transfer raised", payout.id)
            return self._fail(payout, _describe(exc))

        self.wallets.complete_payout(wallet.id, amount_minor)
        payout.status = PayoutStatus.COMPLETED.value
        payout.provider_reference = transfer.provider_reference
        payout.completed_at = utcnow()
        journal = self.settlements.record_payout(payout, wallet, metadata={"trigger": trigger})
        self.db.commit()
        return self._outcome(payout, journal_entry_id=journal.entry_id)

    def _fail(self, payout: Payout, reason: str) -> PayoutOutcome:
        self.wallets.release_payout(payout.wallet_id, payout.amount_minor)
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = reason
        self.db.commit()
        return self._outcome(payout)

    def _outcome(
        self,
        payout: Payout,
        *,
        existing: bool = False,
        journal_entry_id: UUID | None = None,
    ) -> PayoutOutcome:
        return PayoutOutcome(
            payout_id=payout.id,
            wallet_id=payout.wallet_id,
            status=payout.status,
            amount_minor=payout.amount_minor,
            currency=payout.currency,
            provider=payout.provider,
            provider_reference=payout.provider_reference,
            failure_reason=payout.failure_reason,
            journal_entry_id=journal_entry_id,
            existing=existing,
        )

    def _finalize(self, scope: str, actor_id: str, key: str, response_code: int, payload: dict[str, Any]) -> None:
        status = IdempotencyStatus.COMPLETED if response_code < 400 else IdempotencyStatus.FAILED
        self.idempotency.finalize(
            operation_scope=scope,
            actor_id=actor_id,
            idempotency_key=key,
            status=status,
            response_code=response_code,
            payload=payload,
        )
        self.db.commit()
