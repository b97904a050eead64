"""Idempotency key store.

At-most-once execution of client-retryable mutating operations keyed by
(operation_scope, actor_id, idempotency_key):

    claim -> side effects -> finalize

The unique constraint on the key tuple serializes concurrent attempts;
only the inserting claimant proceeds. Everyone else is replayed,
told the request is in flight, or told the key was reused.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_ledger.database import ensure_utc, insert_ignore, utcnow
from marketplace_ledger.errors import (
    IdempotencyInFlightError,
    IdempotencyKeyReusedError,
    ValidationError,
)
from marketplace_ledger.models import IdempotencyKey, IdempotencyStatus
from marketplace_ledger.policies import IdempotencyPolicy

logger = logging.getLogger(__name__)

TERMINAL = (IdempotencyStatus.COMPLETED.value, IdempotencyStatus.FAILED.value)


def compute_request_hash(payload: Mapping[str, Any]) -> str:
    """SHA-256 over canonical JSON (sorted keys, no whitespace)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass(frozen=True)
class IdempotencyClaim:
    """Result of claiming a key.

    IMPORTANT: Only proceed with side effects when ``first_attempt`` is
    True. Otherwise return the stored response with ``replayed=True``.
    """

    first_attempt: bool
    record: IdempotencyKey

    @property
    def replayed(self) -> bool:
        return not self.first_attempt

    @property
    def status(self) -> str:
        return self.record.status

    @property
    def response_code(self) -> int | None:
        return self.record.response_code

    @property
    def stored_payload(self) -> dict[str, Any] | None:
        """Response payload for completed keys, error payload for failed ones."""
        if self.record.status == IdempotencyStatus.FAILED.value:
            return self.record.error_payload
        return self.record.response_payload


class IdempotencyService:
    """Claim/finalize store for idempotency keys.

    Notes:
    - A row transitions from ``processing`` to a terminal state exactly once.
    - A key reused with a different request hash is a client error.
    - The caller commits; ``claim`` must be committed before side effects
      so concurrent claimants observe it.
    """

    def __init__(self, db: Session, policy: IdempotencyPolicy | None = None):
        self.db = db
        self.policy = policy or IdempotencyPolicy()

    def claim(
        self,
        *,
        operation_scope: str,
        actor_id: str,
        idempotency_key: str,
        request_hash: str,
    ) -> IdempotencyClaim:
        """Claim a key for one execution.

        Raises:
            ValidationError: empty scope/actor/key/hash
            IdempotencyKeyReusedError: same key, different request hash
            IdempotencyInFlightError: an earlier attempt is still processing
        """
        for name, value in (
            ("operation_scope", operation_scope),
            ("actor_id", actor_id),
            ("idempotency_key", idempotency_key),
            ("request_hash", request_hash),
        ):
            if not value or not str(value).strip():
                raise ValidationError(f"{name} is required")

        now = utcnow()
        stmt = (
            insert_ignore(self.db, IdempotencyKey)
            .values(
                operation_scope=operation_scope,
                actor_id=actor_id,
                idempotency_key=idempotency_key,
                request_hash=request_hash,
                status=IdempotencyStatus.PROCESSING.value,
                last_seen_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["operation_scope", "actor_id", "idempotency_key"]
            )
        )
        inserted = self.db.execute(stmt).rowcount == 1
        record = self._get(operation_scope, actor_id, idempotency_key)
        if record is None:
            raise RuntimeError("Idempotency claim failed unexpectedly - no row created or found")

        if inserted:
            return IdempotencyClaim(first_attempt=True, record=record)

        if record.request_hash != request_hash:
            raise IdempotencyKeyReusedError(
                "Idempotency key was already used for a different request",
                idempotency_key=idempotency_key,
                context={"operation_scope": operation_scope},
            )

        if record.status == IdempotencyStatus.PROCESSING.value:
            if self._take_over_if_stale(record, now):
                logger.warning(
                    "Re-claimed stale idempotency key %s/%s", operation_scope, idempotency_key
                )
                return IdempotencyClaim(first_attempt=True, record=record)
            raise IdempotencyInFlightError(
                "A request with this idempotency key is already processing; retry later",
                idempotency_key=idempotency_key,
                context={"operation_scope": operation_scope},
            )

        record.last_seen_at = now
        self.db.flush()
        return IdempotencyClaim(first_attempt=False, record=record)

    def finalize(
        self,
        *,
        operation_scope: str,
        actor_id: str,
        idempotency_key: str,
        status: IdempotencyStatus | str,
        response_code: int,
        payload: dict[str, Any] | None,
    ) -> bool:
        """Move a processing key to a terminal state.

        Returns True if this call performed the transition. Later calls
        are no-ops returning False.
        """
        status_value = IdempotencyStatus(status).value
        if status_value not in TERMINAL:
            raise ValueError(f"finalize requires a terminal status, got {status_value}")

        values: dict[str, Any] = {
            "status": status_value,
            "response_code": response_code,
            "completed_at": utcnow(),
        }
        if status_value == IdempotencyStatus.COMPLETED.value:
            values["response_payload"] = payload
        else:
            values["error_payload"] = payload

        result = self.db.execute(
            update(IdempotencyKey)
            .where(
                IdempotencyKey.operation_scope == operation_scope,
                IdempotencyKey.actor_id == actor_id,
                IdempotencyKey.idempotency_key == idempotency_key,
                IdempotencyKey.status == IdempotencyStatus.PROCESSING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        # Reload so callers holding the row see the terminal state
        self._get(operation_scope, actor_id, idempotency_key)
        return result.rowcount == 1

    def list_stuck(self, *, older_than_seconds: int, limit: int = 100) -> list[IdempotencyKey]:
        """Keys still processing after ``older_than_seconds`` (operator view)."""
        cutoff = utcnow().timestamp() - older_than_seconds
        rows = self.db.scalars(
            select(IdempotencyKey)
            .where(IdempotencyKey.status == IdempotencyStatus.PROCESSING.value)
            .order_by(IdempotencyKey.last_seen_at)
            .limit(limit)
        ).all()
        return [r for r in rows if ensure_utc(r.last_seen_at).timestamp() <= cutoff]

    def _get(self, operation_scope: str, actor_id: str, idempotency_key: str) -> IdempotencyKey | None:
        return self.db.scalars(
            select(IdempotencyKey).where(
                IdempotencyKey.operation_scope == operation_scope,
                IdempotencyKey.actor_id == actor_id,
                IdempotencyKey.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        ).one_or_none()

    def _take_over_if_stale(self, record: IdempotencyKey, now: datetime) -> bool:
        """Atomically re-own a processing key older than the staleness threshold."""
        stale_after = self.policy.stale_after
        if stale_after is None:
            return False
        claimed_at = ensure_utc(record.last_seen_at)
        if claimed_at is None or now - claimed_at < stale_after:
            return False
        result = self.db.execute(
            update(IdempotencyKey)
            .where(
                IdempotencyKey.id == record.id,
                IdempotencyKey.status == IdempotencyStatus.PROCESSING.value,
                IdempotencyKey.last_seen_at == record.last_seen_at,
            )
            .values(last_seen_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.refresh(record)
        return True
