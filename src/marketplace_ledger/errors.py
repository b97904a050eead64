"""Ledger error taxonomy.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
API layer can render it without knowing the engine that raised it.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code = "LEDGER_ERROR"
    status_code = 500

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Error body as rendered by the API."""
        return {"detail": self.message, "code": self.code, "context": self.context}


class ValidationError(LedgerError):
    """Bad request shape or missing references. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(LedgerError):
    """Missing or invalid signature / operational secret."""

    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(LedgerError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class IdempotencyConflictError(LedgerError):
    """Conflict on an idempotency key."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409

    def __init__(self, message: str, *, idempotency_key: str, context: dict[str, Any] | None = None):
        ctx = {"idempotency_key": idempotency_key, "replayed": False}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.idempotency_key = idempotency_key


class IdempotencyInFlightError(IdempotencyConflictError):
    """Same request is still being processed. Retry later."""

    code = "IDEMPOTENCY_IN_FLIGHT"


class IdempotencyKeyReusedError(IdempotencyConflictError):
    """Key was reused for a different request payload."""

    code = "IDEMPOTENCY_KEY_REUSED"


class GatewayError(LedgerError):
    """Upstream payment provider failure."""

    code = "GATEWAY_ERROR"
    status_code = 502


class UnbalancedJournalError(LedgerError):
    """Postings do not balance. Rejected before any write."""

    code = "UNBALANCED_JOURNAL"
    status_code = 422


class ServiceUnavailableError(LedgerError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
