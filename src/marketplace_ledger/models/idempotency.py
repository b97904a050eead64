"""Idempotency key and webhook event ledger models."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_ledger.database import utcnow
from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class IdempotencyStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookStatus(str, enum.Enum):
    CLAIMED = "claimed"
    PROCESSED = "processed"
    FAILED = "failed"


class IdempotencyKey(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """At-most-once record for a client-retryable mutating operation."""

    __tablename__ = "idempotency_keys"

    operation_scope: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=IdempotencyStatus.PROCESSING.value
    )
    response_code: Mapped[int | None] = mapped_column(Integer)
    response_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    error_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "operation_scope", "actor_id", "idempotency_key", name="idempotency_keys_scope_uq"
        ),
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')", name="idempotency_keys_status_ck"
        ),
    )


class WebhookEvent(UUIDPrimaryKeyMixin, Base):
    """Inbound gateway notification, claimed at most once per provider."""

    __tablename__ = "webhook_events"

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_event_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WebhookStatus.CLAIMED.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="webhook_events_provider_uq"),
        CheckConstraint(
            "status IN ('claimed', 'processed', 'failed')", name="webhook_events_status_ck"
        ),
    )
