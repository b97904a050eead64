"""Notification emitter.

Emitters must be idempotent per ``dedupe_key``: the subscription sweep
relies on that for exactly-once reminder and expiry notices.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.models import Notification


@dataclass(frozen=True)
class EmitResult:
    sent: bool
    dedupe_key: str


class NotificationEmitter(Protocol):
    """Protocol for notification delivery."""

    def emit(
        self,
        *,
        user_id: str,
        template_code: str,
        dedupe_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> EmitResult:
        """Deliver once per dedupe key. ``sent`` is False for repeats."""
        ...


class DatabaseNotificationEmitter:
    """In-app notifications stored with a unique dedupe key."""

    def __init__(self, db: Session):
        self.db = db

    def emit(
        self,
        *,
        user_id: str,
        template_code: str,
        dedupe_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> EmitResult:
        stmt = (
            insert_ignore(self.db, Notification)
            .values(
                user_id=user_id,
                template_code=template_code,
                dedupe_key=dedupe_key,
                metadata=dict(metadata or {}),
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
        )
        sent = self.db.execute(stmt).rowcount == 1
        return EmitResult(sent=sent, dedupe_key=dedupe_key)
