"""Webhook event ledger.

Deduplicates inbound gateway notifications on (provider, external_event_id).
The insert that wins the unique constraint is the only claimant that
applies side effects; a redelivery of a processed or in-progress event is
a no-op replay. A failed event can be re-claimed, since failure does not
mark it durably processed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.errors import ValidationError
from marketplace_ledger.models import WebhookEvent, WebhookStatus


@dataclass(frozen=True)
class WebhookClaim:
    """Result of claiming a webhook event.

    Only apply side effects when ``should_process`` is True.
    """

    should_process: bool
    row_id: UUID
    status: str


class WebhookLedgerService:
    """Claim/mark store for webhook events. The caller commits."""

    def __init__(self, db: Session):
        self.db = db

    def claim(
        self,
        *,
        provider: str,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
        signature_verified: bool = True,
    ) -> WebhookClaim:
        """Claim an event for processing.

        Returns should_process=True for exactly one claimant per
        (provider, external_event_id), plus whoever re-claims a failed row.
        """
        if not provider or not external_event_id:
            raise ValidationError("provider and external_event_id are required")

        stmt = (
            insert_ignore(self.db, WebhookEvent)
            .values(
                provider=provider,
                external_event_id=external_event_id,
                event_type=event_type or "unknown",
                signature_verified=signature_verified,
                payload=payload,
                status=WebhookStatus.CLAIMED.value,
                attempts=1,
                first_seen_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["provider", "external_event_id"])
        )
        inserted = self.db.execute(stmt).rowcount == 1
        row = self.get(provider, external_event_id)
        if row is None:
            raise RuntimeError("Webhook claim failed unexpectedly - no row created or found")

        if inserted:
            return WebhookClaim(should_process=True, row_id=row.id, status=row.status)

        if row.status == WebhookStatus.FAILED.value and self._reclaim_failed(row):
            return WebhookClaim(should_process=True, row_id=row.id, status=WebhookStatus.CLAIMED.value)

        return WebhookClaim(should_process=False, row_id=row.id, status=row.status)

    def mark_processed(self, row_id: UUID) -> None:
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row_id)
            .values(status=WebhookStatus.PROCESSED.value, processed_at=utcnow(), last_error=None)
            .execution_options(synchronize_session=False)
        )

    def mark_failed(self, row_id: UUID, reason: str) -> None:
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row_id)
            .values(status=WebhookStatus.FAILED.value, last_error=reason[:2000])
            .execution_options(synchronize_session=False)
        )

    def get(self, provider: str, external_event_id: str) -> WebhookEvent | None:
        return self.db.scalars(
            select(WebhookEvent)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.external_event_id == external_event_id,
            )
            .execution_options(populate_existing=True)
        ).one_or_none()

    def list_failed(self, limit: int = 50) -> list[WebhookEvent]:
        return list(
            self.db.scalars(
                select(WebhookEvent)
                .where(WebhookEvent.status == WebhookStatus.FAILED.value)
                .order_by(WebhookEvent.first_seen_at)
                .limit(limit)
            ).all()
        )

    def reclaim(self, row: WebhookEvent) -> bool:
        """Re-claim a failed row for operator replay."""
        return self._reclaim_failed(row)

    def _reclaim_failed(self, row: WebhookEvent) -> bool:
        """Atomically flip failed -> claimed. Only one re-claimant wins."""
        result = self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row.id, WebhookEvent.status == WebhookStatus.FAILED.value)
            .values(status=WebhookStatus.CLAIMED.value, attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
