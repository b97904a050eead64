"""Entitlement grants for settled photo purchases."""

from __future__ import annotations

from sqlalchemy.orm import Session

from marketplace_ledger.database import insert_ignore, utcnow
from marketplace_ledger.models import ALL_MEDIA, Entitlement, Transaction


def media_keys_for(transaction: Transaction) -> list[str]:
    """Media unlocked by a transaction: ``*`` for unlock-all, else media ids."""
    metadata = transaction.metadata_json or {}
    if metadata.get("unlock_all"):
        return [ALL_MEDIA]
    return [str(m) for m in metadata.get("media_ids") or [] if m]


class EntitlementService:
    """Idempotent entitlement grants (unique per transaction and media key)."""

    def __init__(self, db: Session):
        self.db = db

    def grant_for_transaction(self, transaction: Transaction) -> int:
        """Grant every entitlement the transaction pays for.

        Tips grant nothing. Returns the number of new grants.
        """
        if transaction.flow_type != "photo_purchase":
            return 0
        granted = 0
        for media_key in media_keys_for(transaction):
            stmt = (
                insert_ignore(self.db, Entitlement)
                .values(
                    transaction_id=transaction.id,
                    buyer_id=transaction.buyer_id,
                    event_id=transaction.event_id,
                    media_key=media_key,
                    granted_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["transaction_id", "media_key"])
            )
            granted += self.db.execute(stmt).rowcount
        return granted
