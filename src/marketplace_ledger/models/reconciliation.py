"""Reconciliation run/issue tracker and notification models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_ledger.database import utcnow
from marketplace_ledger.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class ReconciliationRun(UUIDPrimaryKeyMixin, Base):
    """One reconciliation sweep."""

    __tablename__ = "reconciliation_runs"

    run_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    trigger_source: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="processing")
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed')", name="reconciliation_runs_status_ck"
        ),
    )


class ReconciliationIssue(UUIDPrimaryKeyMixin, Base):
    """Integrity issue found by a sweep. Upserted on ``issue_key``."""

    __tablename__ = "reconciliation_issues"

    run_id: Mapped[UUID] = mapped_column(ForeignKey("reconciliation_runs.id"), nullable=False)
    issue_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    issue_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    source_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    auto_healed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("status IN ('open', 'resolved')", name="reconciliation_issues_status_ck"),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="reconciliation_issues_severity_ck",
        ),
        Index("reconciliation_issues_status_idx", "status", "issue_type"),
    )


class Notification(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """In-app notification, unique on ``dedupe_key``."""

    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    template_code: Mapped[str] = mapped_column(String(64), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
