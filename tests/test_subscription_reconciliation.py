"""Tests for the subscription reconciliation sweep."""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from marketplace_ledger.database import ensure_utc, utcnow
from marketplace_ledger.policies import ManualRenewalPolicy
from marketplace_ledger.providers import GatewayRegistry, ProviderName
from marketplace_ledger.services.subscription_reconciliation import (
    EXPIRED_TEMPLATE,
    REMINDER_TEMPLATE,
    SubscriptionReconciler,
    clamp_limit,
)
from marketplace_ledger.services.subscriptions import capability_flags
from tests.conftest import LedgerTestData, RecordingNotificationEmitter


@pytest.fixture
def reconciler(db: Session, gateways: GatewayRegistry, emitter: RecordingNotificationEmitter) -> SubscriptionReconciler:
    return SubscriptionReconciler(db, gateways=gateways, emitter=emitter, policy=ManualRenewalPolicy())


class TestManualRenewalExpiry:
    def test_expired_row_is_revoked_once(
        self, db: Session, data: LedgerTestData, reconciler: SubscriptionReconciler, emitter
    ):
        row = data.manual_subscription(
            period_end=utcnow() - timedelta(days=10),
            scope="attendee_subscription",
            owner_id="att-1",
        )

        first = reconciler.run()
        db.refresh(row)

        assert first.processed == 1
        assert first.updated == 1
        assert first.details[0]["action"] == "manual_renewal_expired"
        assert row.status == "expired"
        assert row.capability_flags == capability_flags("attendee_subscription", False)
        assert row.metadata_json["auto_renew_preference"] is False
        assert [n["template_code"] for n in emitter.sent] == [EXPIRED_TEMPLATE]

        # The expired row has left the live set
        second = reconciler.run()
        assert second.processed == 0
        assert len(emitter.sent) == 1

    def test_grace_period_keeps_row_live(self, db: Session, data: LedgerTestData, gateways, emitter):
        row = data.manual_subscription(period_end=utcnow() - timedelta(hours=10))
        reconciler = SubscriptionReconciler(
            db, gateways=gateways, emitter=emitter, policy=ManualRenewalPolicy(grace_period=timedelta(hours=48))
        )

        result = reconciler.run()
        db.refresh(row)

        assert result.skipped == 1
        assert result.details[0]["reason"] == "Within grace period"
        assert row.status == "active"
        assert emitter.sent == []

    def test_dry_run_writes_nothing(self, db: Session, data: LedgerTestData, reconciler, emitter):
        row = data.manual_subscription(period_end=utcnow() - timedelta(days=2), scope="vault_subscription")

        result = reconciler.run(dry_run=True)
        db.refresh(row)

        assert result.dry_run is True
        assert result.updated == 1
        assert row.status == "active"
        assert row.capability_flags == {"paid_storage_quota": True}
        assert emitter.sent == []


class TestManualRenewalReminders:
    @pytest.mark.parametrize(
        ("hours_left", "action"),
        [
            (20, "manual_renewal_reminder_24h"),
            (50, "manual_renewal_reminder_72h"),
        ],
    )
    def test_reminder_for_smallest_unmet_window(
        self, data: LedgerTestData, reconciler, emitter, hours_left: int, action: str
    ):
        now = utcnow()
        data.manual_subscription(period_end=now + timedelta(hours=hours_left), owner_id="creator-9")

        result = reconciler.run(now=now)

        assert result.details[0]["action"] == action
        [notice] = emitter.sent
        assert notice["template_code"] == REMINDER_TEMPLATE
        assert notice["user_id"] == "creator-9"
        assert notice["metadata"]["reminder_window_hours"] == int(action.rsplit("_", 1)[1][:-1])

    def test_reminder_sent_once_per_window(self, data: LedgerTestData, reconciler, emitter):
        now = utcnow()
        data.manual_subscription(period_end=now + timedelta(hours=20))

        reconciler.run(now=now)
        again = reconciler.run(now=now + timedelta(hours=1))

        assert again.updated == 0
        assert again.details[0]["reason"] == "Reminder already sent"
        assert len(emitter.sent) == 1

    def test_next_window_sends_new_reminder(self, data: LedgerTestData, reconciler, emitter):
        now = utcnow()
        data.manual_subscription(period_end=now + timedelta(hours=60))

        reconciler.run(now=now)
        reconciler.run(now=now + timedelta(hours=40))

        assert [n["metadata"]["reminder_window_hours"] for n in emitter.sent] == [72, 24]

    def test_outside_windows_is_noop(self, data: LedgerTestData, reconciler, emitter):
        data.manual_subscription(period_end=utcnow() + timedelta(days=10))
        result = reconciler.run()
        assert result.details[0]["action"] == "manual_renewal_noop"
        assert emitter.sent == []


class TestGatewayPolling:
    def test_canceled_at_gateway_is_healed(self, db: Session, data: LedgerTestData, gateways, reconciler):
        row = data.subscription(external_subscription_id="sub_1")
        gateways[ProviderName.STRIPE].simulate_subscription_status("sub_1", "canceled")

        result = reconciler.run()
        db.refresh(row)

        assert result.updated == 1
        assert result.details[0]["action"] == "provider_status_synced"
        assert result.details[0]["mapped_status"] == "canceled"
        assert row.status == "canceled"
        assert row.canceled_at is not None
        assert row.capability_flags == {"paid_plan_features": False}
        assert row.metadata_json["reconcile_provider_status"] == "canceled"

        assert reconciler.run().processed == 0

    def test_period_drift_is_healed(self, db: Session, data: LedgerTestData, gateways, reconciler):
        row = data.subscription(external_subscription_id="sub_2", provider="paystack", currency="NGN")
        new_end = utcnow() + timedelta(days=60)
        gateways[ProviderName.PAYSTACK].simulate_subscription_status(
            "sub_2", "past_due", current_period_end=new_end
        )

        reconciler.run()
        db.refresh(row)

        assert row.status == "past_due"
        assert ensure_utc(row.current_period_end) == new_end

    def test_matching_status_is_in_sync(self, data: LedgerTestData, gateways, reconciler):
        data.subscription(external_subscription_id="sub_3")
        gateways[ProviderName.STRIPE].simulate_subscription_status("sub_3", "active")

        result = reconciler.run()

        assert result.details[0]["action"] == "in_sync"
        assert result.skipped == 1

    def test_unmapped_gateway_status_is_left_alone(self, db: Session, data: LedgerTestData, gateways, reconciler):
        row = data.subscription(external_subscription_id="PP-SUB-1", provider="paypal")
        gateways[ProviderName.PAYPAL].simulate_subscription_status("PP-SUB-1", "APPROVAL_PENDING")

        result = reconciler.run()
        db.refresh(row)

        assert result.details[0]["reason"] == "Unmapped provider status"
        assert row.status == "active"

    def test_unknown_subscription_lookup_is_skipped(self, data: LedgerTestData, reconciler):
        data.subscription(external_subscription_id="sub_missing")
        result = reconciler.run()
        assert result.details[0]["reason"] == "Provider status lookup failed"

    def test_provider_filter(self, data: LedgerTestData, gateways, reconciler):
        data.subscription(external_subscription_id="sub_4")
        data.manual_subscription(period_end=utcnow() - timedelta(days=1))
        gateways[ProviderName.STRIPE].simulate_subscription_status("sub_4", "active")

        result = reconciler.run(provider="stripe")

        assert result.processed == 1
        assert result.details[0]["provider"] == "stripe"


class TestClampLimit:
    @pytest.mark.parametrize(("requested", "expected"), [(None, 50), (0, 1), (10, 10), (5000, 200)])
    def test_clamp(self, requested, expected):
        assert clamp_limit(requested) == expected
