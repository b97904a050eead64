"""Tests for the HTTP API."""

from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketplace_ledger.api.dependencies import get_app_settings
from marketplace_ledger.database import utcnow
from marketplace_ledger.models import JournalEntry, LedgerAccount, Notification, Subscription, Transaction
from marketplace_ledger.providers import GatewayRegistry, ProviderName
from marketplace_ledger.services.journal import CHART_OF_ACCOUNTS
from marketplace_ledger.services.webhook_ledger import WebhookLedgerService
from tests.conftest import LedgerTestData, make_settings, signed, stripe_checkout_event


class TestHealth:
    def test_health_reports_seeded_chart_and_empty_backlog(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "marketplace-ledger"
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"
        assert body["ledger_accounts_seeded"] == body["ledger_accounts_expected"] == len(CHART_OF_ACCOUNTS)
        assert body["backlog"] == {
            "open_reconciliation_issues": 0,
            "failed_webhook_events": 0,
            "processing_payouts": 0,
        }

    def test_backlog_counts_stuck_work(self, client: TestClient, db: Session, data: LedgerTestData):
        data.payout(data.wallet(available_minor=0), status="processing")
        ledger = WebhookLedgerService(db)
        claim = ledger.claim(provider="stripe", external_event_id="evt_bad", event_type="x", payload={})
        ledger.mark_failed(claim.row_id, "bad payload")
        db.commit()

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["backlog"]["processing_payouts"] == 1
        assert body["backlog"]["failed_webhook_events"] == 1

    def test_missing_ledger_account_degrades_and_blocks_readiness(self, client: TestClient, db: Session):
        db.execute(update(LedgerAccount).where(LedgerAccount.code == "platform_revenue").values(is_active=False))
        db.commit()

        body = client.get("/health").json()
        ready = client.get("/ready")

        assert body["status"] == "degraded"
        assert body["database"] == "healthy"
        assert body["ledger_accounts_seeded"] == len(CHART_OF_ACCOUNTS) - 1
        assert ready.status_code == 503
        assert ready.json()["status"] == "not_ready"

    @pytest.mark.parametrize(("path", "status"), [("/ready", "ready"), ("/live", "alive")])
    def test_readiness_and_liveness(self, client: TestClient, path: str, status: str):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json() == {"status": status, "service": "marketplace-ledger"}


class TestWebhookEndpoint:
    def test_checkout_is_acknowledged_once(self, client: TestClient, db: Session, gateways: GatewayRegistry):
        body, headers = signed(gateways, ProviderName.STRIPE, stripe_checkout_event("evt_api_1", payment_intent="pi_api_1"))

        first = client.post("/webhooks/stripe", content=body, headers=headers)
        second = client.post("/webhooks/stripe", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json() == {
            "received": True,
            "replay": False,
            "status": "processed",
            "provider": "stripe",
            "event_id": "evt_api_1",
        }
        assert second.json()["replay"] is True
        tx = db.scalars(select(Transaction).where(Transaction.provider_reference == "pi_api_1")).one()
        assert tx.status == "succeeded"
        assert db.scalar(select(func.count()).select_from(JournalEntry)) == 1

    def test_invalid_signature_is_401(self, client: TestClient, gateways: GatewayRegistry):
        body, headers = signed(gateways, ProviderName.STRIPE, stripe_checkout_event("evt_api_2", payment_intent="pi_2"))
        response = client.post("/webhooks/stripe", content=body + b"\n", headers=headers)

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_unknown_provider_is_400(self, client: TestClient):
        response = client.post("/webhooks/square", content=b"{}")
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_processing_failure_still_acknowledged(self, client: TestClient, gateways: GatewayRegistry):
        body, headers = signed(
            gateways,
            ProviderName.STRIPE,
            stripe_checkout_event("evt_api_3", payment_intent="pi_orphan", metadata={}),
        )
        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"


class TestOpsAuth:
    def test_missing_token_is_401(self, client: TestClient):
        response = client.get("/api/v1/payouts/queue")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_wrong_token_is_401(self, client: TestClient):
        response = client.get("/api/v1/payouts/queue", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_unconfigured_secret_is_503(self, app, client: TestClient, ops_headers):
        app.dependency_overrides[get_app_settings] = lambda: make_settings(cron_secret=None)
        response = client.post("/api/v1/reconciliation/finance", headers=ops_headers)
        assert response.status_code == 503
        assert response.json()["code"] == "SERVICE_UNAVAILABLE"


class TestReconciliationEndpoints:
    def test_finance_dry_run_then_heal(self, client: TestClient, data: LedgerTestData, ops_headers):
        data.transaction()

        dry = client.post("/api/v1/reconciliation/finance?dryRun=true&limit=10", headers=ops_headers)
        healed = client.post("/api/v1/reconciliation/finance", headers=ops_headers)

        assert dry.status_code == 200
        assert dry.json()["dry_run"] is True
        assert dry.json()["limit"] == 10
        assert dry.json()["auto_healed"] == 0
        assert healed.json()["auto_healed"] == 1

    def test_limit_must_be_positive(self, client: TestClient, ops_headers):
        response = client.post("/api/v1/reconciliation/finance?limit=0", headers=ops_headers)
        assert response.status_code == 422

    def test_subscription_sweep_notifies_through_database(
        self, client: TestClient, db: Session, data: LedgerTestData, ops_headers
    ):
        data.manual_subscription(period_end=utcnow() - timedelta(days=1), scope="attendee_subscription")

        first = client.post("/api/v1/reconciliation/subscriptions?provider=paystack", headers=ops_headers)
        second = client.post("/api/v1/reconciliation/subscriptions", headers=ops_headers)

        assert first.json()["updated"] == 1
        assert first.json()["details"][0]["action"] == "manual_renewal_expired"
        assert second.json()["processed"] == 0
        notice = db.scalars(select(Notification)).one()
        assert notice.template_code == "subscription_expired"

    def test_unknown_provider_filter_is_400(self, client: TestClient, ops_headers):
        response = client.post("/api/v1/reconciliation/subscriptions?provider=venmo", headers=ops_headers)
        assert response.status_code == 400


class TestPayoutEndpoints:
    def test_manual_payout_replay_header(
        self, client: TestClient, data: LedgerTestData, gateways: GatewayRegistry, ops_headers
    ):
        wallet = data.wallet(available_minor=7000)
        headers = {**ops_headers, "Idempotency-Key": "pay-1", "X-Actor-Id": "admin-1"}

        first = client.post("/api/v1/payouts/manual", json={"wallet_id": str(wallet.id)}, headers=headers)
        replay = client.post("/api/v1/payouts/manual", json={"wallet_id": str(wallet.id)}, headers=headers)

        assert first.status_code == 200
        assert "idempotency-replayed" not in first.headers
        assert first.json()["payout"]["status"] == "completed"
        assert replay.status_code == 200
        assert replay.headers["idempotency-replayed"] == "true"
        assert replay.json()["replayed"] is True
        assert len(gateways[ProviderName.STRIPE].transfer_calls) == 1

    def test_header_body_key_mismatch_is_rejected_before_transfer(
        self, client: TestClient, data: LedgerTestData, gateways: GatewayRegistry, ops_headers
    ):
        wallet = data.wallet(available_minor=7000)
        response = client.post(
            "/api/v1/payouts/manual",
            json={"wallet_id": str(wallet.id), "idempotency_key": "body-key"},
            headers={**ops_headers, "Idempotency-Key": "header-key"},
        )

        assert response.status_code == 400
        assert response.json()["context"] == {"header": "header-key", "body": "body-key"}
        assert gateways[ProviderName.STRIPE].transfer_calls == []

    def test_key_from_body(self, client: TestClient, data: LedgerTestData, ops_headers):
        wallet = data.wallet(available_minor=7000)
        response = client.post(
            "/api/v1/payouts/manual",
            json={"wallet_id": str(wallet.id), "idempotency_key": "body-only", "amount_minor": 2000},
            headers=ops_headers,
        )
        assert response.status_code == 200
        assert response.json()["payout"]["amount_minor"] == 2000

    def test_missing_key_is_400(self, client: TestClient, data: LedgerTestData, ops_headers):
        wallet = data.wallet(available_minor=7000)
        response = client.post("/api/v1/payouts/manual", json={"wallet_id": str(wallet.id)}, headers=ops_headers)
        assert response.status_code == 400

    def test_key_reuse_is_409(self, client: TestClient, data: LedgerTestData, ops_headers):
        wallet = data.wallet(available_minor=7000)
        headers = {**ops_headers, "Idempotency-Key": "pay-2"}
        client.post("/api/v1/payouts/manual", json={"wallet_id": str(wallet.id), "amount_minor": 1000}, headers=headers)

        response = client.post(
            "/api/v1/payouts/manual", json={"wallet_id": str(wallet.id), "amount_minor": 3000}, headers=headers
        )
        assert response.status_code == 409
        assert response.json()["code"] == "IDEMPOTENCY_KEY_REUSED"

    def test_insufficient_balance_replays_400(self, client: TestClient, data: LedgerTestData, ops_headers):
        wallet = data.wallet(available_minor=100)
        headers = {**ops_headers, "Idempotency-Key": "pay-3"}
        payload = {"wallet_id": str(wallet.id), "amount_minor": 5000}

        first = client.post("/api/v1/payouts/manual", json=payload, headers=headers)
        replay = client.post("/api/v1/payouts/manual", json=payload, headers=headers)

        assert first.status_code == 400
        assert replay.status_code == 400
        assert replay.headers["idempotency-replayed"] == "true"
        assert replay.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_wallet_is_404(self, client: TestClient, ops_headers):
        response = client.post(
            "/api/v1/payouts/manual",
            json={"wallet_id": str(uuid4())},
            headers={**ops_headers, "Idempotency-Key": "pay-4"},
        )
        assert response.status_code == 404

    def test_batch_and_queue(self, client: TestClient, data: LedgerTestData, ops_headers):
        data.wallet(available_minor=6000)
        data.wallet(available_minor=1000)

        queue = client.get("/api/v1/payouts/queue", headers=ops_headers).json()
        batch = client.post("/api/v1/payouts/batch", json={"mode": "threshold"}, headers=ops_headers).json()
        after = client.get("/api/v1/payouts/queue", headers=ops_headers).json()

        assert queue["pending"] == 2
        assert batch["succeeded"] == 1
        assert after["total_amount_minor"] == 1000

    def test_batch_rejects_unknown_mode(self, client: TestClient, ops_headers):
        response = client.post("/api/v1/payouts/batch", json={"mode": "hourly"}, headers=ops_headers)
        assert response.status_code == 422

    def test_retry_endpoint(self, client: TestClient, data: LedgerTestData, gateways: GatewayRegistry, ops_headers):
        data.wallet(available_minor=6000)
        stripe = gateways[ProviderName.STRIPE]
        stripe.simulate_transfer_failure()
        client.post("/api/v1/payouts/batch", json={}, headers=ops_headers)
        stripe.simulate_transfer_failure(False)

        result = client.post("/api/v1/payouts/retry", headers=ops_headers).json()

        assert result["mode"] == "retry"
        assert result["succeeded"] == 1


class TestSubscriptionEndpoints:
    def test_manual_renewal(self, client: TestClient, db: Session, gateways: GatewayRegistry, ops_headers):
        gateways[ProviderName.FLUTTERWAVE].simulate_charge("flw_sub_1", amount_minor=2500, currency="NGN")
        payload = {
            "scope": "attendee_subscription",
            "owner_id": "att-9",
            "plan_code": "premium",
            "provider": "flutterwave",
            "reference": "flw_sub_1",
        }

        first = client.post("/api/v1/subscriptions/manual-renewals", json=payload, headers=ops_headers)
        again = client.post("/api/v1/subscriptions/manual-renewals", json=payload, headers=ops_headers)

        assert first.status_code == 200
        body = first.json()
        assert body["replayed"] is False
        assert body["journal_entry_id"] is not None
        assert body["subscription"]["renewal_mode"] == "manual_renewal"
        assert body["subscription"]["currency"] == "NGN"
        assert all(body["subscription"]["capability_flags"].values())
        assert again.json()["replayed"] is True
        assert db.scalar(select(func.count()).select_from(Subscription)) == 1

    def test_manual_renewal_unverified_charge_is_400(self, client: TestClient, ops_headers):
        payload = {
            "scope": "vault_subscription",
            "owner_id": "user-1",
            "plan_code": "vault_200",
            "provider": "paypal",
            "reference": "PAY-unknown",
        }
        response = client.post("/api/v1/subscriptions/manual-renewals", json=payload, headers=ops_headers)
        assert response.status_code == 400

    def test_cancel(self, client: TestClient, data: LedgerTestData, ops_headers):
        row = data.subscription(scope="vault_subscription")

        response = client.post(f"/api/v1/subscriptions/vault_subscription/{row.id}/cancel", headers=ops_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "canceled"
        assert response.json()["capability_flags"] == {"paid_storage_quota": False}

    def test_cancel_unknown_is_404(self, client: TestClient, ops_headers):
        response = client.post(f"/api/v1/subscriptions/creator_subscription/{uuid4()}/cancel", headers=ops_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestLedgerEndpoints:
    def test_balances(self, client: TestClient, db: Session, data: LedgerTestData, ops_headers):
        data.transaction(creator_id="creator-3", reference="pi_bal")
        client.post("/api/v1/reconciliation/finance", headers=ops_headers)

        body = client.get("/api/v1/ledger/balances?currency=USD", headers=ops_headers).json()

        accounts = {a["account_code"]: a for a in body["accounts"]}
        assert accounts["platform_cash_clearing"]["debit_minor"] == 1299
        assert accounts["platform_revenue"]["credit_minor"] == 260
        [creator] = body["creators"]
        assert creator == {
            "creator_id": "creator-3",
            "currency": "USD",
            "accrued_minor": 1039,
            "released_minor": 0,
            "outstanding_minor": 1039,
        }
