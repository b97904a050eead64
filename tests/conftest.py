"""Pytest fixtures for marketplace ledger tests.

Each test gets its own file-backed SQLite database (the API tests run
handlers in a thread pool, so an in-memory database would not be shared)
with the schema created and the chart of accounts seeded.
"""

from __future__ import annotations

import json
from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.api.app import create_app
from marketplace_ledger.api.dependencies import get_app_settings, get_db_session, get_gateways
from marketplace_ledger.config import Settings
from marketplace_ledger.database import create_schema, get_engine, make_session_factory, utcnow
from marketplace_ledger.models import (
    DropInCreditPurchase,
    Payout,
    Subscription,
    Transaction,
    Wallet,
    WalletBalance,
)
from marketplace_ledger.providers import GatewayRegistry, ProviderName, build_gateways
from marketplace_ledger.services.notifications import EmitResult
from marketplace_ledger.services.subscriptions import capability_flags

CRON_SECRET = "test-cron-secret"


def make_settings(**overrides: Any) -> Settings:
    """Settings with every gateway secret configured."""
    values: dict[str, Any] = {
        "database_url": "sqlite://",
        "host": "127.0.0.1",
        "port": 8000,
        "debug": False,
        "log_level": "INFO",
        "cron_secret": CRON_SECRET,
        "stripe_webhook_secret": "whsec_test",
        "paypal_webhook_id": "WH-TEST",
        "paypal_webhook_secret": "paypal-test-secret",
        "flutterwave_secret_hash": "flw-test-hash",
        "paystack_secret_key": "sk_test_paystack",
        "manual_renewal_grace_hours": 0.0,
        "manual_renewal_reminder_hours": (24, 72),
        "payout_default_minimum_minor": 5000,
        "payout_retry_lookback_hours": 24,
        "payout_stuck_after_minutes": 15,
        "idempotency_stale_after_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(tmp_path):
    """Fresh schema per test."""
    engine = get_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Database session for a test."""
    with session_factory() as session:
        yield session


@pytest.fixture
def gateways(settings: Settings) -> GatewayRegistry:
    """Sandbox-backed adapters for all four providers."""
    return build_gateways(settings)


@dataclass
class RecordingNotificationEmitter:
    """In-memory emitter, deduplicating like the database one."""

    sent: list[dict[str, Any]] = field(default_factory=list)
    _seen: set[str] = field(default_factory=set)

    def emit(
        self,
        *,
        user_id: str,
        template_code: str,
        dedupe_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> EmitResult:
        if dedupe_key in self._seen:
            return EmitResult(sent=False, dedupe_key=dedupe_key)
        self._seen.add(dedupe_key)
        self.sent.append({
            "user_id": user_id,
            "template_code": template_code,
            "dedupe_key": dedupe_key,
            "metadata": dict(metadata or {}),
        })
        return EmitResult(sent=True, dedupe_key=dedupe_key)


@pytest.fixture
def emitter() -> RecordingNotificationEmitter:
    return RecordingNotificationEmitter()


# =============================================================================
# Test data
# =============================================================================


class LedgerTestData:
    """Row builders. Every builder commits so services see the rows."""

    def __init__(self, db: Session):
        self.db = db

    def wallet(
        self,
        creator_id: str | None = None,
        *,
        provider: str = "stripe",
        currency: str = "USD",
        available_minor: int = 0,
        payout_frequency: str | None = None,
        payout_threshold_minor: int | None = None,
        payouts_enabled: bool = True,
    ) -> Wallet:
        wallet = Wallet(
            creator_id=creator_id or f"creator-{uuid4().hex[:8]}",
            provider=provider,
            currency=currency,
            provider_account_ref=f"acct_{uuid4().hex[:10]}",
            payouts_enabled=payouts_enabled,
            payout_frequency=payout_frequency,
            payout_threshold_minor=payout_threshold_minor,
        )
        self.db.add(wallet)
        self.db.flush()
        self.db.add(
            WalletBalance(
                wallet_id=wallet.id,
                currency=currency,
                available_minor=available_minor,
                total_earnings_minor=available_minor,
            )
        )
        self.db.commit()
        return wallet

    def transaction(
        self,
        *,
        creator_id: str = "creator-1",
        provider: str = "stripe",
        reference: str | None = None,
        status: str = "succeeded",
        flow_type: str = "photo_purchase",
        currency: str = "USD",
        gross_minor: int = 1299,
        platform_fee_minor: int = 260,
        provider_fee_minor: int = 0,
        media_ids: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        tx = Transaction(
            provider=provider,
            provider_reference=reference or f"pi_{uuid4().hex[:12]}",
            flow_type=flow_type,
            creator_id=creator_id,
            buyer_id="buyer-1",
            event_id="event-1",
            status=status,
            currency=currency,
            gross_amount_minor=gross_minor,
            platform_fee_minor=platform_fee_minor,
            provider_fee_minor=provider_fee_minor,
            net_amount_minor=0,
            metadata_json={"media_ids": media_ids or ["photo-1"], **(metadata or {})},
        )
        self.db.add(tx)
        self.db.commit()
        return tx

    def drop_in(
        self,
        *,
        attendee_id: str = "attendee-1",
        provider: str = "paystack",
        status: str = "active",
        amount_minor: int = 2000,
        currency: str = "GHS",
    ) -> DropInCreditPurchase:
        purchase = DropInCreditPurchase(
            attendee_id=attendee_id,
            provider=provider,
            provider_reference=f"dropin_{uuid4().hex[:10]}",
            credits=10,
            amount_minor=amount_minor,
            currency=currency,
            status=status,
            activated_at=utcnow() if status == "active" else None,
        )
        self.db.add(purchase)
        self.db.commit()
        return purchase

    def subscription(
        self,
        *,
        scope: str = "creator_subscription",
        owner_id: str = "owner-1",
        plan_code: str = "pro",
        status: str = "active",
        provider: str = "stripe",
        renewal_mode: str = "provider_recurring",
        external_subscription_id: str | None = None,
        amount_minor: int = 999,
        currency: str = "USD",
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        last_webhook_event_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        now = utcnow()
        row = Subscription(
            scope=scope,
            owner_id=owner_id,
            plan_code=plan_code,
            status=status,
            payment_provider=provider,
            renewal_mode=renewal_mode,
            external_subscription_id=external_subscription_id,
            billing_cycle="monthly",
            currency=currency,
            amount_minor=amount_minor,
            current_period_start=current_period_start or now - timedelta(days=5),
            current_period_end=current_period_end or now + timedelta(days=25),
            last_webhook_event_at=last_webhook_event_at,
            capability_flags=capability_flags(scope, status in ("active", "trialing")),
            metadata_json=dict(metadata or {}),
        )
        self.db.add(row)
        self.db.commit()
        return row

    def manual_subscription(self, *, period_end: datetime, **kwargs: Any) -> Subscription:
        kwargs.setdefault("provider", "paystack")
        kwargs.setdefault("currency", "GHS")
        return self.subscription(
            renewal_mode="manual_renewal",
            external_subscription_id=None,
            current_period_start=period_end - timedelta(days=30),
            current_period_end=period_end,
            **kwargs,
        )

    def payout(self, wallet: Wallet, *, status: str = "completed", amount_minor: int = 5000) -> Payout:
        payout = Payout(
            wallet_id=wallet.id,
            identity_key=f"test:{uuid4()}",
            amount_minor=amount_minor,
            currency=wallet.currency,
            provider=wallet.provider,
            status=status,
            trigger="manual",
            provider_reference="tr_test" if status == "completed" else None,
            completed_at=utcnow() if status == "completed" else None,
        )
        self.db.add(payout)
        self.db.commit()
        return payout


@pytest.fixture
def data(db: Session) -> LedgerTestData:
    return LedgerTestData(db)


# =============================================================================
# Webhook payloads
# =============================================================================


def signed(gateways: GatewayRegistry, provider: ProviderName, payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
    """Serialize a payload and sign it the way the gateway would."""
    body = json.dumps(payload).encode()
    return body, gateways[provider].signature_headers(body)


def stripe_checkout_event(
    event_id: str,
    *,
    payment_intent: str,
    amount: int = 1299,
    currency: str = "usd",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(utcnow().timestamp()),
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "payment_intent": payment_intent,
                "amount_total": amount,
                "currency": currency,
                "metadata": metadata
                if metadata is not None
                else {
                    "creator_id": "creator-1",
                    "buyer_id": "buyer-1",
                    "event_id": "event-1",
                    "media_ids": "photo-1,photo-2",
                    "platform_fee_minor": "260",
                },
            }
        },
    }


def stripe_subscription_event(
    event_id: str,
    *,
    subscription_id: str,
    status: str,
    created: datetime,
    scope: str = "creator_subscription",
    owner_id: str = "owner-1",
    plan_code: str = "pro",
    amount: int = 999,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "created": int(created.timestamp()),
        "data": {
            "object": {
                "id": subscription_id,
                "status": status,
                "customer": "cus_1",
                "cancel_at_period_end": False,
                "current_period_start": int((created - timedelta(days=1)).timestamp()),
                "current_period_end": int((created + timedelta(days=29)).timestamp()),
                "plan": {"id": "price_pro", "interval": "month", "currency": "usd", "amount": amount},
                "metadata": {
                    "subscription_scope": scope,
                    "owner_id": owner_id,
                    "plan_code": plan_code,
                },
            }
        },
    }


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def app(session_factory, gateways: GatewayRegistry, settings: Settings) -> FastAPI:
    """App wired to the test database and sandbox gateways."""
    app = create_app()

    def override_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_db
    app.dependency_overrides[get_gateways] = lambda: gateways
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Test client. Not entered as a context manager, so the lifespan
    (which would bind the process-wide engine) never runs."""
    return TestClient(app)


@pytest.fixture
def ops_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


