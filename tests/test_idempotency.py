"""Tests for the idempotency key store and webhook event ledger."""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.database import utcnow
from marketplace_ledger.errors import (
    IdempotencyInFlightError,
    IdempotencyKeyReusedError,
    ValidationError,
)
from marketplace_ledger.models import IdempotencyKey, IdempotencyStatus, WebhookStatus
from marketplace_ledger.policies import IdempotencyPolicy
from marketplace_ledger.services.idempotency import IdempotencyService, compute_request_hash
from marketplace_ledger.services.webhook_ledger import WebhookLedgerService


def _claim(service: IdempotencyService, key: str = "key-1", request_hash: str | None = None):
    return service.claim(
        operation_scope="payout.manual",
        actor_id="admin-1",
        idempotency_key=key,
        request_hash=request_hash or compute_request_hash({"wallet_id": "w1", "amount_minor": 5000}),
    )


class TestRequestHash:
    def test_key_order_does_not_matter(self):
        assert compute_request_hash({"a": 1, "b": 2}) == compute_request_hash({"b": 2, "a": 1})

    def test_different_payloads_differ(self):
        assert compute_request_hash({"amount_minor": 1}) != compute_request_hash({"amount_minor": 2})


class TestIdempotencyClaim:
    """claim -> finalize -> replay."""

    def test_first_claim_proceeds(self, db: Session):
        service = IdempotencyService(db)
        claim = _claim(service)
        db.commit()

        assert claim.first_attempt is True
        assert claim.replayed is False
        assert claim.status == IdempotencyStatus.PROCESSING.value

    def test_completed_key_replays_stored_response(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        db.commit()
        assert service.finalize(
            operation_scope="payout.manual",
            actor_id="admin-1",
            idempotency_key="key-1",
            status=IdempotencyStatus.COMPLETED,
            response_code=200,
            payload={"payout": {"status": "completed"}},
        )
        db.commit()

        replay = _claim(service)
        assert replay.replayed is True
        assert replay.response_code == 200
        assert replay.stored_payload == {"payout": {"status": "completed"}}

    def test_failed_key_replays_error_payload(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        service.finalize(
            operation_scope="payout.manual",
            actor_id="admin-1",
            idempotency_key="key-1",
            status="failed",
            response_code=400,
            payload={"detail": "Insufficient available balance for payout", "code": "VALIDATION_ERROR"},
        )
        db.commit()

        replay = _claim(service)
        assert replay.replayed is True
        assert replay.response_code == 400
        assert replay.stored_payload["code"] == "VALIDATION_ERROR"

    def test_finalize_only_transitions_once(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        kwargs = dict(operation_scope="payout.manual", actor_id="admin-1", idempotency_key="key-1")
        assert service.finalize(status="completed", response_code=200, payload={"n": 1}, **kwargs) is True
        assert service.finalize(status="failed", response_code=500, payload={"n": 2}, **kwargs) is False
        db.commit()

        replay = _claim(service)
        assert replay.status == "completed"
        assert replay.stored_payload == {"n": 1}

    def test_finalize_requires_terminal_status(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        with pytest.raises(ValueError):
            service.finalize(
                operation_scope="payout.manual",
                actor_id="admin-1",
                idempotency_key="key-1",
                status="processing",
                response_code=200,
                payload=None,
            )

    def test_key_reused_with_different_payload(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        db.commit()

        with pytest.raises(IdempotencyKeyReusedError) as exc_info:
            _claim(service, request_hash=compute_request_hash({"wallet_id": "w2"}))
        assert exc_info.value.status_code == 409
        assert exc_info.value.context["idempotency_key"] == "key-1"

    def test_in_flight_claim_rejected(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        db.commit()

        with pytest.raises(IdempotencyInFlightError):
            _claim(service)

    def test_keys_are_scoped_per_actor(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        other = service.claim(
            operation_scope="payout.manual",
            actor_id="admin-2",
            idempotency_key="key-1",
            request_hash=compute_request_hash({"wallet_id": "w1", "amount_minor": 5000}),
        )
        assert other.first_attempt is True

    @pytest.mark.parametrize("field", ["operation_scope", "actor_id", "idempotency_key", "request_hash"])
    def test_blank_fields_rejected(self, db: Session, field: str):
        values = dict(operation_scope="payout.manual", actor_id="a", idempotency_key="k", request_hash="h")
        values[field] = "  "
        with pytest.raises(ValidationError, match=field):
            IdempotencyService(db).claim(**values)


class TestStaleKeys:
    """Keys stuck in processing."""

    def _age_key(self, db: Session, seconds: int) -> None:
        db.execute(update(IdempotencyKey).values(last_seen_at=utcnow() - timedelta(seconds=seconds)))
        db.commit()

    def test_stuck_key_stays_in_flight_without_policy(self, db: Session):
        service = IdempotencyService(db)
        _claim(service)
        db.commit()
        self._age_key(db, 3600)

        with pytest.raises(IdempotencyInFlightError):
            _claim(service)
        assert [k.idempotency_key for k in service.list_stuck(older_than_seconds=600)] == ["key-1"]

    def test_stale_key_reclaimed_with_policy(self, db: Session):
        service = IdempotencyService(db, IdempotencyPolicy(stale_after=timedelta(minutes=5)))
        _claim(service)
        db.commit()
        self._age_key(db, 600)

        claim = _claim(service)
        assert claim.first_attempt is True

    def test_policy_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            IdempotencyPolicy(stale_after=timedelta(0))


class TestWebhookLedger:
    """Webhook events are claimed at most once per provider."""

    def _claim(self, ledger: WebhookLedgerService, provider: str = "stripe", event_id: str = "evt_1"):
        return ledger.claim(
            provider=provider,
            external_event_id=event_id,
            event_type="checkout.session.completed",
            payload={"id": event_id},
        )

    def test_first_delivery_processes(self, db: Session):
        claim = self._claim(WebhookLedgerService(db))
        assert claim.should_process is True
        assert claim.status == WebhookStatus.CLAIMED.value

    def test_redelivery_is_replay(self, db: Session):
        ledger = WebhookLedgerService(db)
        first = self._claim(ledger)
        ledger.mark_processed(first.row_id)
        db.commit()

        again = self._claim(ledger)
        assert again.should_process is False
        assert again.status == WebhookStatus.PROCESSED.value

    def test_same_event_id_on_other_provider_is_distinct(self, db: Session):
        ledger = WebhookLedgerService(db)
        self._claim(ledger)
        assert self._claim(ledger, provider="paystack").should_process is True

    def test_failed_event_can_be_reclaimed_once(self, db: Session):
        ledger = WebhookLedgerService(db)
        first = self._claim(ledger)
        ledger.mark_failed(first.row_id, "boom")
        db.commit()

        retry = self._claim(ledger)
        assert retry.should_process is True
        assert self._claim(ledger).should_process is False

        row = ledger.get("stripe", "evt_1")
        assert row.attempts == 2
        assert row.last_error == "boom"

    def test_list_failed(self, db: Session):
        ledger = WebhookLedgerService(db)
        first = self._claim(ledger)
        self._claim(ledger, event_id="evt_2")
        ledger.mark_failed(first.row_id, "bad payload")
        db.commit()

        assert [e.external_event_id for e in ledger.list_failed()] == ["evt_1"]


class TestConcurrentClaims:
    """Separate sessions, as separate workers would hold them."""

    def _claim(self, session: Session):
        return WebhookLedgerService(session).claim(
            provider="stripe",
            external_event_id="evt_race",
            event_type="checkout.session.completed",
            payload={"id": "evt_race"},
        )

    def test_only_one_session_processes_an_event(self, session_factory: sessionmaker[Session]):
        with session_factory() as first, session_factory() as second:
            winner = self._claim(first)
            first.commit()
            loser = self._claim(second)
            second.commit()

        assert winner.should_process is True
        assert loser.should_process is False
        assert loser.row_id == winner.row_id
        assert loser.status == WebhookStatus.CLAIMED.value

    def test_failed_event_reclaimed_by_one_session(self, session_factory: sessionmaker[Session]):
        with session_factory() as session:
            claim = self._claim(session)
            WebhookLedgerService(session).mark_failed(claim.row_id, "boom")
            session.commit()

        with session_factory() as first, session_factory() as second:
            first_ledger = WebhookLedgerService(first)
            second_ledger = WebhookLedgerService(second)
            seen_by_first = first_ledger.get("stripe", "evt_race")
            seen_by_second = second_ledger.get("stripe", "evt_race")
            assert seen_by_first.status == seen_by_second.status == WebhookStatus.FAILED.value

            assert second_ledger.reclaim(seen_by_second) is True
            second.commit()
            assert first_ledger.reclaim(seen_by_first) is False
            first.commit()

            assert first_ledger.get("stripe", "evt_race").attempts == 2

    def test_idempotency_key_in_flight_across_sessions(self, session_factory: sessionmaker[Session]):
        with session_factory() as first, session_factory() as second:
            claim = _claim(IdempotencyService(first))
            first.commit()

            with pytest.raises(IdempotencyInFlightError):
                _claim(IdempotencyService(second))
            second.rollback()

            IdempotencyService(first).finalize(
                operation_scope="payout.manual",
                actor_id="admin-1",
                idempotency_key="key-1",
                status=IdempotencyStatus.COMPLETED,
                response_code=200,
                payload={"payout": {"status": "completed"}},
            )
            first.commit()

            replay = _claim(IdempotencyService(second))

        assert claim.first_attempt is True
        assert replay.replayed is True
        assert replay.stored_payload == {"payout": {"status": "completed"}}
