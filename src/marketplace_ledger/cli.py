"""Ledger Command Line Interface.

Operational tools for cron hosts and on-call:
- Schema creation
- Finance and subscription reconciliation
- Payout batches and retries
- Failed webhook replay
- Balance queries

Usage:
    marketplace-ledger-ops init-db
    marketplace-ledger-ops reconcile-finance --limit 200 --dry-run
    marketplace-ledger-ops reconcile-subscriptions --provider paystack
    marketplace-ledger-ops process-payouts --mode weekly
    marketplace-ledger-ops balances --currency USD
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable

from sqlalchemy.orm import Session

from marketplace_ledger.config import Settings, get_settings
from marketplace_ledger.database import create_schema, get_session, init_db
from marketplace_ledger.errors import LedgerError
from marketplace_ledger.policies import (
    IdempotencyPolicy,
    ManualRenewalPolicy,
    PayoutPolicy,
    ReconciliationPolicy,
)
from marketplace_ledger.providers import GatewayRegistry, ProviderName, build_gateways
from marketplace_ledger.services.finance_reconciliation import FinanceReconciler
from marketplace_ledger.services.journal import JournalService
from marketplace_ledger.services.notifications import DatabaseNotificationEmitter
from marketplace_ledger.services.payouts import PAYOUT_MODES, PayoutService
from marketplace_ledger.services.subscription_reconciliation import SubscriptionReconciler
from marketplace_ledger.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


class LedgerCli:
    """Ledger Command Line Interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        gateways: GatewayRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._gateways = gateways
        self.parser = self._build_parser()

    @property
    def gateways(self) -> GatewayRegistry:
        if self._gateways is None:
            self._gateways = build_gateways(self.settings)
        return self._gateways

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="marketplace-ledger-ops",
            description="Marketplace ledger operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser(
            "init-db",
            help="Create tables and seed the chart of accounts",
        )

        finance = subparsers.add_parser(
            "reconcile-finance",
            help="Find and heal missing journal entries",
        )
        finance.add_argument("--limit", type=int, help="Rows per check (default: 200, max: 1000)")
        finance.add_argument(
            "--dry-run",
            action="store_true",
            help="Record issues without healing them",
        )

        subs = subparsers.add_parser(
            "reconcile-subscriptions",
            help="Advance manual renewals and heal gateway drift",
        )
        subs.add_argument(
            "--provider",
            type=str,
            choices=[p.value for p in ProviderName],
            help="Only reconcile rows billed through this provider",
        )
        subs.add_argument("--limit", type=int, help="Rows per scope (default: 50, max: 200)")
        subs.add_argument(
            "--dry-run",
            action="store_true",
            help="Report actions without writing or notifying",
        )

        payouts = subparsers.add_parser(
            "process-payouts",
            help="Pay out every eligible wallet",
        )
        payouts.add_argument(
            "--mode",
            type=str,
            choices=list(PAYOUT_MODES),
            default="threshold",
            help="Payout schedule to run (default: threshold)",
        )

        retry = subparsers.add_parser(
            "retry-payouts",
            help="Recover stuck payouts and re-attempt recent failed ones",
        )
        retry.add_argument("--limit", type=int, default=50, help="Maximum payouts to retry")

        replay = subparsers.add_parser(
            "replay-webhooks",
            help="Re-dispatch stored payloads of failed webhook events",
        )
        replay.add_argument("--limit", type=int, default=50, help="Maximum events to replay")

        balances = subparsers.add_parser(
            "balances",
            help="Journal totals per account and creator",
        )
        balances.add_argument("--currency", type=str, help="Only this currency")
        balances.add_argument("--creator-id", type=str, help="Only this creator")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[Session, argparse.Namespace], Any]] = {
            "reconcile-finance": self._cmd_reconcile_finance,
            "reconcile-subscriptions": self._cmd_reconcile_subscriptions,
            "process-payouts": self._cmd_process_payouts,
            "retry-payouts": self._cmd_retry_payouts,
            "replay-webhooks": self._cmd_replay_webhooks,
            "balances": self._cmd_balances,
        }

        engine, _ = init_db(parsed.database_url or self.settings.database_url)
        if parsed.command == "init-db":
            create_schema(engine)
            _print_json({"status": "ok"})
            return 0

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            with get_session() as session:
                payload = handler(session, parsed)
        except LedgerError as exc:
            _print_json(exc.to_dict())
            return 2
        _print_json(payload)
        return 0

    def _cmd_reconcile_finance(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        reconciler = FinanceReconciler(db, policy=ReconciliationPolicy())
        return reconciler.run(limit=args.limit, dry_run=args.dry_run, trigger_source="cli").to_dict()

    def _cmd_reconcile_subscriptions(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        reconciler = SubscriptionReconciler(
            db,
            gateways=self.gateways,
            emitter=DatabaseNotificationEmitter(db),
            policy=ManualRenewalPolicy.from_settings(self.settings),
        )
        return reconciler.run(provider=args.provider, limit=args.limit, dry_run=args.dry_run).to_dict()

    def _payout_service(self, db: Session) -> PayoutService:
        return PayoutService(
            db,
            gateways=self.gateways,
            policy=PayoutPolicy.from_settings(self.settings),
            idempotency_policy=IdempotencyPolicy.from_settings(self.settings),
        )

    def _cmd_process_payouts(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        return self._payout_service(db).process_pending_payouts(args.mode).to_dict()

    def _cmd_retry_payouts(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        return self._payout_service(db).retry_failed_payouts(limit=args.limit).to_dict()

    def _cmd_replay_webhooks(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        outcomes = WebhookProcessor(db, gateways=self.gateways).replay_failed(args.limit)
        return {
            "replayed": len(outcomes),
            "events": [
                {"provider": o.provider, "event_id": o.event_id, "status": o.status, "error": o.error}
                for o in outcomes
            ],
        }

    def _cmd_balances(self, db: Session, args: argparse.Namespace) -> dict[str, Any]:
        journal = JournalService(db)
        return {
            "accounts": [
                {
                    "account_code": b.account_code,
                    "currency": b.currency,
                    "debit_minor": b.debit_minor,
                    "credit_minor": b.credit_minor,
                    "net_minor": b.net_minor,
                }
                for b in journal.account_balances(args.currency)
            ],
            "creators": [
                {
                    "creator_id": s.creator_id,
                    "currency": s.currency,
                    "accrued_minor": s.accrued_minor,
                    "released_minor": s.released_minor,
                    "outstanding_minor": s.outstanding_minor,
                }
                for s in journal.creator_settlements(args.creator_id)
            ],
        }


def main() -> int:
    """CLI entry point."""
    logging.basicConfig(level=get_settings().log_level)
    cli = LedgerCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
