#!/usr/bin/env python3
"""
AccessBridge -- administrative command line.

Usage:
  python main.py bootstrap-admin
  python main.py elevate-admin admin@example.com
  python main.py prune-sessions [--retention-days 30]
  python main.py prune-audit [--retention-days 90]
  python main.py prune-all
  python main.py collect-metrics-snapshot [--window-hours 24] [--top-n 10]
  python main.py prune-metrics-snapshots [--retention-days 30]

Every command prints a JSON summary on stdout. On failure it prints
"<command> error: <message>" on stderr and exits 1.

Environment variables (see core/config.py for the full list):
  DATABASE_URL                    SQLAlchemy URL of the session store
  ADMIN_EMAIL / ADMIN_PASSWORD    Account upserted by bootstrap-admin
  ADMIN_PROTECTED                 true -> bootstrap-admin also elevates the account
  REFRESH_REVOKED_RETENTION_DAYS  Default window for prune-sessions
  SESSION_AUDIT_RETENTION_DAYS    Default window for prune-audit
  SECURITY_METRICS_*              Defaults for the metrics snapshot commands

No command mints an access token, so SECRET_KEY is not required here; the
API checks it at startup.
"""

import argparse
import json
import logging
import sys
from typing import Any, Optional

import pydantic
from sqlalchemy.exc import SQLAlchemyError

from auth.admin import bootstrap_admin, elevate_account
from auth.audit import AuditRecorder
from auth.guard import ProtectedAccountGuard
from auth.metrics import SecurityMetricsService, snapshot_to_dict
from auth.retention import RetentionPruner
from auth.store import Database, MetricsStore, SessionStore, UserStore
from core.config import Settings, get_settings
from core.errors import AccessBridgeError

logger = logging.getLogger("accessbridge.cli")


def _cmd_bootstrap_admin(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    users = UserStore(db)
    return bootstrap_admin(
        users,
        ProtectedAccountGuard(users),
        email=settings.admin_email,
        password=settings.admin_password,
        name=settings.admin_name,
        role=settings.admin_role,
        protected=settings.admin_protected,
    )


def _cmd_elevate_admin(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    users = UserStore(db)
    return elevate_account(users, ProtectedAccountGuard(users), args.email)


def _pruner(db: Database) -> RetentionPruner:
    store = SessionStore(db)
    return RetentionPruner(store, AuditRecorder(store))


def _cmd_prune_sessions(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    days = settings.refresh_revoked_retention_days if args.retention_days is None else args.retention_days
    return _pruner(db).run_session_sweeps(days).to_dict()


def _cmd_prune_audit(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    days = settings.session_audit_retention_days if args.retention_days is None else args.retention_days
    return _pruner(db).run_audit_sweep(days).to_dict()


def _cmd_prune_all(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    return _pruner(db).run_all(settings.refresh_revoked_retention_days, settings.session_audit_retention_days)


def _metrics(settings: Settings, db: Database) -> SecurityMetricsService:
    return SecurityMetricsService(
        SessionStore(db),
        MetricsStore(db),
        default_window_hours=settings.security_metrics_window_hours,
        default_top_n=settings.security_metrics_top_n,
    )


def _cmd_collect_metrics_snapshot(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    snapshot = _metrics(settings, db).create_snapshot(args.window_hours, args.top_n)
    return {"action": "collect_security_metrics_snapshot", "snapshot": snapshot_to_dict(snapshot)}


def _cmd_prune_metrics_snapshots(args: argparse.Namespace, settings: Settings, db: Database) -> Any:
    days = settings.security_metrics_snapshot_retention_days if args.retention_days is None else args.retention_days
    return _metrics(settings, db).prune_snapshots(days).to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accessbridge",
        description="Administrative commands for the AccessBridge session store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=... python main.py bootstrap-admin
  python main.py elevate-admin ops@example.com
  python main.py prune-sessions --retention-days 14
  python main.py prune-all
  python main.py collect-metrics-snapshot --window-hours 6
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    p = sub.add_parser("bootstrap-admin", help="Create or update the admin account from ADMIN_* settings")
    p.set_defaults(handler=_cmd_bootstrap_admin)

    p = sub.add_parser("elevate-admin", help="Mark an existing account protected (irreversible)")
    p.add_argument("email", help="Email of the account to protect")
    p.set_defaults(handler=_cmd_elevate_admin)

    p = sub.add_parser("prune-sessions", help="Delete expired and long-revoked refresh sessions")
    p.add_argument(
        "--retention-days",
        type=float,
        default=None,
        metavar="DAYS",
        help="Keep revoked sessions this long (default: REFRESH_REVOKED_RETENTION_DAYS)",
    )
    p.set_defaults(handler=_cmd_prune_sessions)

    p = sub.add_parser("prune-audit", help="Delete session audit events older than the retention window")
    p.add_argument(
        "--retention-days",
        type=float,
        default=None,
        metavar="DAYS",
        help="Keep audit events this long (default: SESSION_AUDIT_RETENTION_DAYS)",
    )
    p.set_defaults(handler=_cmd_prune_audit)

    p = sub.add_parser("prune-all", help="Run every retention sweep with the configured windows")
    p.set_defaults(handler=_cmd_prune_all)

    p = sub.add_parser("collect-metrics-snapshot", help="Compute login security metrics and store a snapshot")
    p.add_argument("--window-hours", type=int, default=None, metavar="HOURS", help="Trailing window (default: 24)")
    p.add_argument("--top-n", type=int, default=None, metavar="N", help="Busiest IPs and users to keep (default: 10)")
    p.set_defaults(handler=_cmd_collect_metrics_snapshot)

    p = sub.add_parser("prune-metrics-snapshots", help="Delete metric snapshots older than the retention window")
    p.add_argument(
        "--retention-days",
        type=float,
        default=None,
        metavar="DAYS",
        help="Keep snapshots this long (default: SECURITY_METRICS_SNAPSHOT_RETENTION_DAYS)",
    )
    p.set_defaults(handler=_cmd_prune_metrics_snapshots)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    try:
        settings = get_settings()
        db = Database(settings.database_url, settings.store_timeout_seconds)
        try:
            result = args.handler(args, settings, db)
        finally:
            db.close()
    except (AccessBridgeError, SQLAlchemyError, pydantic.ValidationError) as exc:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"{args.command} error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
