"""
Housekeeping jobs, meant to run from cron.

Usage:
  msgrelay reconcile [--window-hours N]
  msgrelay expire-pending [--older-than-hours N]
  msgrelay list-retryable [--tenant-id T] [--limit N]
  msgrelay list-stale-claims [--limit N]
"""

import argparse
import logging
from datetime import timedelta
from typing import Optional, Sequence

from msgrelay import records
from msgrelay.clock import SystemClock
from msgrelay.config import get_settings
from msgrelay.logging_utils import setup_logging
from msgrelay.reconciliation import ReconciliationSweep
from msgrelay.storage import SessionLocal, init_db

logger = logging.getLogger(__name__)


def reconcile(window_hours: Optional[int] = None) -> int:
    settings = get_settings()
    window = timedelta(hours=window_hours or settings.RECONCILE_WINDOW_HOURS)
    report = ReconciliationSweep(SessionLocal, settings=settings).run(window)
    print(
        f"Scanned {report.scanned} orphan events: linked={report.linked}, "
        f"applied={report.applied}, still_orphaned={report.still_orphaned}"
    )
    return report.linked


def expire_pending(older_than_hours: Optional[int] = None) -> int:
    settings = get_settings()
    hours = older_than_hours or settings.PENDING_EXPIRY_HOURS
    with SessionLocal() as db:
        expired = records.expire_stale_pending(db, SystemClock().now(), timedelta(hours=hours))
        db.commit()
    print(f"Expired {expired} pending messages older than {hours}h")
    return expired


def list_retryable(tenant_id: Optional[str] = None, limit: int = 100) -> int:
    with SessionLocal() as db:
        rows = records.list_retryable(db, SystemClock().now(), tenant_id=tenant_id, limit=limit)
        for row in rows:
            print(f"{row.idempotency_key}\t{row.tenant_id}\t{row.error_code}\tretry {row.retry_count}/{row.max_retries}")
    return len(rows)


def list_stale_claims(limit: int = 100) -> int:
    settings = get_settings()
    with SessionLocal() as db:
        rows = records.list_stale_claims(db, SystemClock().now(), settings.SENDING_STALE_SECONDS, limit=limit)
        for row in rows:
            print(f"{row.idempotency_key}\t{row.tenant_id}\tclaimed_at={row.processing_claimed_at.isoformat()}")
    return len(rows)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="msgrelay", description="Message delivery housekeeping")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reconcile", help="Link orphan delivery events to their messages")
    p.add_argument("--window-hours", type=int, default=None)

    p = sub.add_parser("expire-pending", help="Expire pending messages nobody picked up")
    p.add_argument("--older-than-hours", type=int, default=None)

    p = sub.add_parser("list-retryable", help="Failed messages whose retry is due")
    p.add_argument("--tenant-id", default=None)
    p.add_argument("--limit", type=int, default=100)

    p = sub.add_parser("list-stale-claims", help="Messages stuck in sending past the staleness window")
    p.add_argument("--limit", type=int, default=100)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(get_settings().LOG_LEVEL)
    init_db()

    if args.command == "reconcile":
        reconcile(args.window_hours)
    elif args.command == "expire-pending":
        expire_pending(args.older_than_hours)
    elif args.command == "list-retryable":
        list_retryable(args.tenant_id, args.limit)
    elif args.command == "list-stale-claims":
        list_stale_claims(args.limit)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
