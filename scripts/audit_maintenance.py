#!/usr/bin/env python3
"""
Operator maintenance for the audit log.

Runs against the active configuration (AUDIT_CONFIG_PATH / AUDIT_DATABASE_URL)
and prints one JSON document to stdout.

Usage:
    python3 scripts/audit_maintenance.py purge --older-than-days 365
    python3 scripts/audit_maintenance.py coverage --days 1 --attempted users=120
    python3 scripts/audit_maintenance.py verify [--table users] [--limit 500]
    python3 scripts/audit_maintenance.py anomalies
"""

import argparse
import json
import sys
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from audit_config import get_active_config
from audit_config.bridges import build_query_service, build_store
from audit_kernel.domain.clock import SystemClock
from audit_kernel.exceptions import AuditKernelError


def _parse_attempted(pairs: list[str]) -> dict[str, int]:
    attempted: dict[str, int] = {}
    for pair in pairs:
        table, sep, count = pair.partition("=")
        if not sep or not table:
            raise argparse.ArgumentTypeError(f"expected table=count, got {pair!r}")
        try:
            attempted[table] = int(count)
        except ValueError:
            raise argparse.ArgumentTypeError(f"count for {table!r} is not an integer") from None
    return attempted


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit log maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge", help="Delete entries older than a retention cutoff")
    purge.add_argument("--older-than-days", type=int, required=True)

    coverage = sub.add_parser("coverage", help="Recompute per-table coverage")
    coverage.add_argument("--days", type=int, default=1, help="Window length ending now")
    coverage.add_argument(
        "--attempted",
        action="append",
        default=[],
        metavar="TABLE=COUNT",
        help="Mutations attempted on a table in the window (repeatable)",
    )

    verify = sub.add_parser("verify", help="Re-verify recent entry checksums")
    verify.add_argument("--table")
    verify.add_argument("--limit", type=int, default=100)

    sub.add_parser("anomalies", help="Run the suspicious-activity scan")
    return parser


def run(args: argparse.Namespace) -> dict:
    config = get_active_config()
    clock = SystemClock()
    store = build_store(config, clock=clock)

    if args.command == "purge":
        if args.older_than_days < 1:
            raise argparse.ArgumentTypeError("--older-than-days must be positive")
        cutoff = clock.now() - timedelta(days=args.older_than_days)
        return {"cutoff": cutoff.isoformat(), "removed": store.purge_older_than(cutoff)}

    if args.command == "coverage":
        if args.days < 1:
            raise argparse.ArgumentTypeError("--days must be positive")
        end = clock.now()
        report = store.compute_coverage(
            end - timedelta(days=args.days), end, _parse_attempted(args.attempted)
        )
        return asdict(report)

    queries = build_query_service(config, store, clock=clock)
    if args.command == "verify":
        report = queries.validate_integrity(table_name=args.table, limit=args.limit)
        return {
            "checked": report.checked,
            "invalid_ids": [str(i) for i in report.invalid_ids],
            "clean": report.is_clean,
        }

    anomalies = queries.detect_suspicious_activity()
    return {"anomalies": [asdict(a) for a in anomalies]}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        result = run(args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except AuditKernelError as exc:
        print(json.dumps({"error": exc.code, "message": str(exc)}), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, sort_keys=True, default=str))
    if args.command == "verify" and not result["clean"]:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
