#!/usr/bin/env python3
"""Export aggregated security event counts as JSON for compliance tooling.

Usage:
    # Last 24 hours in hourly buckets, against the configured Redis store:
    REDIS_URL=redis://localhost:6379/0 python scripts/export_security_report.py

    # Last 7 days in daily buckets, written to a file:
    python scripts/export_security_report.py --hours 168 --bucket-seconds 86400 --output report.json

Environment Variables:
    REDIS_URL: Redis connection string holding the security event log
    JWT_SECRET: Signing secret (a throwaway one is generated when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def export_report(hours: float, bucket_seconds: int) -> dict:
    """Build the report for the trailing ``hours`` window."""
    # Import here to avoid loading config before env vars are set
    from sessionguard.logging import correlation_scope
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    with correlation_scope():
        try:
            until = runtime.clock.now()
            since = until - timedelta(hours=hours)
            report = await runtime.engine.security_report(
                since, until, bucket_seconds=bucket_seconds
            )
            return report.to_dict()
        finally:
            await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Export the SessionGuard security report",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--hours",
        type=float,
        default=24.0,
        help="Trailing window to report on (default: 24)",
    )
    parser.add_argument(
        "--bucket-seconds",
        type=int,
        default=3600,
        help="Width of each report bucket in seconds (default: 3600)",
    )
    parser.add_argument(
        "--output",
        help="Write JSON to this path instead of stdout",
    )

    args = parser.parse_args()

    if args.hours <= 0:
        print("Error: --hours must be positive")
        sys.exit(1)
    if args.bucket_seconds <= 0:
        print("Error: --bucket-seconds must be positive")
        sys.exit(1)

    # The report only reads events; a throwaway secret avoids touching the state dir
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        report = asyncio.run(export_report(args.hours, args.bucket_seconds))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    payload = json.dumps(report, indent=2, sort_keys=True)
    if args.output:
        Path(args.output).write_text(payload + "\n")
        print(f"Report written to {args.output} ({report['total_events']} events)")
    else:
        print(payload)


if __name__ == "__main__":
    main()
