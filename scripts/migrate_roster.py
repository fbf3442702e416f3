#!/usr/bin/env python3
"""Provision remote accounts for every roster identity ahead of first login.

Usage:
    # Using environment variables:
    ROSTER_PATH=students.json IDENTITY_PROVIDER=firebase python scripts/migrate_roster.py

    # Or with command line args:
    python scripts/migrate_roster.py --roster students.json --delay-ms 250

    # Report which identities still need an account without creating any:
    python scripts/migrate_roster.py --dry-run

Environment Variables:
    ROSTER_PATH: JSON enrollment file (array of identifier/secret entries)
    IDENTITY_PROVIDER: "memory" (default) or "firebase"
    FIREBASE_API_KEY, FIREBASE_PROJECT_ID: required for the firebase provider
    MIGRATION_DELAY_MS: pause between provisioned accounts (default 500)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def migrate(delay_ms: Optional[int], dry_run: bool = False) -> dict:
    """Run one bulk migration pass.

    Returns:
        dict with the per-status counts and the failed identifiers
    """
    # Import here to avoid loading config before env vars are set
    from rostergate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.verify()
        delay = None if delay_ms is None else delay_ms / 1000
        report = await runtime.coordinator.migrate_roster(delay_seconds=delay, dry_run=dry_run)
    finally:
        await runtime.close()

    if dry_run:
        for identifier in report.pending:
            print(f"[DRY RUN] Would provision {identifier}")
    for identifier, reason in report.failed:
        print(f"Failed to migrate {identifier}: {reason}")
    return {**report.summary(), "failed_identifiers": [i for i, _ in report.failed]}


def main():
    parser = argparse.ArgumentParser(
        description="Bulk-migrate the enrollment roster into the identity provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--roster",
        default=os.environ.get("ROSTER_PATH"),
        help="Roster JSON path (or set ROSTER_PATH env var)",
    )
    parser.add_argument(
        "--delay-ms",
        type=int,
        default=None,
        help="Pause between provisioned accounts in milliseconds (default MIGRATION_DELAY_MS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show which identities would be provisioned without creating accounts",
    )

    args = parser.parse_args()

    if args.delay_ms is not None and args.delay_ms < 0:
        print("Error: --delay-ms must be zero or positive")
        sys.exit(1)

    if args.roster:
        os.environ["ROSTER_PATH"] = args.roster
    if not os.environ.get("ROSTER_PATH") and not Path("students.json").exists():
        print("Error: --roster or ROSTER_PATH environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(migrate(args.delay_ms, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\nMigration finished")
    print(f"  Migrated: {result['migrated']}")
    print(f"  Already migrated: {result['already_migrated']}")
    if args.dry_run:
        print(f"  Pending: {result['pending']}")
    print(f"  Failed: {result['failed']}")
    if result["failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
