#!/usr/bin/env python3
"""Delete expired or revoked sessions and old audit events.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_sessions.py
    python scripts/purge_sessions.py --audit-retention-days 30

Meant to run from cron; it does one pass and exits.
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_AUDIT_RETENTION_DAYS = 90


def purge(store, *, audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS) -> dict:
    """Run one housekeeping pass against ``store``.

    Returns:
        dict with the number of sessions and audit events removed
    """
    from apiguard.storage.models import utcnow

    now = utcnow()
    sessions = store.purge_sessions(now)
    audit_events = store.purge_audit_events(now - timedelta(days=audit_retention_days))
    return {"sessions": sessions, "audit_events": audit_events}


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge stale sessions and audit events")
    parser.add_argument(
        "--audit-retention-days",
        type=int,
        default=DEFAULT_AUDIT_RETENTION_DAYS,
        help=f"Keep audit events newer than this many days (default {DEFAULT_AUDIT_RETENTION_DAYS})",
    )
    args = parser.parse_args()
    if args.audit_retention_days < 1:
        parser.error("--audit-retention-days must be at least 1")

    # config is read on import, after argument parsing
    from apiguard.config import get_settings
    from apiguard.logging import get_logger
    from apiguard.storage.memory import MemoryStore
    from apiguard.storage.postgres import PostgresStore

    logger = get_logger("purge_sessions")
    settings = get_settings()
    store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    try:
        removed = purge(store, audit_retention_days=args.audit_retention_days)
    except Exception as exc:
        logger.error("purge_failed", error_type=type(exc).__name__, error=str(exc))
        print(f"Purge failed: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
    logger.info("purge_completed", **removed)
    print(f"Removed {removed['sessions']} sessions and {removed['audit_events']} audit events")
    return 0


if __name__ == "__main__":
    sys.exit(main())
