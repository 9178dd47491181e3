#!/usr/bin/env python3
"""CLI script to re-arm meetings parked with a provider error.

Usage:
    uv run python scripts/rearm_meeting_errors.py
    uv run python scripts/rearm_meeting_errors.py --create-tables

Connects directly to the database using DATABASE_URL from environment or .env file.
Moves every event and session that was parked by a non-retryable provider
failure, and still needs provider work, back to pending so the sync workers
retry it on their next cycle. Useful after fixing a provider configuration
without waiting for the scheduled re-arm.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.meetsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def rearm(create_tables: bool) -> int:
    """Run the re-arm policy once and return the number of re-armed owners."""
    from src.meetsync.core.database import close_db, get_session, init_db
    from src.meetsync.core.logging import configure_structlog
    from src.meetsync.meetings.rearm import ErrorRearmPolicy

    configure_structlog()
    if create_tables:
        await init_db()

    try:
        count = await ErrorRearmPolicy(get_session).rearm_errored_meetings()
    finally:
        await close_db()

    print(f"Re-armed {count} event(s)/session(s) with a parked meeting error")
    return count


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-arm meetings parked with a provider error")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create the meeting sync tables first (local development only)",
    )
    args = parser.parse_args()

    asyncio.run(rearm(args.create_tables))


if __name__ == "__main__":
    main()
