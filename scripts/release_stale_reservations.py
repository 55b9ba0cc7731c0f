#!/usr/bin/env python3
"""
Stale Reservation Release Job

Refunds estimate debits of reservations that never reached approval
(an evaluate call died between debit and approval) and voids them.

Usage:
    python scripts/release_stale_reservations.py
    python scripts/release_stale_reservations.py --older-than-seconds 3600
"""

import argparse
import asyncio
import os
import sys
from datetime import UTC, datetime, timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from credit_engine.config import settings
from credit_engine.db.session import close_engines
from credit_engine.observability.logging import setup_logging
from credit_engine.services.engine import build_engine

logger = structlog.get_logger()


async def run(older_than_seconds: int) -> int:
    """Release stale reservations, returning how many were released."""
    engine = build_engine(settings)
    try:
        cutoff = datetime.now(UTC) - timedelta(seconds=older_than_seconds)
        return await engine.router.release_stale_reservations(cutoff)
    finally:
        await engine.close()
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Release stale billing reservations")
    parser.add_argument(
        "--older-than-seconds",
        type=int,
        default=settings.reservation_stale_after_seconds,
        help="Age after which a pending reservation is considered stale",
    )
    args = parser.parse_args()

    setup_logging()
    released = asyncio.run(run(args.older_than_seconds))
    logger.info("stale_reservation_job_completed", released=released)


if __name__ == "__main__":
    main()
