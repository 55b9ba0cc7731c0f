#!/usr/bin/env python3
"""
Billing Cycle Reset Job

Applies each account's monthly tier allotment for the current (or given)
cycle. Safe to run repeatedly: an account is reset at most once per month.

Usage:
    python scripts/run_cycle_resets.py
    python scripts/run_cycle_resets.py --cycle 2026-11
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from credit_engine.config import settings
from credit_engine.db.session import close_engines
from credit_engine.observability.logging import setup_logging
from credit_engine.services.cycle_reset import parse_cycle
from credit_engine.services.engine import build_engine

logger = structlog.get_logger()


async def run(cycle: str | None) -> int:
    """Reset all due accounts, returning the number of failures."""
    engine = build_engine(settings)
    try:
        report = await engine.cycles.reset_due_accounts(parse_cycle(cycle) if cycle else None)
    finally:
        await engine.close()
        await close_engines()

    for account_id in report.failed:
        logger.warning("cycle_reset_account_failed", account_id=account_id)
    return len(report.failed)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Apply monthly credit allotments")
    parser.add_argument("--cycle", help="Billing cycle as YYYY-MM (default: current month)")
    args = parser.parse_args()

    setup_logging()
    failures = asyncio.run(run(args.cycle))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
