"""
Billing Cycle Service - Monthly allotment resets.

Resets are ledger entries keyed by the cycle month, so running the job twice
for the same month changes nothing.
"""

from datetime import UTC, datetime

from structlog import get_logger

from credit_engine.exceptions import BillingError
from credit_engine.models.domain import CycleResetReport, LedgerEntryData
from credit_engine.services.accounts import AccountDirectory
from credit_engine.services.catalog import CatalogHolder
from credit_engine.services.ledger import CreditLedger

logger = get_logger(__name__)


def month_start(at: datetime) -> datetime:
    """First instant of the UTC calendar month containing `at`."""
    at = at.astimezone(UTC) if at.tzinfo else at.replace(tzinfo=UTC)
    return at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def parse_cycle(cycle: str) -> datetime:
    """Parse a YYYY-MM cycle label into its start instant."""
    year, month = cycle.split("-")
    return datetime(int(year), int(month), 1, tzinfo=UTC)


class BillingCycleService:
    """Applies each account's tier allotment at the start of a cycle."""

    def __init__(
        self,
        catalog: CatalogHolder,
        ledger: CreditLedger,
        directory: AccountDirectory,
        allow_rollover: bool = False,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.directory = directory
        self.allow_rollover = allow_rollover

    async def reset_account(
        self, account_id: str, cycle_start: datetime | None = None
    ) -> LedgerEntryData:
        """
        Reset one account for a cycle (default: the current month).

        Raises:
            AccountNotFoundError: Unknown account
            IdentityServiceError: Directory unavailable
            UnknownTierError: Account tier missing from the catalog
            LedgerUnavailableError: Storage fault
        """
        start = month_start(cycle_start or datetime.now(UTC))
        profile = await self.directory.get_profile(account_id)
        allotment = self.catalog.current.allotment_of(profile.tier)
        return await self.ledger.monthly_reset(
            account_id, allotment, start, rollover=self.allow_rollover
        )

    async def reset_due_accounts(self, cycle_start: datetime | None = None) -> CycleResetReport:
        """Reset every account whose last cycle began before `cycle_start`."""
        start = month_start(cycle_start or datetime.now(UTC))
        due = await self.ledger.accounts_due_for_reset(start)

        reset: list[str] = []
        failed: list[str] = []
        for account_id in due:
            try:
                await self.reset_account(account_id, start)
            except BillingError as e:
                failed.append(account_id)
                logger.error(
                    "cycle_reset_failed",
                    account_id=account_id,
                    cycle=f"{start:%Y-%m}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                reset.append(account_id)

        logger.info(
            "cycle_reset_run_completed",
            cycle=f"{start:%Y-%m}",
            due=len(due),
            reset=len(reset),
            failed=len(failed),
        )
        return CycleResetReport(cycle_start=start, reset=tuple(reset), failed=tuple(failed))
