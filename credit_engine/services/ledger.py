"""
Credit Ledger - Atomic per-account debits and credits.

Every write is one indivisible read-modify-write in the store: read the
balance under the account lock, check it, write the new balance and append
the entry. Writes are idempotent on their key; a replay returns the
original entry.
"""

from datetime import datetime
from uuid import uuid4

from structlog import get_logger

from credit_engine.exceptions import (
    DataIntegrityError,
    IdempotencyConflictError,
    InsufficientCreditsError,
)
from credit_engine.models.api import LedgerReason
from credit_engine.models.domain import AppliedEntry, LedgerChange, LedgerEntryData
from credit_engine.observability.metrics import metrics
from credit_engine.services.stores import LedgerStore

logger = get_logger(__name__)


def cycle_key(cycle_start: datetime) -> str:
    """Idempotency key of a monthly reset."""
    return f"monthly_reset:{cycle_start:%Y-%m}"


class CreditLedger:
    """Credit ledger over a LedgerStore."""

    def __init__(self, store: LedgerStore) -> None:
        """Initialize ledger with its backing store."""
        self.store = store

    async def debit(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.AI_USAGE,
        related_usage_id: str | None = None,
        idempotency_key: str | None = None,
        allow_overdraft: bool = False,
        description: str | None = None,
    ) -> LedgerEntryData:
        """
        Deduct credits from an account.

        Raises:
            InsufficientCreditsError: Balance below amount (and no overdraft)
            IdempotencyConflictError: Key already used for a different write
            LedgerUnavailableError: Storage fault
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive: {amount}")

        def plan(balance: int) -> LedgerChange:
            if balance < amount and not allow_overdraft:
                raise InsufficientCreditsError(available=balance, required=amount)
            return LedgerChange(
                delta=-amount,
                reason=reason,
                related_usage_id=related_usage_id,
                description=description,
            )

        key = idempotency_key or f"debit:{uuid4()}"
        try:
            applied = await self.store.apply(account_id, key, plan)
        except InsufficientCreditsError as exc:
            metrics.record_ledger_write("debit", "insufficient")
            logger.info(
                "ledger_debit_insufficient",
                account_id=account_id,
                available=exc.available,
                required=exc.required,
                related_usage_id=related_usage_id,
            )
            raise

        self._check_replay(applied, key, reason, -amount)
        if not applied.replayed:
            metrics.record_ledger_write("debit", "applied")
            logger.info(
                "ledger_debited",
                account_id=account_id,
                amount=amount,
                reason=reason.value,
                balance_after=applied.entry.resulting_balance,
                related_usage_id=related_usage_id,
                overdraft=applied.entry.resulting_balance < 0,
            )
        return applied.entry

    async def credit(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason,
        related_usage_id: str | None = None,
        idempotency_key: str | None = None,
        description: str | None = None,
    ) -> LedgerEntryData:
        """
        Add credits to an account (purchase, refund).

        Raises:
            IdempotencyConflictError: Key already used for a different write
            LedgerUnavailableError: Storage fault
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        def plan(balance: int) -> LedgerChange:
            return LedgerChange(
                delta=amount,
                reason=reason,
                related_usage_id=related_usage_id,
                description=description,
            )

        key = idempotency_key or f"credit:{uuid4()}"
        applied = await self.store.apply(account_id, key, plan)

        self._check_replay(applied, key, reason, amount)
        if not applied.replayed:
            metrics.record_ledger_write("credit", "applied")
            logger.info(
                "ledger_credited",
                account_id=account_id,
                amount=amount,
                reason=reason.value,
                balance_after=applied.entry.resulting_balance,
                related_usage_id=related_usage_id,
            )
        return applied.entry

    async def monthly_reset(
        self,
        account_id: str,
        allotment: int,
        cycle_start: datetime,
        rollover: bool = False,
    ) -> LedgerEntryData:
        """
        Start a new billing cycle.

        Without rollover the balance is set to the allotment (unused credits
        expire, debt is cleared); with rollover the allotment is added.
        Applied at most once per calendar month of `cycle_start`.
        """
        if allotment < 0:
            raise ValueError(f"Allotment cannot be negative: {allotment}")

        def plan(balance: int) -> LedgerChange:
            delta = allotment if rollover else allotment - balance
            return LedgerChange(
                delta=delta,
                reason=LedgerReason.MONTHLY_RESET,
                description=f"Cycle {cycle_start:%Y-%m} allotment {allotment}"
                + (" (rollover)" if rollover else ""),
                cycle_start=cycle_start,
            )

        key = cycle_key(cycle_start)
        applied = await self.store.apply(account_id, key, plan)

        self._check_replay(applied, key, LedgerReason.MONTHLY_RESET, None)
        if not applied.replayed:
            metrics.record_ledger_write("monthly_reset", "applied")
            logger.info(
                "ledger_monthly_reset",
                account_id=account_id,
                allotment=allotment,
                rollover=rollover,
                delta=applied.entry.delta,
                balance_after=applied.entry.resulting_balance,
                cycle=f"{cycle_start:%Y-%m}",
            )
        return applied.entry

    async def balance(self, account_id: str) -> int:
        """Current balance (0 for accounts with no history)."""
        return await self.store.get_balance(account_id)

    async def history(self, account_id: str, limit: int | None = None) -> list[LedgerEntryData]:
        """Ledger entries, oldest first."""
        return await self.store.list_entries(account_id, limit)

    async def find_entry(self, account_id: str, idempotency_key: str) -> LedgerEntryData | None:
        """Entry written under an idempotency key, if any."""
        return await self.store.find_entry(account_id, idempotency_key)

    async def accounts_due_for_reset(self, cycle_start: datetime) -> list[str]:
        """Accounts not yet reset for the cycle starting at `cycle_start`."""
        return await self.store.accounts_due_for_reset(cycle_start)

    async def verify(self, account_id: str) -> int:
        """
        Fold the entries and compare with the running balance.

        Returns:
            The verified balance

        Raises:
            DataIntegrityError: Running balance disagrees with the entries
        """
        running, entries = await self.store.snapshot(account_id)
        folded = sum(e.delta for e in entries)
        if folded != running:
            logger.error(
                "ledger_balance_mismatch",
                account_id=account_id,
                folded=folded,
                running=running,
            )
            raise DataIntegrityError(
                f"Balance mismatch for {account_id}: entries={folded}, running={running}"
            )
        return running

    @staticmethod
    def _check_replay(
        applied: AppliedEntry,
        key: str,
        reason: LedgerReason,
        expected_delta: int | None,
    ) -> None:
        """A replayed key must describe the same write."""
        if not applied.replayed:
            return
        entry = applied.entry
        if entry.reason != reason or (expected_delta is not None and entry.delta != expected_delta):
            raise IdempotencyConflictError(key, entry.entry_id)
        logger.info(
            "ledger_write_replayed",
            account_id=entry.account_id,
            idempotency_key=key,
            entry_id=str(entry.entry_id),
        )
