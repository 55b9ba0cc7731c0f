"""
Storage Protocols - Backend-agnostic persistence interfaces.

NO DICTIONARIES - All data uses strongly typed domain models.

Any store offering an atomic read-modify-write per account (row lock,
compare-and-swap, or serializable transaction) can implement LedgerStore;
the ledger and router never change with the backend.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from credit_engine.models.api import BillingRoute, ReservationStatus
from credit_engine.models.domain import (
    AppliedEntry,
    LedgerChange,
    LedgerEntryData,
    ModelUsageAggregate,
    Reservation,
    UsageRecordData,
)

# Computes the change to apply from the balance read under the account lock.
# May raise (e.g. InsufficientCreditsError) to abort without writing.
LedgerPlan = Callable[[int], LedgerChange]


class LedgerStore(Protocol):
    """Durable per-account balances and append-only ledger entries."""

    async def apply(self, account_id: str, idempotency_key: str, plan: LedgerPlan) -> AppliedEntry:
        """
        Atomically apply a planned change to one account.

        Within one indivisible unit: lock the account (creating it at zero if
        absent), return the existing entry if the idempotency key was already
        used, otherwise call `plan` with the current balance, write the new
        balance and append the entry.

        Raises:
            LedgerUnavailableError: Storage fault
            Whatever `plan` raises, with nothing written
        """
        ...

    async def get_balance(self, account_id: str) -> int:
        """Running balance, 0 for unknown accounts."""
        ...

    async def find_entry(self, account_id: str, idempotency_key: str) -> LedgerEntryData | None:
        """Entry written under an idempotency key, if any."""
        ...

    async def list_entries(self, account_id: str, limit: int | None = None) -> list[LedgerEntryData]:
        """Entries oldest first (the last `limit` when given)."""
        ...

    async def snapshot(self, account_id: str) -> tuple[int, list[LedgerEntryData]]:
        """Running balance and every entry, consistent with each other (primary only)."""
        ...

    async def accounts_due_for_reset(self, cycle_start: datetime) -> list[str]:
        """Accounts whose billing cycle started before `cycle_start` (or never)."""
        ...


class UsageStore(Protocol):
    """Append-only usage records."""

    async def insert(self, record: UsageRecordData) -> UsageRecordData:
        """Insert a record, returning the already stored one if the usage ID exists."""
        ...

    async def get(self, usage_id: str) -> UsageRecordData | None:
        """Record for a usage ID."""
        ...

    async def list_since(self, account_id: str, since: datetime) -> list[UsageRecordData]:
        """Records created at or after `since`, oldest first."""
        ...

    async def total_cost_since(self, account_id: str, since: datetime) -> int:
        """Sum of computed cost since `since`."""
        ...

    async def aggregate_by_model(
        self, account_id: str, since: datetime
    ) -> list[ModelUsageAggregate]:
        """Per-model totals since `since`."""
        ...

    async def count_by_route(self, account_id: str, since: datetime) -> dict[BillingRoute, int]:
        """Request counts per billing route since `since`."""
        ...


class ReservationStore(Protocol):
    """Pending-request records keyed by usage ID."""

    async def get(self, usage_id: str) -> Reservation | None:
        """Reservation for a usage ID."""
        ...

    async def save(self, reservation: Reservation) -> Reservation:
        """Insert or overwrite the reservation for its usage ID."""
        ...

    async def compare_and_set(
        self, reservation: Reservation, expected: ReservationStatus | None
    ) -> bool:
        """
        Write the reservation only if the stored one is in `expected` status.

        `expected=None` inserts and requires that no reservation exists yet.
        Returns False, writing nothing, when another writer got there first.
        """
        ...

    async def list_stale(
        self, status: ReservationStatus, older_than: datetime, limit: int = 100
    ) -> list[Reservation]:
        """Reservations in `status` last updated before `older_than`."""
        ...
