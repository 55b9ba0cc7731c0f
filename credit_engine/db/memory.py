"""
In-Process Stores - Single-process implementations of the storage protocols.

Used for local runs (STORAGE_BACKEND=memory) and tests. Safe for any number
of asyncio tasks in one event loop; not shared across processes.
"""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from uuid import uuid4

from credit_engine.models.api import BillingRoute, ReservationStatus
from credit_engine.models.domain import (
    AppliedEntry,
    LedgerEntryData,
    ModelUsageAggregate,
    Reservation,
    UsageRecordData,
)
from credit_engine.services.stores import LedgerPlan


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class InMemoryLedgerStore:
    """Ledger store serialized per account with asyncio locks."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = {}
        self._cycle_starts: dict[str, datetime | None] = {}
        self._entries: dict[str, list[LedgerEntryData]] = defaultdict(list)
        self._by_key: dict[tuple[str, str], LedgerEntryData] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def apply(self, account_id: str, idempotency_key: str, plan: LedgerPlan) -> AppliedEntry:
        async with self._locks[account_id]:
            existing = self._by_key.get((account_id, idempotency_key))
            if existing is not None:
                return AppliedEntry(entry=existing, replayed=True)

            current = self._balances.get(account_id, 0)
            change = plan(current)
            new_balance = current + change.delta

            entry = LedgerEntryData(
                entry_id=uuid4(),
                account_id=account_id,
                delta=change.delta,
                reason=change.reason,
                resulting_balance=new_balance,
                idempotency_key=idempotency_key,
                related_usage_id=change.related_usage_id,
                description=change.description,
                created_at=_utc_now(),
            )

            self._balances[account_id] = new_balance
            self._cycle_starts.setdefault(account_id, None)
            if change.cycle_start is not None:
                self._cycle_starts[account_id] = change.cycle_start
            self._entries[account_id].append(entry)
            self._by_key[(account_id, idempotency_key)] = entry
            return AppliedEntry(entry=entry, replayed=False)

    async def get_balance(self, account_id: str) -> int:
        return self._balances.get(account_id, 0)

    async def find_entry(self, account_id: str, idempotency_key: str) -> LedgerEntryData | None:
        return self._by_key.get((account_id, idempotency_key))

    async def list_entries(self, account_id: str, limit: int | None = None) -> list[LedgerEntryData]:
        entries = list(self._entries.get(account_id, []))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def snapshot(self, account_id: str) -> tuple[int, list[LedgerEntryData]]:
        async with self._locks[account_id]:
            return self._balances.get(account_id, 0), list(self._entries.get(account_id, []))

    async def accounts_due_for_reset(self, cycle_start: datetime) -> list[str]:
        return sorted(
            account_id
            for account_id, started in self._cycle_starts.items()
            if started is None or started < cycle_start
        )

    def open_account(self, account_id: str) -> None:
        """Register an account with no history so it shows up for cycle resets."""
        self._balances.setdefault(account_id, 0)
        self._cycle_starts.setdefault(account_id, None)


class InMemoryUsageStore:
    """Usage records kept in insertion order."""

    def __init__(self) -> None:
        self._records: dict[str, UsageRecordData] = {}

    async def insert(self, record: UsageRecordData) -> UsageRecordData:
        existing = self._records.get(record.usage_id)
        if existing is not None:
            return existing
        self._records[record.usage_id] = record
        return record

    async def get(self, usage_id: str) -> UsageRecordData | None:
        return self._records.get(usage_id)

    async def list_since(self, account_id: str, since: datetime) -> list[UsageRecordData]:
        return [
            r
            for r in self._records.values()
            if r.account_id == account_id and r.created_at >= since
        ]

    async def total_cost_since(self, account_id: str, since: datetime) -> int:
        return sum(r.computed_cost for r in await self.list_since(account_id, since))

    async def aggregate_by_model(
        self, account_id: str, since: datetime
    ) -> list[ModelUsageAggregate]:
        totals: dict[str, list[int]] = {}
        for r in await self.list_since(account_id, since):
            bucket = totals.setdefault(r.model_id, [0, 0, 0, 0])
            bucket[0] += 1
            bucket[1] += r.input_units
            bucket[2] += r.output_units
            bucket[3] += r.computed_cost
        return [
            ModelUsageAggregate(
                model_id=model_id,
                requests=requests,
                input_units=input_units,
                output_units=output_units,
                total_cost=total_cost,
            )
            for model_id, (requests, input_units, output_units, total_cost) in sorted(
                totals.items()
            )
        ]

    async def count_by_route(self, account_id: str, since: datetime) -> dict[BillingRoute, int]:
        counts: dict[BillingRoute, int] = {}
        for r in await self.list_since(account_id, since):
            counts[r.billing_route] = counts.get(r.billing_route, 0) + 1
        return counts


class InMemoryReservationStore:
    """Reservations keyed by usage ID."""

    def __init__(self) -> None:
        self._reservations: dict[str, Reservation] = {}

    async def get(self, usage_id: str) -> Reservation | None:
        return self._reservations.get(usage_id)

    async def save(self, reservation: Reservation) -> Reservation:
        self._reservations[reservation.usage_id] = reservation
        return reservation

    async def compare_and_set(
        self, reservation: Reservation, expected: ReservationStatus | None
    ) -> bool:
        # No await between the check and the write
        current = self._reservations.get(reservation.usage_id)
        current_status = current.status if current is not None else None
        if current_status != expected:
            return False
        self._reservations[reservation.usage_id] = reservation
        return True

    async def list_stale(
        self, status: ReservationStatus, older_than: datetime, limit: int = 100
    ) -> list[Reservation]:
        stale = sorted(
            (
                r
                for r in self._reservations.values()
                if r.status == status and r.updated_at < older_than
            ),
            key=lambda r: r.updated_at,
        )
        return stale[:limit]
