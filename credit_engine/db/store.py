"""
SQL Stores - SQLAlchemy implementations of the storage protocols.

NO DICTIONARIES - Rows are converted to domain models at the boundary.

Ledger writes lock the account row (SELECT FOR UPDATE) for the whole
read-check-write, then verify what was written before committing. Any
SQLAlchemy failure surfaces as LedgerUnavailableError.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_engine.db.models import BillingReservation, CreditAccount, LedgerEntry, UsageRecord
from credit_engine.exceptions import (
    DataIntegrityError,
    LedgerUnavailableError,
    WriteVerificationError,
)
from credit_engine.models.api import BillingRoute, LedgerReason, ReservationStatus, UsageOutcome
from credit_engine.models.domain import (
    AppliedEntry,
    LedgerEntryData,
    ModelUsageAggregate,
    Reservation,
    UsageRecordData,
)
from credit_engine.services.stores import LedgerPlan

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to timestamps read back without tzinfo (SQLite)."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into LedgerUnavailableError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        raise LedgerUnavailableError(f"{operation}: {type(e).__name__}") from e


# ============================================================================
# Row Conversion
# ============================================================================


def _entry_to_domain(row: LedgerEntry) -> LedgerEntryData:
    return LedgerEntryData(
        entry_id=row.id,
        account_id=row.account_id,
        delta=row.delta,
        reason=LedgerReason(row.reason),
        resulting_balance=row.resulting_balance,
        idempotency_key=row.idempotency_key,
        related_usage_id=row.related_usage_id,
        description=row.description,
        created_at=_as_utc(row.created_at),
    )


def _usage_to_domain(row: UsageRecord) -> UsageRecordData:
    return UsageRecordData(
        usage_id=row.usage_id,
        account_id=row.account_id,
        model_id=row.model_id,
        input_units=row.input_units,
        output_units=row.output_units,
        computed_cost=row.computed_cost,
        billing_route=BillingRoute(row.billing_route),
        outcome=UsageOutcome(row.outcome),
        created_at=_as_utc(row.created_at),
        estimated_cost=row.estimated_cost,
        shortfall=row.shortfall,
        related_ledger_entry_id=row.related_ledger_entry_id,
    )


def _reservation_to_domain(row: BillingReservation) -> Reservation:
    return Reservation(
        usage_id=row.usage_id,
        account_id=row.account_id,
        tier=row.tier,
        model_id=row.model_id,
        route=BillingRoute(row.route),
        estimated_units=row.estimated_units,
        estimated_cost=row.estimated_cost,
        status=ReservationStatus(row.status),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        debit_entry_id=row.debit_entry_id,
    )


def _reservation_to_row(reservation: Reservation) -> BillingReservation:
    return BillingReservation(
        usage_id=reservation.usage_id,
        account_id=reservation.account_id,
        tier=reservation.tier,
        model_id=reservation.model_id,
        route=reservation.route.value,
        estimated_units=reservation.estimated_units,
        estimated_cost=reservation.estimated_cost,
        status=reservation.status.value,
        debit_entry_id=reservation.debit_entry_id,
        created_at=reservation.created_at,
        updated_at=reservation.updated_at,
    )


# ============================================================================
# Ledger Store
# ============================================================================


class SqlLedgerStore:
    """Ledger store on credit_accounts + ledger_entries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        read_session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.read_session_factory = read_session_factory or session_factory

    async def apply(self, account_id: str, idempotency_key: str, plan: LedgerPlan) -> AppliedEntry:
        with _storage_errors("ledger_apply"):
            await self._ensure_account(account_id)
            try:
                return await self._apply_locked(account_id, idempotency_key, plan)
            except IntegrityError:
                # Same key committed by a concurrent writer between our check and insert
                existing = await self.find_entry(account_id, idempotency_key)
                if existing is None:
                    raise
                return AppliedEntry(entry=existing, replayed=True)

    async def _apply_locked(
        self, account_id: str, idempotency_key: str, plan: LedgerPlan
    ) -> AppliedEntry:
        async with self.session_factory() as session:
            async with session.begin():
                account = (
                    await session.execute(
                        select(CreditAccount)
                        .where(CreditAccount.account_id == account_id)
                        .with_for_update()
                    )
                ).scalar_one()

                existing = await self._find_entry(session, account_id, idempotency_key)
                if existing is not None:
                    return AppliedEntry(entry=_entry_to_domain(existing), replayed=True)

                balance_before = account.balance
                change = plan(balance_before)
                balance_after = balance_before + change.delta
                now = _utc_now()

                entry = LedgerEntry(
                    account_id=account_id,
                    delta=change.delta,
                    reason=change.reason.value,
                    resulting_balance=balance_after,
                    idempotency_key=idempotency_key,
                    related_usage_id=change.related_usage_id,
                    description=change.description,
                    created_at=now,
                )
                session.add(entry)

                account.balance = balance_after
                account.updated_at = now
                if change.cycle_start is not None:
                    account.cycle_start = change.cycle_start
                await session.flush()

                # Verify entry was written
                verified_entry = await session.get(LedgerEntry, entry.id)
                if verified_entry is None:
                    raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

                # Verify account was updated
                await session.refresh(account)
                if account.balance != balance_after:
                    raise DataIntegrityError(
                        f"Balance mismatch: expected {balance_after}, got {account.balance}"
                    )

                return AppliedEntry(entry=_entry_to_domain(verified_entry), replayed=False)

    async def _ensure_account(self, account_id: str) -> None:
        """Create the account row at zero if absent, in its own short transaction."""
        async with self.session_factory() as session:
            if await session.get(CreditAccount, account_id) is not None:
                return
            session.add(CreditAccount(account_id=account_id, balance=0))
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - account created by another request
                await session.rollback()
                return
            logger.info("credit_account_opened", account_id=account_id)

    @staticmethod
    async def _find_entry(
        session: AsyncSession, account_id: str, idempotency_key: str
    ) -> LedgerEntry | None:
        return (
            await session.execute(
                select(LedgerEntry).where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.idempotency_key == idempotency_key,
                )
            )
        ).scalar_one_or_none()

    async def get_balance(self, account_id: str) -> int:
        with _storage_errors("ledger_balance"):
            async with self.session_factory() as session:
                balance = await session.scalar(
                    select(CreditAccount.balance).where(CreditAccount.account_id == account_id)
                )
                return balance or 0

    async def find_entry(self, account_id: str, idempotency_key: str) -> LedgerEntryData | None:
        with _storage_errors("ledger_find_entry"):
            async with self.session_factory() as session:
                row = await self._find_entry(session, account_id, idempotency_key)
                return _entry_to_domain(row) if row is not None else None

    async def list_entries(self, account_id: str, limit: int | None = None) -> list[LedgerEntryData]:
        with _storage_errors("ledger_list_entries"):
            async with self.read_session_factory() as session:
                query = (
                    select(LedgerEntry)
                    .where(LedgerEntry.account_id == account_id)
                    .order_by(LedgerEntry.created_at.desc())
                )
                if limit is not None:
                    query = query.limit(limit)
                rows = (await session.execute(query)).scalars().all()
                return [_entry_to_domain(r) for r in reversed(rows)]

    async def snapshot(self, account_id: str) -> tuple[int, list[LedgerEntryData]]:
        with _storage_errors("ledger_snapshot"):
            async with self.session_factory() as session:
                async with session.begin():
                    # Shared row lock holds off writers until the entries are read
                    balance = await session.scalar(
                        select(CreditAccount.balance)
                        .where(CreditAccount.account_id == account_id)
                        .with_for_update(read=True)
                    )
                    rows = (
                        await session.execute(
                            select(LedgerEntry)
                            .where(LedgerEntry.account_id == account_id)
                            .order_by(LedgerEntry.created_at)
                        )
                    ).scalars()
                    return balance or 0, [_entry_to_domain(r) for r in rows]

    async def accounts_due_for_reset(self, cycle_start: datetime) -> list[str]:
        with _storage_errors("ledger_accounts_due"):
            async with self.read_session_factory() as session:
                result = await session.execute(
                    select(CreditAccount.account_id)
                    .where(
                        or_(
                            CreditAccount.cycle_start.is_(None),
                            CreditAccount.cycle_start < cycle_start,
                        )
                    )
                    .order_by(CreditAccount.account_id)
                )
                return list(result.scalars().all())


# ============================================================================
# Usage Store
# ============================================================================


class SqlUsageStore:
    """Usage store on usage_records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def insert(self, record: UsageRecordData) -> UsageRecordData:
        with _storage_errors("usage_insert"):
            async with self.session_factory() as session:
                existing = await session.get(UsageRecord, record.usage_id)
                if existing is not None:
                    return _usage_to_domain(existing)

                session.add(
                    UsageRecord(
                        usage_id=record.usage_id,
                        account_id=record.account_id,
                        model_id=record.model_id,
                        input_units=record.input_units,
                        output_units=record.output_units,
                        computed_cost=record.computed_cost,
                        estimated_cost=record.estimated_cost,
                        shortfall=record.shortfall,
                        billing_route=record.billing_route.value,
                        outcome=record.outcome.value,
                        related_ledger_entry_id=record.related_ledger_entry_id,
                        created_at=record.created_at,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    existing = await session.get(UsageRecord, record.usage_id)
                    if existing is None:
                        raise
                    return _usage_to_domain(existing)
                return record

    async def get(self, usage_id: str) -> UsageRecordData | None:
        with _storage_errors("usage_get"):
            async with self.session_factory() as session:
                row = await session.get(UsageRecord, usage_id)
                return _usage_to_domain(row) if row is not None else None

    async def list_since(self, account_id: str, since: datetime) -> list[UsageRecordData]:
        with _storage_errors("usage_list_since"):
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        select(UsageRecord)
                        .where(UsageRecord.account_id == account_id, UsageRecord.created_at >= since)
                        .order_by(UsageRecord.created_at)
                    )
                ).scalars()
                return [_usage_to_domain(r) for r in rows]

    async def total_cost_since(self, account_id: str, since: datetime) -> int:
        with _storage_errors("usage_total_cost"):
            async with self.session_factory() as session:
                total = await session.scalar(
                    select(func.coalesce(func.sum(UsageRecord.computed_cost), 0)).where(
                        UsageRecord.account_id == account_id, UsageRecord.created_at >= since
                    )
                )
                return int(total or 0)

    async def aggregate_by_model(
        self, account_id: str, since: datetime
    ) -> list[ModelUsageAggregate]:
        with _storage_errors("usage_by_model"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(
                        UsageRecord.model_id,
                        func.count(),
                        func.sum(UsageRecord.input_units),
                        func.sum(UsageRecord.output_units),
                        func.sum(UsageRecord.computed_cost),
                    )
                    .where(UsageRecord.account_id == account_id, UsageRecord.created_at >= since)
                    .group_by(UsageRecord.model_id)
                    .order_by(UsageRecord.model_id)
                )
                return [
                    ModelUsageAggregate(
                        model_id=model_id,
                        requests=int(requests),
                        input_units=int(input_units or 0),
                        output_units=int(output_units or 0),
                        total_cost=int(total_cost or 0),
                    )
                    for model_id, requests, input_units, output_units, total_cost in result.all()
                ]

    async def count_by_route(self, account_id: str, since: datetime) -> dict[BillingRoute, int]:
        with _storage_errors("usage_by_route"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(UsageRecord.billing_route, func.count())
                    .where(UsageRecord.account_id == account_id, UsageRecord.created_at >= since)
                    .group_by(UsageRecord.billing_route)
                )
                return {BillingRoute(route): int(count) for route, count in result.all()}


# ============================================================================
# Reservation Store
# ============================================================================


class SqlReservationStore:
    """Reservation store on billing_reservations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, usage_id: str) -> Reservation | None:
        with _storage_errors("reservation_get"):
            async with self.session_factory() as session:
                row = await session.get(BillingReservation, usage_id)
                return _reservation_to_domain(row) if row is not None else None

    async def save(self, reservation: Reservation) -> Reservation:
        with _storage_errors("reservation_save"):
            async with self.session_factory() as session:
                await session.merge(_reservation_to_row(reservation))
                await session.commit()
                return reservation

    async def compare_and_set(
        self, reservation: Reservation, expected: ReservationStatus | None
    ) -> bool:
        with _storage_errors("reservation_compare_and_set"):
            async with self.session_factory() as session:
                if expected is None:
                    session.add(_reservation_to_row(reservation))
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Another attempt inserted this usage_id first
                        await session.rollback()
                        return False
                    return True

                result = await session.execute(
                    update(BillingReservation)
                    .where(
                        BillingReservation.usage_id == reservation.usage_id,
                        BillingReservation.status == expected.value,
                    )
                    .values(
                        status=reservation.status.value,
                        debit_entry_id=reservation.debit_entry_id,
                        updated_at=reservation.updated_at,
                    )
                )
                await session.commit()
                return result.rowcount == 1

    async def list_stale(
        self, status: ReservationStatus, older_than: datetime, limit: int = 100
    ) -> list[Reservation]:
        with _storage_errors("reservation_list_stale"):
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        select(BillingReservation)
                        .where(
                            BillingReservation.status == status.value,
                            BillingReservation.updated_at < older_than,
                        )
                        .order_by(BillingReservation.updated_at)
                        .limit(limit)
                    )
                ).scalars()
                return [_reservation_to_domain(r) for r in rows]
