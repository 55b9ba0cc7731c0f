"""
Engine Assembly - Wires catalog, stores and services for one process.

NO DICTIONARIES - The engine is a typed container of its services.
"""

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_engine.config import Settings
from credit_engine.db.memory import InMemoryLedgerStore, InMemoryReservationStore, InMemoryUsageStore
from credit_engine.db.session import get_read_session_factory, get_write_session_factory
from credit_engine.db.store import SqlLedgerStore, SqlReservationStore, SqlUsageStore
from credit_engine.services.accounts import (
    AccountDirectory,
    HttpAccountDirectory,
    StaticAccountDirectory,
)
from credit_engine.services.catalog import CatalogHolder, TierCatalog, load_configured_catalog
from credit_engine.services.cycle_reset import BillingCycleService
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.router import BillingRouter
from credit_engine.services.stores import LedgerStore, ReservationStore, UsageStore
from credit_engine.services.usage import UsageRecorder

logger = get_logger(__name__)


@dataclass
class BillingEngine:
    """Every service one process needs, sharing one catalog holder."""

    storage: str
    catalog: CatalogHolder
    ledger: CreditLedger
    usage: UsageRecorder
    router: BillingRouter
    cycles: BillingCycleService
    directory: AccountDirectory
    read_session_factory: async_sessionmaker[AsyncSession] | None = None

    async def ping(self) -> None:
        """Check storage connectivity (raises on failure)."""
        if self.read_session_factory is None:
            return
        async with self.read_session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def close(self) -> None:
        """Release the directory's HTTP client."""
        if isinstance(self.directory, HttpAccountDirectory):
            await self.directory.close()


def assemble_engine(
    settings: Settings,
    ledger_store: LedgerStore,
    usage_store: UsageStore,
    reservation_store: ReservationStore,
    directory: AccountDirectory,
    catalog: TierCatalog,
    storage: str,
    usage_read_store: UsageStore | None = None,
    read_session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> BillingEngine:
    """Build the services over already constructed stores."""
    holder = CatalogHolder(catalog)
    ledger = CreditLedger(ledger_store)
    usage = UsageRecorder(usage_store, usage_read_store)
    router = BillingRouter(
        catalog=holder,
        ledger=ledger,
        usage=usage,
        reservations=reservation_store,
        directory=directory,
        bill_partial_output=settings.bill_partial_output,
        allow_shortfall_overdraft=settings.allow_shortfall_overdraft,
        stale_after_seconds=settings.reservation_stale_after_seconds,
    )
    cycles = BillingCycleService(
        catalog=holder,
        ledger=ledger,
        directory=directory,
        allow_rollover=settings.allow_rollover,
    )
    return BillingEngine(
        storage=storage,
        catalog=holder,
        ledger=ledger,
        usage=usage,
        router=router,
        cycles=cycles,
        directory=directory,
        read_session_factory=read_session_factory,
    )


def build_directory(settings: Settings) -> AccountDirectory:
    """Identity service client, or an empty static directory when none is configured."""
    if settings.identity_service_url:
        return HttpAccountDirectory(
            base_url=settings.identity_service_url,
            token=settings.identity_service_token,
            timeout=settings.identity_timeout_seconds,
        )
    logger.warning("identity_service_not_configured", directory="static")
    return StaticAccountDirectory()


def build_engine(
    settings: Settings,
    directory: AccountDirectory | None = None,
    catalog: TierCatalog | None = None,
) -> BillingEngine:
    """
    Build the engine for the configured storage backend.

    Raises:
        CatalogValidationError: Configured catalog file is invalid
    """
    catalog = catalog or load_configured_catalog(settings.tier_catalog_path)
    directory = directory or build_directory(settings)

    if settings.storage_backend == "memory":
        logger.warning("storage_backend_in_memory", durable=False)
        return assemble_engine(
            settings,
            ledger_store=InMemoryLedgerStore(),
            usage_store=InMemoryUsageStore(),
            reservation_store=InMemoryReservationStore(),
            directory=directory,
            catalog=catalog,
            storage="memory",
        )

    write_factory = get_write_session_factory()
    read_factory = get_read_session_factory()
    return assemble_engine(
        settings,
        ledger_store=SqlLedgerStore(write_factory, read_factory),
        usage_store=SqlUsageStore(write_factory),
        reservation_store=SqlReservationStore(write_factory),
        directory=directory,
        catalog=catalog,
        storage="postgres",
        usage_read_store=SqlUsageStore(read_factory),
        read_session_factory=read_factory,
    )
