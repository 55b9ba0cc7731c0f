"""
Tests for engine assembly and the migration runner helpers.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine

from credit_engine.config import Settings
from credit_engine.db.memory import InMemoryLedgerStore
from credit_engine.db.migration_runner import (
    build_alembic_config,
    get_sync_database_url,
    missing_tables,
)
from credit_engine.db.models import Base
from credit_engine.services.accounts import HttpAccountDirectory, StaticAccountDirectory
from credit_engine.services.catalog import TierCatalog
from credit_engine.services.engine import BillingEngine, build_directory, build_engine


def _settings(**overrides) -> Settings:
    values = {"storage_backend": "memory", "database_url": ""}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestBuildEngine:
    """Tests for build_engine."""

    def test_memory_backend(self, directory: StaticAccountDirectory, small_catalog: TierCatalog):
        engine = build_engine(_settings(), directory=directory, catalog=small_catalog)

        assert engine.storage == "memory"
        assert engine.catalog.current is small_catalog
        assert isinstance(engine.ledger.store, InMemoryLedgerStore)
        assert engine.router.catalog is engine.catalog
        assert engine.cycles.catalog is engine.catalog

    def test_policy_flows_to_services(self, small_catalog: TierCatalog):
        settings = _settings(
            allow_rollover=True,
            bill_partial_output=False,
            allow_shortfall_overdraft=True,
            reservation_stale_after_seconds=60,
        )

        engine = build_engine(settings, directory=StaticAccountDirectory(), catalog=small_catalog)

        assert engine.cycles.allow_rollover is True
        assert engine.router.bill_partial_output is False
        assert engine.router.allow_shortfall_overdraft is True
        assert engine.router.stale_after_seconds == 60

    def test_default_catalog_loaded(self):
        engine = build_engine(_settings(), directory=StaticAccountDirectory())

        assert len(engine.catalog.current.tiers) == 4

    @pytest.mark.asyncio
    async def test_memory_ping(self, engine: BillingEngine):
        await engine.ping()


class TestBuildDirectory:
    """Tests for build_directory."""

    def test_static_without_identity_service(self):
        assert isinstance(build_directory(_settings()), StaticAccountDirectory)

    @pytest.mark.asyncio
    async def test_http_with_identity_service(self):
        directory = build_directory(
            _settings(
                identity_service_url="http://identity.local/",
                identity_service_token="t",
                identity_timeout_seconds=1.5,
            )
        )

        assert isinstance(directory, HttpAccountDirectory)
        assert directory.base_url == "http://identity.local"
        assert directory.timeout == 1.5
        await directory.close()

    @pytest.mark.asyncio
    async def test_engine_close_closes_http_directory(self, small_catalog: TierCatalog):
        directory = HttpAccountDirectory("http://identity.local", http_client=MagicMock())
        directory.http_client.aclose = AsyncMock()
        engine = build_engine(_settings(), directory=directory, catalog=small_catalog)

        await engine.close()

        directory.http_client.aclose.assert_awaited_once()


class TestMigrationHelpers:
    """Tests for migration URL handling."""

    def test_asyncpg_url_converted(self):
        url = get_sync_database_url("postgresql+asyncpg://u:p@db:5432/credits")

        assert url == "postgresql+psycopg2://u:p@db:5432/credits"

    def test_plain_url_untouched(self):
        assert get_sync_database_url("postgresql://u:p@db/credits") == "postgresql://u:p@db/credits"

    def test_percent_escaped_for_alembic_config(self):
        config = build_alembic_config("postgresql+psycopg2://u:p%40ss@db/credits")

        assert config.get_main_option("sqlalchemy.url") == "postgresql+psycopg2://u:p%40ss@db/credits"

    def test_missing_tables_reported(self):
        engine = create_engine("sqlite://")
        Base.metadata.tables["credit_accounts"].create(engine)

        try:
            assert missing_tables(engine) == [
                "billing_reservations",
                "ledger_entries",
                "usage_records",
            ]
            Base.metadata.create_all(engine)
            assert missing_tables(engine) == []
        finally:
            engine.dispose()
