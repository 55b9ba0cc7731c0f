"""
Migration Runner - Brings the ledger schema to head before the engine starts.

Runs synchronously (Alembic's command API); the lifespan hook calls it in a
worker thread.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine, inspect
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from credit_engine.config import settings
from credit_engine.db.models import Base

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ALEMBIC_INI_PATH = PROJECT_ROOT / "alembic.ini"


class MigrationError(RuntimeError):
    """Schema could not be brought to the head revision."""


def get_sync_database_url(url: str | None = None) -> str:
    """Swap the asyncpg driver for psycopg2 (Alembic connects synchronously)."""
    return (url or settings.database_url).replace("+asyncpg", "+psycopg2")


def build_alembic_config(sync_url: str) -> Config:
    config = Config(str(ALEMBIC_INI_PATH))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    # ConfigParser interpolation treats % specially (URL-encoded passwords)
    config.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return config


def missing_tables(engine: Engine) -> list[str]:
    """Engine tables absent from the connected database."""
    present = set(inspect(engine).get_table_names())
    return sorted(set(Base.metadata.tables) - present)


def run_migrations() -> None:
    """
    Upgrade to head when behind, then confirm every engine table exists.

    Raises:
        MigrationError: Upgrade failed or tables are missing afterwards
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = get_sync_database_url()
    config = build_alembic_config(sync_url)
    head = ScriptDirectory.from_config(config).get_current_head()
    engine = create_engine(sync_url)

    try:
        with engine.connect() as conn:
            current = MigrationContext.configure(conn).get_current_revision()

        if current != head:
            logger.info("ledger_schema_upgrading", from_revision=current, to_revision=head)
            command.upgrade(config, "head")

        absent = missing_tables(engine)
        if absent:
            logger.error("ledger_schema_incomplete", missing=absent, revision=head)
            raise MigrationError(f"Tables missing after migration: {', '.join(absent)}")
        logger.info("ledger_schema_ready", revision=head, upgraded=current != head)

    except MigrationError:
        raise
    except Exception as e:
        logger.error("ledger_schema_upgrade_failed", error=str(e))
        raise MigrationError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
