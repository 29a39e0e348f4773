"""Alembic helpers for startup upgrades and the health probe."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine

from app.core.config import settings

logger = logging.getLogger(__name__)

ALEMBIC_VERSION_TABLE = "alembic_version"
# Fixed key so concurrently booting workers upgrade one at a time
MIGRATION_LOCK_ID = 7340211


@dataclass(frozen=True)
class MigrationStatus:
    current_heads: tuple[str, ...]
    head_revisions: tuple[str, ...]

    @property
    def is_up_to_date(self) -> bool:
        return set(self.current_heads) == set(self.head_revisions)


class MigrationError(RuntimeError):
    """Raised when the automatic upgrade does not reach head."""


def alembic_config() -> Config:
    api_root = Path(__file__).resolve().parents[2]
    alembic_ini = api_root / "alembic.ini"
    if not alembic_ini.is_file():
        raise FileNotFoundError(f"Alembic config not found at {alembic_ini}")
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(api_root / "alembic"))
    config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    return config


def _current_heads(connection: Connection) -> tuple[str, ...]:
    if ALEMBIC_VERSION_TABLE not in inspect(connection).get_table_names():
        return ()
    context = MigrationContext.configure(connection)
    return tuple(context.get_current_heads() or ())


def get_migration_status(engine: Engine) -> MigrationStatus:
    script = ScriptDirectory.from_config(alembic_config())
    with engine.connect() as connection:
        current = _current_heads(connection)
    return MigrationStatus(
        current_heads=current,
        head_revisions=tuple(script.get_heads() or ()),
    )


def ensure_migrations(engine: Engine, auto_migrate: bool) -> MigrationStatus:
    """Report migration status, upgrading to head first when allowed."""
    status = get_migration_status(engine)
    if status.is_up_to_date or not auto_migrate:
        if not status.is_up_to_date:
            logger.warning(
                "Database schema behind head: current=%s head=%s",
                status.current_heads,
                status.head_revisions,
            )
        return status

    logger.info("Upgrading database schema to %s", status.head_revisions)
    _upgrade_to_head(engine)
    status = get_migration_status(engine)
    if not status.is_up_to_date:
        raise MigrationError("Database migrations did not reach head after auto-upgrade.")
    return status


def _upgrade_to_head(engine: Engine) -> None:
    config = alembic_config()

    if engine.dialect.name != "postgresql":
        command.upgrade(config, "head")
        return

    with engine.connect() as connection:
        connection.execute(text("SELECT pg_advisory_lock(:lock_id)"), {"lock_id": MIGRATION_LOCK_ID})
        connection.commit()
        try:
            config.attributes["connection"] = connection
            command.upgrade(config, "head")
            connection.commit()
        finally:
            connection.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": MIGRATION_LOCK_ID}
            )
            connection.commit()
