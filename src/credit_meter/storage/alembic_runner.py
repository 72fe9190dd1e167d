"""Programmatic Alembic access for the ledger database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from credit_meter.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path) -> None:
    """Bring ``db_path`` to the latest ledger schema, creating the file if needed."""

    logger.debug("Applying ledger migrations to %s", db_path)
    command.upgrade(_ledger_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``; ``None`` for a database never migrated."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def _ledger_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
