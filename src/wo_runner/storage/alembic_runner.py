"""Programmatic Alembic migrations for the task store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parents[3]


def _config(db_path: Path) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None for a fresh file."""

    if not db_path.exists():
        return None
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> bool:
    """Migrate the database to head; return False when it was already there.

    Every CLI command opens the store, so the already-at-head case skips
    Alembic's environment bootstrap entirely.
    """

    config = _config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    if current_revision(db_path) == head:
        return False
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Migrating %s to %s", db_path, head)
    command.upgrade(config, "head")
    return True
