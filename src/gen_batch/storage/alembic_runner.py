"""Programmatic Alembic access for the generation queue database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path`` and the repo-level migration scripts."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    config = migration_config(Path(":memory:"))
    return ScriptDirectory.from_config(config).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite queue database at ``db_path`` up to the latest schema."""

    logger.debug("Upgrading %s to schema %s", db_path, head_revision())
    command.upgrade(migration_config(db_path), "head")
