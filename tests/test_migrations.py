from pathlib import Path

import allure
from sqlalchemy import text

from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.storage.alembic_runner import head_revision

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Durable Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = GenerationRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('requests', 'attempts', 'download_tasks', 'request_events')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    repository.close()

    assert version == head_revision() == "20261017_0002"
    assert tables == ["attempts", "download_tasks", "request_events", "requests"]
    assert str(journal_mode).lower() == "wal"
