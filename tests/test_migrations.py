from pathlib import Path

import allure
from sqlalchemy import inspect

from wo_runner.runner.repository import TaskRepository
from wo_runner.storage.alembic_runner import current_revision, upgrade_head

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = TaskRepository(db_path)
    repository.init_schema()

    assert current_revision(db_path) == "20261017_0001"
    tables = set(inspect(repository.engine).get_table_names())
    assert {"tasks", "task_events", "task_mutations", "system_settings"} <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "twice.db"

    assert upgrade_head(db_path) is True
    assert upgrade_head(db_path) is False

    repository = TaskRepository(db_path)
    repository.init_schema()
    assert repository.list_tasks() == []
    repository.close()
