"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from wo_runner.config import LoopSettings, Settings
from wo_runner.runner.models import TaskCreate, TaskStatus, TaskView
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.tools.base import ToolContext


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "tasks.db",
        workdir_root=tmp_path / "workdirs",
        loop=LoopSettings(api_retry_delay_seconds=0.0),
    )


@pytest.fixture()
def repository(settings: Settings) -> Iterator[TaskRepository]:
    repo = TaskRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_task(repository: TaskRepository):
    """Create a task and move it to in_progress unless told otherwise."""

    def _make(*, start: bool = True, **overrides) -> TaskView:
        payload = TaskCreate(
            name=overrides.pop("name", "Write greeting"),
            objective=overrides.pop("objective", "Create hello.txt containing a greeting."),
            **overrides,
        )
        task = repository.create_task(payload)
        if start and task.status == TaskStatus.READY:
            assert repository.start_task(task_id=task.task_id)
            task = repository.require_task(task_id=task.task_id)
        return task

    return _make


@pytest.fixture()
def tool_context(repository: TaskRepository, settings: Settings, make_task):
    def _context(task: TaskView | None = None, *, role: str = "builder") -> ToolContext:
        task = task or make_task()
        return ToolContext(
            task=task,
            repository=repository,
            actor="tester",
            role=role,
            workdir=settings.workdir_root / task.task_id,
        )

    return _context
