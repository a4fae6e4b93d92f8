"""Controllers for work-order CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from wo_runner.config import Settings
from wo_runner.runner.batch import BatchDriver, BatchMode, BatchRunSummary
from wo_runner.runner.executor import TaskExecutor
from wo_runner.runner.models import TaskCreate, TaskStatus, TaskView
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.tools.proxy import ToolProxy
from wo_runner.runner.worker import TaskWorker


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for work-order creation."""

    db_path: Path | None
    name: str
    objective: str
    acceptance_criteria: str | None
    tags: tuple[str, ...]
    priority: int
    assigned_to: str | None
    depends_on: tuple[str, ...]
    draft: bool


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task by id or slug."""

    db_path: Path | None
    reference: str


@dataclass(slots=True)
class RunCommand:
    db_path: Path | None
    reference: str
    detach: bool


@dataclass(slots=True)
class BatchCommand:
    db_path: Path | None
    mode: str
    slots: int | None
    use_prefect: bool


@dataclass(slots=True)
class SettingSetCommand:
    db_path: Path | None
    key: str
    value: str


@dataclass(slots=True)
class SettingGetCommand:
    db_path: Path | None
    key: str


class WoRunnerCliController:
    """Coordinates task management, execution, and settings CLI operations."""

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            depends_on: list[str] = []
            for reference in command.depends_on:
                dependency = repository.resolve_task(reference=reference)
                if dependency is None:
                    return [f"Dependency not found: {reference}"]
                depends_on.append(dependency.task_id)
            task = repository.create_task(
                TaskCreate(
                    name=command.name,
                    objective=command.objective,
                    acceptance_criteria=command.acceptance_criteria,
                    tags=command.tags,
                    status=TaskStatus.DRAFT if command.draft else TaskStatus.READY,
                    assigned_to=command.assigned_to or settings.user_context.default_role,
                    priority=command.priority,
                    depends_on=tuple(depends_on),
                ),
            )
        return [f"Task created: slug={task.slug} task_id={task.task_id} status={task.status.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status, limit=command.limit)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resolve_task(reference=command.reference)
            if task is None:
                return [f"Task not found: {command.reference}"]
            details = repository.get_task_details(task_id=task.task_id)
            digest = repository.mutation_digest(task_id=task.task_id)
            checkpoints = repository.count_checkpoints(task_id=task.task_id)
        if details is None:
            return [f"Task not found: {command.reference}"]

        lines = [
            f"Task: {task.slug} ({task.task_id})",
            f"Name: {task.name}",
            f"Status: {task.status.value}",
            f"Role: {task.assigned_to}",
            f"Priority: {task.priority}",
            f"Tags: {', '.join(task.tags) or '-'}",
            f"Escalation tier: {task.metadata.get('escalation_tier', 1)}",
            f"Checkpoints: {checkpoints}",
            f"Mutations: total={digest.total} successful={digest.successful} "
            f"failed={digest.failed}",
            f"Summary: {task.summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def approve_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resolve_task(reference=command.reference)
            if task is None:
                return [f"Task not found: {command.reference}"]
            repository.approve_task(task_id=task.task_id)
        return [f"Task approved: {task.slug}"]

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resolve_task(reference=command.reference)
            if task is None:
                return [f"Task not found: {command.reference}"]
            repository.cancel_task(task_id=task.task_id)
        return [f"Task cancelled: {task.slug}"]

    def run_task(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()

        if command.detach:
            return self._dispatch_detached(settings, command.reference)

        with _repository(settings) as repository:
            task = repository.resolve_task(reference=command.reference)
            if task is None:
                return [f"Task not found: {command.reference}"]
            with _worker(settings, repository) as worker:
                run = worker.run_to_completion(
                    task.task_id,
                    max_invocations=settings.batch.max_invocations,
                )
        final = run.final
        return [
            f"Run summary: task={task.slug} status={final.status.value} "
            f"invocations={run.invocations} turns={final.turns}",
            f"Outcome: {final.summary}",
        ]

    def run_batch(self, command: BatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()
        mode = BatchMode(command.mode)
        slots = command.slots or settings.batch.parallel_slots

        if command.use_prefect:
            from wo_runner.runner.prefect_flow import batch_flow

            # Flow tasks open their own connections; migrate first.
            _open_repository(settings).close()
            summary = batch_flow(settings=settings, slots=1 if mode == BatchMode.STEP else slots)
            return _batch_lines(summary)

        with _repository(settings) as repository, _worker(settings, repository) as worker:
            driver = BatchDriver(
                repository,
                worker,
                max_waves=settings.batch.max_waves,
                max_invocations=settings.batch.max_invocations,
            )
            summary = driver.run(mode=mode, slots=slots)
        return _batch_lines(summary)

    def set_setting(self, command: SettingSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.set_system_setting(key=command.key, value=command.value)
        return [f"Setting saved: {command.key}={command.value}"]

    def get_setting(self, command: SettingGetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            value = repository.get_system_setting(key=command.key)
        if value is None:
            return [f"Setting not set: {command.key}"]
        return [f"{command.key}={value}"]

    def _dispatch_detached(self, settings: Settings, reference: str) -> list[str]:
        repository = _open_repository(settings)
        task = repository.resolve_task(reference=reference)
        if task is None:
            repository.close()
            return [f"Task not found: {reference}"]

        proxy = _proxy(settings, repository)
        worker = TaskWorker(
            TaskExecutor(repository=repository, settings=settings, proxy=proxy),
            max_workers=1,
        )
        future = worker.dispatch(task.task_id, max_invocations=settings.batch.max_invocations)

        def _release(_: object) -> None:
            worker.shutdown(wait=False)
            if proxy is not None:
                proxy.close()
            repository.close()

        future.add_done_callback(_release)
        return [f"Task dispatched: {task.slug} (task_id={task.task_id}) runs in the background"]


def _task_line(task: TaskView) -> str:
    return (
        f"{task.slug} status={task.status.value} priority={task.priority} "
        f"role={task.assigned_to} name={task.name}"
    )


def _batch_lines(summary: BatchRunSummary) -> list[str]:
    return [
        "Batch summary: "
        f"waves={summary.waves} processed={summary.processed} "
        f"completed={summary.completed} failed={summary.failed} "
        f"unfinished={summary.unfinished} skipped={summary.skipped}",
    ]


def _proxy(settings: Settings, repository: TaskRepository) -> ToolProxy | None:
    if not settings.proxy.base_url:
        return None
    return ToolProxy(settings.proxy, repository)


def _open_repository(settings: Settings) -> TaskRepository:
    repository = TaskRepository(
        db_path=settings.db_path,
        actor=settings.user_context.actor,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    return repository


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = _open_repository(settings)
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _worker(settings: Settings, repository: TaskRepository) -> Iterator[TaskWorker]:
    proxy = _proxy(settings, repository)
    worker = TaskWorker(
        TaskExecutor(repository=repository, settings=settings, proxy=proxy),
        max_workers=settings.batch.parallel_slots,
    )
    try:
        yield worker
    finally:
        worker.shutdown()
        if proxy is not None:
            proxy.close()
