from __future__ import annotations

import threading

import allure
import pytest

from fakes import FakeProvider, tool_call
from wo_runner.runner.batch import (
    BatchDriver,
    BatchMode,
    BatchRunSummary,
    PriorityRanker,
    select_wave,
)
from wo_runner.runner.executor import ExecutionOutcome, OutcomeStatus, TaskExecutor
from wo_runner.runner.models import TaskCreate, TaskStatus
from wo_runner.runner.worker import TaskRunSummary, TaskWorker

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Batch Waves"),
]


class RecordingWorker:
    """Claims each task and settles it with a preset outcome."""

    def __init__(self, repository, outcomes: dict[str, OutcomeStatus] | None = None) -> None:
        self.repository = repository
        self.outcomes = outcomes or {}
        self.order: list[str] = []
        self._lock = threading.Lock()

    def run_to_completion(self, task_id: str, *, max_invocations: int = 20) -> TaskRunSummary:
        task = self.repository.require_task(task_id=task_id)
        with self._lock:
            self.order.append(task.slug)
        self.repository.start_task(task_id=task_id)
        status = self.outcomes.get(task.slug, OutcomeStatus.COMPLETED)
        if status == OutcomeStatus.COMPLETED:
            self.repository.complete_task(task_id=task_id, summary="ok")
        elif status == OutcomeStatus.FAILED:
            self.repository.fail_task(task_id=task_id, reason="nope")
        elif status == OutcomeStatus.SKIPPED:
            raise RuntimeError("worker blew up")
        outcome = ExecutionOutcome(status, task_id, "scripted")
        return TaskRunSummary(task_id=task_id, final=outcome, invocations=1, outcomes=[status])


def _create(repository, name: str, **overrides):
    return repository.create_task(TaskCreate(name=name, objective=f"Do {name}", **overrides))


def test_step_mode_runs_one_task_per_wave_in_priority_order(repository) -> None:
    low = _create(repository, "Low", priority=200)
    high = _create(repository, "High", priority=10)
    worker = RecordingWorker(repository)

    summary = BatchDriver(repository, worker).run(mode=BatchMode.STEP, slots=3)

    assert worker.order == [high.slug, low.slug]
    assert summary == BatchRunSummary(waves=2, processed=2, completed=2)


def test_dependencies_split_work_into_waves(repository) -> None:
    scaffold = _create(repository, "Scaffold")
    docs = _create(repository, "Docs")
    feature = _create(repository, "Feature", depends_on=(scaffold.task_id,))
    worker = RecordingWorker(repository)

    assert [task.slug for task in select_wave(repository, ranker=PriorityRanker(), slots=5)] == [
        scaffold.slug,
        docs.slug,
    ]

    summary = BatchDriver(repository, worker).run(mode=BatchMode.BATCH, slots=2)

    assert summary.waves == 2
    assert summary.completed == 3
    assert worker.order[-1] == feature.slug
    assert sorted(worker.order[:2]) == sorted([scaffold.slug, docs.slug])


def test_summary_counts_each_final_outcome(repository) -> None:
    _create(repository, "Fine")
    broken = _create(repository, "Broken")
    paused = _create(repository, "Paused")
    crashed = _create(repository, "Crashed")
    worker = RecordingWorker(
        repository,
        outcomes={
            broken.slug: OutcomeStatus.FAILED,
            paused.slug: OutcomeStatus.SUSPENDED,
            crashed.slug: OutcomeStatus.SKIPPED,
        },
    )

    summary = BatchDriver(repository, worker).run(mode=BatchMode.STEP)

    assert summary.processed == 4
    assert summary.completed == 1
    assert summary.failed == 2
    assert summary.unfinished == 1
    assert repository.require_task(task_id=paused.task_id).status == TaskStatus.IN_PROGRESS


def test_max_waves_bounds_the_run(repository) -> None:
    for index in range(3):
        _create(repository, f"Task {index}")

    summary = BatchDriver(repository, RecordingWorker(repository), max_waves=2).run(
        mode=BatchMode.STEP,
    )

    assert summary.waves == 2
    assert len(repository.list_ready_tasks()) == 1


def test_slots_must_be_positive(repository) -> None:
    with pytest.raises(ValueError, match="slots must be > 0"):
        BatchDriver(repository, RecordingWorker(repository)).run(slots=0)


def test_step_batch_drives_real_executor(repository, settings) -> None:
    _create(repository, "First")
    _create(repository, "Second")
    executor = TaskExecutor(
        repository=repository,
        settings=settings,
        provider_factory=lambda model: FakeProvider(
            [tool_call(("mark_complete", {"summary": "done"}))],
        ),
        sleep=lambda _: None,
    )
    worker = TaskWorker(executor, max_workers=1)

    summary = BatchDriver(repository, worker).run(mode=BatchMode.STEP)
    worker.shutdown()

    assert summary == BatchRunSummary(waves=2, processed=2, completed=2)
    assert {task.status for task in repository.list_tasks()} == {TaskStatus.DONE}
