"""Wave-based batch execution over the ready queue."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from wo_runner.runner.executor import OutcomeStatus
from wo_runner.runner.models import TaskView
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.worker import TaskRunSummary, TaskWorker

logger = logging.getLogger(__name__)


class BatchMode(str, Enum):
    STEP = "step"
    BATCH = "batch"


class ReadyTaskRanker(Protocol):
    """Orders dependency-satisfied ready tasks for the next wave."""

    def rank(self, tasks: Sequence[TaskView]) -> list[TaskView]: ...


class PriorityRanker:
    """Lower priority value first, then oldest first."""

    def rank(self, tasks: Sequence[TaskView]) -> list[TaskView]:
        return sorted(tasks, key=lambda task: (task.priority, task.created_at))


@dataclass(slots=True)
class BatchRunSummary:
    """Aggregate batch counters for CLI reporting."""

    waves: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    unfinished: int = 0
    skipped: int = 0

    def record(self, status: OutcomeStatus | None) -> None:
        """Count one final outcome; ``None`` means the run crashed."""

        self.processed += 1
        if status is None:
            self.failed += 1
            return
        if status == OutcomeStatus.COMPLETED:
            self.completed += 1
        elif status == OutcomeStatus.FAILED:
            self.failed += 1
        elif status == OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.unfinished += 1


def select_wave(
    repository: TaskRepository,
    *,
    ranker: ReadyTaskRanker,
    slots: int,
) -> list[TaskView]:
    return ranker.rank(repository.list_ready_tasks())[:slots]


class BatchDriver:
    """Runs waves of ready tasks until the queue drains."""

    def __init__(
        self,
        repository: TaskRepository,
        worker: TaskWorker,
        *,
        ranker: ReadyTaskRanker | None = None,
        max_waves: int = 100,
        max_invocations: int = 20,
    ) -> None:
        self.repository = repository
        self.worker = worker
        self.ranker = ranker or PriorityRanker()
        self.max_waves = max_waves
        self.max_invocations = max_invocations

    def run(self, *, mode: BatchMode = BatchMode.BATCH, slots: int = 3) -> BatchRunSummary:
        if slots <= 0:
            raise ValueError("slots must be > 0.")
        width = 1 if mode == BatchMode.STEP else slots
        summary = BatchRunSummary()

        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="wo-batch") as pool:
            while summary.waves < self.max_waves:
                wave = select_wave(self.repository, ranker=self.ranker, slots=width)
                if not wave:
                    break
                summary.waves += 1
                logger.info(
                    "Wave %d: %s",
                    summary.waves,
                    ", ".join(task.slug for task in wave),
                )
                futures = [pool.submit(self._run_one, task.task_id) for task in wave]
                for future in futures:
                    run = future.result()
                    summary.record(run.final.status if run is not None else None)

        logger.info(
            "Batch finished: waves=%d processed=%d completed=%d failed=%d",
            summary.waves,
            summary.processed,
            summary.completed,
            summary.failed,
        )
        return summary

    def _run_one(self, task_id: str) -> TaskRunSummary | None:
        try:
            return self.worker.run_to_completion(task_id, max_invocations=self.max_invocations)
        except Exception:  # noqa: BLE001
            logger.exception("Batch execution of %s crashed", task_id)
            return None
