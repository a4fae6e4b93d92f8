"""Trampoline driver and detached execution on a thread pool."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from wo_runner.runner.executor import ExecutionOutcome, OutcomeStatus, TaskExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRunSummary:
    """Outcome of driving one task until it stops needing re-dispatch."""

    task_id: str
    final: ExecutionOutcome
    invocations: int = 0
    outcomes: list[OutcomeStatus] = field(default_factory=list)


class TaskWorker:
    """Re-dispatches suspended and escalated outcomes until a terminal one."""

    def __init__(self, executor: TaskExecutor, *, max_workers: int = 3) -> None:
        self.executor = executor
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wo-runner")

    def run_to_completion(self, task_id: str, *, max_invocations: int = 20) -> TaskRunSummary:
        if max_invocations <= 0:
            raise ValueError("max_invocations must be > 0.")

        resume = None
        summary: TaskRunSummary | None = None
        for invocation in range(1, max_invocations + 1):
            outcome = self.executor.execute(task_id, resume=resume)
            if summary is None:
                summary = TaskRunSummary(task_id=task_id, final=outcome)
            summary.final = outcome
            summary.invocations = invocation
            summary.outcomes.append(outcome.status)
            logger.info(
                "Invocation %d of %s: %s (%s)",
                invocation,
                task_id,
                outcome.status.value,
                outcome.summary,
            )
            if not outcome.needs_redispatch:
                return summary
            resume = outcome.resume_token

        logger.warning(
            "Task %s still needs re-dispatch after %d invocations",
            task_id,
            max_invocations,
        )
        if summary is None:
            raise RuntimeError(f"No invocation ran for task {task_id}.")
        return summary

    def dispatch(self, task_id: str, *, max_invocations: int = 20) -> Future[TaskRunSummary | None]:
        """Start the trampoline in the background and return immediately."""

        return self._pool.submit(self._guarded_run, task_id, max_invocations)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _guarded_run(self, task_id: str, max_invocations: int) -> TaskRunSummary | None:
        try:
            return self.run_to_completion(task_id, max_invocations=max_invocations)
        except Exception:  # noqa: BLE001
            logger.exception("Detached execution of %s crashed", task_id)
            return None
