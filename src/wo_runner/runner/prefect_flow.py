"""Prefect flow running the ready queue one wave at a time.

Each work order runs as a Prefect task that drives the trampoline to a
terminal outcome. The flow keeps polling the ready queue so that tasks
unblocked by the previous wave join the next one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prefect import flow, task

from wo_runner.config import Settings
from wo_runner.runner.batch import BatchRunSummary, PriorityRanker, select_wave
from wo_runner.runner.executor import OutcomeStatus, TaskExecutor
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.tools.proxy import ToolProxy
from wo_runner.runner.worker import TaskWorker

logger = logging.getLogger(__name__)


@task
def execute_work_order(*, settings: Settings, task_id: str, max_invocations: int) -> OutcomeStatus:
    """Drive one work order until it no longer needs re-dispatch."""

    repository = TaskRepository(
        db_path=settings.db_path,
        actor=settings.user_context.actor,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    proxy = ToolProxy(settings.proxy, repository) if settings.proxy.base_url else None
    worker = TaskWorker(
        TaskExecutor(repository=repository, settings=settings, proxy=proxy),
        max_workers=1,
    )
    try:
        run = worker.run_to_completion(task_id, max_invocations=max_invocations)
    finally:
        worker.shutdown()
        if proxy is not None:
            proxy.close()
        repository.close()
    return run.final.status


@flow(name="wo_batch_flow")
def batch_flow(
    *,
    settings: Settings,
    slots: int,
    on_progress: Callable[[str], None] | None = None,
) -> BatchRunSummary:
    """Run waves of ready work orders with Prefect-managed concurrency."""

    emit = on_progress or (lambda _: None)
    summary = BatchRunSummary()
    ranker = PriorityRanker()
    repository = TaskRepository(
        db_path=settings.db_path,
        actor=settings.user_context.actor,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        while summary.waves < settings.batch.max_waves:
            wave = select_wave(repository, ranker=ranker, slots=slots)
            if not wave:
                break
            summary.waves += 1
            emit(f"Wave {summary.waves}: {', '.join(item.slug for item in wave)}")
            futures = [
                execute_work_order.submit(
                    settings=settings,
                    task_id=item.task_id,
                    max_invocations=settings.batch.max_invocations,
                )
                for item in wave
            ]
            for item, future in zip(wave, futures, strict=True):
                try:
                    status = future.result()
                except Exception as error:  # noqa: BLE001
                    logger.error("Work order %s crashed in flow: %s", item.slug, error)
                    summary.record(None)
                    continue
                summary.record(status)
                emit(f"{item.slug}: {status.value}")
    finally:
        repository.close()
    return summary

