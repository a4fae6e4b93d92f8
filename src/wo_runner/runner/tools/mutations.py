"""Best-effort mutation recording with bounded retries."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from wo_runner.runner.models import MutationWrite

if TYPE_CHECKING:
    from wo_runner.runner.repository import TaskRepository
    from wo_runner.runner.tools.base import ToolResult

logger = logging.getLogger(__name__)

MAX_HASHED_CHARS = 10_000


class MutationRecorder:
    """Write mutation records; a final failure is logged, never raised."""

    def __init__(
        self,
        repository: TaskRepository,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def record(self, payload: MutationWrite) -> int | None:
        last_error: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.repository.record_mutation(payload)
            except Exception as error:  # noqa: BLE001
                last_error = str(error)
                logger.warning(
                    "Mutation record attempt %d failed for task %s: %s",
                    attempt,
                    payload.task_id,
                    last_error,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_seconds * attempt)
        logger.error(
            "Mutation record failed after %d attempts for task %s: %s",
            self.max_attempts,
            payload.task_id,
            last_error,
        )
        return None


def result_hash(result: ToolResult) -> str:
    """SHA-256 over the serialized result data or error text."""

    if result.data is not None:
        serialized = json.dumps(result.data, ensure_ascii=False, sort_keys=True, default=str)
    else:
        serialized = result.error or ""
    return hashlib.sha256(serialized[:MAX_HASHED_CHARS].encode("utf-8")).hexdigest()
