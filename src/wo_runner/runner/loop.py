"""Turn loop: model call, tool dispatch, nudges, checkpoints and error caps."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from wo_runner.config import LoopSettings
from wo_runner.runner.checkpoint import ToolCallRecord, build_snapshot
from wo_runner.runner.history import (
    HistoryTooLargeError,
    compact,
    emergency_compact,
    max_pairs_for,
    repair,
)
from wo_runner.runner.models import ErrorClass, TaskView
from wo_runner.runner.providers.base import (
    CompletionRequest,
    Provider,
    ProviderError,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    Turn,
)
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.stall import StallDetector, ToolOutcome
from wo_runner.runner.tools.base import ToolContext, ToolResult
from wo_runner.runner.tools.dispatcher import ToolDispatcher
from wo_runner.runner.tools.system_tools import DELEGATED_STATE_KEY

logger = logging.getLogger(__name__)

MARK_COMPLETE = "mark_complete"
MARK_FAILED = "mark_failed"
LOG_PROGRESS = "log_progress"
WRITE_TOOLS = frozenset({"workspace_write_file", "workspace_edit_file"})
RECENT_CALLS_FOR_COMPLETION = 5
STALL_TAIL_CALLS = 5
MAX_ACCOMPLISHMENT_CHARS = 100
MAX_EVENT_TEXT_CHARS = 500

NUDGE_APPEARS_COMPLETE = (
    "You stopped without calling mark_complete or mark_failed. Based on your tool calls "
    "(mutations made, progress logged), it appears the work is done. You MUST call "
    "mark_complete with a detailed summary to finish this work order. If you cannot proceed, "
    "call mark_failed with a reason."
)
NUDGE_STANDARD = (
    "You stopped without calling mark_complete or mark_failed. You MUST call one of these "
    "tools to finish. If the work is done, call mark_complete with a summary. If you cannot "
    "proceed, call mark_failed with a reason."
)
NUDGE_TRUNCATED = (
    "Your response was cut off. Please continue and remember to call mark_complete or "
    "mark_failed when done."
)

RECOVERY_GUIDANCE: dict[ErrorClass, str] = {
    ErrorClass.SQL_SYNTAX: (
        "Previous SQL had syntax errors. Read the target object definition before writing new SQL."
    ),
    ErrorClass.ENFORCEMENT_BLOCKED: (
        "The action was blocked by enforcement. Do not try to bypass it; use the provided tools "
        "for the state change."
    ),
    ErrorClass.SCHEMA_MISMATCH: (
        "A referenced object does not exist. Verify object names before retrying."
    ),
    ErrorClass.MATCH_FAILED: (
        "The old_string was not found in the file. Use workspace_read_file to see current file "
        "contents before editing."
    ),
    ErrorClass.UNKNOWN: "Previous approach failed. Try a fundamentally different strategy.",
}


class LoopStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


@dataclass(slots=True)
class LoopResult:
    """How one loop invocation ended."""

    status: LoopStatus
    turns: int
    summary: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    checkpoint_id: int | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class _LoopState:
    history: list[Turn]
    started_at: float
    records: list[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    turn: int = 0
    api_errors: int = 0
    last_failure: tuple[str, str] | None = None


class TurnLoop:
    """Drive one model conversation until a terminal tool, stall, checkpoint or fatal error."""

    def __init__(  # noqa: PLR0913
        self,
        provider: Provider,
        dispatcher: ToolDispatcher,
        repository: TaskRepository,
        settings: LoopSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.dispatcher = dispatcher
        self.repository = repository
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    def run(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        system_prompt: str,
        user_message: str,
        tools: Sequence[ToolSpec],
        context: ToolContext,
        model: str,
    ) -> LoopResult:
        state = _LoopState(history=[Turn.user_text(user_message)], started_at=self._clock())
        stall = StallDetector(window=self.settings.stall_window)
        max_pairs = max_pairs_for(task, self.settings)
        self._event(
            task,
            "execution_start",
            {"model": model, "tools": len(tools), "provider": self.provider.name},
        )
        logger.info("Executing %s with %s (%d tools)", task.slug, model, len(tools))

        while True:
            elapsed = self._clock() - state.started_at
            if elapsed > self.settings.checkpoint_seconds:
                return self._checkpoint(task, state, context, elapsed)

            compact(state.history, max_pairs)
            repaired = repair(state.history)
            if repaired:
                logger.warning("Repaired %d unpaired tool calls for %s", repaired, task.slug)

            request = CompletionRequest(
                model=model,
                system=system_prompt,
                turns=list(state.history),
                tools=list(tools),
                max_tokens=self.settings.max_tokens,
            )
            try:
                response = self.provider.complete(request)
            except ProviderError as error:
                fatal = self._handle_provider_error(task, state, error)
                if fatal is not None:
                    return self._fail(task, state, fatal)
                continue

            state.api_errors = 0
            state.turn += 1
            state.usage.input_tokens += response.usage.input_tokens
            state.usage.output_tokens += response.usage.output_tokens
            state.history.append(response.as_turn())
            self._event(
                task,
                "agent_turn",
                {
                    "turn": state.turn,
                    "stop_reason": response.stop_reason.value,
                    "tool_calls": [use.name for use in response.tool_uses],
                    "text": response.text[:MAX_EVENT_TEXT_CHARS],
                },
            )

            if response.tool_uses:
                outcome = self._run_tools(task, state, stall, context, response.tool_uses)
                if outcome is not None:
                    return outcome
            elif response.stop_reason == StopReason.TRUNCATED:
                state.history.append(Turn.user_text(NUDGE_TRUNCATED))
            else:
                nudge = NUDGE_APPEARS_COMPLETE if self._appears_complete(state) else NUDGE_STANDARD
                logger.info("%s stopped without a terminal tool at turn %d", task.slug, state.turn)
                state.history.append(Turn.user_text(nudge))

    def _run_tools(
        self,
        task: TaskView,
        state: _LoopState,
        stall: StallDetector,
        context: ToolContext,
        uses: Sequence[ToolUseBlock],
    ) -> LoopResult | None:
        blocks: list[TextBlock | ToolResultBlock] = []
        outcomes: list[ToolOutcome] = []
        terminal: tuple[str, dict[str, Any]] | None = None
        first_failure: ToolResult | None = None

        for use in uses:
            result = self.dispatcher.dispatch(use.name, dict(use.input), context)
            definition = self.dispatcher.registry.get(use.name)
            state.records.append(
                ToolCallRecord(
                    turn=state.turn,
                    tool=use.name,
                    success=result.success,
                    target=result.target,
                    mutating=definition is not None and definition.mutating,
                    accomplishment=_accomplishment(use, result),
                ),
            )
            outcomes.append(ToolOutcome(tool=use.name, success=result.success))
            self._event(
                task,
                "tool_result",
                {
                    "turn": state.turn,
                    "tool": use.name,
                    "success": result.success,
                    "error": (result.error or "")[:MAX_EVENT_TEXT_CHARS] or None,
                    "error_class": result.error_class.value if result.error_class else None,
                },
            )
            blocks.append(
                ToolResultBlock(
                    tool_use_id=use.id,
                    content=result.content(),
                    is_error=not result.success,
                ),
            )
            if not result.success and first_failure is None:
                first_failure = result
            if result.success and result.terminal and terminal is None:
                terminal = (use.name, dict(use.input))

        guidance = self._recovery_guidance(state, first_failure)
        if guidance:
            blocks.append(TextBlock(text=guidance))
        state.history.append(Turn(role=Role.USER, blocks=tuple(blocks)))

        if terminal is not None:
            name, tool_input = terminal
            if name == MARK_FAILED:
                return self._fail(task, state, str(tool_input.get("reason") or "Marked failed"))
            logger.info("%s marked complete at turn %d", task.slug, state.turn)
            return LoopResult(
                status=LoopStatus.COMPLETED,
                turns=state.turn,
                summary=str(tool_input.get("summary") or "Execution finished"),
                tool_calls=state.records,
                usage=state.usage,
            )

        verdict = stall.observe(
            outcomes,
            tail=[record.label() for record in state.records[-STALL_TAIL_CALLS:]],
        )
        if verdict.stalled:
            return self._fail(task, state, verdict.reason or "Non-productive recursion")
        return None

    def _recovery_guidance(self, state: _LoopState, failure: ToolResult | None) -> str | None:
        if failure is None:
            state.last_failure = None
            return None
        error_class = failure.error_class or ErrorClass.UNKNOWN
        target = failure.target or "unknown"
        repeated = state.last_failure == (error_class.value, target)
        state.last_failure = (error_class.value, target)
        if repeated:
            return (
                "## Recovery Guidance\n"
                f"STOP: You have failed twice with the same error ({error_class.value}) "
                f"on the same object ({target}). You MUST try a completely different approach."
            )
        guidance = RECOVERY_GUIDANCE.get(error_class)
        if guidance is None:
            return None
        return (
            "## Recovery Guidance\n"
            f"Your last tool call failed with error class: {error_class.value}. {guidance}"
        )

    def _appears_complete(self, state: _LoopState) -> bool:
        mutated = any(record.mutating and record.success for record in state.records)
        if not mutated:
            return False
        recent = state.records[-RECENT_CALLS_FOR_COMPLETION:]
        logged = any(record.tool == LOG_PROGRESS and record.success for record in recent)
        return logged or state.turn > RECENT_CALLS_FOR_COMPLETION

    def _handle_provider_error(
        self,
        task: TaskView,
        state: _LoopState,
        error: ProviderError,
    ) -> str | None:
        """Return a fatal reason, or ``None`` when the call should be retried."""

        state.api_errors += 1
        logger.warning(
            "Provider error %d for %s (status=%s, too_large=%s): %s",
            state.api_errors,
            task.slug,
            error.status_code,
            error.too_large,
            error,
        )
        self._event(
            task,
            "api_error",
            {
                "attempt": state.api_errors,
                "status_code": error.status_code,
                "too_large": error.too_large,
                "message": str(error)[:MAX_EVENT_TEXT_CHARS],
            },
        )

        if error.too_large:
            try:
                removed = emergency_compact(state.history, self.settings.emergency_history_pairs)
            except HistoryTooLargeError:
                return (
                    f"Fatal: prompt too large ({error}). Cannot trim further; system prompt and "
                    "initial context exceed the model limit."
                )
            logger.warning("Emergency trim removed %d turns for %s", removed, task.slug)
            if state.api_errors >= self.settings.max_too_large_errors:
                return (
                    f"Fatal: {state.api_errors} consecutive API errors after emergency trim. "
                    f"Last: {error}"
                )
            return None

        if state.api_errors >= self.settings.max_api_errors:
            return f"Fatal: {state.api_errors} consecutive API errors. Last: {error}"
        self._sleep(self.settings.api_retry_delay_seconds)
        return None

    def _checkpoint(
        self,
        task: TaskView,
        state: _LoopState,
        context: ToolContext,
        elapsed: float,
    ) -> LoopResult:
        snapshot = build_snapshot(
            self.repository,
            task_id=task.task_id,
            records=state.records,
            turns=state.turn,
            elapsed_seconds=elapsed,
            delegated_children=context.state.get(DELEGATED_STATE_KEY, []),
        )
        checkpoint_id = self.repository.add_checkpoint(
            task_id=task.task_id,
            details=snapshot.to_details(),
        )
        logger.info("%s: %s", task.slug, snapshot.summary)
        return LoopResult(
            status=LoopStatus.SUSPENDED,
            turns=state.turn,
            summary=snapshot.summary,
            tool_calls=state.records,
            checkpoint_id=checkpoint_id,
            usage=state.usage,
        )

    def _fail(self, task: TaskView, state: _LoopState, reason: str) -> LoopResult:
        logger.warning("Execution of %s failed at turn %d: %s", task.slug, state.turn, reason)
        self._event(task, "execution_failed", {"turn": state.turn, "reason": reason})
        return LoopResult(
            status=LoopStatus.FAILED,
            turns=state.turn,
            summary=reason,
            tool_calls=state.records,
            usage=state.usage,
        )

    def _event(self, task: TaskView, event_type: str, details: dict[str, object]) -> None:
        try:
            self.repository.add_event(task_id=task.task_id, event_type=event_type, details=details)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to write %s event for %s: %s", event_type, task.slug, error)


def _accomplishment(use: ToolUseBlock, result: ToolResult) -> str | None:
    if not result.success:
        return None
    if use.name in WRITE_TOOLS:
        return f"Wrote: {result.target}"
    if use.name == LOG_PROGRESS:
        content = use.input.get("content")
        return str(content)[:MAX_ACCOMPLISHMENT_CHARS] if content else None
    if use.name == "delegate_subtask" and isinstance(result.data, dict):
        return f"Delegated: {result.data.get('child_slug')}"
    return None
