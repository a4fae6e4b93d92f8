"""Tool dispatch: lookup, permission, proxy, guarded handler call, recording."""

from __future__ import annotations

import logging
from typing import Any

from wo_runner.runner.error_classifier import classify_error
from wo_runner.runner.models import MutationWrite
from wo_runner.runner.tools.base import ToolContext, ToolDefinition, ToolResult
from wo_runner.runner.tools.mutations import MutationRecorder, result_hash
from wo_runner.runner.tools.proxy import ToolProxy
from wo_runner.runner.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_CONTEXT_VALUE_CHARS = 2000


class ToolDispatcher:
    """Execute one tool call; never raises."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        recorder: MutationRecorder,
        proxy: ToolProxy | None = None,
        allowed: frozenset[str] | None = None,
    ) -> None:
        self.registry = registry
        self.recorder = recorder
        self.proxy = proxy
        self.allowed = allowed

    def dispatch(self, name: str, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        definition = self.registry.get(name)
        if definition is None:
            return self._classified(ToolResult.fail(f"Unknown tool: {name}"), target=name)
        if not self.registry.is_allowed(name, tags=context.task.tags, allowed=self.allowed):
            return self._classified(
                ToolResult.fail(f"Permission denied: role '{context.role}' cannot use '{name}'"),
                target=name,
            )

        target = definition.target_for(tool_input)
        proxied = None
        if self.proxy is not None and self.proxy.is_eligible(name):
            proxied = self.proxy.call(name, tool_input, context)

        if proxied is not None:
            logger.info("Tool %s for %s executed by proxy", name, context.task.slug)
            result = self._classified(proxied, target=target)
            if result.success:
                self._mirror(definition, tool_input, context)
            proxy_mode = "proxy"
        else:
            local = self._run_local(definition, tool_input, context)
            result = self._classified(local, target=target)
            proxy_mode = "local"

        if definition.mutating:
            result.mutation_id = self.recorder.record(
                _mutation_payload(definition, tool_input, result, context, proxy_mode=proxy_mode),
            )
        return result

    def _run_local(
        self,
        definition: ToolDefinition,
        tool_input: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        try:
            return definition.handler(tool_input, context)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Tool %s raised for task %s: %s",
                definition.name,
                context.task.slug,
                error,
                exc_info=True,
            )
            return ToolResult.fail(f"Tool dispatch exception: {error}")

    def _mirror(
        self,
        definition: ToolDefinition,
        tool_input: dict[str, Any],
        context: ToolContext,
    ) -> None:
        """Replay a proxied change on the local workspace so later reads see it."""

        mirrored = self._run_local(definition, tool_input, context)
        if not mirrored.success:
            logger.warning(
                "Local mirror of proxied %s diverged for %s: %s",
                definition.name,
                context.task.slug,
                mirrored.error,
            )

    def _classified(self, result: ToolResult, *, target: str) -> ToolResult:
        result.target = target
        if not result.success and result.error_class is None:
            result.error_class = classify_error(result.error).error_class
        return result


def _mutation_payload(
    definition: ToolDefinition,
    tool_input: dict[str, Any],
    result: ToolResult,
    context: ToolContext,
    *,
    proxy_mode: str,
) -> MutationWrite:
    return MutationWrite(
        task_id=context.task.task_id,
        tool_name=definition.name,
        object_type=definition.object_type,
        object_id=result.target,
        action=definition.action,
        success=result.success,
        actor=context.actor,
        error_class=None if result.success else result.error_class,
        error_detail=None if result.success else result.error,
        context=_input_summary(tool_input),
        result_hash=result_hash(result),
        proxy_mode=proxy_mode,
    )


def _input_summary(tool_input: dict[str, Any]) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    for key, value in tool_input.items():
        if isinstance(value, str):
            summary[key] = value[:MAX_CONTEXT_VALUE_CHARS]
        elif isinstance(value, (int, float, bool)) or value is None:
            summary[key] = value
        else:
            summary[key] = type(value).__name__
    return summary
