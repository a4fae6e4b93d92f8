"""Tool families, registry and dispatcher."""

from wo_runner.runner.tools.base import (
    ToolCategory,
    ToolContext,
    ToolDefinition,
    ToolResult,
)
from wo_runner.runner.tools.dispatcher import ToolDispatcher
from wo_runner.runner.tools.mutations import MutationRecorder
from wo_runner.runner.tools.proxy import ToolProxy
from wo_runner.runner.tools.registry import ToolRegistry, build_default_registry

__all__ = [
    "MutationRecorder",
    "ToolCategory",
    "ToolContext",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolProxy",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
]
