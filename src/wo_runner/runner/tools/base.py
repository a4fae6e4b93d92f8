"""Tool contract shared by handlers, registry and dispatcher."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wo_runner.runner.models import ErrorClass, TaskView
from wo_runner.runner.providers.base import ToolSpec

if TYPE_CHECKING:
    from wo_runner.runner.repository import TaskRepository


class ToolCategory(str, Enum):
    """Coarse tool tiers used for tag-based restriction."""

    SYSTEM = "system"
    READ = "read"
    WRITE = "write"


@dataclass(slots=True)
class ToolResult:
    """Handler outcome; ``terminal`` ends the turn loop."""

    success: bool
    data: Any = None
    error: str | None = None
    terminal: bool = False
    error_class: ErrorClass | None = None
    target: str | None = None
    mutation_id: int | None = None

    @classmethod
    def ok(cls, data: Any = None, *, terminal: bool = False) -> ToolResult:
        return cls(success=True, data=data, terminal=terminal)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    def content(self) -> str:
        """Render the result the way the model sees it."""

        if not self.success:
            return f"Error: {self.error}"
        payload = "ok" if self.data is None or self.data == "" else self.data
        return json.dumps(payload, ensure_ascii=False, default=str)


@dataclass(slots=True)
class ToolContext:
    """Per-task execution context; ``state`` never outlives one execution."""

    task: TaskView
    repository: TaskRepository
    actor: str
    role: str
    workdir: Path
    state: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolContext], ToolResult]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Registry entry: description for the model plus the local handler."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    category: ToolCategory
    mutating: bool = False
    object_type: str = "unknown"
    action: str = "unknown"
    target_key: str | None = None

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )

    def target_for(self, tool_input: dict[str, Any]) -> str:
        if self.target_key is not None:
            value = tool_input.get(self.target_key)
            if value:
                return str(value)[:100]
        return self.object_type


def object_schema(properties: dict[str, Any], required: tuple[str, ...] = ()) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required),
    }
