"""Tool registry: name to definition, filtered by tags and role."""

from __future__ import annotations

from collections.abc import Iterable

from wo_runner.runner.models import QUERY_ONLY_TAG
from wo_runner.runner.providers.base import ToolSpec
from wo_runner.runner.tools.base import ToolCategory, ToolDefinition

_QUERY_ONLY_CATEGORIES = frozenset({ToolCategory.READ, ToolCategory.SYSTEM})


class ToolRegistry:
    """Registered tools, built once at startup."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._tools[definition.name] = definition

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def is_allowed(
        self,
        name: str,
        *,
        tags: Iterable[str],
        allowed: frozenset[str] | None,
    ) -> bool:
        """Tag tier and role allow-list must both admit the tool."""

        definition = self._tools.get(name)
        if definition is None:
            return False
        if allowed is not None and name not in allowed:
            return False
        if QUERY_ONLY_TAG in set(tags):
            return definition.category in _QUERY_ONLY_CATEGORIES
        return True

    def definitions_for(
        self,
        *,
        tags: Iterable[str],
        allowed: frozenset[str] | None,
    ) -> list[ToolDefinition]:
        tag_set = set(tags)
        return [
            definition
            for name, definition in self._tools.items()
            if self.is_allowed(name, tags=tag_set, allowed=allowed)
        ]

    def specs_for(
        self,
        *,
        tags: Iterable[str],
        allowed: frozenset[str] | None,
    ) -> list[ToolSpec]:
        definitions = self.definitions_for(tags=tags, allowed=allowed)
        return [definition.spec() for definition in definitions]


def build_default_registry() -> ToolRegistry:
    """Registry with the system, coordination and workspace tool families."""

    from wo_runner.runner.tools.system_tools import SYSTEM_TOOLS
    from wo_runner.runner.tools.workspace_tools import WORKSPACE_TOOLS

    registry = ToolRegistry()
    for definition in (*SYSTEM_TOOLS, *WORKSPACE_TOOLS):
        registry.register(definition)
    return registry
