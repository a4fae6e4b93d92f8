"""Per-task workspace file tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from wo_runner.runner.models import TaskView
from wo_runner.runner.tools.base import (
    ToolCategory,
    ToolContext,
    ToolDefinition,
    ToolResult,
    object_schema,
)

logger = logging.getLogger(__name__)

SYNCED_STATE_KEY = "workspace_synced"
TASK_FILE_NAME = "TASK.md"
MAX_LISTED_FILES = 500
MAX_READ_CHARS = 50_000


class WorkspacePathError(ValueError):
    """Raised when a path resolves outside the task workspace."""


def ensure_workspace(context: ToolContext) -> Path:
    """Materialise the task directory once per execution."""

    root = context.workdir
    if not context.state.get(SYNCED_STATE_KEY):
        root.mkdir(parents=True, exist_ok=True)
        (root / TASK_FILE_NAME).write_text(render_task_file(context.task), encoding="utf-8")
        context.state[SYNCED_STATE_KEY] = True
        logger.debug("Workspace synced for %s at %s", context.task.slug, root)
    return root


def render_task_file(task: TaskView) -> str:
    lines = [f"# {task.slug}: {task.name}", "", "## Objective", task.objective]
    if task.acceptance_criteria:
        lines.extend(["", "## Acceptance Criteria", task.acceptance_criteria])
    return "\n".join(lines) + "\n"


def list_workspace_files(root: Path, *, limit: int = MAX_LISTED_FILES) -> list[str]:
    if not root.exists():
        return []
    files = sorted(
        path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()
    )
    return files[:limit]


def _resolve(context: ToolContext, raw_path: object) -> Path:
    root = ensure_workspace(context).resolve()
    candidate = (root / str(raw_path or ".")).resolve()
    if not candidate.is_relative_to(root):
        raise WorkspacePathError(f"Permission denied: path escapes workspace: {raw_path}")
    return candidate


def _relative(context: ToolContext, path: Path) -> str:
    return path.relative_to(context.workdir.resolve()).as_posix()


def handle_list_files(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    try:
        directory = _resolve(context, tool_input.get("path") or ".")
    except WorkspacePathError as error:
        return ToolResult.fail(str(error))
    if not directory.is_dir():
        return ToolResult.fail(f"Directory not found: {tool_input.get('path')}")
    prefix = _relative(context, directory)
    files = list_workspace_files(directory)
    if prefix != ".":
        files = [f"{prefix}/{name}" for name in files]
    return ToolResult.ok({"files": files, "count": len(files)})


def handle_read_file(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    if not tool_input.get("path"):
        return ToolResult.fail("Missing required parameter: path")
    try:
        path = _resolve(context, tool_input["path"])
    except WorkspacePathError as error:
        return ToolResult.fail(str(error))
    if not path.is_file():
        return ToolResult.fail(f"File not found: {tool_input['path']}")
    content = path.read_text(encoding="utf-8")
    truncated = len(content) > MAX_READ_CHARS
    return ToolResult.ok(
        {
            "path": _relative(context, path),
            "content": content[:MAX_READ_CHARS],
            "truncated": truncated,
        },
    )


def handle_write_file(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    if not tool_input.get("path"):
        return ToolResult.fail("Missing required parameter: path")
    content = tool_input.get("content")
    if not isinstance(content, str):
        return ToolResult.fail("Missing required parameter: content")
    try:
        path = _resolve(context, tool_input["path"])
    except WorkspacePathError as error:
        return ToolResult.fail(str(error))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return ToolResult.ok(
        {"action": "wrote", "path": _relative(context, path), "chars": len(content)},
    )


def handle_edit_file(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    old_string = tool_input.get("old_string")
    new_string = tool_input.get("new_string")
    if not tool_input.get("path") or not isinstance(old_string, str) or not old_string:
        return ToolResult.fail("Missing required parameters: path, old_string")
    if not isinstance(new_string, str):
        return ToolResult.fail("Missing required parameter: new_string")
    try:
        path = _resolve(context, tool_input["path"])
    except WorkspacePathError as error:
        return ToolResult.fail(str(error))
    if not path.is_file():
        return ToolResult.fail(f"File not found: {tool_input['path']}")

    content = path.read_text(encoding="utf-8")
    occurrences = content.count(old_string)
    if occurrences == 0:
        return ToolResult.fail(
            f"No matching text: old_string not found in file {tool_input['path']}",
        )
    if occurrences > 1:
        return ToolResult.fail(
            f"Match not unique: old_string occurs {occurrences} times in {tool_input['path']}",
        )
    path.write_text(content.replace(old_string, new_string, 1), encoding="utf-8")
    return ToolResult.ok({"action": "edited", "path": _relative(context, path)})


_PATH_PROPERTY = {"type": "string", "description": "Path relative to the workspace root."}

WORKSPACE_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="workspace_list_files",
        description="List files in the task workspace (recursive).",
        input_schema=object_schema({"path": _PATH_PROPERTY}),
        handler=handle_list_files,
        category=ToolCategory.READ,
    ),
    ToolDefinition(
        name="workspace_read_file",
        description="Read a UTF-8 text file from the task workspace.",
        input_schema=object_schema({"path": _PATH_PROPERTY}, ("path",)),
        handler=handle_read_file,
        category=ToolCategory.READ,
    ),
    ToolDefinition(
        name="workspace_write_file",
        description="Create or overwrite a file in the task workspace.",
        input_schema=object_schema(
            {"path": _PATH_PROPERTY, "content": {"type": "string"}},
            ("path", "content"),
        ),
        handler=handle_write_file,
        category=ToolCategory.WRITE,
        mutating=True,
        object_type="workspace_file",
        action="WRITE",
        target_key="path",
    ),
    ToolDefinition(
        name="workspace_edit_file",
        description=(
            "Replace exactly one occurrence of old_string with new_string in a workspace file."
        ),
        input_schema=object_schema(
            {
                "path": _PATH_PROPERTY,
                "old_string": {"type": "string"},
                "new_string": {"type": "string"},
            },
            ("path", "old_string", "new_string"),
        ),
        handler=handle_edit_file,
        category=ToolCategory.WRITE,
        mutating=True,
        object_type="workspace_file",
        action="EDIT",
        target_key="path",
    ),
)
