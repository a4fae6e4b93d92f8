"""System and coordination tools: terminal calls, progress, delegation, QA."""

from __future__ import annotations

import json
from typing import Any

from wo_runner.runner.models import TaskCreate, TaskStatus
from wo_runner.runner.tools.base import (
    ToolCategory,
    ToolContext,
    ToolDefinition,
    ToolResult,
    object_schema,
)

DELEGATED_STATE_KEY = "delegated_children"
PROGRESS_EVENT = "progress"
MAX_LOG_ENTRIES = 30
MAX_LOG_CHARS = 10_000
QA_STATUSES = frozenset({"pending", "pass", "fail", "na"})


def handle_mark_complete(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    summary = tool_input.get("summary")
    if not summary:
        return ToolResult.fail("Missing required parameter: summary")
    return ToolResult.ok("Work order marked complete", terminal=True)


def handle_mark_failed(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    reason = tool_input.get("reason")
    if not reason:
        return ToolResult.fail("Missing required parameter: reason")
    return ToolResult.ok("Work order marked as failed", terminal=True)


def handle_log_progress(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    content = tool_input.get("content")
    if not content:
        return ToolResult.fail("Missing required parameter: content")
    text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
    context.repository.add_event(
        task_id=context.task.task_id,
        event_type=PROGRESS_EVENT,
        details={"content": text, "actor": context.actor},
    )
    return ToolResult.ok("Progress logged")


def handle_read_execution_log(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    limit = min(int(tool_input.get("limit") or 20), MAX_LOG_ENTRIES)
    events = context.repository.list_events(task_id=context.task.task_id, limit=limit)
    entries = [
        {
            "event_type": event.event_type,
            "created_at": event.created_at.isoformat(),
            "details": event.details,
        }
        for event in events
    ]
    serialized = json.dumps(entries, ensure_ascii=False, default=str)
    if len(serialized) > MAX_LOG_CHARS:
        serialized = serialized[:MAX_LOG_CHARS] + "...(limited)"
    return ToolResult.ok(serialized)


def handle_get_task(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    task = context.repository.require_task(task_id=context.task.task_id)
    return ToolResult.ok(
        {
            "slug": task.slug,
            "name": task.name,
            "objective": task.objective,
            "acceptance_criteria": task.acceptance_criteria,
            "status": task.status.value,
            "tags": list(task.tags),
            "qa_checklist": task.qa_checklist,
        },
    )


def handle_check_child_status(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    children = context.repository.list_children(parent_id=context.task.task_id)
    return ToolResult.ok(
        {
            "children": [
                {
                    "slug": child.slug,
                    "name": child.name,
                    "status": child.status.value,
                    "summary": child.summary,
                }
                for child in children
            ],
            "count": len(children),
        },
    )


def handle_delegate_subtask(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    name = tool_input.get("name")
    objective = tool_input.get("objective")
    if not name or not objective:
        return ToolResult.fail("Missing required parameters: name, objective")
    child = context.repository.create_task(
        TaskCreate(
            name=str(name),
            objective=str(objective),
            acceptance_criteria=tool_input.get("acceptance_criteria") or None,
            tags=("delegated",),
            status=TaskStatus.READY,
            assigned_to=str(tool_input.get("assigned_to") or context.role),
            priority=context.task.priority,
            parent_id=context.task.task_id,
        ),
    )
    context.state.setdefault(DELEGATED_STATE_KEY, []).append(child.slug)
    return ToolResult.ok({"child_slug": child.slug, "child_id": child.task_id})


def handle_update_qa_checklist(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    items = tool_input.get("items")
    if not isinstance(items, list) or not items:
        return ToolResult.fail("Missing required parameter: items")

    task = context.repository.require_task(task_id=context.task.task_id)
    checklist = [dict(item) for item in task.qa_checklist]
    by_criterion = {str(item.get("criterion")): item for item in checklist}
    for raw in items:
        if not isinstance(raw, dict) or not raw.get("criterion"):
            return ToolResult.fail("Each checklist item needs a criterion")
        status = str(raw.get("status") or "pending")
        if status not in QA_STATUSES:
            return ToolResult.fail(
                f"Invalid checklist status {status!r}: use pass, fail, na or pending",
            )
        criterion = str(raw["criterion"])
        item = by_criterion.get(criterion)
        if item is None:
            item = {"criterion": criterion}
            checklist.append(item)
            by_criterion[criterion] = item
        item["status"] = status
        if raw.get("evidence"):
            item["evidence"] = str(raw["evidence"])

    context.repository.update_qa_checklist(task_id=task.task_id, items=checklist)
    return ToolResult.ok({"action": "updated", "items": len(checklist)})


SYSTEM_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="mark_complete",
        description="Finish the work order successfully with a detailed summary.",
        input_schema=object_schema({"summary": {"type": "string"}}, ("summary",)),
        handler=handle_mark_complete,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="mark_failed",
        description="Finish the work order as failed with a reason.",
        input_schema=object_schema({"reason": {"type": "string"}}, ("reason",)),
        handler=handle_mark_failed,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="log_progress",
        description="Record a progress note for the operator and for continuations.",
        input_schema=object_schema({"content": {"type": "string"}}, ("content",)),
        handler=handle_log_progress,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="read_execution_log",
        description="Read recent execution events of this work order.",
        input_schema=object_schema({"limit": {"type": "integer", "maximum": MAX_LOG_ENTRIES}}),
        handler=handle_read_execution_log,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="get_task",
        description="Read the current work order record.",
        input_schema=object_schema({}),
        handler=handle_get_task,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="check_child_status",
        description="List delegated child work orders and their status.",
        input_schema=object_schema({}),
        handler=handle_check_child_status,
        category=ToolCategory.SYSTEM,
    ),
    ToolDefinition(
        name="delegate_subtask",
        description="Create a child work order for a separable piece of the objective.",
        input_schema=object_schema(
            {
                "name": {"type": "string"},
                "objective": {"type": "string"},
                "acceptance_criteria": {"type": "string"},
            },
            ("name", "objective"),
        ),
        handler=handle_delegate_subtask,
        category=ToolCategory.WRITE,
        mutating=True,
        object_type="task",
        action="DELEGATE",
        target_key="name",
    ),
    ToolDefinition(
        name="update_qa_checklist",
        description="Set the status (pass, fail, na, pending) of acceptance checklist items.",
        input_schema=object_schema(
            {
                "items": {
                    "type": "array",
                    "items": object_schema(
                        {
                            "criterion": {"type": "string"},
                            "status": {"type": "string", "enum": sorted(QA_STATUSES)},
                            "evidence": {"type": "string"},
                        },
                        ("criterion", "status"),
                    ),
                },
            },
            ("items",),
        ),
        handler=handle_update_qa_checklist,
        category=ToolCategory.WRITE,
        mutating=True,
        object_type="qa_checklist",
        action="UPDATE",
    ),
)
