"""Model tier escalation and remediation task creation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from wo_runner.config import Settings
from wo_runner.runner.models import (
    ErrorClass,
    FailedApproach,
    MutationView,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from wo_runner.runner.repository import TaskRepository

logger = logging.getLogger(__name__)

MAX_COMPLETED_LISTED = 20

_CLASS_ALTERNATIVES: dict[str, str] = {
    ErrorClass.SQL_SYNTAX.value: (
        "Read the target object definition first and rewrite the statement from it."
    ),
    ErrorClass.SCHEMA_MISMATCH.value: (
        "Verify the referenced object exists (list or read it) before mutating it."
    ),
    ErrorClass.ENCODING_ERROR.value: (
        "Rewrite the whole file with workspace_write_file using clean UTF-8 text."
    ),
    ErrorClass.ENFORCEMENT_BLOCKED.value: (
        "Do not try to bypass enforcement; use the dedicated tool for the state change."
    ),
    ErrorClass.PERMISSION_DENIED.value: (
        "The role cannot use this tool or path; delegate the step or stay inside the workspace."
    ),
    ErrorClass.TIMEOUT.value: "Split the operation into smaller steps that finish quickly.",
}


@dataclass(frozen=True, slots=True)
class TierStep:
    """Next rung on an escalation ladder (tiers are 1-based)."""

    tier: int
    model: str


def ladder_for(settings: Settings, role: str) -> tuple[str, ...]:
    return settings.escalation.tiers.get(role, ())


def current_tier(task: TaskView) -> int:
    raw = task.metadata.get("escalation_tier")
    try:
        return max(int(raw), 1) if raw is not None else 1
    except (TypeError, ValueError):
        return 1


def resolve_model(task: TaskView, settings: Settings) -> str:
    """Escalation override, then the role's first tier, then the default model."""

    override = task.metadata.get("escalation_model")
    if override:
        return str(override)
    ladder = ladder_for(settings, task.assigned_to)
    if ladder:
        return ladder[0]
    return settings.provider.default_model


def next_tier(ladder: Sequence[str], current: int) -> TierStep | None:
    """Forward-only: never returns a tier at or below ``current``."""

    candidate = max(current, 0) + 1
    if candidate > len(ladder):
        return None
    return TierStep(tier=candidate, model=ladder[candidate - 1])


def attempt_escalation(
    repository: TaskRepository,
    task: TaskView,
    *,
    settings: Settings,
    reason: str,
) -> TierStep | None:
    """Move the task to the next tier, or return ``None`` at the top."""

    step = next_tier(ladder_for(settings, task.assigned_to), current_tier(task))
    if step is None:
        logger.info("%s already at max escalation tier, cannot escalate", task.slug)
        return None
    previous_model = resolve_model(task, settings)
    if not repository.escalate_task(
        task_id=task.task_id,
        tier=step.tier,
        model=step.model,
        previous_model=previous_model,
        reason=reason,
    ):
        logger.warning("Escalation of %s lost a concurrent status change", task.slug)
        return None
    logger.info(
        "Escalated %s from %s to %s (tier %d)",
        task.slug,
        previous_model,
        step.model,
        step.tier,
    )
    return step


def alternative_approach(tool_name: str, error_class: str) -> str | None:
    if tool_name == "workspace_edit_file" and error_class == ErrorClass.MATCH_FAILED.value:
        return "Use workspace_write_file to replace the entire file instead of workspace_edit_file."
    return _CLASS_ALTERNATIVES.get(error_class)


def build_remediation_task(
    parent: TaskView,
    *,
    reason: str,
    completed: Sequence[MutationView],
    failed: Sequence[FailedApproach],
) -> TaskCreate:
    """Remediation payload inheriting the parent's objective and history."""

    lines = [
        f"Remediate failed work order {parent.slug} ({parent.name}).",
        "",
        f"Failure reason: {reason}",
        "",
        "## Original Objective",
        parent.objective,
    ]
    if completed:
        lines.extend(["", "## Completed Operations"])
        lines.extend(
            f"- {mutation.tool_name} on `{mutation.target}` ({mutation.action})"
            for mutation in completed[:MAX_COMPLETED_LISTED]
        )
    if failed:
        lines.extend(["", "## Failed Operations"])
        for approach in failed:
            lines.append(
                f"- {approach.tool} on `{approach.target}` ({approach.action}): "
                f"{approach.error_class}",
            )
            if approach.error_detail:
                lines.append(f"  - Error: {approach.error_detail}")
            alternative = alternative_approach(approach.tool, approach.error_class)
            if alternative:
                lines.append(f"  - Alternative: {alternative}")
    if parent.qa_checklist:
        lines.extend(["", "## QA Checklist Status"])
        lines.extend(
            f"- [{item.get('status') or 'pending'}] {item.get('criterion', '')}"
            for item in parent.qa_checklist
        )

    return TaskCreate(
        name=f"Fix: {parent.slug} ({parent.name})",
        objective="\n".join(lines),
        acceptance_criteria=parent.acceptance_criteria,
        tags=("remediation", f"parent:{parent.slug}"),
        status=TaskStatus.DRAFT,
        assigned_to=parent.assigned_to,
        priority=parent.priority,
        metadata={"remediation_of": parent.slug, "failure_reason": reason},
        qa_checklist=[
            {"criterion": item.get("criterion", ""), "status": "pending"}
            for item in parent.qa_checklist
        ],
        parent_id=parent.task_id,
    )


def create_remediation_task(
    repository: TaskRepository,
    parent: TaskView,
    *,
    reason: str,
    max_depth: int,
) -> TaskView | None:
    """Spawn one remediation draft unless the depth cap is reached."""

    depth = repository.remediation_depth(task_id=parent.task_id)
    if depth >= max_depth:
        repository.add_event(
            task_id=parent.task_id,
            event_type="remediation_depth_exceeded",
            details={"depth": depth, "max_depth": max_depth, "reason": reason},
        )
        logger.warning(
            "%s reached remediation depth %d, flagged for human review",
            parent.slug,
            depth,
        )
        return None

    payload = build_remediation_task(
        parent,
        reason=reason,
        completed=repository.list_mutations(
            task_id=parent.task_id,
            success=True,
            limit=MAX_COMPLETED_LISTED,
        ),
        failed=repository.failed_approaches(task_id=parent.task_id),
    )
    child = repository.create_task(payload)
    repository.add_event(
        task_id=parent.task_id,
        event_type="remediation_created",
        details={"child_slug": child.slug, "child_id": child.task_id},
    )
    logger.info("Created remediation %s for %s", child.slug, parent.slug)
    return child
