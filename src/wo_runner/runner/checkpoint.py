"""Checkpoint snapshots and continuation prompts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from wo_runner.runner.models import FailedApproach, MutationDigest, TaskView
from wo_runner.runner.repository import TaskRepository

MAX_LAST_ACTIONS = 5
MAX_LISTED_WORKSPACE_FILES = 100
MAX_CHILD_SUMMARY_CHARS = 300


@dataclass(slots=True)
class ToolCallRecord:
    """One dispatched tool call as the loop saw it."""

    turn: int
    tool: str
    success: bool
    target: str | None = None
    mutating: bool = False
    accomplishment: str | None = None

    def label(self) -> str:
        return f"{self.tool}({'ok' if self.success else 'err'})"


@dataclass(slots=True)
class CheckpointSnapshot:
    """Persisted state needed to continue a suspended execution."""

    turns_completed: int
    last_actions: str
    elapsed_seconds: float
    accomplishments: list[str] = field(default_factory=list)
    mutation_digest: MutationDigest | None = None
    failed_approaches: list[FailedApproach] = field(default_factory=list)
    delegated_children: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return (
            f"Checkpointed at {round(self.elapsed_seconds)}s, "
            f"{self.turns_completed} turns. Last: {self.last_actions}"
        )

    def to_details(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "turns_completed": self.turns_completed,
            "last_actions": self.last_actions,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "accomplishments": list(self.accomplishments),
            "mutation_digest": (
                self.mutation_digest.to_details() if self.mutation_digest is not None else None
            ),
            "failed_approaches": [approach.to_details() for approach in self.failed_approaches],
            "delegated_children": list(self.delegated_children),
        }

    @classmethod
    def from_details(cls, payload: dict[str, Any]) -> CheckpointSnapshot:
        return cls(
            turns_completed=int(payload.get("turns_completed") or 0),
            last_actions=str(payload.get("last_actions") or ""),
            elapsed_seconds=float(payload.get("elapsed_seconds") or 0.0),
            accomplishments=[str(item) for item in payload.get("accomplishments") or []],
            mutation_digest=MutationDigest.from_details(payload.get("mutation_digest")),
            failed_approaches=[
                FailedApproach.from_details(item)
                for item in payload.get("failed_approaches") or []
                if isinstance(item, dict)
            ],
            delegated_children=[str(item) for item in payload.get("delegated_children") or []],
        )


@dataclass(frozen=True, slots=True)
class ResumeToken:
    """What the scheduler needs to re-dispatch a suspended or escalated task."""

    task_id: str
    checkpoint_id: int | None = None
    escalation_tier: int | None = None


def build_snapshot(  # noqa: PLR0913
    repository: TaskRepository,
    *,
    task_id: str,
    records: Sequence[ToolCallRecord],
    turns: int,
    elapsed_seconds: float,
    delegated_children: Sequence[str] = (),
) -> CheckpointSnapshot:
    last_actions = ", ".join(record.label() for record in records[-MAX_LAST_ACTIONS:])
    return CheckpointSnapshot(
        turns_completed=turns,
        last_actions=last_actions,
        elapsed_seconds=elapsed_seconds,
        accomplishments=[record.accomplishment for record in records if record.accomplishment],
        mutation_digest=repository.mutation_digest(task_id=task_id),
        failed_approaches=repository.failed_approaches(task_id=task_id),
        delegated_children=list(delegated_children),
    )


def build_continuation_prompt(  # noqa: PLR0913
    task: TaskView,
    snapshot: CheckpointSnapshot,
    *,
    checkpoint_count: int,
    hard_cap: int,
    workspace_files: Sequence[str] = (),
    children: Sequence[TaskView] = (),
) -> str:
    """Render the user message for a continuation invocation."""

    parts = [
        f"# CONTINUATION -- Work Order: {task.slug}\n\n"
        "**You are CONTINUING a previous execution that checkpointed.**\n"
        f"Continuation #{checkpoint_count + 1} of max {hard_cap}.\n\n",
    ]

    parts.append("## What Was Already Done\n")
    if snapshot.accomplishments:
        parts.extend(f"- {item}\n" for item in snapshot.accomplishments)
        parts.append(
            "\n**Do NOT call read_execution_log to check progress. The above is your "
            "accomplishment list. Continue from where you left off.**\n\n",
        )
    else:
        parts.append(
            f"Previous progress: {snapshot.turns_completed} turns, "
            f"{round(snapshot.elapsed_seconds)}s elapsed.\n"
            f"Last actions: {snapshot.last_actions or 'unknown'}\n\n",
        )

    digest = snapshot.mutation_digest
    if digest is not None and digest.total > 0:
        parts.append("## What Was Already Done (Mutation Summary)\n")
        parts.append(f"- Total mutations: {digest.total}\n")
        parts.append(f"- Successful: {digest.successful}\n")
        parts.append(f"- Failed: {digest.failed}\n")
        if digest.by_error_class:
            classes = ", ".join(f"{name}: {count}" for name, count in digest.by_error_class.items())
            parts.append(f"- Failures by error class: {classes}\n")
        parts.append("\n")

    if snapshot.failed_approaches:
        parts.append("## Failed Approaches (DO NOT RETRY)\n")
        for approach in snapshot.failed_approaches:
            parts.append(
                f"- **{approach.tool}** on `{approach.target}` (action: {approach.action})\n"
                f"  - Error class: {approach.error_class}\n",
            )
            if approach.error_detail:
                parts.append(f"  - Error: {approach.error_detail}\n")
        parts.append(
            "\n**IMPORTANT**: These approaches already failed. "
            "Use a different tool, target, or method.\n\n",
        )

    if workspace_files:
        parts.append("## Updated Workspace Context\n")
        parts.extend(f"- {path}\n" for path in workspace_files[:MAX_LISTED_WORKSPACE_FILES])
        parts.append("\n")

    parts.append(f"## Original Objective\n{task.objective}\n\n")
    if task.acceptance_criteria:
        parts.append(f"## Acceptance Criteria\n{task.acceptance_criteria}\n\n")

    if children:
        parts.append("## Delegated Children Status\n")
        for child in children:
            summary = (child.summary or "")[:MAX_CHILD_SUMMARY_CHARS]
            parts.append(f"- **{child.slug}** ({child.status.value}): {summary}\n")
        parts.append("\n")

    parts.append(
        "**IMPORTANT**: Do NOT redo work already done. Continue from where you left off. "
        "Call mark_complete when done.",
    )
    return "".join(parts)
