"""System prompt and initial user message assembly."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from wo_runner.runner.escalation import alternative_approach, current_tier
from wo_runner.runner.models import TaskView
from wo_runner.runner.repository import TaskRepository
from wo_runner.runner.tools.base import ToolDefinition

logger = logging.getLogger(__name__)

MAX_PARENT_SUMMARY_CHARS = 2000
MAX_DEPENDENCY_SUMMARY_CHARS = 200
MAX_REMEDIATION_ATTEMPTS = 3
MAX_CONCURRENT_TASKS = 5
MAX_CONCURRENT_TAGS = 4
MAX_ESCALATION_MUTATIONS = 20

EXECUTION_RULES = (
    "1. Start by logging your plan with log_progress.",
    "2. Execute the work step by step, one focused tool call at a time.",
    "3. Verify every change: read files back after writing them.",
    "4. When the objective is met, call mark_complete with a detailed summary.",
    "5. If you cannot proceed, call mark_failed with a clear reason.",
    "6. You MUST call mark_complete or mark_failed to finish. Stopping without one is an error.",
    "7. Never make up data, results or file contents.",
    "8. Log key steps with log_progress so the execution log stays useful.",
)

USER_MESSAGE_FOOTER = (
    "\n---\nExecute this work order now. Start by logging your plan, then proceed step by step."
)


class ContextBuilder:
    """Build the prompts one execution starts from."""

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def build_system_prompt(self, role: str, definitions: Sequence[ToolDefinition]) -> str:
        lines = [
            f"You are the {role} agent executing a work order in an automated runner.",
            "You act only through the tools listed below.",
            "",
            "## Available Tools",
        ]
        lines.extend(
            f"- **{definition.name}**: {definition.description}" for definition in definitions
        )
        lines.extend(["", "## Execution Rules", *EXECUTION_RULES])
        return "\n".join(lines)

    def build_user_message(self, task: TaskView) -> str:
        parts = [
            f"# Work Order: {task.slug} -- {task.name}\n",
            f"**Name:** {task.name}",
            f"**Priority:** {task.priority}",
            f"**Status:** {task.status.value}\n",
            f"## Objective\n{task.objective}\n",
        ]
        if task.acceptance_criteria:
            parts.append(f"## Acceptance Criteria\n{task.acceptance_criteria}\n")
        if task.tags:
            parts.append(f"**Tags:** {', '.join(task.tags)}\n")

        for section in (
            self.remediation_context(task),
            self.dependency_context(task),
            self.concurrent_context(task),
        ):
            if section:
                parts.append(section)

        return "\n".join(parts) + USER_MESSAGE_FOOTER

    def remediation_context(self, task: TaskView) -> str | None:
        if not task.is_remediation:
            return None
        parent = self.parent_of(task)
        if parent is None:
            return None

        lines = [
            "## REMEDIATION CONTEXT\n",
            f"This is a **remediation** work order for parent WO **{parent.slug}**.",
            "Fix ONLY the listed failures. Do NOT redo work that already passed.\n",
            f"### Parent Work Order: {parent.name}",
            f"**Objective**: {parent.objective}",
        ]
        if parent.acceptance_criteria:
            lines.append(f"**Acceptance Criteria**: {parent.acceptance_criteria}")
        if parent.summary:
            lines.append(f"**Previous Summary**: {parent.summary[:MAX_PARENT_SUMMARY_CHARS]}")
        if parent.qa_checklist:
            lines.append("\n### QA Checklist Status")
            lines.extend(
                f"- [{item.get('status') or 'pending'}] {item.get('criterion', '')}"
                for item in parent.qa_checklist
            )

        attempts = [
            sibling
            for sibling in self.repository.list_children(parent_id=parent.task_id)
            if sibling.task_id != task.task_id and sibling.is_remediation
        ][:MAX_REMEDIATION_ATTEMPTS]
        if attempts:
            lines.append("\n### Previous Remediation Attempts")
            for attempt in attempts:
                summary = (attempt.summary or "no summary")[:MAX_DEPENDENCY_SUMMARY_CHARS]
                lines.append(f"- **{attempt.slug}** ({attempt.status.value}): {summary}")
            lines.append("Do NOT repeat what previous attempts tried. Take a different approach.")
        return "\n".join(lines) + "\n"

    def dependency_context(self, task: TaskView) -> str | None:
        if not task.depends_on:
            return None
        dependencies = self.repository.list_tasks_by_ids(task_ids=task.depends_on)
        if not dependencies:
            return None
        lines = ["## Dependencies"]
        for dependency in dependencies:
            line = f"- **{dependency.slug}** ({dependency.status.value}): {dependency.name}"
            if dependency.summary:
                line += f" -- {dependency.summary[:MAX_DEPENDENCY_SUMMARY_CHARS]}"
            lines.append(line)
        return "\n".join(lines) + "\n"

    def concurrent_context(self, task: TaskView) -> str | None:
        concurrent = self.repository.list_in_progress(
            exclude_task_id=task.task_id,
            limit=MAX_CONCURRENT_TASKS,
        )
        if not concurrent:
            return None
        lines = ["## Concurrent Work Orders (DO NOT conflict with these)"]
        for other in concurrent:
            line = f"- **{other.slug}**: {other.name}"
            if other.tags:
                line += f" [{', '.join(other.tags[:MAX_CONCURRENT_TAGS])}]"
            line += f" [agent: {other.assigned_to}]"
            lines.append(line)
        lines.append("Avoid modifying the same files or objects as these concurrent work orders.")
        return "\n".join(lines) + "\n"

    def escalation_context(self, task: TaskView, *, model: str) -> str | None:
        """Briefing appended to a fresh run after a tier escalation."""

        if task.metadata.get("escalation_tier") is None:
            return None
        previous_model = task.metadata.get("previous_model") or "unknown"
        reason = task.metadata.get("escalation_reason") or "unknown"
        escalated = self.repository.latest_event(task_id=task.task_id, event_type="escalated")

        lines = [
            "\n\n## ESCALATION CONTEXT",
            "**You are an escalated agent.** A previous agent (lower-tier model) "
            "attempted this work order and failed.",
            f"You have been escalated to tier {current_tier(task)} (model: {model}).\n",
            "### Why You Were Escalated",
            f"- Previous model: {previous_model}",
            f"- Reason: {reason}",
        ]
        if escalated is not None:
            lines.append(f"- Escalated at: {escalated.created_at.isoformat()}")

        mutations = self.repository.list_mutations(
            task_id=task.task_id,
            limit=MAX_ESCALATION_MUTATIONS,
        )
        if mutations:
            lines.append("\n### Previous Agent's Mutation History")
            for mutation in reversed(mutations):
                if mutation.success:
                    outcome = "ok"
                else:
                    error_class = mutation.error_class.value if mutation.error_class else "unknown"
                    outcome = f"FAILED ({error_class})"
                lines.append(
                    f"- {mutation.tool_name} on `{mutation.target}` ({mutation.action}): {outcome}",
                )

        failed = self.repository.failed_approaches(task_id=task.task_id)
        if failed:
            lines.append("\n### Failed Approaches (DO NOT RETRY)")
            for approach in failed:
                lines.append(
                    f"- **{approach.tool}** on `{approach.target}`: {approach.error_class}",
                )
                alternative = alternative_approach(approach.tool, approach.error_class)
                if alternative:
                    lines.append(f"  - Try instead: {alternative}")

        lines.append("\n**CRITICAL**: Do NOT repeat the same failed approaches.")
        return "\n".join(lines)

    def parent_of(self, task: TaskView) -> TaskView | None:
        if task.parent_id is not None:
            parent = self.repository.get_task(task_id=task.parent_id)
            if parent is not None:
                return parent
        slug = task.parent_slug_tag
        if slug is None:
            return None
        return self.repository.get_task_by_slug(slug=slug)
