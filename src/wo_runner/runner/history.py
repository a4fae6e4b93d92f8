"""Conversation history bounds and pairing repair.

History layout is ``[task turn, optional summary turn, body...]``. Trimming
cuts from the front of the body and never leaves a tool-result turn without
the invocation turn that precedes it.
"""

from __future__ import annotations

import logging
import re
from collections import Counter

from wo_runner.config import LoopSettings
from wo_runner.runner.models import TaskView
from wo_runner.runner.providers.base import Role, ToolResultBlock, ToolUseBlock, Turn

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "## Execution History (earlier turns, summarized)"
REPAIR_CONTENT = "Error: Tool execution was interrupted (message repair)"
MAX_SUMMARY_CHARS = 4000
MAX_EXCERPT_CHARS = 150
MAX_MUTATION_EXCERPTS = 5
MAX_ERROR_EXCERPTS = 3

_MUTATION_PATTERN = re.compile(
    r"write|wrote|edit|create|insert|update|delete|deploy|applied",
    re.IGNORECASE,
)


class HistoryTooLargeError(RuntimeError):
    """Raised when history is already at its minimum and still too large."""


def max_pairs_for(task: TaskView, settings: LoopSettings) -> int:
    if task.is_remediation:
        return settings.remediation_history_pairs
    return settings.max_history_pairs


def is_summary_turn(turn: Turn) -> bool:
    return (
        turn.role == Role.USER
        and not turn.tool_results
        and turn.text.startswith(SUMMARY_HEADER)
    )


def body_start(history: list[Turn]) -> int:
    if len(history) > 1 and is_summary_turn(history[1]):
        return 2
    return 1


def compact(history: list[Turn], max_pairs: int) -> int:
    """Trim the body to ``max_pairs`` turn pairs in place.

    Returns the number of body turns removed. The removed turns are
    summarized into one text turn placed right after the task turn,
    replacing a previous summary turn.
    """

    if not history:
        return 0
    start = body_start(history)
    body = history[start:]
    limit = 2 * max_pairs
    if len(body) <= limit:
        return 0

    cut = len(body) - limit
    if cut < len(body) and body[cut].is_tool_result_turn:
        cut += 1
    summary = summarize(body[:cut])
    history[1:] = [Turn.user_text(summary), *body[cut:]]
    logger.debug("Compacted history: %d turns summarized, %d kept", cut, len(body) - cut)
    return cut


def emergency_compact(history: list[Turn], min_pairs: int = 4) -> int:
    """Compact down to ``min_pairs`` or raise when nothing is left to cut."""

    body_length = len(history) - body_start(history) if history else 0
    if body_length <= 2 * min_pairs:
        raise HistoryTooLargeError(
            f"History already minimal ({body_length} turns after the task turn)",
        )
    return compact(history, min_pairs)


def repair(history: list[Turn]) -> int:
    """Give every tool invocation a result in the next turn. Idempotent.

    Returns the number of synthetic results added.
    """

    repairs = 0
    index = 0
    while index < len(history):
        turn = history[index]
        uses = turn.tool_uses if turn.role == Role.ASSISTANT else []
        if not uses:
            index += 1
            continue

        following = history[index + 1] if index + 1 < len(history) else None
        if following is None or not following.is_tool_result_turn:
            history.insert(
                index + 1,
                Turn(role=Role.USER, blocks=tuple(_interrupted(use) for use in uses)),
            )
            repairs += len(uses)
        else:
            present = {block.tool_use_id for block in following.tool_results}
            missing = [use for use in uses if use.id not in present]
            if missing:
                results = [*following.tool_results, *(_interrupted(use) for use in missing)]
                others = [b for b in following.blocks if not isinstance(b, ToolResultBlock)]
                following.blocks = (*results, *others)
                repairs += len(missing)
        index += 2
    return repairs


def _interrupted(use: ToolUseBlock) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=use.id, content=REPAIR_CONTENT, is_error=True)


def summarize(turns: list[Turn]) -> str:
    """Condense trimmed turns into tool counts, mutations and errors."""

    tool_counts: Counter[str] = Counter()
    mutations: list[str] = []
    errors: list[str] = []
    successes = 0
    failures = 0

    for turn in turns:
        for block in turn.blocks:
            if isinstance(block, ToolUseBlock):
                tool_counts[block.name] += 1
            elif isinstance(block, ToolResultBlock):
                if block.is_error:
                    failures += 1
                    if block.content:
                        errors.append(block.content)
                else:
                    successes += 1
                    if _MUTATION_PATTERN.search(block.content):
                        mutations.append(block.content)

    lines = [SUMMARY_HEADER]
    if tool_counts:
        ranked = sorted(tool_counts.items(), key=lambda item: item[1], reverse=True)
        lines.append("- Tools used: " + ", ".join(f"{name} ({count}x)" for name, count in ranked))
    lines.append(f"- Results: {successes} successful, {failures} failed")
    if mutations:
        lines.append("- Mutations made:")
        lines.extend(
            f"  - {text[:MAX_EXCERPT_CHARS]}" for text in mutations[:MAX_MUTATION_EXCERPTS]
        )
    if errors:
        lines.append("- Errors encountered:")
        lines.extend(f"  - {text[:MAX_EXCERPT_CHARS]}" for text in errors[:MAX_ERROR_EXCERPTS])
    return ("\n".join(lines) + "\n")[:MAX_SUMMARY_CHARS]
