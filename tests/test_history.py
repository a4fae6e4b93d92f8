from __future__ import annotations

import allure
import pytest

from wo_runner.config import LoopSettings
from wo_runner.runner.history import (
    REPAIR_CONTENT,
    SUMMARY_HEADER,
    HistoryTooLargeError,
    compact,
    emergency_compact,
    is_summary_turn,
    max_pairs_for,
    repair,
    summarize,
)
from wo_runner.runner.providers.base import (
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
)

pytestmark = [
    allure.epic("Turn Loop"),
    allure.feature("History Bounds"),
]


def _use(index: int, name: str = "workspace_write_file") -> Turn:
    return Turn(
        role=Role.ASSISTANT,
        blocks=(ToolUseBlock(id=f"t{index}", name=name, input={"path": f"f{index}.txt"}),),
    )


def _result(index: int, *, error: bool = False) -> Turn:
    content = "Error: boom" if error else f'{{"action": "wrote", "path": "f{index}.txt"}}'
    return Turn(
        role=Role.USER,
        blocks=(ToolResultBlock(tool_use_id=f"t{index}", content=content, is_error=error),),
    )


def _history(pairs: int) -> list[Turn]:
    history = [Turn.user_text("# Work Order: WO-0001")]
    for index in range(pairs):
        history.extend([_use(index), _result(index)])
    return history


def test_compact_keeps_recent_pairs_and_summarizes_the_rest() -> None:
    history = _history(12)

    removed = compact(history, 4)

    assert removed == 16
    assert len(history) == 10
    assert history[0].text == "# Work Order: WO-0001"
    assert is_summary_turn(history[1])
    assert "workspace_write_file (8x)" in history[1].text
    assert "- Results: 8 successful, 0 failed" in history[1].text
    assert history[2].tool_uses[0].id == "t8"


def test_compact_is_a_noop_within_limit() -> None:
    history = _history(3)

    assert compact(history, 4) == 0
    assert len(history) == 7


def test_compact_never_starts_the_body_with_a_tool_result() -> None:
    history = [
        Turn.user_text("task"),
        _use(1),
        _result(1),
        _use(2),
        _result(2),
        Turn(role=Role.ASSISTANT, blocks=(TextBlock(text="thinking"),)),
    ]

    removed = compact(history, 2)

    assert removed == 2
    assert history[2].role == Role.ASSISTANT
    assert history[2].tool_uses[0].id == "t2"
    assert not history[2].is_tool_result_turn


def test_second_compaction_replaces_the_summary_turn() -> None:
    history = _history(12)
    compact(history, 4)
    for index in range(12, 16):
        history.extend([_use(index), _result(index)])

    compact(history, 4)

    assert sum(1 for turn in history if is_summary_turn(turn)) == 1
    assert is_summary_turn(history[1])
    assert len(history) == 10


def test_emergency_compact_raises_when_already_minimal() -> None:
    with pytest.raises(HistoryTooLargeError, match="already minimal"):
        emergency_compact(_history(3), 4)


def test_emergency_compact_trims_to_minimum() -> None:
    history = _history(10)

    assert emergency_compact(history, 4) == 12
    assert len(history) == 10


def test_repair_adds_missing_results_once() -> None:
    history = [
        Turn.user_text("task"),
        Turn(
            role=Role.ASSISTANT,
            blocks=(
                ToolUseBlock(id="a", name="workspace_read_file"),
                ToolUseBlock(id="b", name="workspace_read_file"),
            ),
        ),
        Turn(role=Role.USER, blocks=(ToolResultBlock(tool_use_id="a", content="ok"),)),
        _use(9),
    ]

    assert repair(history) == 2
    assert [block.tool_use_id for block in history[2].tool_results] == ["a", "b"]
    assert history[2].tool_results[1].content == REPAIR_CONTENT
    assert history[2].tool_results[1].is_error is True
    assert history[-1].is_tool_result_turn
    assert history[-1].tool_results[0].tool_use_id == "t9"

    assert repair(history) == 0


def test_summarize_lists_mutations_and_errors() -> None:
    text = summarize([_use(1), _result(1), _use(2), _result(2, error=True)])

    assert text.startswith(SUMMARY_HEADER)
    assert "- Results: 1 successful, 1 failed" in text
    assert "- Mutations made:" in text
    assert "- Errors encountered:\n  - Error: boom" in text


def test_remediation_tasks_keep_fewer_pairs(make_task) -> None:
    settings = LoopSettings()

    assert max_pairs_for(make_task(), settings) == 20
    assert max_pairs_for(make_task(tags=("remediation",)), settings) == 15
