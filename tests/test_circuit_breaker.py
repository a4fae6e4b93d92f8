from __future__ import annotations

import allure

from wo_runner.runner.circuit_breaker import Verdict, evaluate

pytestmark = [
    allure.epic("Continuation"),
    allure.feature("Circuit Breaker"),
]


def test_hard_cap_wins_even_with_progress() -> None:
    decision = evaluate(checkpoint_count=8, previous_successful=0, current_successful=10)

    assert decision.verdict == Verdict.HARD_CAP
    assert decision.reason == "Hard circuit breaker cap: 8 checkpoints reached."


def test_growth_in_successful_mutations_continues() -> None:
    decision = evaluate(checkpoint_count=3, previous_successful=2, current_successful=5)

    assert decision.verdict == Verdict.CONTINUE
    assert decision.delta == 3


def test_no_growth_at_threshold_is_stuck() -> None:
    decision = evaluate(checkpoint_count=3, previous_successful=4, current_successful=4)

    assert decision.verdict == Verdict.STUCK
    assert decision.reason.startswith("Circuit breaker (3 checkpoints)")
    assert decision.to_event_details() == {
        "decision": "stuck",
        "reason": decision.reason,
        "delta": 0,
        "checkpoint_count": 3,
        "mutation_count_previous": 4,
        "mutation_count_current": 4,
    }


def test_no_growth_below_threshold_continues() -> None:
    decision = evaluate(checkpoint_count=2, previous_successful=4, current_successful=4)

    assert decision.verdict == Verdict.CONTINUE
    assert decision.reason == "Below the checkpoint threshold."


def test_custom_thresholds() -> None:
    assert (
        evaluate(
            checkpoint_count=2,
            previous_successful=1,
            current_successful=1,
            stable_threshold=2,
            hard_cap=4,
        ).verdict
        == Verdict.STUCK
    )
    assert (
        evaluate(
            checkpoint_count=4,
            previous_successful=1,
            current_successful=1,
            stable_threshold=2,
            hard_cap=4,
        ).verdict
        == Verdict.HARD_CAP
    )
