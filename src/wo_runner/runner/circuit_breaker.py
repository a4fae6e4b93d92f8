"""Progress-based circuit breaker for repeated continuations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Verdict(str, Enum):
    CONTINUE = "continue"
    STUCK = "stuck"
    HARD_CAP = "hard_cap"


@dataclass(slots=True)
class CircuitBreakerDecision:
    """Decision returned by the circuit breaker policy."""

    verdict: Verdict
    reason: str
    delta: int
    checkpoint_count: int
    previous_successful: int
    current_successful: int

    def to_event_details(self) -> dict[str, object]:
        return {
            "decision": self.verdict.value,
            "reason": self.reason,
            "delta": self.delta,
            "checkpoint_count": self.checkpoint_count,
            "mutation_count_previous": self.previous_successful,
            "mutation_count_current": self.current_successful,
        }


def evaluate(
    *,
    checkpoint_count: int,
    previous_successful: int,
    current_successful: int,
    stable_threshold: int = 3,
    hard_cap: int = 8,
) -> CircuitBreakerDecision:
    """Continue while successful mutations grow; the hard cap always wins."""

    delta = current_successful - previous_successful

    def decide(verdict: Verdict, reason: str) -> CircuitBreakerDecision:
        return CircuitBreakerDecision(
            verdict=verdict,
            reason=reason,
            delta=delta,
            checkpoint_count=checkpoint_count,
            previous_successful=previous_successful,
            current_successful=current_successful,
        )

    if checkpoint_count >= hard_cap:
        return decide(
            Verdict.HARD_CAP,
            f"Hard circuit breaker cap: {hard_cap} checkpoints reached.",
        )
    if delta > 0:
        return decide(
            Verdict.CONTINUE,
            f"{delta} new successful mutations since the previous checkpoint.",
        )
    if checkpoint_count >= stable_threshold:
        return decide(
            Verdict.STUCK,
            f"Circuit breaker ({checkpoint_count} checkpoints): "
            "no new successful mutations since the previous checkpoint.",
        )
    return decide(Verdict.CONTINUE, "Below the checkpoint threshold.")
