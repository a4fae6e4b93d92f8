"""Consecutive non-productive turn detection."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolOutcome:
    tool: str
    success: bool

    def label(self) -> str:
        return f"{self.tool}({'ok' if self.success else 'err'})"


@dataclass(slots=True)
class StallVerdict:
    stalled: bool
    consecutive: int
    reason: str | None = None


class StallDetector:
    """A turn is productive when any of its tool calls succeeded."""

    def __init__(self, window: int = 5) -> None:
        if window <= 0:
            raise ValueError("Stall window must be > 0.")
        self.window = window
        self.consecutive = 0

    def observe(
        self,
        outcomes: Sequence[ToolOutcome],
        *,
        tail: Sequence[str] = (),
    ) -> StallVerdict:
        """Count the turn; ``tail`` labels recent calls for the failure reason."""

        if any(outcome.success for outcome in outcomes):
            self.consecutive = 0
            return StallVerdict(stalled=False, consecutive=0)

        self.consecutive += 1
        logger.debug("Stall %d/%d", self.consecutive, self.window)
        if self.consecutive < self.window:
            return StallVerdict(stalled=False, consecutive=self.consecutive)

        labels = ", ".join(list(tail) or [outcome.label() for outcome in outcomes])
        return StallVerdict(
            stalled=True,
            consecutive=self.consecutive,
            reason=(
                f"Non-productive recursion: {self.consecutive} consecutive turns "
                f"with no successful operations. Last tools: {labels}"
            ),
        )
