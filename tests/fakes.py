"""Scripted provider and clock doubles shared by loop and executor tests."""

from __future__ import annotations

from collections.abc import Iterable
from itertools import count
from typing import Any

from wo_runner.runner.providers.base import (
    CompletionRequest,
    CompletionResponse,
    ProviderError,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)

_ids = count(1)


def tool_call(*calls: tuple[str, dict[str, Any]]) -> CompletionResponse:
    """Assistant reply invoking one or more tools."""

    return CompletionResponse(
        blocks=tuple(
            ToolUseBlock(id=f"call_{next(_ids)}", name=name, input=tool_input)
            for name, tool_input in calls
        ),
        stop_reason=StopReason.TOOL_USE,
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


def text_reply(text: str, *, truncated: bool = False) -> CompletionResponse:
    return CompletionResponse(
        blocks=(TextBlock(text=text),),
        stop_reason=StopReason.TRUNCATED if truncated else StopReason.END,
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


class FakeProvider:
    """Replays scripted responses; ``ProviderError`` entries are raised."""

    name = "fake"

    def __init__(self, script: Iterable[CompletionResponse | ProviderError]) -> None:
        self.script = list(script)
        self.requests: list[CompletionRequest] = []
        self.closed = False

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("FakeProvider script exhausted")
        step = self.script.pop(0)
        if isinstance(step, ProviderError):
            raise step
        return step

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock advanced by each provider call or manually."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TickingProvider(FakeProvider):
    """FakeProvider that moves a clock forward on every call."""

    def __init__(
        self,
        script: Iterable[CompletionResponse | ProviderError],
        *,
        clock: FakeClock,
        seconds_per_call: float,
    ) -> None:
        super().__init__(script)
        self.clock = clock
        self.seconds_per_call = seconds_per_call

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.clock.advance(self.seconds_per_call)
        return super().complete(request)
