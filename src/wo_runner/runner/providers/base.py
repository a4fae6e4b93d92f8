"""Provider-neutral conversation types and the completion protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

TOO_LARGE_MARKERS: tuple[str, ...] = (
    "prompt is too long",
    "context length",
    "context_length_exceeded",
    "maximum context",
    "too many tokens",
)


class Role(str, Enum):
    """Conversation roles: the tool environment speaks as ``user``."""

    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    """Why the model stopped producing output."""

    END = "end"
    TOOL_USE = "tool_use"
    TRUNCATED = "truncated"


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


@dataclass(slots=True)
class Turn:
    """One conversation message with ordered content blocks."""

    role: Role
    blocks: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> Turn:
        return cls(role=Role.USER, blocks=(TextBlock(text=text),))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.blocks if isinstance(block, ToolResultBlock)]

    @property
    def is_tool_result_turn(self) -> bool:
        return self.role == Role.USER and bool(self.tool_results)

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.blocks if isinstance(block, TextBlock))


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool description advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class CompletionRequest:
    model: str
    system: str
    turns: list[Turn]
    tools: list[ToolSpec]
    max_tokens: int = 4096


@dataclass(slots=True)
class CompletionResponse:
    blocks: tuple[ContentBlock, ...]
    stop_reason: StopReason
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str | None = None

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks if isinstance(block, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.blocks if isinstance(block, TextBlock))

    def as_turn(self) -> Turn:
        return Turn(role=Role.ASSISTANT, blocks=self.blocks)


class ProviderError(RuntimeError):
    """Completion call failed; ``too_large`` marks a non-retryable context overflow."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        too_large: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.too_large = too_large


class Provider(Protocol):
    """One completion protocol."""

    name: str

    def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    def close(self) -> None: ...


def is_too_large(*, status_code: int | None, body: str) -> bool:
    if status_code == 400:  # noqa: PLR2004
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in TOO_LARGE_MARKERS)


def error_from_response(*, provider: str, status_code: int, body: str) -> ProviderError:
    snippet = body[:500]
    return ProviderError(
        f"{provider} {status_code}: {snippet}",
        status_code=status_code,
        too_large=is_too_large(status_code=status_code, body=body),
    )
