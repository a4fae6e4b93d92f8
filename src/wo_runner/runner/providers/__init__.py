"""Completion provider adapters: one canonical protocol, two wire formats."""

from __future__ import annotations

import httpx

from wo_runner.config import ProviderSettings
from wo_runner.runner.providers.anthropic import AnthropicProvider
from wo_runner.runner.providers.base import (
    CompletionRequest,
    CompletionResponse,
    Provider,
    ProviderError,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    Turn,
)
from wo_runner.runner.providers.openai_chat import OpenAIChatProvider

__all__ = [
    "AnthropicProvider",
    "CompletionRequest",
    "CompletionResponse",
    "OpenAIChatProvider",
    "Provider",
    "ProviderError",
    "Role",
    "StopReason",
    "TextBlock",
    "TokenUsage",
    "ToolResultBlock",
    "ToolSpec",
    "ToolUseBlock",
    "Turn",
    "build_provider",
    "is_anthropic_model",
]


def is_anthropic_model(model: str) -> bool:
    return model.startswith(("claude-", "anthropic/"))


def build_provider(
    model: str,
    settings: ProviderSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> Provider:
    """Pick the wire protocol from the model identifier."""

    if is_anthropic_model(model):
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set.")
        return AnthropicProvider(
            api_key=settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )
    if not settings.openai_api_key:
        raise ValueError("OPENROUTER_API_KEY is not set.")
    return OpenAIChatProvider(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.request_timeout_seconds,
        transport=transport,
    )
