"""Native tool-calling protocol (``POST /v1/messages``)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from wo_runner.runner.providers.base import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    ProviderError,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    error_from_response,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": StopReason.END,
    "stop_sequence": StopReason.END,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.TRUNCATED,
}


def to_wire(request: CompletionRequest) -> dict[str, Any]:
    """Translate a canonical request to the messages API payload."""

    payload: dict[str, Any] = {
        "model": request.model.removeprefix("anthropic/"),
        "max_tokens": request.max_tokens,
        "system": [
            {
                "type": "text",
                "text": request.system,
                "cache_control": {"type": "ephemeral"},
            },
        ],
        "messages": [_turn_to_wire(turn) for turn in request.turns],
    }
    if request.tools:
        payload["tools"] = [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in request.tools
        ]
    return payload


def from_wire(payload: dict[str, Any]) -> CompletionResponse:
    """Translate a messages API response to canonical form."""

    blocks: list[ContentBlock] = []
    for block in payload.get("content") or []:
        block_type = block.get("type")
        if block_type == "text":
            blocks.append(TextBlock(text=str(block.get("text") or "")))
        elif block_type == "tool_use":
            blocks.append(
                ToolUseBlock(
                    id=str(block["id"]),
                    name=str(block["name"]),
                    input=dict(block.get("input") or {}),
                ),
            )
    usage = payload.get("usage") or {}
    return CompletionResponse(
        blocks=tuple(blocks),
        stop_reason=_STOP_REASONS.get(str(payload.get("stop_reason")), StopReason.END),
        usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        ),
        model=payload.get("model"),
    )


def _turn_to_wire(turn: Turn) -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    for block in turn.blocks:
        if isinstance(block, TextBlock):
            if block.text:
                content.append({"type": "text", "text": block.text})
        elif isinstance(block, ToolUseBlock):
            content.append(
                {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input},
            )
        elif isinstance(block, ToolResultBlock):
            content.append(
                {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                    "is_error": block.is_error,
                },
            )
    if not content:
        content.append({"type": "text", "text": "(empty)"})
    return {"role": turn.role.value, "content": content}


class AnthropicProvider:
    """HTTP transport for the messages API."""

    name = "anthropic"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        timeout_seconds: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            transport=transport,
        )

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        try:
            response = self._client.post("/v1/messages", json=to_wire(request))
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s model=%s", self.name, request.model)
            raise ProviderError(f"{self.name} request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s: %s", self.name, exc)
            raise ProviderError(f"{self.name} transport error: {exc}") from exc

        if not response.is_success:
            raise error_from_response(
                provider=self.name,
                status_code=response.status_code,
                body=response.text,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned invalid JSON: {exc}") from exc
        return from_wire(payload)

    def close(self) -> None:
        self._client.close()
