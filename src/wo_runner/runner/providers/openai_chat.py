"""OpenAI-style chat completions protocol (``POST /chat/completions``).

Tool invocations travel as ``tool_calls`` with JSON string arguments and tool
results as separate ``role: "tool"`` messages, so one canonical result turn
may expand into several wire messages.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from wo_runner.runner.providers.base import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    ProviderError,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    error_from_response,
)

logger = logging.getLogger(__name__)

_STOP_REASONS = {
    "stop": StopReason.END,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.TRUNCATED,
}


def to_wire(request: CompletionRequest) -> dict[str, Any]:
    """Translate a canonical request to a chat completions payload."""

    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    for turn in request.turns:
        messages.extend(_turn_to_wire(turn))

    payload: dict[str, Any] = {
        "model": request.model,
        "messages": messages,
        "max_tokens": request.max_tokens,
    }
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in request.tools
        ]
    return payload


def from_wire(payload: dict[str, Any]) -> CompletionResponse:
    """Translate a chat completions response to canonical form."""

    choices = payload.get("choices") or []
    if not choices:
        raise ProviderError("No choices in chat completion response")
    choice = choices[0]
    message = choice.get("message") or {}

    blocks: list[ContentBlock] = []
    if message.get("content"):
        blocks.append(TextBlock(text=str(message["content"])))
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        blocks.append(
            ToolUseBlock(
                id=str(call["id"]),
                name=str(function.get("name") or ""),
                input=_parse_arguments(function.get("arguments")),
            ),
        )

    stop_reason = _STOP_REASONS.get(str(choice.get("finish_reason")), StopReason.END)
    # Some routers report "stop" while still returning tool calls.
    if stop_reason == StopReason.END and any(isinstance(b, ToolUseBlock) for b in blocks):
        stop_reason = StopReason.TOOL_USE

    usage = payload.get("usage") or {}
    return CompletionResponse(
        blocks=tuple(blocks),
        stop_reason=stop_reason,
        usage=TokenUsage(
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        ),
        model=payload.get("model"),
    )


def _turn_to_wire(turn: Turn) -> list[dict[str, Any]]:
    text = turn.text
    if turn.role == Role.ASSISTANT:
        tool_uses = turn.tool_uses
        if not tool_uses:
            return [{"role": "assistant", "content": text}]
        return [
            {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {
                            "name": block.name,
                            "arguments": json.dumps(block.input, ensure_ascii=False),
                        },
                    }
                    for block in tool_uses
                ],
            },
        ]

    results = turn.tool_results
    if not results:
        return [{"role": "user", "content": text}]
    messages: list[dict[str, Any]] = [
        {"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content}
        for block in results
    ]
    # Guidance text riding along with results goes after all tool messages.
    if text:
        messages.append({"role": "user", "content": text})
    return messages


def _parse_arguments(raw: object) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAIChatProvider:
    """HTTP transport for chat completions, OpenRouter by default."""

    name = "openai-chat"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_seconds: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "X-Title": "wo-runner",
            },
            transport=transport,
        )

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        try:
            response = self._client.post("/chat/completions", json=to_wire(request))
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
