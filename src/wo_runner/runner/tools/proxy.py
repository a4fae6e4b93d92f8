"""Server-side execution proxy for mutating tools.

The proxy executes the tool on the server. The dispatcher then replays a
successful change on the local workspace and records it with
``proxy_mode="proxy"``. Any proxy problem returns ``None`` so the dispatcher
falls back to local execution and the agent is never blocked by the proxy
being down.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from wo_runner.config import ProxySettings
from wo_runner.runner.tools.base import ToolContext, ToolResult

if TYPE_CHECKING:
    from wo_runner.runner.repository import TaskRepository

logger = logging.getLogger(__name__)

PROXY_FLAG_KEY = "verify_proxy_enabled"

TOOL_TO_ENDPOINT: dict[str, str] = {
    "workspace_write_file": "workspace/write",
    "workspace_edit_file": "workspace/edit",
}


class ToolProxy:
    """Route eligible tools to ``<base_url>/<endpoint>`` when the flag is on."""

    def __init__(
        self,
        settings: ProxySettings,
        repository: TaskRepository,
        *,
        endpoints: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.endpoints = dict(TOOL_TO_ENDPOINT if endpoints is None else endpoints)
        self._clock = clock
        self._flag_value: bool | None = None
        self._flag_checked_at = 0.0
        self._client = httpx.Client(
            base_url=settings.base_url.rstrip("/") if settings.base_url else "",
            timeout=httpx.Timeout(settings.timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {settings.token}"} if settings.token else {},
            transport=transport,
        )

    def is_eligible(self, tool_name: str) -> bool:
        return (
            tool_name in self.endpoints
            and bool(self.settings.base_url)
            and self.settings.enabled
        )

    def is_enabled(self) -> bool:
        """Read the runtime feature flag, cached for ``flag_cache_seconds``."""

        now = self._clock()
        if (
            self._flag_value is not None
            and now - self._flag_checked_at < self.settings.flag_cache_seconds
        ):
            return self._flag_value
        try:
            self._flag_value = self.repository.get_system_setting(key=PROXY_FLAG_KEY) == "true"
        except SQLAlchemyError as error:
            logger.warning("Failed to read %s, proxy disabled: %s", PROXY_FLAG_KEY, error)
            self._flag_value = False
        self._flag_checked_at = now
        return self._flag_value

    def call(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult | None:
        endpoint = self.endpoints.get(tool_name)
        if endpoint is None or not self.is_eligible(tool_name) or not self.is_enabled():
            return None

        body = {
            "task_id": context.task.task_id,
            "actor": context.actor,
            "role": context.role,
            **tool_input,
        }
        try:
            response = self._client.post(f"/{endpoint}", json=body)
        except httpx.TimeoutException:
            logger.error("Proxy %s -> /%s timed out", tool_name, endpoint)
            return None
        except httpx.HTTPError as exc:
            logger.error("Proxy %s -> /%s failed: %s", tool_name, endpoint, exc)
            return None

        if not response.is_success:
            logger.error(
                "Proxy %s -> /%s failed (%d): %.500s",
                tool_name,
                endpoint,
                response.status_code,
                response.text,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            logger.error("Proxy %s -> /%s returned invalid JSON", tool_name, endpoint)
            return None
        if not isinstance(data, dict):
            return None
        return ToolResult(
            success=bool(data.get("success", False)),
            data=data,
            error=str(data["error"]) if data.get("error") else None,
        )

    def close(self) -> None:
        self._client.close()
