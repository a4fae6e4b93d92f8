from __future__ import annotations

from pathlib import Path

import allure
import pytest

from wo_runner.config import (
    CircuitBreakerSettings,
    LoopSettings,
    ProxySettings,
    Settings,
    ToolAccessSettings,
)

pytestmark = [
    allure.epic("Runner Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("WO_RUNNER_DB_PATH", "WO_RUNNER_ESCALATION_TIERS", "WO_RUNNER_ROLE_TOOLS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".wo_runner.db")
    assert settings.loop.checkpoint_seconds == 350.0
    assert settings.loop.timeout_seconds == 380.0
    assert settings.loop.stall_window == 5
    assert settings.circuit_breaker.stable_checkpoints == 3
    assert settings.circuit_breaker.hard_cap_checkpoints == 8
    assert settings.escalation.tiers == {}
    assert settings.tool_access.allowed_for("builder") is None


def test_from_env_parses_role_maps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "WO_RUNNER_ESCALATION_TIERS",
        "builder=claude-haiku-4-5, claude-sonnet-4-5;reviewer=gpt-4o-mini",
    )
    monkeypatch.setenv("WO_RUNNER_ROLE_TOOLS", "reviewer=workspace_read_file,mark_complete")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.escalation.tiers == {
        "builder": ("claude-haiku-4-5", "claude-sonnet-4-5"),
        "reviewer": ("gpt-4o-mini",),
    }
    assert settings.tool_access.allowed_for("reviewer") == frozenset(
        {"workspace_read_file", "mark_complete"},
    )


def test_from_env_rejects_malformed_role_map(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WO_RUNNER_ESCALATION_TIERS", "builder")

    with pytest.raises(ValueError, match="Expected format 'role=item1,item2'"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WO_RUNNER_PROXY_ENABLED", "maybe")

    with pytest.raises(ValueError, match="WO_RUNNER_PROXY_ENABLED"):
        Settings.from_env()


def test_validate_for_run_requires_checkpoint_below_timeout() -> None:
    settings = Settings(loop=LoopSettings(checkpoint_seconds=400.0, timeout_seconds=380.0))

    with pytest.raises(ValueError, match="WO_RUNNER_CHECKPOINT_SECONDS must be lower"):
        settings.validate_for_run()


def test_validate_for_run_requires_stable_threshold_below_hard_cap() -> None:
    settings = Settings(
        circuit_breaker=CircuitBreakerSettings(stable_checkpoints=8, hard_cap_checkpoints=8),
    )

    with pytest.raises(ValueError, match="WO_RUNNER_STABLE_CHECKPOINTS"):
        settings.validate_for_run()


def test_validate_for_run_rejects_relative_proxy_url() -> None:
    settings = Settings(proxy=ProxySettings(base_url="proxy.local/api"))

    with pytest.raises(ValueError, match="Invalid WO_RUNNER_PROXY_BASE_URL"):
        settings.validate_for_run()


def test_validate_for_run_accepts_defaults() -> None:
    Settings().validate_for_run()


def test_tool_access_missing_role_allows_everything() -> None:
    access = ToolAccessSettings(role_tools={"reviewer": ("workspace_read_file",)})

    assert access.allowed_for("builder") is None
    assert access.allowed_for("reviewer") == frozenset({"workspace_read_file"})
