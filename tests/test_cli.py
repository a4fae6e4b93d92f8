from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from wo_runner.main import wo_runner

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Tasks, Runs, Settings"),
]

_ENV_KEYS = (
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "WO_RUNNER_DEFAULT_MODEL",
    "WO_RUNNER_ESCALATION_TIERS",
    "WO_RUNNER_ROLE_TOOLS",
    "WO_RUNNER_PROXY_BASE_URL",
    "WO_RUNNER_PARALLEL_SLOTS",
    "WO_RUNNER_MAX_INVOCATIONS",
)


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("WO_RUNNER_WORKDIR", str(tmp_path / "workdirs"))
    return tmp_path / "cli.db"


def _invoke(*args: str):
    return CliRunner().invoke(wo_runner, list(args))


def test_task_lifecycle_commands(cli_env: Path) -> None:
    db = str(cli_env)

    empty = _invoke("tasks", "list", "--db-path", db)
    assert empty.exit_code == 0, empty.output
    assert "No tasks found." in empty.output

    created = _invoke(
        "tasks",
        "add",
        "--db-path",
        db,
        "--name",
        "Write greeting",
        "--objective",
        "Create hello.txt",
        "--tag",
        "docs",
        "--priority",
        "10",
        "--draft",
    )
    assert created.exit_code == 0, created.output
    match = re.search(r"Task created: slug=(WO-\d{4}) task_id=\S+ status=draft", created.output)
    assert match is not None
    slug = match.group(1)

    approved = _invoke("tasks", "approve", "--db-path", db, slug)
    assert approved.exit_code == 0, approved.output
    assert f"Task approved: {slug}" in approved.output

    listed = _invoke("tasks", "list", "--db-path", db, "--status", "ready")
    assert f"{slug} status=ready priority=10 role=builder name=Write greeting" in listed.output

    shown = _invoke("tasks", "show", "--db-path", db, slug)
    assert shown.exit_code == 0, shown.output
    assert "Status: ready" in shown.output
    assert "Tags: docs" in shown.output
    assert "Mutations: total=0 successful=0 failed=0" in shown.output
    assert "Events: 2" in shown.output

    cancelled = _invoke("tasks", "cancel", "--db-path", db, slug)
    assert cancelled.exit_code == 0, cancelled.output
    assert f"Task cancelled: {slug}" in cancelled.output


def test_approving_a_ready_task_is_an_error(cli_env: Path) -> None:
    db = str(cli_env)
    _invoke("tasks", "add", "--db-path", db, "--name", "A", "--objective", "a")

    result = _invoke("tasks", "approve", "--db-path", db, "WO-0001")

    assert result.exit_code == 1


def test_unknown_dependency_is_reported(cli_env: Path) -> None:
    result = _invoke(
        "tasks",
        "add",
        "--db-path",
        str(cli_env),
        "--name",
        "B",
        "--objective",
        "b",
        "--depends-on",
        "WO-0042",
    )

    assert result.exit_code == 0, result.output
    assert "Dependency not found: WO-0042" in result.output


def test_settings_round_trip(cli_env: Path) -> None:
    db = str(cli_env)

    missing = _invoke("settings", "get", "--db-path", db, "verify_proxy_enabled")
    assert "Setting not set: verify_proxy_enabled" in missing.output

    saved = _invoke("settings", "set", "--db-path", db, "verify_proxy_enabled", "false")
    assert "Setting saved: verify_proxy_enabled=false" in saved.output

    loaded = _invoke("settings", "get", "--db-path", db, "verify_proxy_enabled")
    assert "verify_proxy_enabled=false" in loaded.output


def test_run_without_credentials_fails_the_task(cli_env: Path) -> None:
    db = str(cli_env)
    _invoke("tasks", "add", "--db-path", db, "--name", "A", "--objective", "a")

    result = _invoke("run", "--db-path", db, "WO-0001")

    assert result.exit_code == 0, result.output
    assert "Run summary: task=WO-0001 status=failed invocations=1 turns=0" in result.output
    assert "Outcome: Provider configuration error: ANTHROPIC_API_KEY is not set." in result.output

    shown = _invoke("tasks", "show", "--db-path", db, "WO-0001")
    assert "Status: failed" in shown.output


def test_run_unknown_task(cli_env: Path) -> None:
    result = _invoke("run", "--db-path", str(cli_env), "WO-0099")

    assert result.exit_code == 0, result.output
    assert "Task not found: WO-0099" in result.output


def test_batch_on_empty_queue(cli_env: Path) -> None:
    result = _invoke("batch", "--db-path", str(cli_env), "--mode", "step")

    assert result.exit_code == 0, result.output
    assert (
        "Batch summary: waves=0 processed=0 completed=0 failed=0 unfinished=0 skipped=0"
        in result.output
    )


def test_invalid_loop_budget_is_rejected(cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("WO_RUNNER_CHECKPOINT_SECONDS", "500")

    result = _invoke("batch", "--db-path", str(cli_env))

    assert result.exit_code == 1
