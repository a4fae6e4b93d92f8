from __future__ import annotations

import allure
import pytest

from fakes import FakeClock, FakeProvider, TickingProvider, tool_call
from wo_runner.config import EscalationSettings
from wo_runner.runner.executor import OutcomeStatus, TaskExecutor
from wo_runner.runner.models import MutationWrite, TaskCreate, TaskStatus

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Executor Trampoline"),
]

_WRITE = ("workspace_write_file", {"path": "hello.txt", "content": "Hello"})
_COMPLETE = ("mark_complete", {"summary": "Wrote hello.txt"})
_LADDER = ("claude-haiku-4-5", "claude-sonnet-4-5")


class ScriptedFactory:
    """Hands out prepared providers in order and records requested models."""

    def __init__(self, *providers: FakeProvider) -> None:
        self.providers = list(providers)
        self.models: list[str] = []

    def __call__(self, model: str) -> FakeProvider:
        self.models.append(model)
        if not self.providers:
            raise AssertionError(f"No provider prepared for {model}")
        return self.providers.pop(0)


@pytest.fixture()
def make_executor(repository, settings):
    def _make(factory, *, clock: FakeClock | None = None) -> TaskExecutor:
        return TaskExecutor(
            repository=repository,
            settings=settings,
            provider_factory=factory,
            clock=clock or FakeClock(),
            sleep=lambda _: None,
        )

    return _make


def _seed_checkpoints(repository, task_id: str, count: int, *, successful: int = 0) -> None:
    digest = {"total": successful, "successful": successful, "failed": 0, "by_error_class": {}}
    for turn in range(count):
        repository.add_checkpoint(
            task_id=task_id,
            details={
                "turns_completed": 10 * (turn + 1),
                "last_actions": "workspace_read_file(ok)",
                "elapsed_seconds": 351.0,
                "mutation_digest": digest,
            },
        )


def _record_write(repository, task_id: str) -> None:
    repository.record_mutation(
        MutationWrite(
            task_id=task_id,
            tool_name="workspace_write_file",
            object_type="workspace_file",
            object_id="hello.txt",
            action="WRITE",
            success=True,
            actor="tester",
        ),
    )


def test_ready_task_runs_to_completion(repository, settings, make_task, make_executor) -> None:
    task = make_task(start=False)
    provider = FakeProvider([tool_call(_WRITE), tool_call(_COMPLETE)])
    factory = ScriptedFactory(provider)

    outcome = make_executor(factory).execute(task.task_id)

    assert outcome.status == OutcomeStatus.COMPLETED
    assert outcome.turns == 2
    assert outcome.needs_redispatch is False
    stored = repository.require_task(task_id=task.task_id)
    assert stored.status == TaskStatus.DONE
    assert stored.summary == "Wrote hello.txt"
    assert factory.models == ["claude-sonnet-4-5"]
    assert provider.closed is True
    assert "## Available Tools" in provider.requests[0].system
    assert provider.requests[0].turns[0].text.startswith(f"# Work Order: {task.slug}")
    workdir = settings.workdir_root / task.task_id
    assert (workdir / "hello.txt").read_text(encoding="utf-8") == "Hello"
    assert not (settings.workdir_root / task.slug).exists()


def test_missing_and_finished_tasks_are_skipped(repository, make_task, make_executor) -> None:
    executor = make_executor(ScriptedFactory())
    task = make_task()
    repository.complete_task(task_id=task.task_id, summary="done")

    missing = executor.execute("no-such-task")
    finished = executor.execute(task.task_id)

    assert missing.status == OutcomeStatus.SKIPPED
    assert finished.status == OutcomeStatus.SKIPPED
    assert finished.summary == "Task is not runnable from status=done"


def test_loop_failure_marks_task_failed(repository, make_task, make_executor) -> None:
    task = make_task()
    factory = ScriptedFactory(FakeProvider([tool_call(("mark_failed", {"reason": "No access"}))]))

    outcome = make_executor(factory).execute(task.task_id)

    assert outcome.status == OutcomeStatus.FAILED
    assert repository.require_task(task_id=task.task_id).status == TaskStatus.FAILED
    failed = repository.latest_event(task_id=task.task_id, event_type="failed")
    assert failed.details["reason"] == "No access"
    assert failed.details["turns"] == 1


def test_checkpoint_then_continuation(repository, make_task, make_executor) -> None:
    task = make_task()
    clock = FakeClock()
    first = TickingProvider(
        [tool_call(_WRITE), tool_call(("log_progress", {"content": "Greeting drafted"}))],
        clock=clock,
        seconds_per_call=200.0,
    )
    second = FakeProvider([tool_call(_COMPLETE)])
    executor = make_executor(ScriptedFactory(first, second), clock=clock)

    suspended = executor.execute(task.task_id)

    assert suspended.status == OutcomeStatus.SUSPENDED
    assert suspended.needs_redispatch is True
    assert suspended.resume_token.checkpoint_id is not None
    assert repository.count_checkpoints(task_id=task.task_id) == 1
    assert repository.latest_event(task_id=task.task_id, event_type="checkpoint_continue")

    resumed = executor.execute(task.task_id, resume=suspended.resume_token)

    assert resumed.status == OutcomeStatus.COMPLETED
    prompt = second.requests[0].turns[0].text
    assert prompt.startswith(f"# CONTINUATION -- Work Order: {task.slug}")
    assert "Continuation #2 of max 8." in prompt
    assert "- Wrote: hello.txt\n- Greeting drafted\n" in prompt
    assert "- hello.txt\n" in prompt
    continuation = repository.latest_event(task_id=task.task_id, event_type="continuation_start")
    assert continuation.details == {"checkpoint_count": 1, "previous_turns": 2}


def test_circuit_breaker_without_ladder_fails_and_spawns_remediation(
    repository,
    make_task,
    make_executor,
) -> None:
    task = make_task()
    _seed_checkpoints(repository, task.task_id, 3)

    outcome = make_executor(ScriptedFactory()).execute(task.task_id)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.summary.startswith("Circuit breaker (3 checkpoints)")
    assert repository.require_task(task_id=task.task_id).status == TaskStatus.FAILED
    decision = repository.latest_event(task_id=task.task_id, event_type="circuit_breaker_decision")
    assert decision.details["decision"] == "stuck"

    [child] = repository.list_children(parent_id=task.task_id)
    assert child.status == TaskStatus.DRAFT
    assert child.tags == ("remediation", f"parent:{task.slug}")
    assert child.name == f"Fix: {task.slug} ({task.name})"


def test_circuit_breaker_continues_while_mutations_grow(
    repository,
    make_task,
    make_executor,
) -> None:
    task = make_task()
    _seed_checkpoints(repository, task.task_id, 3)
    _record_write(repository, task.task_id)
    factory = ScriptedFactory(FakeProvider([tool_call(_COMPLETE)]))

    outcome = make_executor(factory).execute(task.task_id)

    assert outcome.status == OutcomeStatus.COMPLETED
    decision = repository.latest_event(task_id=task.task_id, event_type="circuit_breaker_decision")
    assert decision.details["decision"] == "continue"
    assert decision.details["delta"] == 1


def test_hard_cap_fails_even_with_progress(repository, make_task, make_executor) -> None:
    task = make_task()
    _seed_checkpoints(repository, task.task_id, 8)
    _record_write(repository, task.task_id)

    outcome = make_executor(ScriptedFactory()).execute(task.task_id)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.summary == "Hard circuit breaker cap: 8 checkpoints reached. Marking failed."


def test_stuck_task_escalates_to_next_tier(repository, settings, make_task, make_executor) -> None:
    settings.escalation = EscalationSettings(tiers={"builder": _LADDER})
    task = make_task()
    _seed_checkpoints(repository, task.task_id, 3)
    provider = FakeProvider([tool_call(_COMPLETE)])
    factory = ScriptedFactory(provider)
    executor = make_executor(factory)

    escalated = executor.execute(task.task_id)

    assert escalated.status == OutcomeStatus.ESCALATED
    assert escalated.summary.startswith("Escalated: Circuit breaker (3 checkpoints)")
    assert escalated.resume_token.escalation_tier == 2
    assert repository.count_checkpoints(task_id=task.task_id) == 0
    assert factory.models == []

    completed = executor.execute(task.task_id, resume=escalated.resume_token)

    assert completed.status == OutcomeStatus.COMPLETED
    assert factory.models == ["claude-sonnet-4-5"]
    message = provider.requests[0].turns[0].text
    assert "## ESCALATION CONTEXT" in message
    assert "You have been escalated to tier 2 (model: claude-sonnet-4-5)." in message
    assert "- Previous model: claude-haiku-4-5" in message


def test_remediation_for_resolved_parent_is_moot(repository, make_task, make_executor) -> None:
    parent = make_task()
    repository.complete_task(task_id=parent.task_id, summary="Fixed by hand")
    child = repository.create_task(
        TaskCreate(
            name=f"Fix: {parent.slug}",
            objective="retry",
            tags=("remediation", f"parent:{parent.slug}"),
            parent_id=parent.task_id,
        ),
    )

    outcome = make_executor(ScriptedFactory()).execute(child.task_id)

    assert outcome.status == OutcomeStatus.COMPLETED
    assert outcome.summary == (
        f"Parent {parent.slug} already resolved (done), remediation unnecessary"
    )
    assert repository.require_task(task_id=child.task_id).status == TaskStatus.DONE


def test_missing_credentials_fail_the_task(repository, make_task, settings) -> None:
    task = make_task()
    executor = TaskExecutor(repository=repository, settings=settings, sleep=lambda _: None)

    outcome = executor.execute(task.task_id)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.summary == "Provider configuration error: ANTHROPIC_API_KEY is not set."
    assert repository.require_task(task_id=task.task_id).status == TaskStatus.FAILED


def test_unexpected_executor_error_fails_the_task(repository, make_task, make_executor) -> None:
    task = make_task()

    def broken_factory(model: str) -> FakeProvider:
        raise RuntimeError("provider registry exploded")

    outcome = make_executor(broken_factory).execute(task.task_id)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.summary == "Executor error: provider registry exploded"
    assert repository.require_task(task_id=task.task_id).status == TaskStatus.FAILED


def test_role_allow_list_limits_advertised_tools(repository, settings, make_task, make_executor):
    settings.tool_access.role_tools = {"reviewer": ("workspace_read_file", "mark_complete")}
    task = make_task(assigned_to="reviewer")
    provider = FakeProvider([tool_call(_COMPLETE)])

    make_executor(ScriptedFactory(provider)).execute(task.task_id)

    assert [tool.name for tool in provider.requests[0].tools] == [
        "mark_complete",
        "workspace_read_file",
    ]
    assert "You are the reviewer agent" in provider.requests[0].system
