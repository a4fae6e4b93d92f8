from __future__ import annotations

import allure
import pytest

from wo_runner.runner.models import (
    ErrorClass,
    MutationWrite,
    TaskCreate,
    TaskStatus,
)
from wo_runner.runner.repository import TaskNotFoundError, TaskRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Task Lifecycle"),
]


def _mutation(task_id: str, *, success: bool, target: str = "hello.txt", **extra) -> MutationWrite:
    return MutationWrite(
        task_id=task_id,
        tool_name=extra.pop("tool_name", "workspace_write_file"),
        object_type="workspace_file",
        object_id=target,
        action="WRITE",
        success=success,
        actor="tester",
        error_class=extra.pop("error_class", None),
        error_detail=extra.pop("error_detail", None),
    )


def test_create_task_assigns_sequential_slugs(repository: TaskRepository) -> None:
    first = repository.create_task(TaskCreate(name="A", objective="a"))
    second = repository.create_task(TaskCreate(name="B", objective="b", tags=("x", "y")))

    assert first.slug == "WO-0001"
    assert second.slug == "WO-0002"
    assert second.tags == ("x", "y")
    assert repository.resolve_task(reference="WO-0002").task_id == second.task_id
    assert repository.resolve_task(reference=first.task_id).slug == "WO-0001"
    assert repository.resolve_task(reference="WO-9999") is None


def test_lifecycle_transitions_are_conditional(repository: TaskRepository) -> None:
    task = repository.create_task(TaskCreate(name="A", objective="a"))

    assert repository.start_task(task_id=task.task_id) is True
    assert repository.start_task(task_id=task.task_id) is False
    assert repository.complete_task(task_id=task.task_id, summary="done") is True
    assert repository.fail_task(task_id=task.task_id, reason="late") is False

    stored = repository.require_task(task_id=task.task_id)
    assert stored.status == TaskStatus.DONE
    assert stored.summary == "done"
    assert stored.finished_at is not None

    details = repository.get_task_details(task_id=task.task_id)
    assert [event.event_type for event in details.events] == ["created", "started", "completed"]


def test_approve_and_cancel(repository: TaskRepository) -> None:
    draft = repository.create_task(
        TaskCreate(name="Draft", objective="d", status=TaskStatus.DRAFT),
    )
    repository.approve_task(task_id=draft.task_id)
    assert repository.require_task(task_id=draft.task_id).status == TaskStatus.READY

    with pytest.raises(RuntimeError, match="cannot be approved"):
        repository.approve_task(task_id=draft.task_id)

    repository.cancel_task(task_id=draft.task_id)
    assert repository.require_task(task_id=draft.task_id).status == TaskStatus.CANCELLED
    with pytest.raises(RuntimeError, match="cannot be cancelled"):
        repository.cancel_task(task_id=draft.task_id)


def test_require_task_raises_for_unknown_id(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.require_task(task_id="missing")


def test_ready_queue_respects_dependencies_and_priority(repository: TaskRepository) -> None:
    base = repository.create_task(TaskCreate(name="Base", objective="b", priority=50))
    blocked = repository.create_task(
        TaskCreate(name="Blocked", objective="x", priority=1, depends_on=(base.task_id,)),
    )
    urgent = repository.create_task(TaskCreate(name="Urgent", objective="u", priority=10))

    assert [task.slug for task in repository.list_ready_tasks()] == [urgent.slug, base.slug]

    repository.start_task(task_id=base.task_id)
    repository.complete_task(task_id=base.task_id, summary="ok")

    assert [task.slug for task in repository.list_ready_tasks()] == [blocked.slug, urgent.slug]


def test_checkpoints_are_counted_and_cleared_on_escalation(repository: TaskRepository) -> None:
    task = repository.create_task(TaskCreate(name="A", objective="a"))
    repository.start_task(task_id=task.task_id)
    first = repository.add_checkpoint(task_id=task.task_id, details={"turns_completed": 3})
    second = repository.add_checkpoint(task_id=task.task_id, details={"turns_completed": 6})

    assert repository.count_checkpoints(task_id=task.task_id) == 2
    assert repository.latest_checkpoint(task_id=task.task_id).event_id == second
    assert second > first

    assert repository.escalate_task(
        task_id=task.task_id,
        tier=2,
        model="claude-opus-4-1",
        previous_model="claude-sonnet-4-5",
        reason="stuck",
    )

    assert repository.count_checkpoints(task_id=task.task_id) == 0
    escalated = repository.require_task(task_id=task.task_id)
    assert escalated.status == TaskStatus.IN_PROGRESS
    assert escalated.metadata["escalation_tier"] == 2
    assert escalated.metadata["escalation_model"] == "claude-opus-4-1"
    assert escalated.metadata["previous_model"] == "claude-sonnet-4-5"
    event = repository.latest_event(task_id=task.task_id, event_type="escalated")
    assert event.details["next_tier"] == 2


def test_mutation_digest_and_failed_approaches(repository: TaskRepository) -> None:
    task = repository.create_task(TaskCreate(name="A", objective="a"))
    repository.record_mutation(_mutation(task.task_id, success=True))
    for _ in range(2):
        repository.record_mutation(
            _mutation(
                task.task_id,
                success=False,
                tool_name="workspace_edit_file",
                error_class=ErrorClass.MATCH_FAILED,
                error_detail="No matching text: old_string not found in file hello.txt",
            ),
        )
    repository.record_mutation(
        _mutation(task.task_id, success=False, target="other.txt", error_detail="boom"),
    )

    digest = repository.mutation_digest(task_id=task.task_id)
    assert (digest.total, digest.successful, digest.failed) == (4, 1, 3)
    assert digest.by_error_class == {"match_failed": 2, "unknown": 1}
    assert repository.count_mutations(task_id=task.task_id, success=True) == 1

    approaches = repository.failed_approaches(task_id=task.task_id)
    assert {(item.tool, item.target, item.error_class) for item in approaches} == {
        ("workspace_edit_file", "hello.txt", "match_failed"),
        ("workspace_write_file", "other.txt", "unknown"),
    }


def test_remediation_depth_walks_parent_links(repository: TaskRepository) -> None:
    root = repository.create_task(TaskCreate(name="Root", objective="r"))
    child = repository.create_task(TaskCreate(name="Child", objective="c", parent_id=root.task_id))
    grandchild = repository.create_task(
        TaskCreate(name="Grandchild", objective="g", parent_id=child.task_id),
    )

    assert repository.remediation_depth(task_id=root.task_id) == 0
    assert repository.remediation_depth(task_id=child.task_id) == 1
    assert repository.remediation_depth(task_id=grandchild.task_id) == 2
    assert [task.slug for task in repository.list_children(parent_id=root.task_id)] == [child.slug]


def test_system_settings_upsert(repository: TaskRepository) -> None:
    assert repository.get_system_setting(key="verify_proxy_enabled") is None
    repository.set_system_setting(key="verify_proxy_enabled", value="true")
    repository.set_system_setting(key="verify_proxy_enabled", value="false")
    assert repository.get_system_setting(key="verify_proxy_enabled") == "false"
