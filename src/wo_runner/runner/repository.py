"""Persistent task store with named status transitions."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from wo_runner.runner.models import (
    ErrorClass,
    FailedApproach,
    MutationDigest,
    MutationView,
    MutationWrite,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from wo_runner.storage.alembic_runner import upgrade_head
from wo_runner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from wo_runner.storage.sqlmodel_models import SystemSetting, Task, TaskEvent, TaskMutation

CHECKPOINT_EVENT = "checkpoint"
MAX_ERROR_DETAIL_CHARS = 500
MAX_REMEDIATION_WALK = 4
_SLUG_PATTERN = re.compile(r"^WO-(\d+)$")


class TaskNotFoundError(RuntimeError):
    """Raised when an operation references an unknown task."""


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Every status change is a conditional update on the expected source status,
    so concurrent runners cannot both win the same transition.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        actor: str = "wo-runner",
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.actor = actor
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a work order with the next sequential slug."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            slug = self._next_slug(session)
            row = Task(
                task_id=task_id,
                slug=slug,
                name=payload.name,
                objective=payload.objective,
                acceptance_criteria=payload.acceptance_criteria,
                tags_json=_dump(list(payload.tags)),
                status=payload.status.value,
                assigned_to=payload.assigned_to,
                priority=payload.priority,
                metadata_json=_dump(payload.metadata),
                qa_checklist_json=_dump(payload.qa_checklist),
                depends_on_json=_dump(list(payload.depends_on)),
                parent_id=payload.parent_id,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=payload.status,
                details={
                    "slug": slug,
                    "priority": payload.priority,
                    "assigned_to": payload.assigned_to,
                    "parent_id": payload.parent_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, *, task_id: str) -> TaskView:
        task = self.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def get_task_by_slug(self, *, slug: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.slug == slug)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def resolve_task(self, *, reference: str) -> TaskView | None:
        """Find a task by id or slug."""

        task = self.get_task(task_id=reference)
        if task is None:
            task = self.get_task_by_slug(slug=reference)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_ready_tasks(self) -> list[TaskView]:
        """Ready tasks whose dependencies are all done."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.status == TaskStatus.READY.value)
                .order_by(col(Task.priority).asc(), col(Task.created_at).asc()),
            ).all()
            ready = [_to_task_view(row) for row in rows]
            dependency_ids = {dep for task in ready for dep in task.depends_on}
            done_ids: set[str] = set()
            if dependency_ids:
                done_ids = set(
                    session.exec(
                        select(Task.task_id).where(
                            col(Task.task_id).in_(dependency_ids),
                            Task.status == TaskStatus.DONE.value,
                        ),
                    ).all(),
                )
        return [task for task in ready if all(dep in done_ids for dep in task.depends_on)]

    def list_in_progress(
        self,
        *,
        exclude_task_id: str | None = None,
        limit: int = 5,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(Task.status == TaskStatus.IN_PROGRESS.value)
                .order_by(col(Task.started_at).desc())
                .limit(limit)
            )
            if exclude_task_id is not None:
                statement = statement.where(Task.task_id != exclude_task_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_children(self, *, parent_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.parent_id == parent_id)
                .order_by(col(Task.created_at).desc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks_by_ids(self, *, task_ids: Iterable[str]) -> list[TaskView]:
        ids = list(task_ids)
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(select(Task).where(col(Task.task_id).in_(ids))).all()
        return [_to_task_view(row) for row in rows]

    def remediation_depth(self, *, task_id: str) -> int:
        """Count ancestors through parent links, bounded to a short walk."""

        depth = 0
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            parent_id = row.parent_id if row is not None else None
            while parent_id is not None and depth < MAX_REMEDIATION_WALK:
                depth += 1
                parent = session.get(Task, parent_id)
                parent_id = parent.parent_id if parent is not None else None
        return depth

    def update_qa_checklist(self, *, task_id: str, items: list[dict[str, Any]]) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            row.qa_checklist_json = _dump(items)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="qa_checklist_updated",
                status_from=None,
                status_to=None,
                details={"items": len(items)},
            )
            session.commit()

    # Named transitions

    def approve_task(self, *, task_id: str) -> None:
        """Operator approval: draft/pending_approval -> ready."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.DRAFT, TaskStatus.PENDING_APPROVAL}:
                raise RuntimeError(f"Task cannot be approved from status={row.status}")
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=previous,
                values={"status": TaskStatus.READY.value},
            ):
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while approving; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="approved",
                status_from=previous,
                status_to=TaskStatus.READY,
                details={},
            )
            session.commit()

    def start_task(self, *, task_id: str) -> bool:
        """Claim a ready task for execution."""

        now = utc_now()
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=TaskStatus.READY,
                values={
                    "status": TaskStatus.IN_PROGRESS.value,
                    "started_at": to_db_datetime(now),
                    "finished_at": None,
                },
            ):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.READY,
                status_to=TaskStatus.IN_PROGRESS,
                details={},
            )
            session.commit()
            return True

    def checkpoint_continue(self, *, task_id: str, checkpoint_id: int | None) -> bool:
        """Record that an in-progress task suspended and awaits re-dispatch."""

        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=TaskStatus.IN_PROGRESS,
                values={},
            ):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="checkpoint_continue",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.IN_PROGRESS,
                details={"checkpoint_id": checkpoint_id},
            )
            session.commit()
            return True

    def escalate_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        tier: int,
        model: str,
        previous_model: str,
        reason: str,
    ) -> bool:
        """Move a task to a higher model tier and reset its checkpoint history."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            metadata = _load_dict(row.metadata_json)
            metadata.update(
                {
                    "escalation_tier": tier,
                    "escalation_model": model,
                    "previous_model": previous_model,
                    "escalation_reason": reason,
                },
            )
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=TaskStatus.IN_PROGRESS,
                values={"metadata_json": _dump(metadata)},
            ):
                session.rollback()
                return False
            session.exec(
                sa_delete(TaskEvent).where(
                    col(TaskEvent.task_id) == task_id,
                    col(TaskEvent.event_type) == CHECKPOINT_EVENT,
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="escalated",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.IN_PROGRESS,
                details={
                    "previous_model": previous_model,
                    "next_model": model,
                    "next_tier": tier,
                    "reason": reason,
                },
            )
            session.commit()
            return True

    def complete_task(self, *, task_id: str, summary: str) -> bool:
        """Mark an in-progress task as done."""

        now = utc_now()
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=TaskStatus.IN_PROGRESS,
                values={
                    "status": TaskStatus.DONE.value,
                    "summary": summary,
                    "finished_at": to_db_datetime(now),
                },
            ):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.DONE,
                details={"summary": summary},
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an in-progress task as failed with a human-readable reason."""

        now = utc_now()
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=TaskStatus.IN_PROGRESS,
                values={
                    "status": TaskStatus.FAILED.value,
                    "summary": reason,
                    "finished_at": to_db_datetime(now),
                },
            ):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.FAILED,
                details={"reason": reason, **(details or {})},
            )
            session.commit()
            return True

    def cancel_task(self, *, task_id: str) -> None:
        """Cancel a task that has not reached a terminal state."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous in {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELLED}:
                raise RuntimeError(f"Task cannot be cancelled from status={row.status}")
            if not self._conditional_update(
                session=session,
                task_id=task_id,
                expected=previous,
                values={
                    "status": TaskStatus.CANCELLED.value,
                    "finished_at": to_db_datetime(now),
                },
            ):
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={},
            )
            session.commit()

    # Events and checkpoints

    def add_event(self, *, task_id: str, event_type: str, details: dict[str, object]) -> int:
        """Append one progress event and return its id."""

        with Session(self.engine) as session:
            row = self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return row.id or 0

    def add_checkpoint(self, *, task_id: str, details: dict[str, object]) -> int:
        return self.add_event(task_id=task_id, event_type=CHECKPOINT_EVENT, details=details)

    def count_checkpoints(self, *, task_id: str) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(TaskEvent)
                    .where(
                        TaskEvent.task_id == task_id,
                        TaskEvent.event_type == CHECKPOINT_EVENT,
                    ),
                ).one(),
            )

    def latest_checkpoint(self, *, task_id: str) -> TaskEventView | None:
        events = self.list_events(task_id=task_id, event_type=CHECKPOINT_EVENT, limit=1)
        return events[0] if events else None

    def latest_event(self, *, task_id: str, event_type: str) -> TaskEventView | None:
        events = self.list_events(task_id=task_id, event_type=event_type, limit=1)
        return events[0] if events else None

    def list_events(
        self,
        *,
        task_id: str,
        event_type: str | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[TaskEventView]:
        with Session(self.engine) as session:
            order = col(TaskEvent.id).desc() if newest_first else col(TaskEvent.id).asc()
            statement = select(TaskEvent).where(TaskEvent.task_id == task_id).order_by(order)
            if event_type is not None:
                statement = statement.where(TaskEvent.event_type == event_type)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        task = self.get_task(task_id=task_id)
        if task is None:
            return None
        return TaskDetails(
            task=task,
            events=self.list_events(task_id=task_id, newest_first=False),
        )

    # Mutations

    def record_mutation(self, payload: MutationWrite) -> int:
        """Persist one mutation record and return its id."""

        with Session(self.engine) as session:
            row = TaskMutation(
                task_id=payload.task_id,
                tool_name=payload.tool_name,
                object_type=payload.object_type,
                object_id=payload.object_id,
                action=payload.action,
                success=payload.success,
                error_class=payload.error_class.value if payload.error_class is not None else None,
                error_detail=(
                    payload.error_detail[:MAX_ERROR_DETAIL_CHARS]
                    if payload.error_detail is not None
                    else None
                ),
                context_json=_dump(payload.context) if payload.context else None,
                result_hash=payload.result_hash,
                proxy_mode=payload.proxy_mode,
                actor=payload.actor,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id or 0

    def count_mutations(self, *, task_id: str, success: bool | None = None) -> int:
        with Session(self.engine) as session:
            statement = (
                select(func.count())
                .select_from(TaskMutation)
                .where(TaskMutation.task_id == task_id)
            )
            if success is not None:
                statement = statement.where(TaskMutation.success == success)
            return int(session.exec(statement).one())

    def list_mutations(
        self,
        *,
        task_id: str,
        success: bool | None = None,
        tool_name: str | None = None,
        limit: int | None = None,
    ) -> list[MutationView]:
        """List mutations newest first."""

        with Session(self.engine) as session:
            statement = (
                select(TaskMutation)
                .where(TaskMutation.task_id == task_id)
                .order_by(col(TaskMutation.id).desc())
            )
            if success is not None:
                statement = statement.where(TaskMutation.success == success)
            if tool_name is not None:
                statement = statement.where(TaskMutation.tool_name == tool_name)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_mutation_view(row) for row in rows]

    def mutation_digest(self, *, task_id: str) -> MutationDigest:
        digest = MutationDigest()
        for mutation in self.list_mutations(task_id=task_id):
            digest.total += 1
            if mutation.success:
                digest.successful += 1
                continue
            digest.failed += 1
            error_class = (mutation.error_class or ErrorClass.UNKNOWN).value
            digest.by_error_class[error_class] = digest.by_error_class.get(error_class, 0) + 1
        return digest

    def failed_approaches(self, *, task_id: str, limit: int = 20) -> list[FailedApproach]:
        """Recent failed mutations deduplicated by tool, target and error class."""

        grouped: dict[str, FailedApproach] = {}
        for mutation in self.list_mutations(task_id=task_id, success=False, limit=limit):
            error_class = (mutation.error_class or ErrorClass.UNKNOWN).value
            key = f"{mutation.tool_name}:{mutation.target}:{error_class}"
            if key in grouped:
                continue
            grouped[key] = FailedApproach(
                tool=mutation.tool_name,
                target=mutation.target,
                action=mutation.action,
                error_class=error_class,
                error_detail=mutation.error_detail[:200] if mutation.error_detail else None,
            )
        return list(grouped.values())

    # System settings

    def get_system_setting(self, *, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(SystemSetting, key)
            return row.setting_value if row is not None else None

    def set_system_setting(self, *, key: str, value: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(SystemSetting, key)
            if row is None:
                row = SystemSetting(
                    setting_key=key,
                    setting_value=value,
                    updated_at=to_db_datetime(now),
                )
            else:
                row.setting_value = value
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    # Internals

    def _next_slug(self, session: Session) -> str:
        slugs = session.exec(select(Task.slug)).all()
        highest = 0
        for slug in slugs:
            match = _SLUG_PATTERN.match(slug)
            if match is not None:
                highest = max(highest, int(match.group(1)))
        return f"WO-{highest + 1:04d}"

    def _conditional_update(
        self,
        *,
        session: Session,
        task_id: str,
        expected: TaskStatus,
        values: dict[str, Any],
    ) -> bool:
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == expected.value,
            )
            .values(**values, updated_at=to_db_datetime(utc_now())),
        )
        return result.rowcount == 1

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.get(Task, task_id)
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> TaskEvent:
        row = TaskEvent(
            task_id=task_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            actor=self.actor,
            details_json=_dump(details) if details else None,
            created_at=to_db_datetime(utc_now()),
        )
        session.add(row)
        return row


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        slug=row.slug,
        name=row.name,
        objective=row.objective,
        acceptance_criteria=row.acceptance_criteria,
        tags=tuple(str(tag) for tag in _load_list(row.tags_json)),
        status=TaskStatus(row.status),
        assigned_to=row.assigned_to,
        priority=row.priority,
        metadata=_load_dict(row.metadata_json),
        qa_checklist=[item for item in _load_list(row.qa_checklist_json) if isinstance(item, dict)],
        depends_on=tuple(str(dep) for dep in _load_list(row.depends_on_json)),
        parent_id=row.parent_id,
        summary=row.summary,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        actor=row.actor,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_load_dict(row.details_json),
    )


def _to_mutation_view(row: TaskMutation) -> MutationView:
    return MutationView(
        mutation_id=row.id or 0,
        task_id=row.task_id,
        tool_name=row.tool_name,
        object_type=row.object_type,
        object_id=row.object_id,
        action=row.action,
        success=bool(row.success),
        error_class=ErrorClass(row.error_class) if row.error_class is not None else None,
        error_detail=row.error_detail,
        context=_load_dict(row.context_json),
        result_hash=row.result_hash,
        proxy_mode=row.proxy_mode,
        actor=row.actor,
        created_at=to_utc_aware_datetime(row.created_at),
    )
