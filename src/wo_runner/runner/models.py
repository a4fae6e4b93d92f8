"""Domain models for work-order tasks, events and mutation records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

REMEDIATION_TAGS = frozenset({"remediation", "auto-qa-loop"})
QUERY_ONLY_TAG = "query-only"


class TaskStatus(str, Enum):
    """Work-order lifecycle states."""

    DRAFT = "draft"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING_APPROVAL = "pending_approval"


class ErrorClass(str, Enum):
    """Normalized error classes attached to failed mutations."""

    SQL_SYNTAX = "sql_syntax"
    RLS_VIOLATION = "rls_violation"
    SCHEMA_MISMATCH = "schema_mismatch"
    ENCODING_ERROR = "encoding_error"
    MATCH_FAILED = "match_failed"
    PERMISSION_DENIED = "permission_denied"
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    ENFORCEMENT_BLOCKED = "enforcement_blocked"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a work order."""

    name: str
    objective: str
    acceptance_criteria: str | None = None
    tags: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.READY
    assigned_to: str = "builder"
    priority: int = 100
    metadata: dict[str, Any] = field(default_factory=dict)
    qa_checklist: list[dict[str, Any]] = field(default_factory=list)
    depends_on: tuple[str, ...] = ()
    parent_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for the loop, executor and CLI."""

    task_id: str
    slug: str
    name: str
    objective: str
    acceptance_criteria: str | None
    tags: tuple[str, ...]
    status: TaskStatus
    assigned_to: str
    priority: int
    metadata: dict[str, Any]
    qa_checklist: list[dict[str, Any]]
    depends_on: tuple[str, ...]
    parent_id: str | None
    summary: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_remediation(self) -> bool:
        return any(tag in REMEDIATION_TAGS or tag.startswith("parent:") for tag in self.tags)

    @property
    def parent_slug_tag(self) -> str | None:
        for tag in self.tags:
            if tag.startswith("parent:"):
                return tag.removeprefix("parent:")
        return None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail and checkpoints."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    actor: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class MutationWrite:
    """One state-changing tool call outcome."""

    task_id: str
    tool_name: str
    object_type: str
    object_id: str | None
    action: str
    success: bool
    actor: str
    error_class: ErrorClass | None = None
    error_detail: str | None = None
    context: dict[str, Any] | None = None
    result_hash: str | None = None
    proxy_mode: str = "local"


@dataclass(slots=True)
class MutationView:
    """Stored mutation record."""

    mutation_id: int
    task_id: str
    tool_name: str
    object_type: str
    object_id: str | None
    action: str
    success: bool
    error_class: ErrorClass | None
    error_detail: str | None
    context: dict[str, Any]
    result_hash: str | None
    proxy_mode: str
    actor: str
    created_at: datetime

    @property
    def target(self) -> str:
        return self.object_id or self.object_type


@dataclass(slots=True)
class MutationDigest:
    """Aggregated mutation counts for one task."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    by_error_class: dict[str, int] = field(default_factory=dict)

    def to_details(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "by_error_class": dict(self.by_error_class),
        }

    @classmethod
    def from_details(cls, payload: dict[str, Any] | None) -> MutationDigest | None:
        if not payload:
            return None
        return cls(
            total=int(payload.get("total", 0)),
            successful=int(payload.get("successful", 0)),
            failed=int(payload.get("failed", 0)),
            by_error_class={
                str(key): int(value)
                for key, value in (payload.get("by_error_class") or {}).items()
            },
        )


@dataclass(slots=True)
class FailedApproach:
    """A (tool, target, error class) triple that should not be retried."""

    tool: str
    target: str
    action: str
    error_class: str
    error_detail: str | None = None

    def to_details(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "target": self.target,
            "action": self.action,
            "error_class": self.error_class,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_details(cls, payload: dict[str, Any]) -> FailedApproach:
        return cls(
            tool=str(payload.get("tool", "")),
            target=str(payload.get("target", "")),
            action=str(payload.get("action", "")),
            error_class=str(payload.get("error_class") or ErrorClass.UNKNOWN.value),
            error_detail=payload.get("error_detail"),
        )
