"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str
    objective: str = Field(sa_column=Column(Text, nullable=False))
    acceptance_criteria: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    assigned_to: str = Field(default="builder", index=True)
    priority: int = Field(default=100, index=True)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    qa_checklist_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    depends_on_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="SET NULL"), index=True),
    )
    summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_events_task_time", "task_id", "created_at"),
        Index("idx_task_events_task_type", "task_id", "event_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    actor: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskMutation(SQLModel, table=True):
    __tablename__ = "task_mutations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_mutations_task_success", "task_id", "success"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tool_name: str = Field(index=True)
    object_type: str
    object_id: str | None = None
    action: str
    success: bool = Field(sa_column=Column(Boolean, nullable=False, server_default=text("0")))
    error_class: str | None = Field(default=None, index=True)
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    result_hash: str | None = None
    proxy_mode: str = Field(default="local")
    actor: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemSetting(SQLModel, table=True):
    __tablename__ = "system_settings"  # type: ignore[bad-override]

    setting_key: str = Field(primary_key=True)
    setting_value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
