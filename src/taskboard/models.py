"""Pydantic models shared across API, lifecycle engine, stats, and storage.

Terms used in this file:
- Task: one card on the board, progressed by agents through a fixed status lifecycle.
- Activity: immutable audit event written by every state-changing operation.
- Usage: token/cost numbers an agent reports when it completes a task.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Board columns. Only `done` and `archived` are terminal for normal flow.
TaskStatus = Literal["backlog", "ready", "in_progress", "review", "done", "blocked", "archived"]
# Statuses a caller may set directly; `archived` is reached only via archive_column.
EditableStatus = Literal["backlog", "ready", "in_progress", "review", "done", "blocked"]

ActivityType = Literal[
    "task_created",
    "task_claimed",
    "task_completed",
    "task_blocked",
    "task_unblocked",
    "task_handoff",
    "task_updated",
    "task_deleted",
    "task_released",
]

# Why a lifecycle operation was rejected.
RejectionKind = Literal["not_found", "invalid_state", "not_authorized", "conflict"]

SYSTEM_ACTOR = "system"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Treat a timestamp without tzinfo as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Serialize a timestamp as UTC ISO-8601 text with millisecond precision.

    Fixed width keeps lexical order equal to chronological order, and the
    first 10 characters are always the calendar day.
    """
    return as_utc(value).isoformat(timespec="milliseconds")


class Task(BaseModel):
    """Canonical task record shape returned by API/storage."""

    id: str
    title: str
    description: str | None = None
    status: TaskStatus = "backlog"
    priority: int = 3
    skills_required: list[str] = Field(default_factory=list)
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    timeout_minutes: int = 30
    # Advisory back-reference set by handoff; never enforced on delete.
    parent_task_id: str | None = None
    output: Any | None = None
    blocked_reason: str | None = None
    due_date: date | None = None
    usage_input_tokens: int | None = None
    usage_output_tokens: int | None = None
    usage_model: str | None = None
    usage_cost_usd: float | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks and the `next_task` of a handoff."""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: EditableStatus | None = None
    priority: int = Field(default=3, ge=1, le=5)
    skills_required: list[str] = Field(default_factory=list)
    timeout_minutes: int = Field(default=30, gt=0)
    parent_task_id: str | None = None
    due_date: date | None = None


class UpdateTaskRequest(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: EditableStatus | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    skills_required: list[str] | None = None
    timeout_minutes: int | None = Field(default=None, gt=0)
    blocked_reason: str | None = None
    due_date: date | None = None


class UsageData(BaseModel):
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    model: str
    cost_usd: float | None = Field(default=None, ge=0)


class ClaimTaskRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class CompleteTaskRequest(BaseModel):
    output: Any | None = None
    usage: UsageData | None = None


class BlockTaskRequest(BaseModel):
    reason: str = Field(min_length=1)


class HandoffTaskRequest(BaseModel):
    output: Any | None = None
    next_task: CreateTaskRequest


class ArchiveColumnRequest(BaseModel):
    status: TaskStatus


class TaskQuery(BaseModel):
    status: TaskStatus | None = None
    # Comma-separated; a task matches when it requires at least one of them.
    skills: str | None = None
    claimed_by: str | None = None
    limit: int = Field(default=50, gt=0, le=100)
    offset: int = Field(default=0, ge=0)

    def skill_list(self) -> list[str]:
        if not self.skills:
            return []
        return [skill.strip() for skill in self.skills.split(",") if skill.strip()]


class LifecycleResult(BaseModel):
    """Outcome of a guarded lifecycle operation.

    Expected business conditions (not ready, already claimed, wrong claimant)
    come back as `success=False` with a readable reason, never as exceptions.
    """

    success: bool
    task: Task | None = None
    error: str | None = None
    error_kind: RejectionKind | None = None


class HandoffResult(BaseModel):
    success: bool
    completed_task: Task | None = None
    next_task: Task | None = None
    error: str | None = None
    error_kind: RejectionKind | None = None


class Activity(BaseModel):
    """Append-only audit event."""

    id: str
    type: ActivityType
    agent_id: str
    task_id: str | None = None
    task_title: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class ActivityQuery(BaseModel):
    agent_id: str | None = None
    task_id: str | None = None
    type: ActivityType | None = None
    since: datetime | None = None
    limit: int = Field(default=50, gt=0, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("since")
    @classmethod
    def _since_as_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class AgentSettings(BaseModel):
    agent_id: str
    model: str = "claude-sonnet-4"
    budget_limit_usd: float | None = None
    created_at: datetime
    updated_at: datetime


class UpdateAgentSettingsRequest(BaseModel):
    model: str | None = None
    budget_limit_usd: float | None = None


class ModelInfo(BaseModel):
    id: str
    name: str
    cost_per_1k_input: float
    cost_per_1k_output: float
