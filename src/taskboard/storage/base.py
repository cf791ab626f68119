"""Storage interfaces consumed by the lifecycle engine, stats, and API."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from taskboard.models import (
    Activity,
    ActivityQuery,
    ActivityType,
    AgentSettings,
    Task,
    TaskQuery,
    UpdateAgentSettingsRequest,
)


class TaskStore(Protocol):
    def migrate(self) -> None: ...

    def transaction(self) -> AbstractContextManager[None]: ...

    def insert(self, task: Task) -> None: ...

    def get_by_id(self, task_id: str) -> Task | None: ...

    def conditional_update(
        self, task_id: str, expected: dict[str, Any], fields: dict[str, Any]
    ) -> int: ...

    def update(self, task_id: str, fields: dict[str, Any]) -> int: ...

    def delete(self, task_id: str) -> int: ...

    def query(self, query: TaskQuery) -> list[Task]: ...

    def bulk_update(self, filters: dict[str, Any], fields: dict[str, Any]) -> int: ...

    def list_claimed(self, status: str = "in_progress") -> list[Task]: ...

    def list_with_usage(
        self,
        *,
        agent_id: str | None = None,
        status: str | None = None,
        updated_from: datetime | None = None,
        updated_to: datetime | None = None,
    ) -> list[Task]: ...


class ActivityLog(Protocol):
    def append(
        self,
        type: ActivityType,
        agent_id: str,
        task_id: str | None = None,
        task_title: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Activity: ...

    def list(self, query: ActivityQuery) -> list[Activity]: ...

    def count(self, query: ActivityQuery) -> int: ...


class AgentSettingsStore(Protocol):
    def list_all(self) -> list[AgentSettings]: ...

    def get(self, agent_id: str) -> AgentSettings | None: ...

    def upsert(self, agent_id: str, update: UpdateAgentSettingsRequest) -> AgentSettings: ...

    def delete(self, agent_id: str) -> bool: ...
