"""In-memory storage backend for `memory://` URLs and unit tests.

All three stores share one `MemoryState`. A re-entrant lock stands in for the
database's row-level atomicity: `conditional_update` checks its predicate and
applies the write while holding the lock, so it has the same exactly-once
behaviour as the SQL `UPDATE ... WHERE` statement.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from taskboard.errors import UnknownColumnError
from taskboard.models import (
    Activity,
    ActivityQuery,
    ActivityType,
    AgentSettings,
    Task,
    TaskQuery,
    UpdateAgentSettingsRequest,
    as_utc,
    utc_now,
)
from taskboard.storage.agent_settings import DEFAULT_AGENT_MODEL
from taskboard.storage.tasks import TASK_COLUMNS


class MemoryState:
    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.tasks: dict[str, Task] = {}
        self.activities: list[Activity] = []
        self.agent_settings: dict[str, AgentSettings] = {}

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the lock for the whole block and restore every table on error."""
        with self.lock:
            # Records are replaced, never mutated, so shallow copies are enough.
            tasks = dict(self.tasks)
            activities = list(self.activities)
            agent_settings = dict(self.agent_settings)
            try:
                yield
            except Exception:
                self.tasks = tasks
                self.activities = activities
                self.agent_settings = agent_settings
                raise


def _check_columns(columns: Any) -> None:
    for column in columns:
        if column not in TASK_COLUMNS:
            raise UnknownColumnError("tasks", column)


def _matches(task: Task, predicate: dict[str, Any]) -> bool:
    for column, expected in predicate.items():
        actual = getattr(task, column)
        if expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryTaskStore:
    """Simple in-memory implementation of the TaskStore protocol."""

    def __init__(self, state: MemoryState | None = None) -> None:
        self.state = state or MemoryState()

    def migrate(self) -> None:
        return None

    def transaction(self) -> Any:
        return self.state.transaction()

    def insert(self, task: Task) -> None:
        with self.state.lock:
            if task.id in self.state.tasks:
                raise KeyError(f"Task {task.id} already exists")
            self.state.tasks[task.id] = task.model_copy(deep=True)

    def get_by_id(self, task_id: str) -> Task | None:
        with self.state.lock:
            task = self.state.tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def conditional_update(
        self, task_id: str, expected: dict[str, Any], fields: dict[str, Any]
    ) -> int:
        _check_columns(expected)
        _check_columns(fields)
        if not fields:
            raise ValueError("fields must not be empty")
        with self.state.lock:
            current = self.state.tasks.get(task_id)
            if current is None or not _matches(current, expected):
                return 0
            self.state.tasks[task_id] = current.model_copy(update=fields, deep=True)
            return 1

    def update(self, task_id: str, fields: dict[str, Any]) -> int:
        return self.conditional_update(task_id, {}, fields)

    def delete(self, task_id: str) -> int:
        with self.state.lock:
            return 1 if self.state.tasks.pop(task_id, None) is not None else 0

    def query(self, query: TaskQuery) -> list[Task]:
        skills = set(query.skill_list())
        with self.state.lock:
            selected = [
                task
                for task in self.state.tasks.values()
                if (not query.status or task.status == query.status)
                and (not query.claimed_by or task.claimed_by == query.claimed_by)
                and (not skills or skills.intersection(task.skills_required))
            ]
        selected.sort(key=lambda task: (-task.priority, task.created_at))
        window = selected[query.offset : query.offset + query.limit]
        return [task.model_copy(deep=True) for task in window]

    def bulk_update(self, filters: dict[str, Any], fields: dict[str, Any]) -> int:
        _check_columns(filters)
        _check_columns(fields)
        with self.state.lock:
            matched = [task for task in self.state.tasks.values() if _matches(task, filters)]
            for task in matched:
                self.state.tasks[task.id] = task.model_copy(update=fields, deep=True)
            return len(matched)

    def list_claimed(self, status: str = "in_progress") -> list[Task]:
        with self.state.lock:
            return [
                task.model_copy(deep=True)
                for task in self.state.tasks.values()
                if task.status == status and task.claimed_at is not None
            ]

    def list_with_usage(
        self,
        *,
        agent_id: str | None = None,
        status: str | None = None,
        updated_from: datetime | None = None,
        updated_to: datetime | None = None,
    ) -> list[Task]:
        with self.state.lock:
            tasks = list(self.state.tasks.values())
        return [
            task.model_copy(deep=True)
            for task in tasks
            if task.usage_input_tokens is not None
            and (not agent_id or task.claimed_by == agent_id)
            and (not status or task.status == status)
            and (updated_from is None or task.updated_at >= as_utc(updated_from))
            and (updated_to is None or task.updated_at <= as_utc(updated_to))
        ]


class InMemoryActivityLog:
    def __init__(
        self, state: MemoryState | None = None, *, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.state = state or MemoryState()
        self._clock = clock

    def append(
        self,
        type: ActivityType,
        agent_id: str,
        task_id: str | None = None,
        task_title: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Activity:
        activity = Activity(
            id=str(uuid.uuid4()),
            type=type,
            agent_id=agent_id,
            task_id=task_id,
            task_title=task_title,
            details=details,
            created_at=self._clock(),
        )
        with self.state.lock:
            self.state.activities.append(activity)
        return activity

    def _filtered(self, query: ActivityQuery) -> list[Activity]:
        with self.state.lock:
            activities = list(self.state.activities)
        return [
            activity
            for activity in activities
            if (not query.agent_id or activity.agent_id == query.agent_id)
            and (not query.task_id or activity.task_id == query.task_id)
            and (not query.type or activity.type == query.type)
            and (query.since is None or activity.created_at > as_utc(query.since))
        ]

    def list(self, query: ActivityQuery) -> list[Activity]:
        # Stable sort on reversed insertion order keeps newest-first for equal timestamps.
        ordered = sorted(
            reversed(self._filtered(query)), key=lambda item: item.created_at, reverse=True
        )
        return ordered[query.offset : query.offset + query.limit]

    def count(self, query: ActivityQuery) -> int:
        return len(self._filtered(query))


class InMemoryAgentSettingsStore:
    def __init__(
        self, state: MemoryState | None = None, *, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.state = state or MemoryState()
        self._clock = clock

    def list_all(self) -> list[AgentSettings]:
        with self.state.lock:
            return sorted(self.state.agent_settings.values(), key=lambda item: item.agent_id)

    def get(self, agent_id: str) -> AgentSettings | None:
        with self.state.lock:
            return self.state.agent_settings.get(agent_id)

    def upsert(self, agent_id: str, update: UpdateAgentSettingsRequest) -> AgentSettings:
        now = self._clock()
        changes = update.model_dump(exclude_unset=True)
        with self.state.lock:
            existing = self.state.agent_settings.get(agent_id)
            if existing is None:
                record = AgentSettings(
                    agent_id=agent_id,
                    model=changes.get("model") or DEFAULT_AGENT_MODEL,
                    budget_limit_usd=changes.get("budget_limit_usd"),
                    created_at=now,
                    updated_at=now,
                )
            else:
                if changes.get("model") is None:
                    changes.pop("model", None)
                record = existing.model_copy(update={**changes, "updated_at": now})
            self.state.agent_settings[agent_id] = record
            return record

    def delete(self, agent_id: str) -> bool:
        with self.state.lock:
            return self.state.agent_settings.pop(agent_id, None) is not None
