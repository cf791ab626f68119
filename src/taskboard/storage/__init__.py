"""Storage backends and the factory that wires them from a database URL."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from taskboard.models import utc_now
from taskboard.storage.activities import SqlActivityLog
from taskboard.storage.agent_settings import SqlAgentSettingsStore
from taskboard.storage.base import ActivityLog, AgentSettingsStore, TaskStore
from taskboard.storage.database import (
    Database,
    PostgresDatabase,
    SqliteDatabase,
    open_database,
)
from taskboard.storage.memory import (
    InMemoryActivityLog,
    InMemoryAgentSettingsStore,
    InMemoryTaskStore,
    MemoryState,
)
from taskboard.storage.tasks import SqlTaskStore


@dataclass
class StorageBundle:
    """The three stores backed by one database."""

    tasks: TaskStore
    activities: ActivityLog
    agent_settings: AgentSettingsStore

    def migrate(self) -> None:
        self.tasks.migrate()


def memory_storage(*, clock: Callable[[], datetime] = utc_now) -> StorageBundle:
    state = MemoryState()
    return StorageBundle(
        tasks=InMemoryTaskStore(state),
        activities=InMemoryActivityLog(state, clock=clock),
        agent_settings=InMemoryAgentSettingsStore(state, clock=clock),
    )


def open_storage(database_url: str, *, clock: Callable[[], datetime] = utc_now) -> StorageBundle:
    """Build stores for `memory://`, `sqlite:///...` or `postgresql://...` URLs."""
    if database_url.strip() == "memory://":
        return memory_storage(clock=clock)
    db = open_database(database_url)
    return StorageBundle(
        tasks=SqlTaskStore(db),
        activities=SqlActivityLog(db, clock=clock),
        agent_settings=SqlAgentSettingsStore(db, clock=clock),
    )


__all__ = [
    "ActivityLog",
    "AgentSettingsStore",
    "Database",
    "InMemoryActivityLog",
    "InMemoryAgentSettingsStore",
    "InMemoryTaskStore",
    "MemoryState",
    "PostgresDatabase",
    "SqlActivityLog",
    "SqlAgentSettingsStore",
    "SqlTaskStore",
    "SqliteDatabase",
    "StorageBundle",
    "TaskStore",
    "memory_storage",
    "open_database",
    "open_storage",
]
