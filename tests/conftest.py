from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from taskboard.api.main import create_app
from taskboard.config.settings import Settings
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.services.notifications import RecordingNotifier
from taskboard.storage import StorageBundle, memory_storage, open_storage


class FakeClock:
    """Test-only clock; time moves only when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def storage(request: pytest.FixtureRequest, tmp_path: Path, clock: FakeClock) -> StorageBundle:
    if request.param == "memory":
        bundle = memory_storage(clock=clock)
    else:
        bundle = open_storage(f"sqlite:///{tmp_path / 'taskboard.db'}", clock=clock)
    bundle.migrate()
    return bundle


@pytest.fixture
def sqlite_storage(tmp_path: Path, clock: FakeClock) -> StorageBundle:
    bundle = open_storage(f"sqlite:///{tmp_path / 'taskboard.db'}", clock=clock)
    bundle.migrate()
    return bundle


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(storage: StorageBundle, notifier: RecordingNotifier, clock: FakeClock) -> TaskLifecycle:
    return TaskLifecycle(storage.tasks, storage.activities, notifier, clock=clock)


@pytest.fixture
def client(clock: FakeClock) -> Iterator[TestClient]:
    app = create_app(
        storage=memory_storage(clock=clock),
        settings_override=Settings(database_url="memory://", event_buffer_size=50),
        clock=clock,
    )
    with TestClient(app) as test_client:
        yield test_client
