from __future__ import annotations

import logging
from typing import Any

import pytest

from taskboard.services.notifications import CompositeNotifier, LoggingNotifier, RecordingNotifier


def test_recording_notifier_keeps_a_bounded_sequence() -> None:
    recorder = RecordingNotifier(max_events=2)
    recorder.emit("task:created", {"task": {"id": "t1"}})
    recorder.emit("task:claimed", {"task": {"id": "t1"}, "agent_id": "zen"})
    recorder.emit("task:deleted", {"task_id": "t1"})

    events = recorder.events()
    assert [event.seq for event in events] == [2, 3]
    assert recorder.names() == ["task:claimed", "task:deleted"]
    assert [event.event for event in recorder.events(after=2)] == ["task:deleted"]


def test_logging_notifier_logs_task_id(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="taskboard.services.notifications"):
        LoggingNotifier().emit("task:deleted", {"task_id": "t9"})

    assert "notify event=task:deleted task_id=t9" in caplog.text


def test_composite_notifier_skips_failing_sink(caplog: pytest.LogCaptureFixture) -> None:
    class BrokenSink:
        def emit(self, event: str, payload: dict[str, Any]) -> None:
            raise ConnectionError("socket closed")

    recorder = RecordingNotifier()
    notifier = CompositeNotifier(BrokenSink(), recorder)

    with caplog.at_level(logging.ERROR):
        notifier.emit("tasks:archived", {"status": "done", "count": 3})

    assert recorder.names() == ["tasks:archived"]
    assert "sink=BrokenSink outcome=failed" in caplog.text
