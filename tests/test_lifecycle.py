from __future__ import annotations

import logging
from typing import Any

import pytest

from taskboard.models import (
    ActivityQuery,
    CreateTaskRequest,
    TaskQuery,
    UpdateTaskRequest,
    UsageData,
)
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.services.notifications import RecordingNotifier
from taskboard.storage import StorageBundle


def _ready_task(lifecycle: TaskLifecycle, title: str = "Write docs", **overrides: object) -> str:
    request = CreateTaskRequest(title=title, status="ready", **overrides)
    return lifecycle.create_task(request, created_by="pm").id


def _activity_types(storage: StorageBundle, task_id: str) -> list[str]:
    activities = storage.activities.list(ActivityQuery(task_id=task_id, limit=100))
    # Frozen clock: several activities share a timestamp, so order is not asserted.
    return sorted(activity.type for activity in activities)


def test_create_task_applies_defaults(lifecycle: TaskLifecycle, storage: StorageBundle) -> None:
    task = lifecycle.create_task(CreateTaskRequest(title="Triage inbox"), created_by="pm")

    assert task.status == "backlog"
    assert task.priority == 3
    assert task.timeout_minutes == 30
    assert task.skills_required == []
    assert task.claimed_by is None
    assert task.created_at == task.updated_at

    stored = storage.tasks.get_by_id(task.id)
    assert stored == task
    assert _activity_types(storage, task.id) == ["task_created"]


def test_claim_ready_task_moves_it_to_in_progress(
    lifecycle: TaskLifecycle, storage: StorageBundle, notifier: RecordingNotifier
) -> None:
    task_id = _ready_task(lifecycle)

    result = lifecycle.claim_task(task_id, "zen")

    assert result.success is True
    assert result.task is not None
    assert result.task.status == "in_progress"
    assert result.task.claimed_by == "zen"
    assert result.task.claimed_at is not None
    assert _activity_types(storage, task_id) == ["task_claimed", "task_created"]
    assert notifier.names() == ["task:created", "task:claimed"]


def test_claim_backlog_task_is_invalid_state(lifecycle: TaskLifecycle) -> None:
    task = lifecycle.create_task(CreateTaskRequest(title="Later"), created_by="pm")

    result = lifecycle.claim_task(task.id, "zen")

    assert result.success is False
    assert result.error_kind == "invalid_state"
    assert result.error == "Task is not ready (status: backlog)"


def test_second_claim_reports_existing_claimant(
    lifecycle: TaskLifecycle, storage: StorageBundle
) -> None:
    task_id = _ready_task(lifecycle)
    assert lifecycle.claim_task(task_id, "zen").success

    result = lifecycle.claim_task(task_id, "ops")

    assert result.success is False
    assert result.error_kind == "invalid_state"
    assert "already claimed by zen" in (result.error or "")
    stored = storage.tasks.get_by_id(task_id)
    assert stored is not None
    assert stored.claimed_by == "zen"
    assert _activity_types(storage, task_id) == ["task_claimed", "task_created"]


def test_ready_task_with_stale_claimant_is_a_conflict(
    lifecycle: TaskLifecycle, storage: StorageBundle
) -> None:
    task_id = _ready_task(lifecycle)
    storage.tasks.update(task_id, {"claimed_by": "ghost"})

    result = lifecycle.claim_task(task_id, "zen")

    assert result.error_kind == "conflict"
    assert result.error == "Task already claimed by ghost"


def test_claim_unknown_task_is_not_found(lifecycle: TaskLifecycle) -> None:
    result = lifecycle.claim_task("missing", "zen")

    assert result.success is False
    assert result.error_kind == "not_found"
    assert result.error == "Task not found"


def test_complete_records_output_and_usage(
    lifecycle: TaskLifecycle, storage: StorageBundle, clock
) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")
    clock.advance(minutes=5)

    result = lifecycle.complete_task(
        task_id,
        "zen",
        output={"summary": "done", "files": ["README.md"]},
        usage=UsageData(input_tokens=1000, output_tokens=500, model="claude-sonnet-4", cost_usd=0.0105),
    )

    assert result.success is True
    task = result.task
    assert task is not None
    assert task.status == "done"
    assert task.claimed_by == "zen"
    assert task.output == {"summary": "done", "files": ["README.md"]}
    assert task.usage_input_tokens == 1000
    assert task.usage_output_tokens == 500
    assert task.usage_model == "claude-sonnet-4"
    assert task.usage_cost_usd == 0.0105
    assert task.updated_at == clock()

    activities = storage.activities.list(ActivityQuery(task_id=task_id, type="task_completed"))
    assert len(activities) == 1
    assert activities[0].details is not None
    assert activities[0].details["has_output"] is True
    assert activities[0].details["usage"]["input_tokens"] == 1000


def test_complete_without_usage_leaves_usage_empty(lifecycle: TaskLifecycle) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.complete_task(task_id, "zen")

    assert result.task is not None
    assert result.task.output is None
    assert result.task.usage_input_tokens is None
    assert result.task.usage_model is None


def test_complete_by_other_agent_is_not_authorized(
    lifecycle: TaskLifecycle, storage: StorageBundle
) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.complete_task(task_id, "ops", output="sneaky")

    assert result.success is False
    assert result.error_kind == "not_authorized"
    assert result.error == "You are not the claiming agent"
    stored = storage.tasks.get_by_id(task_id)
    assert stored is not None
    assert stored.status == "in_progress"
    assert stored.output is None


def test_complete_twice_is_invalid_state(lifecycle: TaskLifecycle) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")
    assert lifecycle.complete_task(task_id, "zen").success

    result = lifecycle.complete_task(task_id, "zen")

    assert result.error_kind == "invalid_state"
    assert result.error == "Task is not in progress (status: done)"


def test_complete_unknown_task_is_not_found(lifecycle: TaskLifecycle) -> None:
    assert lifecycle.complete_task("missing", "zen").error_kind == "not_found"


def test_block_keeps_claimant_and_stores_reason(
    lifecycle: TaskLifecycle, storage: StorageBundle, notifier: RecordingNotifier
) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.block_task(task_id, "zen", "Waiting on API key")

    assert result.success is True
    assert result.task is not None
    assert result.task.status == "blocked"
    assert result.task.blocked_reason == "Waiting on API key"
    assert result.task.claimed_by == "zen"
    assert notifier.names()[-1] == "task:blocked"
    blocked = storage.activities.list(ActivityQuery(task_id=task_id, type="task_blocked"))
    assert blocked[0].details == {"reason": "Waiting on API key"}


def test_block_by_other_agent_is_rejected(lifecycle: TaskLifecycle) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.block_task(task_id, "ops", "not mine")

    assert result.success is False
    assert result.error_kind == "not_authorized"


def test_unblock_via_update_clears_reason_and_claim(
    lifecycle: TaskLifecycle, storage: StorageBundle
) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")
    lifecycle.block_task(task_id, "zen", "Waiting on API key")

    result = lifecycle.update_task(task_id, UpdateTaskRequest(status="ready"), actor_id="pm")

    assert result.success is True
    task = result.task
    assert task is not None
    assert task.status == "ready"
    assert task.blocked_reason is None
    assert task.claimed_by is None
    assert task.claimed_at is None
    assert {"task_updated", "task_unblocked"} <= set(_activity_types(storage, task_id))
    unblocked = storage.activities.list(ActivityQuery(task_id=task_id, type="task_unblocked"))
    assert unblocked[0].details == {"previous_reason": "Waiting on API key", "to_status": "ready"}

    assert lifecycle.claim_task(task_id, "ops").success


def test_update_without_status_keeps_claim(lifecycle: TaskLifecycle) -> None:
    task_id = _ready_task(lifecycle)
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.update_task(
        task_id, UpdateTaskRequest(title="Write better docs", priority=5), actor_id="pm"
    )

    assert result.task is not None
    assert result.task.title == "Write better docs"
    assert result.task.priority == 5
    assert result.task.status == "in_progress"
    assert result.task.claimed_by == "zen"


def test_update_can_clear_nullable_fields_only(lifecycle: TaskLifecycle) -> None:
    task = lifecycle.create_task(
        CreateTaskRequest(title="Spec", description="draft"), created_by="pm"
    )

    result = lifecycle.update_task(
        task.id, UpdateTaskRequest.model_validate({"description": None, "title": None})
    )

    assert result.task is not None
    assert result.task.description is None
    assert result.task.title == "Spec"


def test_update_unknown_task_is_not_found(lifecycle: TaskLifecycle) -> None:
    result = lifecycle.update_task("missing", UpdateTaskRequest(title="x"))

    assert result.success is False
    assert result.error_kind == "not_found"


def test_delete_leaves_children_with_dangling_parent(
    lifecycle: TaskLifecycle, storage: StorageBundle, notifier: RecordingNotifier
) -> None:
    parent_id = _ready_task(lifecycle, "Research")
    lifecycle.claim_task(parent_id, "zen")
    handoff = lifecycle.handoff_task(
        parent_id, "zen", "notes", CreateTaskRequest(title="Implement")
    )
    assert handoff.next_task is not None

    result = lifecycle.delete_task(parent_id, actor_id="pm")

    assert result.success is True
    assert storage.tasks.get_by_id(parent_id) is None
    child = storage.tasks.get_by_id(handoff.next_task.id)
    assert child is not None
    assert child.parent_task_id == parent_id
    assert notifier.events()[-1].payload == {"task_id": parent_id}
    assert lifecycle.delete_task(parent_id).error_kind == "not_found"


def test_handoff_completes_and_spawns_ready_successor(
    lifecycle: TaskLifecycle, storage: StorageBundle, notifier: RecordingNotifier
) -> None:
    task_id = _ready_task(lifecycle, "Research")
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.handoff_task(
        task_id,
        "zen",
        {"findings": ["a", "b"]},
        CreateTaskRequest(title="Implement", skills_required=["python"], priority=4),
    )

    assert result.success is True
    assert result.completed_task is not None
    assert result.completed_task.status == "done"
    assert result.completed_task.output == {"findings": ["a", "b"]}
    successor = result.next_task
    assert successor is not None
    assert successor.status == "ready"
    assert successor.parent_task_id == task_id
    assert successor.created_by == "zen"
    assert successor.skills_required == ["python"]
    assert successor.priority == 4
    assert storage.tasks.get_by_id(successor.id) == successor
    assert {"task_completed", "task_handoff"} <= set(_activity_types(storage, task_id))
    assert notifier.names()[-2:] == ["task:completed", "task:created"]


def test_failed_handoff_creates_nothing(lifecycle: TaskLifecycle, storage: StorageBundle) -> None:
    task_id = _ready_task(lifecycle, "Research")
    lifecycle.claim_task(task_id, "zen")

    result = lifecycle.handoff_task(task_id, "ops", None, CreateTaskRequest(title="Implement"))

    assert result.success is False
    assert result.error_kind == "not_authorized"
    assert result.next_task is None
    titles = [task.title for task in lifecycle.list_tasks()]
    assert titles == ["Research"]


def test_archive_column_moves_only_matching_status(
    lifecycle: TaskLifecycle, notifier: RecordingNotifier
) -> None:
    for title in ("a", "b"):
        task_id = _ready_task(lifecycle, title)
        lifecycle.claim_task(task_id, "zen")
        lifecycle.complete_task(task_id, "zen")
    _ready_task(lifecycle, "still ready")

    archived = lifecycle.archive_column("done")

    assert archived == 2
    assert lifecycle.list_tasks(TaskQuery(status="done")) == []
    assert len(lifecycle.list_tasks(TaskQuery(status="archived"))) == 2
    assert len(lifecycle.list_tasks(TaskQuery(status="ready"))) == 1
    assert notifier.events()[-1].payload == {"status": "done", "count": 2}
    assert lifecycle.archive_column("done") == 0


def test_list_tasks_orders_by_priority_then_age(lifecycle: TaskLifecycle, clock) -> None:
    lifecycle.create_task(CreateTaskRequest(title="low", priority=1), created_by="pm")
    clock.advance(seconds=1)
    lifecycle.create_task(CreateTaskRequest(title="high-old", priority=5), created_by="pm")
    clock.advance(seconds=1)
    lifecycle.create_task(CreateTaskRequest(title="high-new", priority=5), created_by="pm")

    titles = [task.title for task in lifecycle.list_tasks()]

    assert titles == ["high-old", "high-new", "low"]


def test_list_tasks_filters(lifecycle: TaskLifecycle) -> None:
    py = _ready_task(lifecycle, "py", skills_required=["python", "sql"])
    _ready_task(lifecycle, "js", skills_required=["javascript"])
    _ready_task(lifecycle, "none")
    lifecycle.claim_task(py, "zen")

    assert [t.title for t in lifecycle.list_tasks(TaskQuery(skills="python"))] == ["py"]
    assert {t.title for t in lifecycle.list_tasks(TaskQuery(skills="sql, javascript"))} == {"py", "js"}
    assert [t.title for t in lifecycle.list_tasks(TaskQuery(claimed_by="zen"))] == ["py"]
    assert len(lifecycle.list_tasks(TaskQuery(status="ready"))) == 2
    assert len(lifecycle.list_tasks(TaskQuery(limit=1, offset=1))) == 1


def test_agent_pipeline_research_to_review(
    lifecycle: TaskLifecycle, storage: StorageBundle
) -> None:
    research = _ready_task(lifecycle, "Research caching options", skills_required=["research"])
    assert lifecycle.claim_task(research, "scout").success

    handoff = lifecycle.handoff_task(
        research,
        "scout",
        {"recommendation": "redis"},
        CreateTaskRequest(title="Implement cache", skills_required=["python"]),
    )
    assert handoff.next_task is not None
    implement = handoff.next_task.id

    assert lifecycle.claim_task(implement, "builder").success
    done = lifecycle.complete_task(
        implement,
        "builder",
        output="PR #12",
        usage=UsageData(input_tokens=200, output_tokens=100, model="gpt-4o", cost_usd=0.0025),
    )
    assert done.success

    builder_tasks = lifecycle.list_tasks(TaskQuery(claimed_by="builder"))
    assert [task.id for task in builder_tasks] == [implement]
    assert storage.activities.count(ActivityQuery(agent_id="builder")) == 2
    assert storage.activities.count(ActivityQuery(agent_id="scout")) == 4


def test_failing_notifier_does_not_fail_committed_write(
    storage: StorageBundle, clock, caplog: pytest.LogCaptureFixture
) -> None:
    class BrokenSink:
        def emit(self, event: str, payload: dict[str, Any]) -> None:
            raise ConnectionError("socket closed")

    lifecycle = TaskLifecycle(storage.tasks, storage.activities, BrokenSink(), clock=clock)

    with caplog.at_level(logging.ERROR):
        task = lifecycle.create_task(CreateTaskRequest(title="Still saved", status="ready"), created_by="pm")
        claimed = lifecycle.claim_task(task.id, "zen")

    assert claimed.success is True
    stored = storage.tasks.get_by_id(task.id)
    assert stored is not None
    assert stored.claimed_by == "zen"
    assert "notify event=task:claimed sink=BrokenSink outcome=failed" in caplog.text
