"""Task lifecycle engine.

States:
    backlog -> ready -> in_progress -> done | blocked | review
    blocked -> ready | backlog (via update_task)
    in_progress -> ready (timeout release)
    any -> archived (archive_column)

Every guarded transition (claim, complete, block, timeout release) is a single
conditional update against the store. The affected-row count is the only
signal of success: when it is zero the engine re-reads the task purely to
explain *why* the predicate did not hold. There are no in-process locks; the
database's atomic single-row update is the synchronization primitive.

Expected rejections (not ready, already claimed, wrong claimant) come back as
`LifecycleResult(success=False, ...)`. Store failures propagate.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from taskboard.models import (
    SYSTEM_ACTOR,
    CreateTaskRequest,
    HandoffResult,
    LifecycleResult,
    RejectionKind,
    Task,
    TaskQuery,
    TaskStatus,
    UpdateTaskRequest,
    UsageData,
    utc_now,
)
from taskboard.services.notifications import EventName, LoggingNotifier, NotificationSink
from taskboard.storage.base import ActivityLog, TaskStore

logger = logging.getLogger(__name__)

# Moving a task back to one of these columns returns it to the claimable pool.
UNCLAIMED_STATUSES: frozenset[str] = frozenset({"ready", "backlog"})
# Only these may be cleared with an explicit null in a partial update.
NULLABLE_UPDATE_FIELDS: frozenset[str] = frozenset({"description", "blocked_reason", "due_date"})


def build_task(
    request: CreateTaskRequest,
    *,
    created_by: str,
    now: datetime,
    default_status: TaskStatus = "backlog",
) -> Task:
    """Build a fresh Task with generated id/timestamps and empty claim/usage fields."""
    return Task(
        id=str(uuid.uuid4()),
        title=request.title,
        description=request.description,
        status=request.status or default_status,
        priority=request.priority,
        skills_required=list(request.skills_required),
        claimed_by=None,
        claimed_at=None,
        timeout_minutes=request.timeout_minutes,
        parent_task_id=request.parent_task_id,
        output=None,
        blocked_reason=None,
        due_date=request.due_date,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )


def _task_payload(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json")


class TaskLifecycle:
    """Create/claim/complete/block/handoff/release/archive over a TaskStore."""

    def __init__(
        self,
        store: TaskStore,
        activities: ActivityLog,
        notifier: NotificationSink | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.activities = activities
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock

    # ---- reads ----

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get_by_id(task_id)

    def list_tasks(self, query: TaskQuery | None = None) -> list[Task]:
        return self.store.query(query or TaskQuery())

    # ---- create / update / delete ----

    def create_task(self, request: CreateTaskRequest, created_by: str) -> Task:
        with self.store.transaction():
            task = self._insert_task(request, created_by=created_by, default_status="backlog")
        self._emit("task:created", {"task": _task_payload(task)})
        return task

    def update_task(
        self,
        task_id: str,
        updates: UpdateTaskRequest,
        actor_id: str | None = None,
    ) -> LifecycleResult:
        """Apply a permissive partial update.

        No claim-ownership guard applies here: any permitted caller may move any
        task to any editable status. Moving to ready/backlog always clears the
        claim, and moving off `blocked` clears the stale blocked_reason.
        """
        actor = actor_id or SYSTEM_ACTOR
        changes = {
            field: value
            for field, value in updates.model_dump(exclude_unset=True).items()
            if value is not None or field in NULLABLE_UPDATE_FIELDS
        }
        with self.store.transaction():
            existing = self.store.get_by_id(task_id)
            if existing is None:
                return self._reject("update", task_id, actor, "not_found", "Task not found")

            fields: dict[str, Any] = {**changes, "updated_at": self._clock()}
            new_status = changes.get("status")
            if new_status in UNCLAIMED_STATUSES:
                fields["claimed_by"] = None
                fields["claimed_at"] = None
            if new_status is not None and new_status != "blocked" and "blocked_reason" not in changes:
                fields["blocked_reason"] = None

            if self.store.update(task_id, fields) == 0:
                return self._reject("update", task_id, actor, "not_found", "Task not found")
            task = self._require(task_id)

            self.activities.append(
                "task_updated",
                actor,
                task_id,
                task.title,
                {
                    "changes": updates.model_dump(mode="json", exclude_unset=True),
                    "from_status": existing.status,
                    "to_status": task.status,
                },
            )
            if existing.status == "blocked" and task.status != "blocked":
                self.activities.append(
                    "task_unblocked",
                    actor,
                    task_id,
                    task.title,
                    {"previous_reason": existing.blocked_reason, "to_status": task.status},
                )

        logger.info(
            "task_lifecycle event=update task_id=%s actor=%s from_status=%s to_status=%s",
            task_id,
            actor,
            existing.status,
            task.status,
        )
        self._emit("task:updated", {"task": _task_payload(task)})
        return LifecycleResult(success=True, task=task)

    def delete_task(self, task_id: str, actor_id: str | None = None) -> LifecycleResult:
        """Hard-delete a task. Children keep their (now dangling) parent_task_id."""
        actor = actor_id or SYSTEM_ACTOR
        with self.store.transaction():
            existing = self.store.get_by_id(task_id)
            if existing is None or self.store.delete(task_id) == 0:
                return self._reject("delete", task_id, actor, "not_found", "Task not found")
            self.activities.append("task_deleted", actor, task_id, existing.title)

        logger.info("task_lifecycle event=delete task_id=%s actor=%s", task_id, actor)
        self._emit("task:deleted", {"task_id": task_id})
        return LifecycleResult(success=True, task=existing)

    # ---- guarded transitions ----

    def claim_task(self, task_id: str, agent_id: str) -> LifecycleResult:
        """Claim a ready, unclaimed task. Of two concurrent claims exactly one wins."""
        now = self._clock()
        with self.store.transaction():
            updated = self.store.conditional_update(
                task_id,
                {"status": "ready", "claimed_by": None},
                {
                    "status": "in_progress",
                    "claimed_by": agent_id,
                    "claimed_at": now,
                    "updated_at": now,
                },
            )
            if updated == 0:
                kind, reason = self._claim_rejection(task_id)
                return self._reject("claim", task_id, agent_id, kind, reason)
            task = self._require(task_id)
            self.activities.append("task_claimed", agent_id, task_id, task.title)

        logger.info("task_lifecycle event=claim task_id=%s agent_id=%s outcome=ok", task_id, agent_id)
        self._emit("task:claimed", {"task": _task_payload(task), "agent_id": agent_id})
        return LifecycleResult(success=True, task=task)

    def complete_task(
        self,
        task_id: str,
        agent_id: str,
        output: Any | None = None,
        usage: UsageData | None = None,
    ) -> LifecycleResult:
        """Finish an in-progress task; only the claiming agent may do this."""
        with self.store.transaction():
            result = self._complete(task_id, agent_id, output, usage)
        if result.success and result.task is not None:
            self._emit("task:completed", {"task": _task_payload(result.task), "agent_id": agent_id})
        return result

    def block_task(self, task_id: str, agent_id: str, reason: str) -> LifecycleResult:
        now = self._clock()
        with self.store.transaction():
            updated = self.store.conditional_update(
                task_id,
                {"status": "in_progress", "claimed_by": agent_id},
                {"status": "blocked", "blocked_reason": reason, "updated_at": now},
            )
            if updated == 0:
                kind, message = self._claimant_rejection(task_id, agent_id, "block")
                return self._reject("block", task_id, agent_id, kind, message)
            task = self._require(task_id)
            self.activities.append("task_blocked", agent_id, task_id, task.title, {"reason": reason})

        logger.info(
            "task_lifecycle event=block task_id=%s agent_id=%s outcome=ok reason=%s",
            task_id,
            agent_id,
            reason,
        )
        self._emit(
            "task:blocked",
            {"task": _task_payload(task), "agent_id": agent_id, "reason": reason},
        )
        return LifecycleResult(success=True, task=task)

    def handoff_task(
        self,
        task_id: str,
        agent_id: str,
        output: Any | None,
        next_task: CreateTaskRequest,
    ) -> HandoffResult:
        """Complete a task and spawn its successor in one transaction.

        If the completion is rejected nothing is created. The successor links
        back through parent_task_id and defaults to `ready` so the next agent
        can claim it immediately.
        """
        with self.store.transaction():
            completed = self._complete(task_id, agent_id, output, None)
            if not completed.success or completed.task is None:
                return HandoffResult(
                    success=False,
                    error=completed.error,
                    error_kind=completed.error_kind,
                )
            successor_request = next_task.model_copy(update={"parent_task_id": task_id})
            successor = self._insert_task(
                successor_request,
                created_by=agent_id,
                default_status="ready",
            )
            self.activities.append(
                "task_handoff",
                agent_id,
                task_id,
                completed.task.title,
                {"next_task_id": successor.id, "next_task_title": successor.title},
            )

        logger.info(
            "task_lifecycle event=handoff task_id=%s agent_id=%s next_task_id=%s outcome=ok",
            task_id,
            agent_id,
            successor.id,
        )
        self._emit("task:completed", {"task": _task_payload(completed.task), "agent_id": agent_id})
        self._emit("task:created", {"task": _task_payload(successor)})
        return HandoffResult(success=True, completed_task=completed.task, next_task=successor)

    def release_timed_out_tasks(self) -> int:
        """Return stale claims to the `ready` pool and report how many were released.

        Each candidate gets its own conditional update keyed on the claim it was
        read with, so a task re-claimed between the scan and the write is left
        alone. A crash mid-sweep leaves the rest for the next call; calling it
        again releases nothing that was already released.
        """
        now = self._clock()
        released = 0
        for candidate in self.store.list_claimed("in_progress"):
            if candidate.claimed_at is None:
                continue
            if now - candidate.claimed_at <= timedelta(minutes=candidate.timeout_minutes):
                continue
            with self.store.transaction():
                updated = self.store.conditional_update(
                    candidate.id,
                    {
                        "status": "in_progress",
                        "claimed_by": candidate.claimed_by,
                        "claimed_at": candidate.claimed_at,
                    },
                    {
                        "status": "ready",
                        "claimed_by": None,
                        "claimed_at": None,
                        "updated_at": now,
                    },
                )
                if updated == 0:
                    continue
                self.activities.append(
                    "task_released",
                    SYSTEM_ACTOR,
                    candidate.id,
                    candidate.title,
                    {"reason": "timeout", "previous_agent": candidate.claimed_by},
                )
                task = self._require(candidate.id)
            released += 1
            logger.info(
                "task_lifecycle event=release task_id=%s previous_agent=%s reason=timeout",
                candidate.id,
                candidate.claimed_by,
            )
            self._emit("task:updated", {"task": _task_payload(task)})

        logger.info("task_sweep event=completed released=%s", released)
        return released

    def archive_column(self, status: TaskStatus) -> int:
        """Move every task in one column to `archived`; returns the number moved."""
        count = self.store.bulk_update(
            {"status": status},
            {"status": "archived", "updated_at": self._clock()},
        )
        logger.info("task_lifecycle event=archive_column status=%s count=%s", status, count)
        self._emit("tasks:archived", {"status": status, "count": count})
        return count

    # ---- helpers ----

    def _insert_task(
        self,
        request: CreateTaskRequest,
        *,
        created_by: str,
        default_status: TaskStatus,
    ) -> Task:
        task = build_task(
            request,
            created_by=created_by,
            now=self._clock(),
            default_status=default_status,
        )
        self.store.insert(task)
        self.activities.append(
            "task_created",
            created_by,
            task.id,
            task.title,
            {
                "status": task.status,
                "priority": task.priority,
                "skills_required": task.skills_required,
            },
        )
        logger.info(
            "task_lifecycle event=create task_id=%s created_by=%s status=%s",
            task.id,
            created_by,
            task.status,
        )
        return task

    def _complete(
        self,
        task_id: str,
        agent_id: str,
        output: Any | None,
        usage: UsageData | None,
    ) -> LifecycleResult:
        fields: dict[str, Any] = {"status": "done", "output": output, "updated_at": self._clock()}
        if usage is not None:
            fields.update(
                {
                    "usage_input_tokens": usage.input_tokens,
                    "usage_output_tokens": usage.output_tokens,
                    "usage_model": usage.model,
                    "usage_cost_usd": usage.cost_usd,
                }
            )
        updated = self.store.conditional_update(
            task_id,
            {"status": "in_progress", "claimed_by": agent_id},
            fields,
        )
        if updated == 0:
            kind, message = self._claimant_rejection(task_id, agent_id, "complete")
            return self._reject("complete", task_id, agent_id, kind, message)

        task = self._require(task_id)
        details: dict[str, Any] = {"has_output": output is not None}
        if usage is not None:
            details["usage"] = usage.model_dump()
        self.activities.append("task_completed", agent_id, task_id, task.title, details)
        logger.info(
            "task_lifecycle event=complete task_id=%s agent_id=%s outcome=ok has_usage=%s",
            task_id,
            agent_id,
            usage is not None,
        )
        return LifecycleResult(success=True, task=task)

    def _claim_rejection(self, task_id: str) -> tuple[RejectionKind, str]:
        existing = self.store.get_by_id(task_id)
        if existing is None:
            return "not_found", "Task not found"
        if existing.status != "ready":
            message = f"Task is not ready (status: {existing.status})"
            if existing.claimed_by:
                message += f"; already claimed by {existing.claimed_by}"
            return "invalid_state", message
        if existing.claimed_by:
            return "conflict", f"Task already claimed by {existing.claimed_by}"
        return "conflict", "Failed to claim task"

    def _claimant_rejection(
        self, task_id: str, agent_id: str, operation: str
    ) -> tuple[RejectionKind, str]:
        existing = self.store.get_by_id(task_id)
        if existing is None:
            return "not_found", "Task not found"
        if existing.claimed_by != agent_id:
            return "not_authorized", "You are not the claiming agent"
        if existing.status != "in_progress":
            return "invalid_state", f"Task is not in progress (status: {existing.status})"
        return "conflict", f"Failed to {operation} task"

    def _reject(
        self,
        operation: str,
        task_id: str,
        actor: str,
        kind: RejectionKind,
        reason: str,
    ) -> LifecycleResult:
        logger.info(
            "task_lifecycle event=%s task_id=%s agent_id=%s outcome=rejected kind=%s reason=%s",
            operation,
            task_id,
            actor,
            kind,
            reason,
        )
        return LifecycleResult(success=False, error=reason, error_kind=kind)

    def _require(self, task_id: str) -> Task:
        task = self.store.get_by_id(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} no longer exists")
        return task

    def _emit(self, event: EventName, payload: dict[str, Any]) -> None:
        # Events fire after commit; sink errors are logged, not raised.
        try:
            self.notifier.emit(event, payload)
        except Exception:  # noqa: BLE001
            logger.exception(
                "notify event=%s sink=%s outcome=failed", event, type(self.notifier).__name__
            )
