"""Append-only activity log persisted next to the tasks table."""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from taskboard.models import Activity, ActivityQuery, ActivityType, to_iso, utc_now
from taskboard.storage.database import Database


def _filters(query: ActivityQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if query.agent_id:
        clauses.append("agent_id = ?")
        params.append(query.agent_id)
    if query.task_id:
        clauses.append("task_id = ?")
        params.append(query.task_id)
    if query.type:
        clauses.append("type = ?")
        params.append(query.type)
    if query.since is not None:
        clauses.append("created_at > ?")
        params.append(to_iso(query.since))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SqlActivityLog:
    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
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
        self.db.execute(
            """
            INSERT INTO activities (id, type, agent_id, task_id, task_title, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.id,
                activity.type,
                activity.agent_id,
                activity.task_id,
                activity.task_title,
                json.dumps(details, default=str) if details is not None else None,
                to_iso(activity.created_at),
            ),
        )
        return activity

    def list(self, query: ActivityQuery) -> list[Activity]:
        where, params = _filters(query)
        rows = self.db.fetch_all(
            f"SELECT * FROM activities{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            [*params, query.limit, query.offset],
        )
        activities: list[Activity] = []
        for row in rows:
            raw_details = row.get("details")
            row["details"] = json.loads(raw_details) if raw_details is not None else None
            activities.append(Activity.model_validate(row))
        return activities

    def count(self, query: ActivityQuery) -> int:
        where, params = _filters(query)
        row = self.db.fetch_one(f"SELECT COUNT(*) AS total FROM activities{where}", params)
        return int(row["total"]) if row else 0
