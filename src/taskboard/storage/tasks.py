"""SQL-backed task store.

Lifecycle transitions go through `conditional_update`, which issues one
`UPDATE ... WHERE id = ? AND <predicate>` statement. The affected-row count
tells the caller whether the predicate held when the database applied the
write; there is never a separate read-check-write step in Python.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from contextlib import AbstractContextManager
from datetime import date, datetime
from typing import Any

from taskboard.errors import UnknownColumnError
from taskboard.models import Task, TaskQuery, to_iso
from taskboard.storage.database import Database

TASK_COLUMNS = (
    "id",
    "title",
    "description",
    "status",
    "priority",
    "skills_required",
    "claimed_by",
    "claimed_at",
    "timeout_minutes",
    "parent_task_id",
    "output",
    "blocked_reason",
    "due_date",
    "usage_input_tokens",
    "usage_output_tokens",
    "usage_model",
    "usage_cost_usd",
    "created_by",
    "created_at",
    "updated_at",
)
_TASK_COLUMN_SET = frozenset(TASK_COLUMNS)


def serialize_value(column: str, value: Any) -> Any:
    """Convert one Task field into its stored (text/number) representation."""
    if column == "skills_required":
        return json.dumps(list(value or []))
    if column == "output":
        return json.dumps(value) if value is not None else None
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def serialize_task(task: Task) -> dict[str, Any]:
    payload = task.model_dump()
    return {column: serialize_value(column, payload[column]) for column in TASK_COLUMNS}


def row_to_task(row: dict[str, Any]) -> Task:
    """Map one DB row to the canonical Task model."""
    data = dict(row)
    data["skills_required"] = json.loads(data.get("skills_required") or "[]")
    raw_output = data.get("output")
    data["output"] = json.loads(raw_output) if raw_output is not None else None
    return Task.model_validate(data)


def _check_columns(columns: Sequence[str]) -> None:
    for column in columns:
        if column not in _TASK_COLUMN_SET:
            raise UnknownColumnError("tasks", column)


def _where(predicate: dict[str, Any]) -> tuple[list[str], list[Any]]:
    """Build `col = ?` / `col IS NULL` clauses; None means the column must be NULL."""
    _check_columns(list(predicate))
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in predicate.items():
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(serialize_value(column, value))
    return clauses, params


def _set(fields: dict[str, Any]) -> tuple[str, list[Any]]:
    if not fields:
        raise ValueError("fields must not be empty")
    _check_columns(list(fields))
    assignments = ", ".join(f"{column} = ?" for column in fields)
    params = [serialize_value(column, value) for column, value in fields.items()]
    return assignments, params


class SqlTaskStore:
    """Task persistence over a SQLite or PostgreSQL `Database`."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def migrate(self) -> None:
        self.db.migrate()

    def transaction(self) -> AbstractContextManager[None]:
        return self.db.transaction()

    def insert(self, task: Task) -> None:
        values = serialize_task(task)
        placeholders = ", ".join("?" for _ in TASK_COLUMNS)
        self.db.execute(
            f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) VALUES ({placeholders})",
            [values[column] for column in TASK_COLUMNS],
        )

    def get_by_id(self, task_id: str) -> Task | None:
        row = self.db.fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            return None
        return row_to_task(row)

    def conditional_update(
        self, task_id: str, expected: dict[str, Any], fields: dict[str, Any]
    ) -> int:
        assignments, set_params = _set(fields)
        clauses, where_params = _where({"id": task_id, **expected})
        return self.db.execute(
            f"UPDATE tasks SET {assignments} WHERE {' AND '.join(clauses)}",
            [*set_params, *where_params],
        )

    def update(self, task_id: str, fields: dict[str, Any]) -> int:
        return self.conditional_update(task_id, {}, fields)

    def delete(self, task_id: str) -> int:
        return self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    def query(self, query: TaskQuery) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.status:
            clauses.append("status = ?")
            params.append(query.status)
        if query.claimed_by:
            clauses.append("claimed_by = ?")
            params.append(query.claimed_by)
        skills = query.skill_list()
        if skills:
            # skills_required is a JSON array of strings; match the quoted element.
            clauses.append("(" + " OR ".join("skills_required LIKE ?" for _ in skills) + ")")
            params.extend(f'%"{skill}"%' for skill in skills)

        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY priority DESC, created_at ASC LIMIT ? OFFSET ?"
        params.extend([query.limit, query.offset])
        return [row_to_task(row) for row in self.db.fetch_all(sql, params)]

    def bulk_update(self, filters: dict[str, Any], fields: dict[str, Any]) -> int:
        assignments, set_params = _set(fields)
        clauses, where_params = _where(filters)
        sql = f"UPDATE tasks SET {assignments}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return self.db.execute(sql, [*set_params, *where_params])

    def list_claimed(self, status: str = "in_progress") -> list[Task]:
        rows = self.db.fetch_all(
            "SELECT * FROM tasks WHERE status = ? AND claimed_at IS NOT NULL",
            (status,),
        )
        return [row_to_task(row) for row in rows]

    def list_with_usage(
        self,
        *,
        agent_id: str | None = None,
        status: str | None = None,
        updated_from: datetime | None = None,
        updated_to: datetime | None = None,
    ) -> list[Task]:
        clauses = ["usage_input_tokens IS NOT NULL"]
        params: list[Any] = []
        if agent_id:
            clauses.append("claimed_by = ?")
            params.append(agent_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if updated_from is not None:
            clauses.append("updated_at >= ?")
            params.append(to_iso(updated_from))
        if updated_to is not None:
            clauses.append("updated_at <= ?")
            params.append(to_iso(updated_to))
        rows = self.db.fetch_all(
            f"SELECT * FROM tasks WHERE {' AND '.join(clauses)}",
            params,
        )
        return [row_to_task(row) for row in rows]
