"""Relational database backends for the task board.

Terms used in this file:
- Migration: creating/updating tables before normal reads/writes.
- Row factory: returns query rows as dicts instead of tuples.
- Transaction scope: several store calls sharing one connection and one commit.

SQL in the stores is written once with `?` placeholders. SQLite runs it as-is;
the PostgreSQL backend rewrites placeholders to psycopg's `%s` style. Both
backends store timestamps as ISO-8601 text and structured fields as JSON text,
so the same statements work against either database.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskboard.errors import StorageConfigError

logger = logging.getLogger(__name__)

_CREATE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'backlog',
        priority INTEGER NOT NULL DEFAULT 3,
        skills_required TEXT NOT NULL DEFAULT '[]',
        claimed_by TEXT,
        claimed_at TEXT,
        timeout_minutes INTEGER NOT NULL DEFAULT 30,
        parent_task_id TEXT,
        output TEXT,
        blocked_reason TEXT,
        due_date TEXT,
        usage_input_tokens BIGINT,
        usage_output_tokens BIGINT,
        usage_model TEXT,
        usage_cost_usd DOUBLE PRECISION,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_claimed_by ON tasks(claimed_by)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent_task_id ON tasks(parent_task_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status_claimed_by ON tasks(status, claimed_by)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_updated_at ON tasks(updated_at)",
    """
    CREATE TABLE IF NOT EXISTS activities (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        task_id TEXT,
        task_title TEXT,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_activities_agent_id ON activities(agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_activities_task_id ON activities(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_activities_type ON activities(type)",
    "CREATE INDEX IF NOT EXISTS idx_activities_created_at ON activities(created_at)",
    """
    CREATE TABLE IF NOT EXISTS agent_settings (
        agent_id TEXT PRIMARY KEY,
        model TEXT NOT NULL DEFAULT 'claude-sonnet-4',
        budget_limit_usd DOUBLE PRECISION,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)

# Columns added after the first schema; older databases get them via ALTER TABLE.
_LATE_TASK_COLUMNS = (
    ("due_date", "TEXT"),
    ("usage_input_tokens", "BIGINT"),
    ("usage_output_tokens", "BIGINT"),
    ("usage_model", "TEXT"),
    ("usage_cost_usd", "DOUBLE PRECISION"),
)


class Database:
    """Connection management shared by the SQL-backed stores.

    Each call opens its own connection unless the current thread is inside
    `transaction()`, in which case the transaction's connection is reused and
    committed once at the end.
    """

    backend = "base"

    def __init__(self) -> None:
        self._local = threading.local()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self.connection() as conn:
            for statement in _CREATE_STATEMENTS:
                conn.execute(statement)
            existing = self._table_columns(conn, "tasks")
            for column, column_type in _LATE_TASK_COLUMNS:
                if column not in existing:
                    conn.execute(f"ALTER TABLE tasks ADD COLUMN {column} {column_type}")
                    logger.info("db_migrate event=add_column table=tasks column=%s", column)
        logger.info("db_migrate event=ready backend=%s", self.backend)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group store calls on this thread into one commit; nested scopes join the outer one."""
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        conn = self._connect()
        self._local.conn = conn
        try:
            yield
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement and return the number of affected rows."""
        with self.connection() as conn:
            cursor = conn.execute(self._prepare(sql), tuple(params))
            return cursor.rowcount

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self.connection() as conn:
            row = conn.execute(self._prepare(sql), tuple(params)).fetchone()
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self.connection() as conn:
            rows = conn.execute(self._prepare(sql), tuple(params)).fetchall()
        return [dict(row) for row in rows]

    def _prepare(self, sql: str) -> str:
        return sql

    def _connect(self) -> Any:
        raise NotImplementedError

    def _table_columns(self, conn: Any, table: str) -> set[str]:
        raise NotImplementedError


class SqliteDatabase(Database):
    """File-backed SQLite database in WAL mode."""

    backend = "sqlite"

    def __init__(self, path: str | Path, *, busy_timeout_s: float = 30.0) -> None:
        super().__init__()
        self.path = Path(path)
        if str(self.path) == ":memory:":
            # Every call opens a fresh connection, so an in-memory database would vanish.
            raise StorageConfigError("SQLite :memory: is not supported; use memory:// instead")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_s)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _table_columns(self, conn: Any, table: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return {row["name"] for row in rows}


class PostgresDatabase(Database):
    """PostgreSQL database accessed through psycopg 3."""

    backend = "postgres"

    def __init__(self, database_url: str) -> None:
        super().__init__()
        if not database_url:
            raise StorageConfigError("database_url is required")
        self.database_url = database_url
        # Lazy import keeps the error message clear if psycopg is missing.
        self._psycopg, self._dict_row = self._load_psycopg()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _prepare(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def _table_columns(self, conn: Any, table: str) -> set[str]:
        rows = conn.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = ANY (current_schemas(false))
              AND table_name = %s
            """,
            (table,),
        ).fetchall()
        return {row["column_name"] for row in rows}

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise StorageConfigError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row


def sqlite_path_from_url(database_url: str) -> Path:
    """Map `sqlite:///relative.db`, `sqlite:////abs.db` or a bare path to a file path."""
    if database_url.startswith("sqlite:///"):
        return Path(database_url[len("sqlite:///") :])
    if database_url.startswith("sqlite://"):
        return Path(database_url[len("sqlite://") :])
    return Path(database_url)


def open_database(database_url: str) -> Database:
    """Build the Database backend matching a URL scheme (without migrating it)."""
    url = database_url.strip()
    if not url:
        raise StorageConfigError("database_url is required")
    if url.startswith(("postgresql://", "postgres://")):
        return PostgresDatabase(url)
    if "://" in url and not url.startswith("sqlite:"):
        raise StorageConfigError(f"Unsupported database URL: {url}")
    return SqliteDatabase(sqlite_path_from_url(url))
