"""Per-agent configuration (model choice, optional budget ceiling)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from taskboard.models import AgentSettings, UpdateAgentSettingsRequest, to_iso, utc_now
from taskboard.storage.database import Database

DEFAULT_AGENT_MODEL = "claude-sonnet-4"


class SqlAgentSettingsStore:
    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock

    def list_all(self) -> list[AgentSettings]:
        rows = self.db.fetch_all("SELECT * FROM agent_settings ORDER BY agent_id")
        return [AgentSettings.model_validate(row) for row in rows]

    def get(self, agent_id: str) -> AgentSettings | None:
        row = self.db.fetch_one("SELECT * FROM agent_settings WHERE agent_id = ?", (agent_id,))
        return AgentSettings.model_validate(row) if row is not None else None

    def upsert(self, agent_id: str, update: UpdateAgentSettingsRequest) -> AgentSettings:
        """Create or partially update one agent's settings in a single statement.

        Only fields present in `update` overwrite an existing row; a null model
        keeps the current one.
        """
        now = to_iso(self._clock())
        changes = update.model_dump(exclude_unset=True)
        assignments = ["updated_at = excluded.updated_at"]
        if changes.get("model") is not None:
            assignments.append("model = excluded.model")
        if "budget_limit_usd" in changes:
            assignments.append("budget_limit_usd = excluded.budget_limit_usd")
        set_clause = ", ".join(assignments)
        self.db.execute(
            f"""
            INSERT INTO agent_settings (agent_id, model, budget_limit_usd, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (agent_id) DO UPDATE SET {set_clause}
            """,
            (
                agent_id,
                changes.get("model") or DEFAULT_AGENT_MODEL,
                changes.get("budget_limit_usd"),
                now,
                now,
            ),
        )
        record = self.get(agent_id)
        if record is None:
            raise KeyError(f"Agent settings {agent_id} no longer exist")
        return record

    def delete(self, agent_id: str) -> bool:
        return self.db.execute("DELETE FROM agent_settings WHERE agent_id = ?", (agent_id,)) > 0
