"""Run one timeout sweep: return stale in-progress claims to the ready column.

Meant to be invoked on a schedule (cron, systemd timer, k8s CronJob). Safe to
run repeatedly or concurrently with agents claiming tasks.
"""

from __future__ import annotations

import argparse
import logging

from taskboard.config.settings import get_settings
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.storage import open_storage


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Release in-progress tasks whose claim exceeded timeout_minutes."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: TASKBOARD_DATABASE_URL or sqlite:///data/taskboard.db).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level (default: INFO).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    database_url = args.database_url or get_settings().database_url
    storage = open_storage(database_url)
    storage.migrate()
    lifecycle = TaskLifecycle(storage.tasks, storage.activities)
    released = lifecycle.release_timed_out_tasks()
    print(f"Released {released} timed-out task(s).")


if __name__ == "__main__":
    main()
