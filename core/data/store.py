"""SQLite storage layer for scheduled tasks, run logs and group sessions.

Timestamps are stored as ISO-8601 UTC text so that string comparison in
SQL matches chronological order.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.models.tasks import ScheduledTask, TaskRunLog

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("prompt", "schedule_type", "schedule_value", "next_run", "status", "context_mode")


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Store:
    """Persistent state of the host process.

    Usage:
        store = Store(home / "db.sqlite")
        store.create_task(task)
        due = store.get_due_tasks(datetime.now(timezone.utc))
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db: sqlite3.Connection | None = None
        self._init_sqlite()

    # ------------------------------------------------------------------
    # SQLite
    # ------------------------------------------------------------------

    def _init_sqlite(self) -> None:
        """Initialize SQLite database and create tables if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(self._db_path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")

        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                group_key TEXT NOT NULL,
                routing_key TEXT NOT NULL DEFAULT '',
                prompt TEXT NOT NULL,
                schedule_type TEXT NOT NULL,
                schedule_value TEXT NOT NULL,
                next_run TEXT,
                last_run TEXT,
                last_result TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                context_mode TEXT NOT NULL DEFAULT 'isolated',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_next_run ON scheduled_tasks(next_run);
            CREATE INDEX IF NOT EXISTS idx_tasks_status ON scheduled_tasks(status);

            CREATE TABLE IF NOT EXISTS task_run_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT NOT NULL,
                run_at TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
            );

            CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);

            CREATE TABLE IF NOT EXISTS sessions (
                group_key TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """)
        self._db.commit()
        logger.info("SQLite initialized at %s", self._db_path)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized")
        return self._db

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._db:
            self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Scheduled tasks
    # ------------------------------------------------------------------

    def create_task(self, task: ScheduledTask) -> ScheduledTask:
        self.db.execute(
            """INSERT INTO scheduled_tasks
               (id, group_key, routing_key, prompt, schedule_type, schedule_value,
                next_run, last_run, last_result, status, context_mode, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id,
                task.group_key,
                task.routing_key,
                task.prompt,
                task.schedule_type,
                task.schedule_value,
                _to_db(task.next_run),
                _to_db(task.last_run),
                task.last_result,
                task.status,
                task.context_mode,
                _to_db(task.created_at),
            ),
        )
        self.db.commit()
        return task

    def get_task(self, task_id: str) -> ScheduledTask | None:
        row = self.db.execute(
            "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, group_key: str | None = None) -> list[ScheduledTask]:
        """All tasks, newest first, optionally limited to one group."""
        if group_key is not None:
            rows = self.db.execute(
                "SELECT * FROM scheduled_tasks WHERE group_key = ? ORDER BY created_at DESC",
                (group_key,),
            ).fetchall()
        else:
            rows = self.db.execute(
                "SELECT * FROM scheduled_tasks ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **updates: Any) -> bool:
        """Update selected columns. Returns False if the task does not exist."""
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        if not updates:
            return self.get_task(task_id) is not None

        fields = []
        values: list[Any] = []
        for name, value in updates.items():
            fields.append(f"{name} = ?")
            values.append(_to_db(value) if isinstance(value, datetime) else value)
        values.append(task_id)

        cursor = self.db.execute(
            f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?",
            values,
        )
        self.db.commit()
        return cursor.rowcount > 0

    def delete_task(self, task_id: str) -> bool:
        """Delete a task and its run logs."""
        self.db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        cursor = self.db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        self.db.commit()
        return cursor.rowcount > 0

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Active tasks whose next_run has passed, earliest first."""
        rows = self.db.execute(
            """SELECT * FROM scheduled_tasks
               WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
               ORDER BY next_run""",
            (_to_db(now),),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task_after_run(
        self,
        task_id: str,
        next_run: datetime | None,
        last_result: str,
        last_run: datetime | None = None,
    ) -> None:
        """Record a run. A task without a next run becomes completed."""
        last_run = last_run or datetime.now(timezone.utc)
        self.db.execute(
            """UPDATE scheduled_tasks
               SET next_run = ?, last_run = ?, last_result = ?,
                   status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END
               WHERE id = ?""",
            (_to_db(next_run), _to_db(last_run), last_result, _to_db(next_run), task_id),
        )
        self.db.commit()

    def _row_to_task(self, row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            group_key=row["group_key"],
            routing_key=row["routing_key"] or "",
            prompt=row["prompt"],
            schedule_type=row["schedule_type"],
            schedule_value=row["schedule_value"],
            next_run=_from_db(row["next_run"]),
            last_run=_from_db(row["last_run"]),
            last_result=row["last_result"],
            status=row["status"],
            context_mode=row["context_mode"] or "isolated",
            created_at=_from_db(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Run logs
    # ------------------------------------------------------------------

    def log_task_run(self, log: TaskRunLog) -> None:
        self.db.execute(
            """INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                log.task_id,
                _to_db(log.run_at),
                log.duration_ms,
                log.status,
                log.result,
                log.error,
            ),
        )
        self.db.commit()

    def get_task_run_logs(self, task_id: str, limit: int = 10) -> list[TaskRunLog]:
        """Most recent runs first."""
        rows = self.db.execute(
            """SELECT task_id, run_at, duration_ms, status, result, error
               FROM task_run_logs
               WHERE task_id = ?
               ORDER BY run_at DESC, id DESC
               LIMIT ?""",
            (task_id, limit),
        ).fetchall()
        return [
            TaskRunLog(
                task_id=r["task_id"],
                run_at=_from_db(r["run_at"]),
                duration_ms=r["duration_ms"],
                status=r["status"],
                result=r["result"],
                error=r["error"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Group sessions
    # ------------------------------------------------------------------

    def get_session(self, group_key: str) -> str | None:
        row = self.db.execute(
            "SELECT session_id FROM sessions WHERE group_key = ?", (group_key,)
        ).fetchone()
        return row["session_id"] if row else None

    def set_session(self, group_key: str, session_id: str) -> None:
        self.db.execute(
            """INSERT OR REPLACE INTO sessions (group_key, session_id, updated_at)
               VALUES (?, ?, ?)""",
            (group_key, session_id, _to_db(datetime.now(timezone.utc))),
        )
        self.db.commit()
