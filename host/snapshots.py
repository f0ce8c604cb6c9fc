"""Read-only state snapshots written into a group's IPC directory."""

from __future__ import annotations

import json
from pathlib import Path

from core.ipc.queue import write_atomic
from core.models.tasks import ScheduledTask

TASKS_SNAPSHOT = "current_tasks.json"


def write_tasks_snapshot(
    ipc_root: Path,
    group_key: str,
    is_primary: bool,
    tasks: list[ScheduledTask],
) -> Path:
    """Expose scheduled tasks to the group's worker.

    The primary group sees every task, other groups only their own.
    """
    visible = tasks if is_primary else [t for t in tasks if t.group_key == group_key]
    payload = [
        {
            "id": t.id,
            "groupKey": t.group_key,
            "prompt": t.prompt,
            "scheduleType": t.schedule_type,
            "scheduleValue": t.schedule_value,
            "status": t.status,
            "nextRun": t.next_run.isoformat() if t.next_run else None,
        }
        for t in visible
    ]
    return write_atomic(Path(ipc_root) / group_key / TASKS_SNAPSHOT, json.dumps(payload, indent=2))
