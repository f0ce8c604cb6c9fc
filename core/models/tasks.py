"""Task models -- scheduled task definitions and their run history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

ScheduleType = Literal["cron", "interval", "once"]
TaskStatus = Literal["active", "paused", "completed"]
ContextMode = Literal["isolated", "group"]


def new_task_id() -> str:
    return f"task-{uuid4().hex[:12]}"


class ScheduledTask(BaseModel):
    """A prompt the scheduler runs autonomously for a group.

    `schedule_value` is a 5-field cron expression, an interval in
    milliseconds, or an ISO-8601 timestamp, depending on `schedule_type`.
    """

    id: str = Field(default_factory=new_task_id)
    group_key: str
    routing_key: str = ""
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_result: str | None = None
    status: TaskStatus = "active"
    # "group" resumes the group's persisted session; "isolated" starts fresh
    context_mode: ContextMode = "isolated"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TaskRunLog(BaseModel):
    """Audit record appended once per execution. Never mutated."""

    task_id: str
    run_at: datetime
    duration_ms: int
    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None
