"""Event model -- the message format of the host-side event bus."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


class Event(BaseModel):
    """A typed event that flows through the EventBus.

    Events are persisted to daily JSONL files for auditability.
    """

    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str
    payload: dict = Field(default_factory=dict)


# -- Event type constants --

class EventTypes:
    """Well-known event type strings."""

    # Workers
    WORKER_STATUS = "worker.status"
    WORKER_READY = "worker.ready"
    WORKER_EXITED = "worker.exited"

    # Scheduler
    SCHEDULE_FIRED = "schedule.fired"
    TASK_COMPLETED = "task.completed"
    TASK_CREATED = "task.created"
