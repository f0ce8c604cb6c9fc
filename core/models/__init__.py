"""Pydantic data models shared across all components."""

from core.models.engine import EngineEvent
from core.models.events import Event, EventTypes
from core.models.tasks import ScheduledTask, TaskRunLog
from core.models.work import (
    READY_ID,
    BootstrapContext,
    ControlSignal,
    InboxMessage,
    WorkRequest,
    WorkResult,
)

__all__ = [
    "READY_ID",
    "BootstrapContext",
    "ControlSignal",
    "EngineEvent",
    "Event",
    "EventTypes",
    "InboxMessage",
    "ScheduledTask",
    "TaskRunLog",
    "WorkRequest",
    "WorkResult",
]
