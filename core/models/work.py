"""Work protocol models -- what flows between the host and a worker process.

Field names are snake_case in Python and camelCase on the wire
(stdin documents, inbox and outbox files).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        """Compact single-line JSON using wire names, without unset optionals."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


WorkStatus = Literal["success", "error", "interrupted"]


class WorkRequest(WireModel):
    """One unit of work for a worker. Consumed exactly once."""

    id: str = Field(default_factory=lambda: f"req-{uuid4().hex[:12]}")
    prompt: str
    session_id: str | None = None
    group_key: str
    routing_key: str = ""
    is_primary: bool = False
    is_scheduled: bool = False


class BootstrapContext(WireModel):
    """Startup payload of a supervisor worker. Has no prompt."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    group_key: str
    routing_key: str = ""
    is_primary: bool = False


class WorkResult(WireModel):
    """Terminal outcome of one WorkRequest (or the synthetic 'ready' marker)."""

    id: str = ""
    status: WorkStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)

    @classmethod
    def failure(cls, message: str, id: str = "") -> WorkResult:
        return cls(id=id, status="error", result=None, error=message)


class InboxMessage(WireModel):
    """A WorkRequest persisted in a worker's inbox directory."""

    id: str
    prompt: str
    audio_mode: bool | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class ControlSignal(str, Enum):
    SHUTDOWN = "shutdown"
    INTERRUPT = "interrupt"


READY_ID = "ready"
