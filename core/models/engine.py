"""Normalized events streamed by a reasoning engine."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

EngineEventKind = Literal["init", "assistant", "tool_use", "result", "compact"]


class EngineEvent(BaseModel):
    """One item of an engine stream.

    - init: a session was created or resumed (`session_id`)
    - assistant: intermediate assistant text (`text`)
    - tool_use: the engine invoked a tool (`tool_name`, `tool_input`)
    - compact: the engine compacted its context
    - result: the final answer (`text`)
    """

    kind: EngineEventKind
    session_id: str | None = None
    text: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
