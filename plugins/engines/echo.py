"""Offline echo engine for local development and integration tests.

Deterministic: emits init, one tool call, then echoes the prompt back.
A prompt starting with "fail:" raises EngineError with the rest as message.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from uuid import uuid4

from core.models.engine import EngineEvent
from plugins.engines.errors import EngineError

PLUGIN_META = {
    "name": "echo",
    "display_name": "Echo",
    "description": "Echoes prompts back without calling any model",
    "class_name": "EchoEngine",
    "config_fields": [],
}


class EchoEngine:
    def __init__(self, delay: float = 0.0) -> None:
        self._delay = delay

    @property
    def name(self) -> str:
        return "echo"

    async def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        tools: list[str] | None = None,
    ) -> AsyncIterator[EngineEvent]:
        yield EngineEvent(kind="init", session_id=session_id or f"echo-{uuid4().hex[:12]}")
        await asyncio.sleep(self._delay)

        yield EngineEvent(kind="tool_use", tool_name="Read", tool_input={"file_path": "/workspace/group/prompt.txt"})
        await asyncio.sleep(self._delay)

        if prompt.startswith("fail:"):
            raise EngineError(prompt[len("fail:"):].strip() or "echo failure")

        yield EngineEvent(kind="result", text=f"Echo: {prompt}")
