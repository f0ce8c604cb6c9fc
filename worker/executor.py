"""Query executor -- one invocation of the reasoning engine.

Shared by the one-shot and supervisor modes. Never raises for engine
failures: every outcome is a QueryOutcome with a status.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from core.ipc.framing import emit_status
from core.models.work import WorkStatus
from core.protocols import ReasoningEngine

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = [
    "Bash",
    "Read", "Write", "Edit", "Glob", "Grep",
    "WebSearch", "WebFetch",
]


@dataclass(slots=True)
class QueryOutcome:
    status: WorkStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


def describe_tool_call(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Human-readable progress line for a tool invocation."""
    file_name = PurePath(str(tool_input.get("file_path") or "")).name or "file"
    if tool_name == "Read":
        return f"Reading {file_name}..."
    if tool_name == "Write":
        return f"Writing {file_name}..."
    if tool_name == "Edit":
        return f"Editing {file_name}..."
    if tool_name == "Bash":
        return "Running a command..."
    if tool_name == "Glob":
        return "Searching for files..."
    if tool_name == "Grep":
        return "Searching the code..."
    if tool_name in ("WebSearch", "web_search"):
        return "Searching the web..."
    if tool_name == "WebFetch":
        return "Fetching a web page..."
    return f"Using {tool_name}..."


class QueryExecutor:
    """Runs prompts against a ReasoningEngine.

    The interrupt predicate is polled once per streamed event. Cancellation
    is cooperative: its latency is the gap between two engine events.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        tools: list[str] | None = None,
        on_status: Callable[[str], None] = emit_status,
    ) -> None:
        self._engine = engine
        self._tools = list(tools) if tools is not None else list(DEFAULT_TOOLS)
        self._on_status = on_status

    async def run(
        self,
        prompt: str,
        session_id: str | None = None,
        should_interrupt: Callable[[], bool] | None = None,
    ) -> QueryOutcome:
        result: str | None = None
        new_session_id: str | None = None

        self._on_status("Thinking...")
        stream = self._engine.stream(prompt, session_id=session_id, tools=self._tools)
        try:
            async for event in stream:
                if should_interrupt is not None and should_interrupt():
                    self._on_status("interrupted")
                    logger.info("Interrupt signal received during query")
                    return QueryOutcome("interrupted", result, new_session_id)

                if event.kind == "init":
                    new_session_id = event.session_id
                    logger.info("Session initialized: %s", new_session_id)
                elif event.kind == "tool_use":
                    self._on_status(describe_tool_call(event.tool_name or "tool", event.tool_input))
                elif event.kind == "compact":
                    logger.info("Engine compacted its context")
                elif event.kind == "result":
                    if event.text:
                        result = event.text
                    if event.session_id and not new_session_id:
                        new_session_id = event.session_id

            return QueryOutcome("success", result, new_session_id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Query error: %s", message)
            return QueryOutcome("error", None, new_session_id, error=message)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.exception("Failed to close engine stream")
