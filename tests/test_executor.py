from __future__ import annotations

import asyncio

import httpx
import pytest

from core.models.engine import EngineEvent
from plugins.engines.errors import EngineError
from worker.executor import DEFAULT_TOOLS, QueryExecutor, describe_tool_call


class ScriptedEngine:
    """Engine double yielding a fixed list of events (or raising mid-stream)."""

    def __init__(self, events, error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.calls: list[tuple[str, str | None, list[str] | None]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    async def stream(self, prompt, session_id=None, tools=None):
        self.calls.append((prompt, session_id, tools))
        try:
            for event in self.events:
                yield event
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def _run(executor: QueryExecutor, *args, **kwargs):
    return asyncio.run(executor.run(*args, **kwargs))


def test_success_captures_result_and_session() -> None:
    statuses: list[str] = []
    engine = ScriptedEngine([
        EngineEvent(kind="init", session_id="sess-1"),
        EngineEvent(kind="tool_use", tool_name="Read", tool_input={"file_path": "/src/app/main.py"}),
        EngineEvent(kind="assistant", text="Looking..."),
        EngineEvent(kind="result", text="All good"),
    ])

    outcome = _run(QueryExecutor(engine, on_status=statuses.append), "check it")

    assert outcome.status == "success"
    assert outcome.result == "All good"
    assert outcome.new_session_id == "sess-1"
    assert outcome.error is None
    assert statuses == ["Thinking...", "Reading main.py..."]
    assert engine.calls == [("check it", None, DEFAULT_TOOLS)]


def test_session_id_is_passed_through() -> None:
    engine = ScriptedEngine([EngineEvent(kind="init", session_id="sess-9"), EngineEvent(kind="result", text="x")])

    _run(QueryExecutor(engine, tools=["Bash"], on_status=lambda s: None), "again", session_id="sess-9")

    assert engine.calls == [("again", "sess-9", ["Bash"])]


def test_success_without_result_text() -> None:
    engine = ScriptedEngine([EngineEvent(kind="init", session_id="s"), EngineEvent(kind="result")])

    outcome = _run(QueryExecutor(engine, on_status=lambda s: None), "quiet")

    assert outcome.status == "success"
    assert outcome.result is None


def test_engine_error_becomes_error_outcome() -> None:
    engine = ScriptedEngine([EngineEvent(kind="init", session_id="sess-1")], error=EngineError("rate limited"))

    outcome = _run(QueryExecutor(engine, on_status=lambda s: None), "go")

    assert outcome.status == "error"
    assert outcome.error == "rate limited"
    assert outcome.result is None
    assert outcome.new_session_id == "sess-1"


def test_transport_errors_are_caught() -> None:
    engine = ScriptedEngine([], error=httpx.ConnectError("connection refused"))

    outcome = _run(QueryExecutor(engine, on_status=lambda s: None), "go")

    assert outcome.status == "error"
    assert "connection refused" in outcome.error


def test_interrupt_stops_consuming_and_closes_stream() -> None:
    statuses: list[str] = []
    engine = ScriptedEngine([
        EngineEvent(kind="init", session_id="sess-1"),
        EngineEvent(kind="tool_use", tool_name="Bash", tool_input={"command": "sleep 100"}),
        EngineEvent(kind="result", text="should not be seen"),
    ])
    checks = iter([False, True])

    outcome = _run(
        QueryExecutor(engine, on_status=statuses.append),
        "long job",
        should_interrupt=lambda: next(checks, True),
    )

    assert outcome.status == "interrupted"
    assert outcome.result is None
    assert outcome.new_session_id == "sess-1"
    assert statuses == ["Thinking...", "interrupted"]
    assert engine.closed


def test_interrupt_before_first_event() -> None:
    engine = ScriptedEngine([EngineEvent(kind="init", session_id="sess-1")])

    outcome = _run(QueryExecutor(engine, on_status=lambda s: None), "x", should_interrupt=lambda: True)

    assert outcome.status == "interrupted"
    assert outcome.new_session_id is None


@pytest.mark.parametrize(
    ("tool", "tool_input", "expected"),
    [
        ("Read", {"file_path": "/a/b/notes.md"}, "Reading notes.md..."),
        ("Write", {"file_path": "out.txt"}, "Writing out.txt..."),
        ("Edit", {}, "Editing file..."),
        ("Bash", {"command": "ls"}, "Running a command..."),
        ("Glob", {"pattern": "*.py"}, "Searching for files..."),
        ("Grep", {"pattern": "TODO"}, "Searching the code..."),
        ("WebSearch", {"query": "news"}, "Searching the web..."),
        ("web_search", {"query": "news"}, "Searching the web..."),
        ("WebFetch", {"url": "https://example.com"}, "Fetching a web page..."),
        ("mcp__calendar", {}, "Using mcp__calendar..."),
    ],
)
def test_describe_tool_call(tool, tool_input, expected) -> None:
    assert describe_tool_call(tool, tool_input) == expected
