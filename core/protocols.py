"""Core protocols -- the extension points that define the system.

All protocols use Python's structural subtyping (typing.Protocol):
if your class has the right methods, it implements the protocol.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol, runtime_checkable

from core.models.engine import EngineEvent
from core.models.work import WorkRequest, WorkResult

StatusCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# 1. ReasoningEngine -- the external query/completion service
# ---------------------------------------------------------------------------

@runtime_checkable
class ReasoningEngine(Protocol):
    """Streams structured events for one query.

    Implementations live in plugins/engines. A stream may raise at any
    point; the worker's QueryExecutor turns that into an error result.
    Closing the iterator early (aclose) must release the underlying
    connection or subprocess.
    """

    @property
    def name(self) -> str:
        """Engine name, e.g. 'anthropic', 'claude_cli', 'echo'."""
        ...

    def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        tools: list[str] | None = None,
    ) -> AsyncIterator[EngineEvent]:
        """Start a query, resuming `session_id` when given."""
        ...


# ---------------------------------------------------------------------------
# 2. OneShotRunner -- what the scheduler needs from the process host
# ---------------------------------------------------------------------------

@runtime_checkable
class OneShotRunner(Protocol):
    """Runs one request in a fresh worker process and returns its result.

    Must not raise for worker failures: timeouts, crashes and unparsable
    output all come back as WorkResult(status="error").
    """

    def run(
        self,
        request: WorkRequest,
        on_status: StatusCallback | None = None,
    ) -> Awaitable[WorkResult]:
        ...
