"""Worker execution loop. Runs inside an isolated process.

Reads one JSON document from stdin and picks a mode:

- one-shot: the document has a prompt. Run it, print one framed
  WorkResult on stdout, exit 0 (success/interrupted) or 1 (error).
- supervisor: no prompt, the document is a BootstrapContext. Announce
  readiness through the outbox, then serve the inbox until a shutdown
  signal or the idle timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import time
from collections.abc import Callable
from typing import TextIO

from pydantic import ValidationError

from core.config import WorkerSettings
from core.ipc.framing import emit_status, write_framed_output
from core.ipc.queue import MessageQueue
from core.logging_setup import setup_logging
from core.models.work import (
    READY_ID,
    BootstrapContext,
    ControlSignal,
    InboxMessage,
    WorkRequest,
    WorkResult,
)
from plugins.engines import create_engine
from worker.executor import QueryExecutor

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 300.0
POLL_INTERVAL_SECONDS = 0.3

SCHEDULED_TASK_PREAMBLE = (
    "[SCHEDULED TASK - You are running automatically, not in response to a "
    "user message. Communicate with the user only if the task requires it.]"
)


def parse_input(raw: str) -> WorkRequest | BootstrapContext:
    """Decode the stdin document. Raises ValueError on malformed input."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse input: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Failed to parse input: expected a JSON object")

    try:
        if data.get("prompt"):
            return WorkRequest.model_validate(data)
        return BootstrapContext.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid input: {exc}") from exc


def frame_prompt(request: WorkRequest) -> str:
    if request.is_scheduled:
        return f"{SCHEDULED_TASK_PREAMBLE}\n\n{request.prompt}"
    return request.prompt


async def run_one_shot(
    request: WorkRequest,
    executor: QueryExecutor,
    out: TextIO | None = None,
) -> int:
    """Run a single request and print its framed result."""
    logger.info("Starting query (one-shot mode) for group %s", request.group_key)
    outcome = await executor.run(frame_prompt(request), session_id=request.session_id)
    logger.info("Query finished with status %s", outcome.status)

    write_framed_output(
        WorkResult(
            id=request.id,
            status=outcome.status,
            result=outcome.result,
            new_session_id=outcome.new_session_id,
            error=outcome.error,
        ),
        out,
    )
    return 1 if outcome.status == "error" else 0


class Supervisor:
    """State of one persistent worker.

    Owns the session id carried between messages, the last-activity
    clock and the stop event. At most one query is in flight: the next
    inbox entry is only read after the previous result is written.
    """

    def __init__(
        self,
        bootstrap: BootstrapContext,
        executor: QueryExecutor,
        queue: MessageQueue,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bootstrap = bootstrap
        self.executor = executor
        self.queue = queue
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self.session_id: str | None = None
        self.processed = 0
        self._clock = clock
        self._last_activity = clock()
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Wake the loop and make it exit (used for SIGTERM/SIGINT)."""
        self._stop.set()

    def idle_for(self) -> float:
        return self._clock() - self._last_activity

    async def run(self) -> int:
        logger.info("Supervisor started for group: %s", self.bootstrap.group_key)
        self.queue.ensure_dirs()
        self.queue.write_result(WorkResult(id=READY_ID, status="success"))
        logger.info("Ready signal written")
        self._last_activity = self._clock()

        while True:
            if self.queue.control.consume(ControlSignal.SHUTDOWN):
                logger.info("Shutdown signal received")
                break

            if self._stop.is_set():
                logger.info("Stop requested")
                break

            if self.idle_for() > self.idle_timeout:
                logger.info("Idle timeout reached, shutting down")
                break

            message = self.queue.pop_next()
            if message is not None:
                self._last_activity = self._clock()
                await self.process(message)
                self._last_activity = self._clock()
                continue  # drain the backlog without sleeping

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Supervisor exiting after %d message(s)", self.processed)
        return 0

    async def process(self, message: InboxMessage) -> WorkResult:
        logger.info("Processing message: %s", message.id)
        outcome = await self.executor.run(
            message.prompt,
            session_id=self.session_id,
            should_interrupt=lambda: self.queue.control.consume(ControlSignal.INTERRUPT),
        )
        if outcome.new_session_id:
            self.session_id = outcome.new_session_id

        result = WorkResult(
            id=message.id,
            status=outcome.status,
            result=outcome.result,
            new_session_id=outcome.new_session_id,
            error=outcome.error,
        )
        self.queue.write_result(result)
        self.processed += 1
        return result


def _install_signal_handlers(supervisor: Supervisor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, supervisor.request_stop)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported on this platform")


async def _serve(parsed: WorkRequest | BootstrapContext, settings: WorkerSettings) -> int:
    executor = QueryExecutor(create_engine(settings), on_status=emit_status)

    if isinstance(parsed, WorkRequest):
        return await run_one_shot(parsed, executor)

    supervisor = Supervisor(
        bootstrap=parsed,
        executor=executor,
        queue=MessageQueue(settings.ipc_dir),
        idle_timeout=settings.idle_timeout,
        poll_interval=settings.poll_interval,
    )
    _install_signal_handlers(supervisor)
    return await supervisor.run()


def _fail(message: str) -> int:
    logger.error(message)
    write_framed_output(WorkResult.failure(message))
    return 1


def main(stdin: TextIO | None = None) -> int:
    settings = WorkerSettings.from_env()
    setup_logging(settings.log_level)

    try:
        raw = (stdin or sys.stdin).read()
    except (OSError, UnicodeDecodeError) as exc:
        return _fail(f"Failed to read stdin: {exc}")

    try:
        parsed = parse_input(raw)
    except ValueError as exc:
        return _fail(str(exc))

    mode = "one-shot" if isinstance(parsed, WorkRequest) else "supervisor"
    logger.info("%s mode for group: %s", mode.capitalize(), parsed.group_key)

    try:
        return asyncio.run(_serve(parsed, settings))
    except ValueError as exc:
        # engine misconfiguration
        return _fail(str(exc))
    except Exception as exc:
        logger.exception("Worker crashed")
        if isinstance(parsed, WorkRequest):
            write_framed_output(WorkResult.failure(str(exc), id=parsed.id))
        return 1
