"""WorkerManager -- persistent supervisor workers, one per conversation.

A conversation's first message spawns a worker in supervisor mode and waits
for its ready entry. Later messages reuse it: requests go to the inbox,
results come back through the outbox poller. When a message arrives while
the worker is busy it is queued host-side and the running query is
interrupted, so the newest message is served next.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from core.bus import AsyncIOBus
from core.config import ENV_PREFIX, AppConfig
from core.duration import duration_seconds
from core.ipc.framing import parse_status_line
from core.ipc.queue import MessageQueue, new_message_id
from core.models.events import Event, EventTypes
from core.models.work import (
    READY_ID,
    BootstrapContext,
    ControlSignal,
    InboxMessage,
    WorkResult,
)
from core.protocols import StatusCallback

logger = logging.getLogger(__name__)

WorkerState = Literal["starting", "idle", "busy", "exited"]

_READY_POLL_SECONDS = 0.2
_FORCE_KILL_SECONDS = 10.0
_STREAM_LIMIT = 16 * 1024 * 1024


class WorkerStartError(RuntimeError):
    """The worker did not announce readiness in time."""


class WorkerExitedError(RuntimeError):
    """The worker process ended while requests were outstanding."""

    def __init__(self, code: int | None) -> None:
        super().__init__(f"Worker exited with code {code}")
        self.code = code


@dataclass
class WorkerHandle:
    conversation_id: str
    group_key: str
    queue: MessageQueue
    process: asyncio.subprocess.Process
    state: WorkerState = "starting"
    on_status: StatusCallback | None = None
    backlog: deque[tuple[InboxMessage, asyncio.Future]] = field(default_factory=deque)
    pending: dict[str, asyncio.Future] = field(default_factory=dict)
    tasks: list[asyncio.Task] = field(default_factory=list)
    idle_task: asyncio.Task | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)


def _safe_name(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "-", value)


class WorkerManager:
    """Keeps one supervisor worker alive per conversation.

    Usage:
        manager = WorkerManager(config, bus)
        result = await manager.send_message_and_wait("conv-1", "main", "hello")
        await manager.shutdown_all()
    """

    def __init__(self, config: AppConfig, bus: AsyncIOBus | None = None) -> None:
        self._config = config
        self._bus = bus
        self._workers: dict[str, WorkerHandle] = {}
        self._spawn_locks: dict[str, asyncio.Lock] = {}
        self._ready_timeout = duration_seconds(config.host.ready_timeout)
        self._poll_interval = duration_seconds(config.host.outbox_poll_interval)
        self._idle_timeout = duration_seconds(config.host.idle_timeout)

    def ipc_dir(self, conversation_id: str, group_key: str) -> Path:
        return self._config.ipc_root / group_key / "conversations" / _safe_name(conversation_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message_and_wait(
        self,
        conversation_id: str,
        group_key: str,
        prompt: str,
        on_status: StatusCallback | None = None,
        audio_mode: bool | None = None,
    ) -> WorkResult:
        """Deliver a prompt to the conversation's worker and wait for its result.

        Raises WorkerStartError if a new worker never becomes ready and
        WorkerExitedError if the worker dies before answering.
        """
        lock = self._spawn_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            handle = self._workers.get(conversation_id)
            if handle is None:
                handle = await self._spawn(conversation_id, group_key)
                self._workers[conversation_id] = handle

        handle.on_status = on_status
        message = InboxMessage(id=new_message_id(), prompt=prompt, audio_mode=audio_mode)
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        if handle.state == "busy":
            handle.backlog.append((message, future))
            self.interrupt(conversation_id)
            logger.info(
                "Message %s queued and interrupt sent (worker busy, %d queued)",
                message.id, len(handle.backlog),
            )
        else:
            self._dispatch(handle, message, future)

        return await future

    def interrupt(self, conversation_id: str) -> bool:
        """Ask the worker to abandon its current query."""
        handle = self._workers.get(conversation_id)
        if handle is None:
            return False
        handle.queue.control.send(ControlSignal.INTERRUPT)
        logger.info("Interrupt signal sent to %s", conversation_id)
        return True

    def shutdown(self, conversation_id: str) -> bool:
        """Ask the worker to exit after its current query."""
        handle = self._workers.get(conversation_id)
        if handle is None:
            return False
        handle.queue.control.send(ControlSignal.SHUTDOWN)
        logger.info("Shutdown signal sent to %s", conversation_id)
        return True

    async def shutdown_all(self) -> None:
        """Stop every worker, killing those that do not exit within 10s."""
        handles = list(self._workers.values())
        for handle in handles:
            self.shutdown(handle.conversation_id)

        async def _wait(handle: WorkerHandle) -> None:
            try:
                await asyncio.wait_for(handle.exited.wait(), timeout=_FORCE_KILL_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Worker %s did not stop, killing", handle.conversation_id)
                if handle.process.returncode is None:
                    handle.process.kill()
                await handle.exited.wait()

        await asyncio.gather(*(_wait(h) for h in handles))

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._workers

    def is_busy(self, conversation_id: str) -> bool:
        handle = self._workers.get(conversation_id)
        return handle is not None and handle.state == "busy"

    def active_conversations(self) -> list[str]:
        return list(self._workers)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def _spawn(self, conversation_id: str, group_key: str) -> WorkerHandle:
        ipc_dir = self.ipc_dir(conversation_id, group_key)
        queue = MessageQueue(ipc_dir)
        queue.ensure_dirs()
        removed = queue.clear_outbox()
        if removed:
            logger.debug("Removed %d stale outbox file(s) for %s", removed, conversation_id)

        workdir = self._config.groups_root / group_key
        workdir.mkdir(parents=True, exist_ok=True)

        env = dict(os.environ)
        env.update(self._config.worker_env(group_key))
        env[f"{ENV_PREFIX}IPC_DIR"] = str(ipc_dir)

        logger.info("Spawning persistent worker for %s (group %s)", conversation_id, group_key)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._config.worker.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=env,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise WorkerStartError(f"Worker spawn error: {exc}") from exc

        bootstrap = BootstrapContext(group_key=group_key, routing_key=conversation_id)
        process.stdin.write(bootstrap.to_wire().encode("utf-8"))
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Worker for %s closed stdin early", conversation_id)
        process.stdin.close()

        handle = WorkerHandle(
            conversation_id=conversation_id,
            group_key=group_key,
            queue=queue,
            process=process,
        )
        handle.tasks.append(asyncio.create_task(self._drain_stdout(handle)))
        handle.tasks.append(asyncio.create_task(self._watch_stderr(handle)))
        exit_task = asyncio.create_task(self._watch_exit(handle))

        try:
            await self._wait_for_ready(handle)
        except WorkerStartError:
            if process.returncode is None:
                process.kill()
            await exit_task
            raise

        handle.state = "idle"
        handle.tasks.append(asyncio.create_task(self._poll_outbox(handle)))
        self._reset_idle_timer(handle)
        logger.info("Persistent worker ready for %s", conversation_id)
        await self._publish(EventTypes.WORKER_READY, handle)
        return handle

    async def _wait_for_ready(self, handle: WorkerHandle) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ready_timeout
        while loop.time() < deadline:
            for result in handle.queue.read_results():
                if result.id == READY_ID:
                    return
                logger.warning("Unexpected outbox entry %s before ready", result.id)
            if handle.exited.is_set():
                raise WorkerStartError(
                    f"Worker exited with code {handle.process.returncode} before becoming ready"
                )
            await asyncio.sleep(_READY_POLL_SECONDS)
        raise WorkerStartError(
            f"Worker failed to become ready within {self._config.host.ready_timeout}"
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, handle: WorkerHandle, message: InboxMessage, future: asyncio.Future) -> None:
        handle.state = "busy"
        self._cancel_idle_timer(handle)
        handle.pending[message.id] = future
        handle.queue.enqueue(message)
        logger.debug("Message %s written to inbox of %s", message.id, handle.conversation_id)

    def _process_backlog(self, handle: WorkerHandle) -> None:
        while handle.backlog:
            message, future = handle.backlog.popleft()
            if future.done():
                continue  # caller gave up
            self._dispatch(handle, message, future)
            logger.info("Processing queued message %s", message.id)
            return
        self._reset_idle_timer(handle)

    async def _poll_outbox(self, handle: WorkerHandle) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                self._deliver(handle, handle.queue.read_results())
            except Exception:
                logger.exception("Error polling outbox of %s", handle.conversation_id)

    def _deliver(self, handle: WorkerHandle, results: list[WorkResult]) -> None:
        for result in results:
            if result.id == READY_ID:
                continue  # late ready entry
            future = handle.pending.pop(result.id, None)
            if future is None:
                logger.warning("Outbox entry %s has no waiting caller", result.id)
            elif not future.done():
                future.set_result(result)
            if handle.state == "busy" and not handle.pending:
                handle.state = "idle"
                self._process_backlog(handle)

    # ------------------------------------------------------------------
    # Idle timer
    # ------------------------------------------------------------------

    def _cancel_idle_timer(self, handle: WorkerHandle) -> None:
        if handle.idle_task is not None:
            handle.idle_task.cancel()
            handle.idle_task = None

    def _reset_idle_timer(self, handle: WorkerHandle) -> None:
        self._cancel_idle_timer(handle)
        handle.idle_task = asyncio.create_task(self._idle_timeout_after(handle))

    async def _idle_timeout_after(self, handle: WorkerHandle) -> None:
        await asyncio.sleep(self._idle_timeout)
        if handle.state == "idle" and self._workers.get(handle.conversation_id) is handle:
            logger.info("Worker %s idle, shutting down", handle.conversation_id)
            self.shutdown(handle.conversation_id)

    # ------------------------------------------------------------------
    # Process streams
    # ------------------------------------------------------------------

    async def _drain_stdout(self, handle: WorkerHandle) -> None:
        # Supervisor mode talks through the queue; stdout is discarded.
        while await handle.process.stdout.read(64 * 1024):
            pass

    async def _watch_stderr(self, handle: WorkerHandle) -> None:
        while True:
            raw = await handle.process.stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            status = parse_status_line(line)
            if status is None:
                if line:
                    logger.debug("[%s] %s", handle.conversation_id, line)
                continue
            if handle.on_status is not None:
                try:
                    handle.on_status(status)
                except Exception:
                    logger.exception("Status callback failed")
            await self._publish(EventTypes.WORKER_STATUS, handle, status=status)

    async def _watch_exit(self, handle: WorkerHandle) -> None:
        code = await handle.process.wait()
        logger.info("Persistent worker for %s exited with code %s", handle.conversation_id, code)

        handle.state = "exited"
        for task in handle.tasks:
            task.cancel()

        # Results written just before exit still count
        try:
            self._deliver(handle, handle.queue.read_results())
        except Exception:
            logger.exception("Error draining outbox of %s", handle.conversation_id)
        self._cancel_idle_timer(handle)

        error = WorkerExitedError(code)
        for future in handle.pending.values():
            if not future.done():
                future.set_exception(error)
        handle.pending.clear()
        while handle.backlog:
            _, future = handle.backlog.popleft()
            if not future.done():
                future.set_exception(error)

        if self._workers.get(handle.conversation_id) is handle:
            del self._workers[handle.conversation_id]
        handle.exited.set()
        await self._publish(EventTypes.WORKER_EXITED, handle, code=code)

    async def _publish(self, event_type: str, handle: WorkerHandle, **payload) -> None:
        if self._bus is None:
            return
        await self._bus.publish(Event(
            type=event_type,
            source="host.manager",
            payload={
                "conversation_id": handle.conversation_id,
                "group_key": handle.group_key,
                **payload,
            },
        ))
