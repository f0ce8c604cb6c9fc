"""Scheduler runner -- asyncio loop that fires due tasks through worker runs.

Every `check_interval` seconds:
1. Reads active tasks whose next_run has passed, earliest first
2. Re-reads each one by id and skips it if it was paused or deleted
3. Runs its prompt in a one-shot worker (is_scheduled=True)
4. Appends a run log, stores a short lastResult and the next occurrence
5. Publishes schedule.fired / task.completed events

Tasks within one tick run one at a time. A failing task is recorded, never
raised, so the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from core.bus import AsyncIOBus
from core.data.store import Store
from core.models.events import Event, EventTypes
from core.models.tasks import ContextMode, ScheduledTask, ScheduleType, TaskRunLog
from core.models.work import WorkRequest, WorkResult
from core.protocols import OneShotRunner
from host.snapshots import write_tasks_snapshot
from scheduler.cron import first_run, get_timezone, next_run, validate_schedule

logger = logging.getLogger(__name__)

SUMMARY_LENGTH = 200


def summarize_result(result: str | None, error: str | None) -> str:
    """Short form of a run outcome stored as the task's lastResult."""
    if error:
        return f"Error: {error}"
    if result:
        return result[:SUMMARY_LENGTH]
    return "Completed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Async scheduler over the tasks stored in SQLite.

    Usage:
        scheduler = Scheduler(store=store, runner=runner, bus=bus)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: Store,
        runner: OneShotRunner,
        bus: AsyncIOBus | None = None,
        timezone: str = "UTC",
        check_interval: float = 60.0,
        primary_group: str = "main",
        ipc_root: Path | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        get_timezone(timezone)
        self._store = store
        self._runner = runner
        self._bus = bus
        self._timezone = timezone
        self._check_interval = check_interval
        self._primary_group = primary_group
        self._ipc_root = ipc_root
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self.running:
            logger.debug("Scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler started (check every %ss)", self._check_interval)

    async def stop(self) -> None:
        """Stop the scheduler loop. A task already running is awaited."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        """Main scheduler loop."""
        while not self._stop_event.is_set():
            try:
                await self.run_due_tasks()
            except Exception:
                logger.exception("Error in scheduler loop")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_due_tasks(self, now: datetime | None = None) -> int:
        """Run every due task once. Returns how many ran."""
        async with self._tick_lock:
            due = self._store.get_due_tasks(now or self._clock())
            if due:
                logger.info("Found %d due task(s)", len(due))

            ran = 0
            for task in due:
                if self._stop_event.is_set():
                    break
                # Paused or cancelled since selection
                current = self._store.get_task(task.id)
                if current is None or current.status != "active":
                    logger.info("Skipping task %s (no longer active)", task.id)
                    continue
                try:
                    await self.run_task(current)
                except Exception:
                    logger.exception("Error running scheduled task %s", task.id)
                    continue
                ran += 1
            return ran

    async def run_task(self, task: ScheduledTask) -> TaskRunLog | None:
        """Execute one task and record the outcome.

        Returns None when the task was deleted while it ran; nothing is
        recorded for it then.
        """
        started = time.monotonic()
        logger.info("Running scheduled task %s for group %s", task.id, task.group_key)
        is_primary = task.group_key == self._primary_group

        await self._publish(EventTypes.SCHEDULE_FIRED, {
            "task_id": task.id,
            "group_key": task.group_key,
            "schedule_type": task.schedule_type,
        })

        if self._ipc_root is not None:
            try:
                write_tasks_snapshot(
                    self._ipc_root, task.group_key, is_primary, self._store.list_tasks(),
                )
            except OSError:
                logger.exception("Failed to write tasks snapshot for %s", task.group_key)

        session_id = None
        if task.context_mode == "group":
            session_id = self._store.get_session(task.group_key)

        request = WorkRequest(
            prompt=task.prompt,
            session_id=session_id,
            group_key=task.group_key,
            routing_key=task.routing_key,
            is_primary=is_primary,
            is_scheduled=True,
        )

        result: str | None = None
        error: str | None = None
        try:
            outcome: WorkResult = await self._runner.run(request)
            if outcome.status == "error":
                error = outcome.error or "Unknown error"
            else:
                result = outcome.result
            if task.context_mode == "group" and outcome.new_session_id:
                self._store.set_session(task.group_key, outcome.new_session_id)
        except Exception as exc:
            logger.exception("Task %s failed", task.id)
            error = str(exc) or exc.__class__.__name__

        duration_ms = int((time.monotonic() - started) * 1000)
        finished = self._clock()
        if self._store.get_task(task.id) is None:
            logger.info("Task %s was deleted during its run, not recording it", task.id)
            return None

        run_log = TaskRunLog(
            task_id=task.id,
            run_at=finished,
            duration_ms=duration_ms,
            status="error" if error else "success",
            result=result,
            error=error,
        )
        self._store.log_task_run(run_log)

        upcoming = next_run(task.schedule_type, task.schedule_value, finished, self._timezone)
        summary = summarize_result(result, error)
        self._store.update_task_after_run(task.id, upcoming, summary, last_run=finished)

        logger.info(
            "Task %s finished in %dms (%s), next run: %s",
            task.id, duration_ms, run_log.status, upcoming.isoformat() if upcoming else "none",
        )
        await self._publish(EventTypes.TASK_COMPLETED, {
            "task_id": task.id,
            "group_key": task.group_key,
            "status": run_log.status,
            "duration_ms": duration_ms,
            "next_run": upcoming.isoformat() if upcoming else None,
        })
        return run_log

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def create_task(
        self,
        group_key: str,
        prompt: str,
        schedule_type: ScheduleType,
        schedule_value: str,
        context_mode: ContextMode = "isolated",
        routing_key: str = "",
    ) -> ScheduledTask:
        """Validate the schedule, compute the first run and persist the task.

        Raises ScheduleError for an invalid schedule.
        """
        validate_schedule(schedule_type, schedule_value)
        task = ScheduledTask(
            group_key=group_key,
            routing_key=routing_key,
            prompt=prompt,
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            next_run=first_run(schedule_type, schedule_value, self._clock(), self._timezone),
            context_mode=context_mode,
        )
        self._store.create_task(task)

        await self._publish(EventTypes.TASK_CREATED, {
            "task_id": task.id,
            "group_key": group_key,
            "schedule_type": schedule_type,
            "schedule_value": schedule_value,
        })
        logger.info(
            "Created task %s (%s %s) for group %s",
            task.id, schedule_type, schedule_value, group_key,
        )
        return task

    async def pause_task(self, task_id: str) -> bool:
        task = self._store.get_task(task_id)
        if task is None or task.status == "completed":
            return False
        self._store.update_task(task_id, status="paused")
        logger.info("Paused task: %s", task_id)
        return True

    async def resume_task(self, task_id: str) -> bool:
        """Reactivate a paused task. Its stored next_run is kept."""
        task = self._store.get_task(task_id)
        if task is None or task.status == "completed":
            return False
        self._store.update_task(task_id, status="active")
        logger.info("Resumed task: %s", task_id)
        return True

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its run history."""
        deleted = self._store.delete_task(task_id)
        if deleted:
            logger.info("Deleted task: %s", task_id)
        return deleted

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self._store.get_task(task_id)

    def list_tasks(self, group_key: str | None = None) -> list[ScheduledTask]:
        return self._store.list_tasks(group_key)

    def get_run_logs(self, task_id: str, limit: int = 10) -> list[TaskRunLog]:
        return self._store.get_task_run_logs(task_id, limit)

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self._bus is None:
            return
        await self._bus.publish(Event(type=event_type, source="scheduler", payload=payload))
