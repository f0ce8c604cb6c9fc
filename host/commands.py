"""Task commands issued by workers through their IPC directory.

A worker (or the agent inside it) drops a JSON file into
``<ipc>/<group>/tasks/`` (or its conversation's ``tasks/``):

    {"type": "schedule_task", "prompt": "...", "scheduleType": "cron",
     "scheduleValue": "0 9 * * *", "contextMode": "group"}
    {"type": "pause_task", "taskId": "task-..."}

The watcher applies each command through the Scheduler and deletes the
file. Files that fail to parse or apply are moved to ``<ipc>/errors/``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Literal

from pydantic import ValidationError

from core.models.tasks import ContextMode, ScheduleType
from core.models.work import WireModel
from scheduler.runner import Scheduler

logger = logging.getLogger(__name__)

ERRORS_DIR = "errors"


class TaskCommand(WireModel):
    type: Literal["schedule_task", "pause_task", "resume_task", "cancel_task"]
    task_id: str | None = None
    prompt: str | None = None
    schedule_type: ScheduleType | None = None
    schedule_value: str | None = None
    context_mode: ContextMode = "isolated"
    group_key: str | None = None
    routing_key: str = ""


class CommandRejected(ValueError):
    """A well-formed command that may not be applied."""


class TaskCommandWatcher:
    """Polls group IPC directories for task commands.

    Usage:
        watcher = TaskCommandWatcher(config.ipc_root, scheduler, primary_group="main")
        await watcher.start()
    """

    def __init__(
        self,
        ipc_root: Path,
        scheduler: Scheduler,
        primary_group: str = "main",
        poll_interval: float = 1.0,
    ) -> None:
        self._ipc_root = Path(ipc_root)
        self._scheduler = scheduler
        self._primary_group = primary_group
        self._poll_interval = poll_interval
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._ipc_root.mkdir(parents=True, exist_ok=True)
        self._task = asyncio.create_task(self._loop())
        logger.info("Task command watcher started on %s", self._ipc_root)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task command watcher stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.process_pending()
            except Exception:
                logger.exception("Error processing task commands")
            await asyncio.sleep(self._poll_interval)

    def _command_files(self) -> list[tuple[str, Path]]:
        found = []
        for path in sorted(self._ipc_root.glob("*/**/tasks/*.json")):
            source_group = path.relative_to(self._ipc_root).parts[0]
            if source_group != ERRORS_DIR:
                found.append((source_group, path))
        return found

    async def process_pending(self) -> int:
        """Apply every waiting command file. Returns how many succeeded."""
        applied = 0
        for source_group, path in self._command_files():
            try:
                command = TaskCommand.model_validate_json(path.read_text(encoding="utf-8"))
                await self.apply(command, source_group)
            except FileNotFoundError:
                continue
            except (ValidationError, ValueError) as exc:
                logger.error("Rejected task command %s from %s: %s", path.name, source_group, exc)
                self._move_to_errors(path, source_group)
                continue
            path.unlink(missing_ok=True)
            applied += 1
        return applied

    async def apply(self, command: TaskCommand, source_group: str) -> None:
        """Apply one command on behalf of `source_group`.

        Raises ValueError (ScheduleError, CommandRejected) when it cannot.
        """
        is_primary = source_group == self._primary_group

        if command.type == "schedule_task":
            if not (command.prompt and command.schedule_type and command.schedule_value):
                raise CommandRejected("schedule_task needs prompt, scheduleType and scheduleValue")
            target = command.group_key or source_group
            if target != source_group and not is_primary:
                raise CommandRejected(f"Group {source_group} may not schedule for {target}")
            task = await self._scheduler.create_task(
                group_key=target,
                prompt=command.prompt,
                schedule_type=command.schedule_type,
                schedule_value=command.schedule_value,
                context_mode=command.context_mode,
                routing_key=command.routing_key,
            )
            logger.info("Task %s created via IPC by %s for %s", task.id, source_group, target)
            return

        if not command.task_id:
            raise CommandRejected(f"{command.type} needs taskId")
        task = self._scheduler.get_task(command.task_id)
        if task is None:
            logger.warning("%s: unknown task %s", command.type, command.task_id)
            return
        if task.group_key != source_group and not is_primary:
            raise CommandRejected(f"Group {source_group} may not modify task {task.id}")

        if command.type == "pause_task":
            await self._scheduler.pause_task(task.id)
        elif command.type == "resume_task":
            await self._scheduler.resume_task(task.id)
        else:
            await self._scheduler.delete_task(task.id)
        logger.info("%s applied to %s via IPC by %s", command.type, task.id, source_group)

    def _move_to_errors(self, path: Path, source_group: str) -> None:
        errors_dir = self._ipc_root / ERRORS_DIR
        errors_dir.mkdir(parents=True, exist_ok=True)
        try:
            path.replace(errors_dir / f"{source_group}-{path.name}")
        except OSError:
            logger.exception("Failed to move %s to %s", path, errors_dir)

