from __future__ import annotations

import asyncio
import json

from conftest import FakeRunner
from host.commands import TaskCommandWatcher
from scheduler.runner import Scheduler


def _setup(tmp_path, store, clock):
    ipc_root = tmp_path / "ipc"
    scheduler = Scheduler(store=store, runner=FakeRunner(), clock=clock)
    watcher = TaskCommandWatcher(ipc_root, scheduler, primary_group="main")
    return ipc_root, scheduler, watcher


def _drop(directory, name: str, payload) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (directory / name).write_text(text)


def test_schedule_command_creates_task_for_own_group(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    _drop(ipc_root / "family" / "tasks", "a.json", {
        "type": "schedule_task",
        "prompt": "water the plants",
        "scheduleType": "cron",
        "scheduleValue": "0 8 * * *",
        "contextMode": "group",
    })

    applied = asyncio.run(watcher.process_pending())

    (task,) = scheduler.list_tasks()
    assert applied == 1
    assert task.group_key == "family"
    assert task.context_mode == "group"
    assert not (ipc_root / "family" / "tasks" / "a.json").exists()


def test_primary_group_may_schedule_for_others(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    _drop(ipc_root / "main" / "tasks", "a.json", {
        "type": "schedule_task",
        "prompt": "remind",
        "scheduleType": "interval",
        "scheduleValue": "3600000",
        "groupKey": "family",
    })

    asyncio.run(watcher.process_pending())

    assert [t.group_key for t in scheduler.list_tasks()] == ["family"]


def test_other_group_cannot_target_foreign_group(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    _drop(ipc_root / "other" / "tasks", "x.json", {
        "type": "schedule_task",
        "prompt": "sneaky",
        "scheduleType": "interval",
        "scheduleValue": "60000",
        "groupKey": "main",
    })

    applied = asyncio.run(watcher.process_pending())

    assert applied == 0
    assert scheduler.list_tasks() == []
    assert (ipc_root / "errors" / "other-x.json").exists()


def test_pause_from_conversation_directory(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    task = asyncio.run(scheduler.create_task("family", "p", "interval", "60000"))
    _drop(
        ipc_root / "family" / "conversations" / "chat-1" / "tasks",
        "pause.json",
        {"type": "pause_task", "taskId": task.id},
    )

    applied = asyncio.run(watcher.process_pending())

    assert applied == 1
    assert scheduler.get_task(task.id).status == "paused"


def test_non_primary_cannot_cancel_foreign_task(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    task = asyncio.run(scheduler.create_task("main", "p", "interval", "60000"))
    _drop(ipc_root / "family" / "tasks", "c.json", {"type": "cancel_task", "taskId": task.id})

    asyncio.run(watcher.process_pending())

    assert scheduler.get_task(task.id) is not None
    assert (ipc_root / "errors" / "family-c.json").exists()


def test_cancel_unknown_task_is_consumed(tmp_path, store, clock) -> None:
    ipc_root, _, watcher = _setup(tmp_path, store, clock)
    _drop(ipc_root / "main" / "tasks", "c.json", {"type": "cancel_task", "taskId": "task-missing"})

    assert asyncio.run(watcher.process_pending()) == 1
    assert not (ipc_root / "main" / "tasks" / "c.json").exists()


def test_invalid_files_are_moved_to_errors(tmp_path, store, clock) -> None:
    ipc_root, scheduler, watcher = _setup(tmp_path, store, clock)
    tasks_dir = ipc_root / "main" / "tasks"
    _drop(tasks_dir, "broken.json", "{not json")
    _drop(tasks_dir, "unknown.json", {"type": "reboot"})
    _drop(tasks_dir, "cron.json", {
        "type": "schedule_task", "prompt": "x", "scheduleType": "cron", "scheduleValue": "whenever",
    })

    applied = asyncio.run(watcher.process_pending())

    assert applied == 0
    assert scheduler.list_tasks() == []
    assert sorted(p.name for p in (ipc_root / "errors").iterdir()) == [
        "main-broken.json", "main-cron.json", "main-unknown.json",
    ]
    assert list(tasks_dir.iterdir()) == []
