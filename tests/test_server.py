from __future__ import annotations

import asyncio

from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeRunner
from core.bus import AsyncIOBus
from core.models.work import WorkResult
from host.manager import WorkerExitedError, WorkerManager, WorkerStartError
from scheduler.runner import Scheduler
from server import create_app


class StubManager:
    """WorkerManager stand-in answering from a canned outcome."""

    def __init__(self, outcome: WorkResult | Exception | None = None) -> None:
        self.outcome = outcome or WorkResult(id="msg-1", status="success", result="hi there")
        self.calls: list[tuple[str, str, str]] = []

    async def send_message_and_wait(self, conversation_id, group_key, prompt, on_status=None, audio_mode=None):
        self.calls.append((conversation_id, group_key, prompt))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def interrupt(self, conversation_id: str) -> bool:
        return conversation_id == "busy-conv"

    def active_conversations(self) -> list[str]:
        return ["busy-conv"]


def _serve(app_config, store, clock, scenario, manager=None):
    scheduler = Scheduler(store=store, runner=FakeRunner(), clock=clock)
    manager = manager if manager is not None else WorkerManager(app_config)
    app = create_app(app_config, AsyncIOBus(), scheduler, manager)

    async def run():
        client = TestClient(TestServer(app))
        await client.start_server()
        try:
            return await scenario(client, scheduler)
        finally:
            await client.close()

    return asyncio.run(run())


def test_health(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        resp = await client.get("/health")
        return resp.status, await resp.json()

    status, body = _serve(app_config, store, clock, scenario, manager=StubManager())

    assert status == 200
    assert body == {"status": "ok", "scheduler": "stopped", "workers": ["busy-conv"]}


def test_task_lifecycle(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        resp = await client.post("/tasks", json={
            "group_key": "main",
            "prompt": "morning report",
            "schedule_type": "cron",
            "schedule_value": "0 9 * * *",
        })
        assert resp.status == 201
        task = await resp.json()

        resp = await client.get("/tasks", params={"group": "main"})
        assert [t["id"] for t in await resp.json()] == [task["id"]]
        resp = await client.get("/tasks", params={"group": "family"})
        assert await resp.json() == []

        resp = await client.post(f"/tasks/{task['id']}/pause")
        assert resp.status == 200
        assert (await resp.json())["status"] == "paused"

        resp = await client.post(f"/tasks/{task['id']}/resume")
        assert (await resp.json())["status"] == "active"

        resp = await client.get(f"/tasks/{task['id']}/runs")
        assert resp.status == 200
        assert await resp.json() == []

        resp = await client.delete(f"/tasks/{task['id']}")
        assert resp.status == 200
        resp = await client.delete(f"/tasks/{task['id']}")
        return resp.status

    assert _serve(app_config, store, clock, scenario) == 404


def test_create_task_validation(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        bad_cron = await client.post("/tasks", json={
            "group_key": "main", "prompt": "x", "schedule_type": "cron", "schedule_value": "nope",
        })
        missing = await client.post("/tasks", json={"group_key": "main"})
        not_json = await client.post("/tasks", data="{oops", headers={"Content-Type": "application/json"})
        return bad_cron.status, missing.status, (await missing.json())["details"], not_json.status

    bad_cron, missing, details, not_json = _serve(app_config, store, clock, scenario)

    assert (bad_cron, missing, not_json) == (400, 400, 400)
    assert {d["loc"][0] for d in details} == {"prompt", "schedule_type", "schedule_value"}


def test_unknown_task_routes(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        statuses = []
        for method, path in [
            ("POST", "/tasks/task-x/pause"),
            ("POST", "/tasks/task-x/resume"),
            ("GET", "/tasks/task-x/runs"),
        ]:
            resp = await client.request(method, path)
            statuses.append(resp.status)
        task = await scheduler.create_task("main", "x", "interval", "60000")
        resp = await client.get(f"/tasks/{task.id}/runs", params={"limit": "many"})
        statuses.append(resp.status)
        return statuses

    assert _serve(app_config, store, clock, scenario) == [404, 404, 404, 400]


def test_send_message_defaults_conversation_to_group(app_config, store, clock) -> None:
    manager = StubManager()

    async def scenario(client, scheduler):
        resp = await client.post("/groups/family/messages", json={"prompt": "hello"})
        return resp.status, await resp.json()

    status, body = _serve(app_config, store, clock, scenario, manager=manager)

    assert status == 200
    assert body["result"] == "hi there"
    assert body["newSessionId"] is None
    assert manager.calls == [("family", "family", "hello")]


def test_send_message_worker_failures(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        resp = await client.post("/groups/main/messages", json={"prompt": "hi", "conversation_id": "c1"})
        return resp.status

    assert _serve(app_config, store, clock, scenario, manager=StubManager(WorkerStartError("no"))) == 503
    assert _serve(app_config, store, clock, scenario, manager=StubManager(WorkerExitedError(9))) == 502


def test_interrupt(app_config, store, clock) -> None:
    async def scenario(client, scheduler):
        idle = await client.post("/conversations/nobody/interrupt")
        busy = await client.post("/conversations/busy-conv/interrupt")
        return idle.status, busy.status

    assert _serve(app_config, store, clock, scenario, manager=StubManager()) == (404, 200)
