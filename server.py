"""Lightweight aiohttp server -- the host's HTTP API.

Exposes scheduled-task management, message delivery to persistent
workers and a live stream of bus events. No framework magic, no
middleware stack, no authentication.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from aiohttp import web
from pydantic import BaseModel, ValidationError

from core.models.events import Event
from core.models.tasks import ContextMode, ScheduleType
from host.manager import WorkerExitedError, WorkerStartError
from scheduler.cron import ScheduleError

if TYPE_CHECKING:
    from core.bus import AsyncIOBus
    from core.config import AppConfig
    from host.manager import WorkerManager
    from scheduler.runner import Scheduler

logger = logging.getLogger(__name__)


class CreateTaskBody(BaseModel):
    group_key: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    routing_key: str = ""


class MessageBody(BaseModel):
    prompt: str
    conversation_id: str | None = None
    audio_mode: bool | None = None


def create_app(
    config: AppConfig,
    bus: AsyncIOBus,
    scheduler: Scheduler,
    manager: WorkerManager,
) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()

    # Store references for route handlers
    app["config"] = config
    app["bus"] = bus
    app["scheduler"] = scheduler
    app["manager"] = manager

    # Register routes
    app.router.add_get("/health", handle_health)
    app.router.add_get("/events", handle_stream_events)
    app.router.add_get("/tasks", handle_list_tasks)
    app.router.add_post("/tasks", handle_create_task)
    app.router.add_post("/tasks/{task_id}/pause", handle_pause_task)
    app.router.add_post("/tasks/{task_id}/resume", handle_resume_task)
    app.router.add_delete("/tasks/{task_id}", handle_delete_task)
    app.router.add_get("/tasks/{task_id}/runs", handle_task_runs)
    app.router.add_post("/groups/{group_key}/messages", handle_send_message)
    app.router.add_post("/conversations/{conversation_id}/interrupt", handle_interrupt)

    return app


async def _read_body(request: web.Request, model: type[BaseModel]) -> BaseModel | web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "Invalid JSON"}, status=400)
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        return web.json_response(
            {"error": "Invalid request", "details": json.loads(exc.json(include_url=False))},
            status=400,
        )


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    """GET /health -- health check."""
    scheduler: Scheduler = request.app["scheduler"]
    manager: WorkerManager = request.app["manager"]
    return web.json_response({
        "status": "ok",
        "scheduler": "running" if scheduler.running else "stopped",
        "workers": manager.active_conversations(),
    })


async def handle_stream_events(request: web.Request) -> web.StreamResponse:
    """GET /events -- Server-Sent Events stream for real-time updates.

    Subscribes to all events on the bus and streams them to the client.
    """
    bus: AsyncIOBus = request.app["bus"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)

    queue: asyncio.Queue[Event] = asyncio.Queue()

    async def forward_event(event: Event) -> None:
        await queue.put(event)

    bus.subscribe("*", forward_event)

    try:
        while True:
            event = await queue.get()
            data = event.model_dump_json()
            await response.write(f"event: {event.type}\ndata: {data}\n\n".encode())
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        bus.unsubscribe("*", forward_event)

    return response


async def handle_list_tasks(request: web.Request) -> web.Response:
    """GET /tasks[?group=] -- list scheduled tasks."""
    scheduler: Scheduler = request.app["scheduler"]
    tasks = scheduler.list_tasks(request.query.get("group"))
    return web.json_response([t.model_dump(mode="json") for t in tasks])


async def handle_create_task(request: web.Request) -> web.Response:
    """POST /tasks -- create a new scheduled task.

    Body: {"group_key": "main", "prompt": "...", "schedule_type": "cron",
           "schedule_value": "0 9 * * *", "context_mode": "isolated"}
    """
    scheduler: Scheduler = request.app["scheduler"]

    body = await _read_body(request, CreateTaskBody)
    if isinstance(body, web.Response):
        return body

    try:
        task = await scheduler.create_task(**body.model_dump())
    except ScheduleError as exc:
        return web.json_response({"error": str(exc)}, status=400)

    return web.json_response(task.model_dump(mode="json"), status=201)


async def handle_pause_task(request: web.Request) -> web.Response:
    """POST /tasks/{task_id}/pause"""
    scheduler: Scheduler = request.app["scheduler"]
    task_id = request.match_info["task_id"]
    if not await scheduler.pause_task(task_id):
        return web.json_response({"error": "Task not found or completed"}, status=404)
    return web.json_response(scheduler.get_task(task_id).model_dump(mode="json"))


async def handle_resume_task(request: web.Request) -> web.Response:
    """POST /tasks/{task_id}/resume"""
    scheduler: Scheduler = request.app["scheduler"]
    task_id = request.match_info["task_id"]
    if not await scheduler.resume_task(task_id):
        return web.json_response({"error": "Task not found or completed"}, status=404)
    return web.json_response(scheduler.get_task(task_id).model_dump(mode="json"))


async def handle_delete_task(request: web.Request) -> web.Response:
    """DELETE /tasks/{task_id} -- delete a scheduled task."""
    scheduler: Scheduler = request.app["scheduler"]
    task_id = request.match_info["task_id"]

    deleted = await scheduler.delete_task(task_id)
    if deleted:
        return web.json_response({"deleted": task_id})
    return web.json_response({"error": "Task not found"}, status=404)


async def handle_task_runs(request: web.Request) -> web.Response:
    """GET /tasks/{task_id}/runs[?limit=] -- recent run logs, newest first."""
    scheduler: Scheduler = request.app["scheduler"]
    task_id = request.match_info["task_id"]
    if scheduler.get_task(task_id) is None:
        return web.json_response({"error": "Task not found"}, status=404)
    try:
        limit = int(request.query.get("limit", "10"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    logs = scheduler.get_run_logs(task_id, limit)
    return web.json_response([log.model_dump(mode="json") for log in logs])


async def handle_send_message(request: web.Request) -> web.Response:
    """POST /groups/{group_key}/messages -- run a prompt in a persistent worker.

    Body: {"prompt": "...", "conversation_id": "optional, defaults to the group"}
    Blocks until the worker answers and returns its WorkResult.
    """
    manager: WorkerManager = request.app["manager"]
    group_key = request.match_info["group_key"]

    body = await _read_body(request, MessageBody)
    if isinstance(body, web.Response):
        return body

    conversation_id = body.conversation_id or group_key
    try:
        result = await manager.send_message_and_wait(
            conversation_id, group_key, body.prompt, audio_mode=body.audio_mode,
        )
    except WorkerStartError as exc:
        logger.error("Worker for %s failed to start: %s", conversation_id, exc)
        return web.json_response({"error": str(exc)}, status=503)
    except WorkerExitedError as exc:
        logger.error("Worker for %s exited: %s", conversation_id, exc)
        return web.json_response({"error": str(exc)}, status=502)

    return web.json_response(json.loads(result.model_dump_json(by_alias=True)))


async def handle_interrupt(request: web.Request) -> web.Response:
    """POST /conversations/{conversation_id}/interrupt"""
    manager: WorkerManager = request.app["manager"]
    conversation_id = request.match_info["conversation_id"]
    if not manager.interrupt(conversation_id):
        return web.json_response({"error": "No active worker"}, status=404)
    return web.json_response({"interrupted": conversation_id})
