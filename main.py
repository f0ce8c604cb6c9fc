"""agentvisor entrypoint -- wires all components together and starts the host.

Usage:
    python main.py
    python main.py --config /path/to/config.yaml
    python main.py --prompt "summarize the inbox" --group main
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from aiohttp import web

from core.bus import AsyncIOBus
from core.config import AppConfig, load_config
from core.data.store import Store
from core.duration import duration_seconds
from core.logging_setup import setup_logging
from core.models.work import WorkRequest
from host.commands import TaskCommandWatcher
from host.manager import WorkerManager
from host.runner import WorkerProcessRunner
from scheduler.runner import Scheduler
from server import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="agentvisor: supervised AI-agent workers")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config.yaml (default: ~/.agentvisor/config.yaml)",
    )
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Path to .env file (default: ~/.agentvisor/.env)",
    )
    parser.add_argument(
        "--prompt", "-p",
        type=str,
        default=None,
        help="Run this prompt once in a fresh worker, print the result and exit",
    )
    parser.add_argument(
        "--group", "-g",
        type=str,
        default=None,
        help="Group for --prompt (default: host.primary_group)",
    )
    return parser.parse_args(argv)


async def run_prompt(config: AppConfig, prompt: str, group_key: str | None = None) -> int:
    """Run one prompt through a one-shot worker and print the WorkResult."""
    logger = logging.getLogger("agentvisor")
    group_key = group_key or config.host.primary_group
    runner = WorkerProcessRunner(config)

    result = await runner.run(
        WorkRequest(
            prompt=prompt,
            group_key=group_key,
            is_primary=group_key == config.host.primary_group,
        ),
        on_status=lambda status: logger.info("[%s] %s", group_key, status),
    )
    print(json.dumps(json.loads(result.model_dump_json(by_alias=True)), indent=2))
    return 1 if result.status == "error" else 0


async def run(config: AppConfig) -> None:
    """Initialize all components and serve until interrupted."""
    logger = logging.getLogger("agentvisor")
    logger.info("Configuration loaded from %s", config.home_path)

    # Initialize core infrastructure
    store = Store(config.db_path)
    bus = AsyncIOBus(events_dir=config.home_path / "events" if config.logging.audit_events else None)
    runner = WorkerProcessRunner(config, bus=bus)
    manager = WorkerManager(config, bus=bus)

    scheduler = Scheduler(
        store=store,
        runner=runner,
        bus=bus,
        timezone=config.scheduler.timezone,
        check_interval=duration_seconds(config.scheduler.check_interval),
        primary_group=config.host.primary_group,
        ipc_root=config.ipc_root,
    )
    commands = TaskCommandWatcher(
        ipc_root=config.ipc_root,
        scheduler=scheduler,
        primary_group=config.host.primary_group,
        poll_interval=duration_seconds(config.host.command_poll_interval),
    )

    # Start scheduler
    if config.scheduler.enabled:
        await scheduler.start()
    await commands.start()

    # Start server
    app_runner: web.AppRunner | None = None
    if config.server.enabled:
        app = create_app(config=config, bus=bus, scheduler=scheduler, manager=manager)
        app_runner = web.AppRunner(app)
        await app_runner.setup()
        site = web.TCPSite(app_runner, config.server.host, config.server.port)
        await site.start()
        logger.info(
            "agentvisor running at http://%s:%d",
            config.server.host,
            config.server.port,
        )
    logger.info("State directory: %s", config.home_path)

    # Run until interrupted
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        logger.info("Shutting down...")
        await commands.stop()
        await scheduler.stop()
        await manager.shutdown_all()
        if app_runner is not None:
            await app_runner.cleanup()
        store.close()
        logger.info("Shutdown complete")


def cli(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging("INFO")
    config = load_config(config_path=args.config, env_path=args.env)
    setup_logging(config.logging.level)
    try:
        if args.prompt:
            return asyncio.run(run_prompt(config, args.prompt, args.group))
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(cli())
