"""Claude CLI reasoning engine -- runs `claude -p --output-format stream-json`.

The CLI owns the agent loop, tool execution and session storage; this
adapter only maps its JSON lines onto EngineEvents.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from core.models.engine import EngineEvent
from plugins.engines.errors import EngineError

logger = logging.getLogger(__name__)

PLUGIN_META = {
    "name": "claude_cli",
    "display_name": "Claude CLI",
    "description": "Agentic queries through the locally installed `claude` command",
    "class_name": "ClaudeCliEngine",
    "config_fields": [
        {
            "key": "cli_path",
            "label": "CLI path",
            "type": "string",
            "required": False,
            "default": "claude",
        },
    ],
}

# stream-json lines can carry whole file contents
_LINE_LIMIT = 16 * 1024 * 1024


class ClaudeCliEngine:
    """Implements the ReasoningEngine protocol on top of the Claude CLI."""

    def __init__(
        self,
        workdir: Path,
        cli_path: str = "claude",
        model: str | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._workdir = Path(workdir)
        self._cli_path = cli_path
        self._model = model
        self._extra_args = extra_args or []

    @property
    def name(self) -> str:
        return "claude_cli"

    def build_args(self, prompt: str, session_id: str | None, tools: list[str] | None) -> list[str]:
        args = [
            self._cli_path,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", "bypassPermissions",
        ]
        if self._model:
            args += ["--model", self._model]
        if session_id:
            args += ["--resume", session_id]
        if tools:
            args += ["--allowedTools", ",".join(tools)]
        return args + self._extra_args

    async def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        tools: list[str] | None = None,
    ) -> AsyncIterator[EngineEvent]:
        self._workdir.mkdir(parents=True, exist_ok=True)
        args = self.build_args(prompt, session_id, tools)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self._workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise EngineError(f"Claude CLI not found: {self._cli_path}") from exc

        stderr_task = asyncio.create_task(process.stderr.read())
        got_result = False
        try:
            assert process.stdout is not None
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", "replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON CLI output: %s", line[:200])
                    continue
                for event in _map_message(message):
                    if event.kind == "result":
                        got_result = True
                    yield event

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", "replace")
            if returncode != 0 and not got_result:
                raise EngineError(
                    f"Claude CLI exited with code {returncode}: {stderr.strip()[-300:]}"
                )
        finally:
            if process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()


def _map_message(message: dict[str, Any]) -> list[EngineEvent]:
    """Translate one stream-json message into zero or more events."""
    mtype = message.get("type")
    subtype = message.get("subtype")

    if mtype == "system" and subtype == "init":
        return [EngineEvent(kind="init", session_id=message.get("session_id"))]

    if mtype == "system" and subtype == "compact_boundary":
        return [EngineEvent(kind="compact")]

    if mtype == "assistant":
        content = (message.get("message") or {}).get("content") or []
        events = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use":
                events.append(EngineEvent(
                    kind="tool_use",
                    tool_name=str(block.get("name", "tool")),
                    tool_input=block.get("input") if isinstance(block.get("input"), dict) else {},
                ))
            elif block.get("type") == "text" and block.get("text"):
                events.append(EngineEvent(kind="assistant", text=block["text"]))
        return events

    if mtype == "result":
        if message.get("is_error"):
            raise EngineError(str(message.get("result") or subtype or "Claude CLI reported an error"))
        return [EngineEvent(
            kind="result",
            session_id=message.get("session_id"),
            text=message.get("result"),
        )]

    return []
