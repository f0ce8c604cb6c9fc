"""Anthropic reasoning engine -- streams the Claude Messages API via httpx.

No SDK dependency. Direct HTTP calls with server-sent events. The API is
stateless, so conversation state is kept in a SessionLog on disk: one JSON
file per session id, replayed on resume.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import httpx

from core.models.engine import EngineEvent
from plugins.engines.errors import EngineError

logger = logging.getLogger(__name__)

PLUGIN_META = {
    "name": "anthropic",
    "display_name": "Anthropic (Claude)",
    "description": "Claude models via the Anthropic Messages API (streaming)",
    "class_name": "AnthropicEngine",
    "config_fields": [
        {
            "key": "api_key",
            "label": "API Key",
            "type": "secret",
            "required": True,
            "env_var": "ANTHROPIC_API_KEY",
        },
        {
            "key": "model",
            "label": "Model",
            "type": "string",
            "required": False,
            "default": "claude-sonnet-4-20250514",
        },
    ],
}

_DEFAULT_URL = "https://api.anthropic.com/v1/messages"

SYSTEM_PROMPT = (
    "You are an assistant running inside an isolated worker process. "
    "Answer the user's request directly and concisely."
)

# Capability names that map onto server-side Anthropic tools
_SERVER_TOOLS = {
    "WebSearch": {"type": "web_search_20250305", "name": "web_search", "max_uses": 5},
}


class SessionLog:
    """Message history of one engine session, stored as JSON."""

    def __init__(self, directory: Path, session_id: str, messages: list[dict] | None = None) -> None:
        self.directory = directory
        self.session_id = session_id
        self.messages: list[dict[str, Any]] = messages or []

    @property
    def path(self) -> Path:
        return self.directory / f"{self.session_id}.json"

    @classmethod
    def open(cls, directory: Path, session_id: str | None) -> SessionLog:
        """Load an existing session, or start a new one."""
        directory.mkdir(parents=True, exist_ok=True)
        if session_id:
            path = directory / f"{session_id}.json"
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
                return cls(directory, session_id, data.get("messages", []))
            logger.warning("Session %s not found, starting a new one", session_id)
        return cls(directory, f"sess-{uuid4().hex}")

    def save(self) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps({"messages": self.messages}), encoding="utf-8")
        tmp_path.replace(self.path)


class AnthropicEngine:
    """Reasoning engine backed by the Anthropic streaming API.

    Implements the ReasoningEngine protocol.
    """

    def __init__(
        self,
        api_key: str,
        sessions_dir: Path,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        url: str = _DEFAULT_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._url = url
        self._sessions_dir = Path(sessions_dir)
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10.0, read=300.0, write=30.0, pool=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
        )

    @property
    def name(self) -> str:
        return "anthropic"

    def _build_body(self, messages: list[dict], tools: list[str] | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": messages,
            "stream": True,
        }
        server_tools = [_SERVER_TOOLS[t] for t in tools or [] if t in _SERVER_TOOLS]
        if server_tools:
            body["tools"] = server_tools
        return body

    async def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        tools: list[str] | None = None,
    ) -> AsyncIterator[EngineEvent]:
        session = SessionLog.open(self._sessions_dir, session_id)
        yield EngineEvent(kind="init", session_id=session.session_id)

        messages = session.messages + [{"role": "user", "content": prompt}]
        body = self._build_body(messages, tools)

        text_parts: list[str] = []
        async with self._client.stream("POST", self._url, json=body) as response:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", "replace")[:500]
                raise EngineError(f"Anthropic API returned {response.status_code}: {detail}")

            blocks: dict[int, dict[str, Any]] = {}
            async for data in _iter_sse_data(response):
                etype = data.get("type")

                if etype == "error":
                    error = data.get("error") or {}
                    raise EngineError(f"Anthropic stream error: {error.get('message', error)}")

                if etype == "content_block_start":
                    block = dict(data.get("content_block") or {})
                    block["_text"] = []
                    block["_json"] = []
                    blocks[data.get("index", 0)] = block

                elif etype == "content_block_delta":
                    block = blocks.get(data.get("index", 0))
                    delta = data.get("delta") or {}
                    if block is None:
                        continue
                    if delta.get("type") == "text_delta":
                        block["_text"].append(delta.get("text", ""))
                    elif delta.get("type") == "input_json_delta":
                        block["_json"].append(delta.get("partial_json", ""))

                elif etype == "content_block_stop":
                    block = blocks.pop(data.get("index", 0), None)
                    if block is None:
                        continue
                    event = _finish_block(block)
                    if event is None:
                        continue
                    if event.kind == "assistant" and event.text:
                        text_parts.append(event.text)
                    yield event

                elif etype == "message_stop":
                    break

        result = "".join(text_parts).strip()
        session.messages = messages + [{"role": "assistant", "content": result or "(no response)"}]
        session.save()
        yield EngineEvent(kind="result", session_id=session.session_id, text=result)

    async def close(self) -> None:
        await self._client.aclose()


def _finish_block(block: dict[str, Any]) -> EngineEvent | None:
    """Turn an accumulated content block into an engine event."""
    btype = block.get("type")
    if btype == "text":
        text = "".join(block["_text"]) or block.get("text", "")
        return EngineEvent(kind="assistant", text=text)
    if btype in ("tool_use", "server_tool_use"):
        raw = "".join(block["_json"])
        try:
            tool_input = json.loads(raw) if raw else dict(block.get("input") or {})
        except json.JSONDecodeError:
            tool_input = {}
        return EngineEvent(
            kind="tool_use",
            tool_name=str(block.get("name", "tool")),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )
    return None


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON payload of each `data:` line of a server-sent event stream."""
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        raw = line[len("data:"):].strip()
        if not raw or raw == "[DONE]":
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE data: %s", raw[:200])
            continue
        if isinstance(payload, dict):
            yield payload
