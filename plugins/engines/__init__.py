"""Built-in reasoning engines -- implementations of the ReasoningEngine protocol."""

from __future__ import annotations

import importlib
import os
from typing import TYPE_CHECKING

from plugins.engines.errors import EngineError

if TYPE_CHECKING:
    from core.config import WorkerSettings
    from core.protocols import ReasoningEngine

ENGINE_MODULES = {
    "anthropic": "plugins.engines.anthropic",
    "claude_cli": "plugins.engines.claude_cli",
    "echo": "plugins.engines.echo",
}


def create_engine(settings: WorkerSettings) -> ReasoningEngine:
    """Instantiate the engine named in the worker settings."""
    module_name = ENGINE_MODULES.get(settings.engine)
    if module_name is None:
        raise ValueError(
            f"Unknown engine '{settings.engine}'. Must be one of: {sorted(ENGINE_MODULES)}"
        )
    module = importlib.import_module(module_name)
    engine_cls = getattr(module, module.PLUGIN_META["class_name"])

    if settings.engine == "anthropic":
        if not settings.api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for the anthropic engine")
        return engine_cls(
            api_key=settings.api_key,
            sessions_dir=settings.sessions_dir,
            model=settings.model,
            max_tokens=settings.max_tokens,
        )
    if settings.engine == "claude_cli":
        return engine_cls(
            workdir=settings.workdir,
            cli_path=settings.cli_path,
            model=settings.model or None,
        )
    return engine_cls(delay=float(os.environ.get("AGENTVISOR_ECHO_DELAY", "0") or 0))


__all__ = ["ENGINE_MODULES", "EngineError", "create_engine"]
