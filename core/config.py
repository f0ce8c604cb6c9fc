"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Fails fast with clear errors if required config is missing.

Workers do not read config.yaml: the host passes everything they need
through AGENTVISOR_* environment variables (see WorkerSettings).
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from core.duration import duration_seconds

logger = logging.getLogger(__name__)

# Default home directory for all state files
DEFAULT_HOME = Path.home() / ".agentvisor"

ENV_PREFIX = "AGENTVISOR_"


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return pattern.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def _check_duration(value: str) -> str:
    duration_seconds(value)
    return value


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8321


class EngineConfig(BaseModel):
    """Reasoning engine used by workers."""

    name: str = "anthropic"
    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    cli_path: str = "claude"


class WorkerConfig(BaseModel):
    """How the host launches worker processes."""

    # argv; defaults to the current interpreter running `-m worker`
    command: list[str] = Field(default_factory=lambda: [sys.executable, "-m", "worker"])
    env: dict[str, str] = Field(default_factory=dict)
    idle_timeout: str = "300s"
    poll_interval: str = "300ms"

    @field_validator("idle_timeout", "poll_interval")
    @classmethod
    def check_durations(cls, value: str) -> str:
        return _check_duration(value)


class HostConfig(BaseModel):
    timeout: str = "300s"
    max_output_size: int = 10 * 1024 * 1024
    ready_timeout: str = "60s"
    outbox_poll_interval: str = "300ms"
    idle_timeout: str = "300s"
    command_poll_interval: str = "1s"
    primary_group: str = "main"

    @field_validator(
        "timeout", "ready_timeout", "outbox_poll_interval", "idle_timeout",
        "command_poll_interval",
    )
    @classmethod
    def check_durations(cls, value: str) -> str:
        return _check_duration(value)


class SchedulerConfig(BaseModel):
    enabled: bool = True
    timezone: str = "UTC"
    check_interval: str = "60s"

    @field_validator("check_interval")
    @classmethod
    def check_durations(cls, value: str) -> str:
        return _check_duration(value)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    audit_events: bool = True


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    server: ServerConfig = Field(default_factory=ServerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()

    @property
    def ipc_root(self) -> Path:
        return self.home_path / "ipc"

    @property
    def groups_root(self) -> Path:
        return self.home_path / "groups"

    @property
    def db_path(self) -> Path:
        return self.home_path / "db.sqlite"

    def worker_env(self, group_key: str) -> dict[str, str]:
        """Environment handed to a worker process serving `group_key`."""
        env = {
            f"{ENV_PREFIX}IPC_DIR": str(self.ipc_root / group_key),
            f"{ENV_PREFIX}WORKDIR": str(self.groups_root / group_key),
            f"{ENV_PREFIX}SESSIONS_DIR": str(self.home_path / "sessions" / group_key),
            f"{ENV_PREFIX}ENGINE": self.engine.name,
            f"{ENV_PREFIX}MODEL": self.engine.model,
            f"{ENV_PREFIX}MAX_TOKENS": str(self.engine.max_tokens),
            f"{ENV_PREFIX}CLI_PATH": self.engine.cli_path,
            f"{ENV_PREFIX}IDLE_TIMEOUT": self.worker.idle_timeout,
            f"{ENV_PREFIX}POLL_INTERVAL": self.worker.poll_interval,
            f"{ENV_PREFIX}LOG_LEVEL": self.logging.level,
        }
        if self.engine.api_key:
            env["ANTHROPIC_API_KEY"] = self.engine.api_key
        env.update(self.worker.env)
        return env


class WorkerSettings(BaseModel):
    """Worker-side settings, read from the process environment."""

    ipc_dir: Path = Path("/workspace/ipc")
    workdir: Path = Path("/workspace/group")
    sessions_dir: Path = Path("/workspace/sessions")
    engine: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    cli_path: str = "claude"
    api_key: str = ""
    idle_timeout: float = 300.0
    poll_interval: float = 0.3
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> WorkerSettings:
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name in ("ipc_dir", "workdir", "sessions_dir", "engine", "model",
                           "max_tokens", "cli_path", "log_level"):
            raw = env.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw:
                values[field_name] = raw
        for field_name in ("idle_timeout", "poll_interval"):
            raw = env.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw:
                values[field_name] = duration_seconds(raw)
        values["api_key"] = env.get("ANTHROPIC_API_KEY", "")
        return cls(**values)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    env_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML + .env files.

    1. Load .env into environment variables
    2. Load config.yaml and resolve ${ENV_VAR} references
    3. Validate against Pydantic models
    4. Create home directory structure if needed
    """
    home = Path(os.environ.get(f"{ENV_PREFIX}HOME", str(DEFAULT_HOME))).expanduser()

    if env_path is None:
        env_path = home / ".env"
    if config_path is None:
        config_path = home / "config.yaml"

    env_path = Path(env_path)
    config_path = Path(config_path)

    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.debug("No .env file at %s", env_path)

    raw_config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.warning("No config file at %s, using defaults", config_path)

    resolved = _resolve_env_vars(raw_config)

    if f"{ENV_PREFIX}HOME" in os.environ:
        resolved["home_dir"] = os.environ[f"{ENV_PREFIX}HOME"]

    engine = resolved.setdefault("engine", {})
    if isinstance(engine, dict) and not engine.get("api_key"):
        engine["api_key"] = os.environ.get("ANTHROPIC_API_KEY", "")

    config = AppConfig(**resolved)

    _ensure_directories(config.home_path)

    return config


def _ensure_directories(home: Path) -> None:
    """Create the state directory structure if it doesn't exist."""
    dirs = [
        home,
        home / "events",
        home / "ipc",
        home / "groups",
        home / "sessions",
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
