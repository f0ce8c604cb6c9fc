from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from core.config import AppConfig, WorkerSettings, load_config
from core.duration import duration_seconds, parse_duration


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("300ms", timedelta(milliseconds=300)),
        ("60s", timedelta(seconds=60)),
        ("5m", timedelta(minutes=5)),
        ("2h", timedelta(hours=2)),
        ("7d", timedelta(days=7)),
        ("1.5s", timedelta(seconds=1.5)),
        ("45", timedelta(seconds=45)),
        (10, timedelta(seconds=10)),
    ],
)
def test_parse_duration(value, expected) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "5 weeks", "-3s", -1])
def test_parse_duration_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)


def test_duration_seconds() -> None:
    assert duration_seconds("300ms") == pytest.approx(0.3)


def test_load_config_defaults_create_home(tmp_path: Path, monkeypatch) -> None:
    home = tmp_path / "state"
    monkeypatch.setenv("AGENTVISOR_HOME", str(home))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    config = load_config()

    assert config.home_path == home
    assert config.host.timeout == "300s"
    assert config.host.max_output_size == 10 * 1024 * 1024
    assert config.scheduler.check_interval == "60s"
    for sub in ("events", "ipc", "groups", "sessions"):
        assert (home / sub).is_dir()


def test_load_config_resolves_env_references(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENTVISOR_HOME", str(tmp_path))
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "engine:\n"
        "  name: claude_cli\n"
        "  api_key: ${MY_TEST_KEY}\n"
        "scheduler:\n"
        "  timezone: Europe/Paris\n"
        "host:\n"
        "  primary_group: family\n"
    )
    env_file = tmp_path / ".env"
    env_file.write_text("MY_TEST_KEY=sk-test-123\n")

    config = load_config(config_path=config_file, env_path=env_file)

    assert config.engine.name == "claude_cli"
    assert config.engine.api_key == "sk-test-123"
    assert config.scheduler.timezone == "Europe/Paris"
    assert config.host.primary_group == "family"


def test_invalid_duration_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig(host={"timeout": "forever"})


def test_worker_env_points_at_group_dirs(tmp_path: Path) -> None:
    config = AppConfig(
        home_dir=str(tmp_path),
        engine={"name": "echo", "api_key": "sk-1"},
        worker={"env": {"EXTRA": "1"}},
    )

    env = config.worker_env("family")

    assert env["AGENTVISOR_IPC_DIR"] == str(tmp_path / "ipc" / "family")
    assert env["AGENTVISOR_WORKDIR"] == str(tmp_path / "groups" / "family")
    assert env["AGENTVISOR_ENGINE"] == "echo"
    assert env["ANTHROPIC_API_KEY"] == "sk-1"
    assert env["EXTRA"] == "1"


def test_worker_settings_from_env() -> None:
    settings = WorkerSettings.from_env({
        "AGENTVISOR_IPC_DIR": "/tmp/ipc/main",
        "AGENTVISOR_ENGINE": "echo",
        "AGENTVISOR_IDLE_TIMEOUT": "2m",
        "AGENTVISOR_POLL_INTERVAL": "100ms",
        "AGENTVISOR_MAX_TOKENS": "1024",
        "ANTHROPIC_API_KEY": "sk-x",
    })

    assert settings.ipc_dir == Path("/tmp/ipc/main")
    assert settings.engine == "echo"
    assert settings.idle_timeout == 120.0
    assert settings.poll_interval == pytest.approx(0.1)
    assert settings.max_tokens == 1024
    assert settings.api_key == "sk-x"


def test_worker_settings_defaults() -> None:
    settings = WorkerSettings.from_env({})

    assert settings.ipc_dir == Path("/workspace/ipc")
    assert settings.idle_timeout == 300.0
    assert settings.poll_interval == pytest.approx(0.3)
