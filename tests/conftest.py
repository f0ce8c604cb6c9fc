"""Shared test fixtures."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from core.config import AppConfig
from core.data.store import Store
from core.models.work import WorkRequest, WorkResult

ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Config whose workers run the offline echo engine from this checkout."""
    return AppConfig(
        home_dir=str(tmp_path / "home"),
        engine={"name": "echo", "api_key": ""},
        worker={
            "command": [sys.executable, "-m", "worker"],
            "env": {"PYTHONPATH": str(ROOT), "AGENTVISOR_ECHO_DELAY": "0"},
            "poll_interval": "50ms",
            "idle_timeout": "60s",
        },
        host={
            "timeout": "30s",
            "ready_timeout": "20s",
            "outbox_poll_interval": "50ms",
            "idle_timeout": "60s",
        },
        logging={"level": "INFO", "audit_events": False},
    )


@pytest.fixture()
def store(tmp_path: Path):
    db = Store(tmp_path / "db.sqlite")
    yield db
    db.close()


class FakeRunner:
    """OneShotRunner double that records requests and replays canned results."""

    def __init__(self, results: list[WorkResult | Exception] | None = None) -> None:
        self.requests: list[WorkRequest] = []
        self._results = list(results or [])
        self.before_run = None

    async def run(self, request: WorkRequest, on_status=None) -> WorkResult:
        self.requests.append(request)
        if self.before_run is not None:
            self.before_run(request)
        outcome = self._results.pop(0) if self._results else WorkResult(
            id=request.id, status="success", result=f"ran: {request.prompt}",
        )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
