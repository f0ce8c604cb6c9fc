"""Control channel -- edge-triggered sentinel files in a worker's control dir.

A signal is asserted by creating ``<name>.json`` and consumed by the first
check that sees it: the file is deleted in the same call, whether or not the
caller acts on it. Only the worker reads its own control directory.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from core.models.work import ControlSignal

logger = logging.getLogger(__name__)


class ControlChannel:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, signal: ControlSignal | str) -> Path:
        return self.directory / f"{ControlSignal(signal).value}.json"

    def send(self, signal: ControlSignal | str) -> None:
        """Assert a signal (host side)."""
        path = self._path(signal)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(json.dumps({
            "type": path.stem,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }))
        os.replace(tmp_path, path)

    def consume(self, signal: ControlSignal | str) -> bool:
        """Return True if the signal was asserted, clearing it."""
        path = self._path(signal)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Consumed control signal %s", path.stem)
        return True
