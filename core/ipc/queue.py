"""Directory-backed message queue between a host and one worker process.

Layout under the queue root:

    inbox/    host -> worker, one JSON file per request, oldest filename first
    outbox/   worker -> host, one JSON file per result
    control/  sentinel files (see core.ipc.control)

Every file that a reader may pick up is written to a ``.tmp`` sibling first
and renamed into place, so a ``*.json`` file is always complete.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path

from pydantic import ValidationError

from core.ipc.control import ControlChannel
from core.models.work import InboxMessage, WorkResult

logger = logging.getLogger(__name__)


class IpcError(RuntimeError):
    """Raised when a queue file cannot be written."""


def new_message_id() -> str:
    """Time-prefixed id, so that sorting inbox filenames gives arrival order."""
    return f"msg-{time.time_ns() // 1_000_000:013d}-{secrets.token_hex(3)}"


def write_atomic(path: Path, content: str) -> Path:
    """Write content to path via a temp file in the same directory + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise IpcError(f"Failed to write {path}: {exc}") from exc
    return path


class MessageQueue:
    """Inbox/outbox/control triple for a single worker.

    Usage (host side):
        queue = MessageQueue(data_dir / "ipc" / "family")
        queue.ensure_dirs()
        queue.enqueue(InboxMessage(id=new_message_id(), prompt="hi"))
        for result in queue.read_results():
            ...

    The worker side uses pop_next() and write_result().
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.inbox_dir = self.root / "inbox"
        self.outbox_dir = self.root / "outbox"
        self.control = ControlChannel(self.root / "control")

    def ensure_dirs(self) -> None:
        for d in (self.inbox_dir, self.outbox_dir, self.control.directory):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def enqueue(self, message: InboxMessage) -> Path:
        """Persist a message for the worker to pick up."""
        return write_atomic(self.inbox_dir / f"{message.id}.json", message.to_wire())

    def pending(self) -> list[Path]:
        """Inbox entries in processing order."""
        if not self.inbox_dir.exists():
            return []
        return sorted(self.inbox_dir.glob("*.json"))

    def pop_next(self) -> InboxMessage | None:
        """Read and remove the earliest inbox entry.

        The file is deleted as soon as it has been read. A crash before the
        matching outbox write loses the request.
        """
        files = self.pending()
        if not files:
            return None

        path = files[0]
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            logger.exception("Discarding unreadable inbox entry %s", path.name)
            path.unlink(missing_ok=True)
            return None
        path.unlink(missing_ok=True)

        try:
            return InboxMessage.model_validate_json(raw)
        except ValidationError:
            logger.exception("Discarding malformed inbox entry %s", path.name)
            return None

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def write_result(self, result: WorkResult) -> Path:
        """Publish a result for the host."""
        stamp = time.time_ns() // 1_000_000
        return write_atomic(self.outbox_dir / f"{result.id}-{stamp}.json", result.to_wire())

    def read_results(self) -> list[WorkResult]:
        """Consume every complete outbox entry, oldest filename first."""
        if not self.outbox_dir.exists():
            return []

        results: list[WorkResult] = []
        for path in sorted(self.outbox_dir.glob("*.json")):
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError):
                logger.exception("Discarding unreadable outbox entry %s", path.name)
                path.unlink(missing_ok=True)
                continue
            path.unlink(missing_ok=True)
            try:
                results.append(WorkResult.model_validate_json(raw))
            except ValidationError:
                logger.exception("Discarding malformed outbox entry %s", path.name)
        return results

    def clear_outbox(self) -> int:
        """Remove leftovers of a previous worker. Returns the number removed."""
        if not self.outbox_dir.exists():
            return 0
        removed = 0
        for path in self.outbox_dir.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
        return removed

