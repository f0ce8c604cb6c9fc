"""File-based IPC between the host and worker processes."""

from core.ipc.control import ControlChannel
from core.ipc.framing import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    STATUS_PREFIX,
    emit_status,
    extract_framed_output,
    parse_status_line,
    write_framed_output,
)
from core.ipc.queue import IpcError, MessageQueue, new_message_id, write_atomic

__all__ = [
    "OUTPUT_END_MARKER",
    "OUTPUT_START_MARKER",
    "STATUS_PREFIX",
    "ControlChannel",
    "IpcError",
    "MessageQueue",
    "emit_status",
    "extract_framed_output",
    "new_message_id",
    "parse_status_line",
    "write_atomic",
    "write_framed_output",
]
