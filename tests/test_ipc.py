from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from core.ipc import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    STATUS_PREFIX,
    ControlChannel,
    MessageQueue,
    emit_status,
    extract_framed_output,
    new_message_id,
    parse_status_line,
    write_framed_output,
)
from core.models.work import ControlSignal, InboxMessage, WorkResult


def test_ensure_dirs_creates_all_three(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path / "ipc")
    queue.ensure_dirs()
    queue.ensure_dirs()

    assert (tmp_path / "ipc" / "inbox").is_dir()
    assert (tmp_path / "ipc" / "outbox").is_dir()
    assert (tmp_path / "ipc" / "control").is_dir()


def test_message_ids_sort_in_creation_order() -> None:
    ids = [new_message_id() for _ in range(50)]
    assert all(i.startswith("msg-") for i in ids)
    # same-millisecond ids only differ in the random suffix
    stamps = [i.split("-")[1] for i in ids]
    assert stamps == sorted(stamps)


def test_pop_next_returns_oldest_first_and_deletes(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()
    for n, msg_id in enumerate(["msg-0000000000003-aaa", "msg-0000000000001-bbb", "msg-0000000000002-ccc"]):
        queue.enqueue(InboxMessage(id=msg_id, prompt=f"p{n}"))

    popped = [queue.pop_next() for _ in range(3)]

    assert [m.id for m in popped] == [
        "msg-0000000000001-bbb",
        "msg-0000000000002-ccc",
        "msg-0000000000003-aaa",
    ]
    assert queue.pop_next() is None
    assert list(queue.inbox_dir.iterdir()) == []


def test_pop_next_on_missing_inbox(tmp_path: Path) -> None:
    assert MessageQueue(tmp_path / "nowhere").pop_next() is None


def test_pop_next_discards_malformed_entry(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()
    (queue.inbox_dir / "msg-0000000000001-bad.json").write_text("{not json")
    queue.enqueue(InboxMessage(id="msg-0000000000002-ok", prompt="hello"))

    assert queue.pop_next() is None
    message = queue.pop_next()

    assert message is not None and message.prompt == "hello"


def test_pop_next_discards_undecodable_entry(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()
    bad = queue.inbox_dir / "msg-0000000000001-bad.json"
    bad.write_bytes(b"\xff\xfe")
    queue.enqueue(InboxMessage(id="msg-0000000000002-ok", prompt="hello"))

    assert queue.pop_next() is None
    assert not bad.exists()
    message = queue.pop_next()

    assert message is not None and message.prompt == "hello"


def test_read_results_discards_undecodable_entry(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()
    bad = queue.outbox_dir / "a-1.json"
    bad.write_bytes(b"\xff\xfe")
    queue.write_result(WorkResult(id="b", status="success", result="two"))

    results = queue.read_results()

    assert [r.id for r in results] == ["b"]
    assert not bad.exists()


def test_inbox_uses_camel_case_wire_names(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    path = queue.enqueue(InboxMessage(id="msg-1", prompt="hi", audio_mode=True))

    data = json.loads(path.read_text())

    assert data["audioMode"] is True
    assert "audio_mode" not in data


def test_write_result_is_atomic_and_leaves_no_temp_files(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()

    path = queue.write_result(WorkResult(id="msg-1", status="success", result="done"))

    assert path.parent == queue.outbox_dir
    assert path.name.startswith("msg-1-") and path.suffix == ".json"
    assert [p.name for p in queue.outbox_dir.iterdir()] == [path.name]


def test_read_results_ignores_temp_files_and_consumes(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.ensure_dirs()
    queue.write_result(WorkResult(id="a", status="success", result="one"))
    (queue.outbox_dir / "b-123.json.tmp").write_text('{"id": "b", "sta')

    results = queue.read_results()

    assert [r.id for r in results] == ["a"]
    assert queue.read_results() == []
    assert (queue.outbox_dir / "b-123.json.tmp").exists()


def test_outbox_round_trip_preserves_fields(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.write_result(WorkResult(id="x", status="interrupted", result=None, new_session_id="s-1"))

    (result,) = queue.read_results()

    assert result.status == "interrupted"
    assert result.result is None
    assert result.new_session_id == "s-1"


def test_clear_outbox(tmp_path: Path) -> None:
    queue = MessageQueue(tmp_path)
    queue.write_result(WorkResult(id="ready", status="success"))
    queue.write_result(WorkResult(id="old", status="success"))

    assert queue.clear_outbox() == 2
    assert queue.read_results() == []


def test_control_consume_clears_signal(tmp_path: Path) -> None:
    control = ControlChannel(tmp_path / "control")

    assert control.consume(ControlSignal.SHUTDOWN) is False
    control.send(ControlSignal.SHUTDOWN)
    assert (tmp_path / "control" / "shutdown.json").exists()

    data = json.loads((tmp_path / "control" / "shutdown.json").read_text())
    assert data["type"] == "shutdown"

    assert control.consume(ControlSignal.SHUTDOWN) is True
    assert control.consume(ControlSignal.SHUTDOWN) is False


def test_control_signals_are_independent(tmp_path: Path) -> None:
    control = ControlChannel(tmp_path)
    control.send(ControlSignal.INTERRUPT)

    assert control.consume(ControlSignal.SHUTDOWN) is False
    assert control.consume(ControlSignal.INTERRUPT) is True


def test_framed_output_survives_log_noise() -> None:
    out = io.StringIO()
    out.write("some library printed this\n")
    write_framed_output(WorkResult(id="req-1", status="success", result="hi"), out)
    out.write("trailing noise\n")

    result = extract_framed_output(out.getvalue())

    assert result.id == "req-1"
    assert result.result == "hi"
    assert OUTPUT_START_MARKER in out.getvalue() and OUTPUT_END_MARKER in out.getvalue()


def test_extract_falls_back_to_last_line() -> None:
    stdout = 'booting\n{"id": "r", "status": "error", "result": null, "error": "bad"}\n'

    result = extract_framed_output(stdout)

    assert result.status == "error"
    assert result.error == "bad"


def test_extract_without_output_raises() -> None:
    with pytest.raises(ValueError):
        extract_framed_output("\n\n")


def test_status_lines() -> None:
    err = io.StringIO()
    emit_status("Reading foo.py...", err)
    line = err.getvalue().strip()

    assert line.startswith(STATUS_PREFIX)
    assert parse_status_line(line) == "Reading foo.py..."
    assert parse_status_line(f"{STATUS_PREFIX}plain text") == "plain text"
    assert parse_status_line("2024-01-01 INFO worker: hello") is None
