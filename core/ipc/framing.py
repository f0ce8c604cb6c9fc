"""Standard stream framing for worker processes.

stdout carries exactly one framed WorkResult in one-shot mode:

    ---AGENTVISOR_OUTPUT_START---
    {"id": ..., "status": "success", ...}
    ---AGENTVISOR_OUTPUT_END---

stderr carries log lines plus progress lines of the form
``---AGENTVISOR_STATUS---{"status": "...", "timestamp": "..."}``.
stderr is used for progress because it is unbuffered when piped.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import TextIO

from core.models.work import WorkResult

OUTPUT_START_MARKER = "---AGENTVISOR_OUTPUT_START---"
OUTPUT_END_MARKER = "---AGENTVISOR_OUTPUT_END---"
STATUS_PREFIX = "---AGENTVISOR_STATUS---"


def write_framed_output(result: WorkResult, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    stream.write(f"{OUTPUT_START_MARKER}\n{result.to_wire()}\n{OUTPUT_END_MARKER}\n")
    stream.flush()


def extract_framed_output(stdout: str) -> WorkResult:
    """Pull the WorkResult out of a worker's stdout.

    Falls back to the last non-empty line when the markers are missing.
    Raises ValueError if nothing parseable is found.
    """
    start = stdout.find(OUTPUT_START_MARKER)
    end = stdout.find(OUTPUT_END_MARKER)
    if start != -1 and end > start:
        payload = stdout[start + len(OUTPUT_START_MARKER):end].strip()
    else:
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise ValueError("Worker produced no output")
        payload = lines[-1]
    return WorkResult.model_validate_json(payload)


def emit_status(text: str, stream: TextIO | None = None) -> None:
    """Write one progress line to the side channel (stderr)."""
    stream = stream or sys.stderr
    payload = json.dumps({
        "status": text,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    stream.write(f"{STATUS_PREFIX}{payload}\n")
    stream.flush()


def parse_status_line(line: str) -> str | None:
    """Return the status text of a progress line, None for any other line."""
    if not line.startswith(STATUS_PREFIX):
        return None
    raw = line[len(STATUS_PREFIX):].strip()
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(parsed, dict) and parsed.get("status"):
        return str(parsed["status"])
    return raw
