"""One-shot worker runs -- spawn, feed stdin, collect framed stdout.

The host side of one-shot mode. Every failure (spawn error, timeout,
non-zero exit, unparsable output) comes back as an error WorkResult;
nothing here raises for worker misbehaviour.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path

from core.bus import AsyncIOBus
from core.config import AppConfig
from core.duration import duration_seconds
from core.ipc.framing import extract_framed_output, parse_status_line
from core.models.events import Event, EventTypes
from core.models.work import WorkRequest, WorkResult
from core.protocols import StatusCallback

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_KILL_GRACE_SECONDS = 5.0
_STDERR_TAIL = 500


class _Capture:
    """Size-capped accumulator for one output stream."""

    def __init__(self, name: str, limit: int) -> None:
        self.name = name
        self.limit = limit
        self.parts: list[str] = []
        self.size = 0
        self.truncated = False

    def add(self, chunk: str) -> None:
        if self.truncated:
            return
        remaining = self.limit - self.size
        if len(chunk) > remaining:
            chunk = chunk[:remaining]
            self.truncated = True
            logger.warning("Worker %s truncated at %d bytes", self.name, self.limit)
        self.parts.append(chunk)
        self.size += len(chunk)

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _safe_name(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "-", value)


class WorkerProcessRunner:
    """Runs WorkRequests in fresh worker processes.

    Usage:
        runner = WorkerProcessRunner(config, bus)
        result = await runner.run(WorkRequest(prompt="hi", group_key="main"))
    """

    def __init__(self, config: AppConfig, bus: AsyncIOBus | None = None) -> None:
        self._config = config
        self._bus = bus
        self._timeout = duration_seconds(config.host.timeout)
        self._max_output = config.host.max_output_size

    def _build_env(self, group_key: str) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._config.worker_env(group_key))
        return env

    async def run(
        self,
        request: WorkRequest,
        on_status: StatusCallback | None = None,
    ) -> WorkResult:
        group_key = request.group_key
        started = asyncio.get_running_loop().time()
        workdir = self._config.groups_root / group_key
        logs_dir = workdir / "logs"
        workdir.mkdir(parents=True, exist_ok=True)
        logs_dir.mkdir(parents=True, exist_ok=True)

        command = list(self._config.worker.command)
        logger.info(
            "Spawning worker for group %s (primary=%s, scheduled=%s)",
            group_key, request.is_primary, request.is_scheduled,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=self._build_env(group_key),
            )
        except OSError as exc:
            logger.error("Worker spawn error for group %s: %s", group_key, exc)
            return WorkResult.failure(f"Worker spawn error: {exc}", id=request.id)

        stdout = _Capture("stdout", self._max_output)
        stderr = _Capture("stderr", self._max_output)

        try:
            proc.stdin.write(request.to_wire().encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Worker closed stdin early (group %s)", group_key)
        finally:
            proc.stdin.close()

        # The wall-clock timeout covers process exit as well as both streams
        readers = asyncio.gather(
            self._read_stdout(proc.stdout, stdout),
            self._read_stderr(proc.stderr, stderr, group_key, on_status),
            proc.wait(),
        )

        timed_out = False
        try:
            _, _, code = await asyncio.wait_for(asyncio.shield(readers), timeout=self._timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error("Worker timeout for group %s, stopping", group_key)
            code = await self._terminate(proc)
            readers.cancel()
            try:
                await readers
            except asyncio.CancelledError:
                pass

        duration_ms = int((asyncio.get_running_loop().time() - started) * 1000)

        if timed_out:
            self._write_log(logs_dir, [
                "=== Worker Run Log (TIMEOUT) ===",
                f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
                f"Group: {group_key}",
                f"Duration: {duration_ms}ms",
                f"Exit Code: {code}",
            ])
            return WorkResult.failure(
                f"Worker timed out after {self._config.host.timeout}", id=request.id,
            )

        self._write_run_log(logs_dir, request, command, code, duration_ms, stdout, stderr)

        if code != 0:
            logger.error(
                "Worker for group %s exited with code %s after %dms: %s",
                group_key, code, duration_ms, stderr.text[-_STDERR_TAIL:],
            )
            # A worker that fails cleanly still frames an error result
            try:
                result = extract_framed_output(stdout.text)
                if result.status == "error" and result.error:
                    return result.model_copy(update={"id": result.id or request.id})
            except ValueError:
                pass
            return WorkResult.failure(
                f"Worker exited with code {code}: {stderr.text[-200:]}", id=request.id,
            )

        try:
            result = extract_framed_output(stdout.text)
        except ValueError as exc:
            logger.error("Failed to parse worker output for group %s: %s", group_key, exc)
            return WorkResult.failure(f"Failed to parse worker output: {exc}", id=request.id)

        logger.info(
            "Worker completed for group %s in %dms: %s",
            group_key, duration_ms, result.status,
        )
        if not result.id:
            result = result.model_copy(update={"id": request.id})
        return result

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def _read_stdout(self, stream: asyncio.StreamReader, capture: _Capture) -> None:
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            if not chunk:
                return
            capture.add(chunk.decode("utf-8", errors="replace"))

    async def _read_stderr(
        self,
        stream: asyncio.StreamReader,
        capture: _Capture,
        group_key: str,
        on_status: StatusCallback | None,
    ) -> None:
        buffer = ""
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            buffer += text
            *lines, buffer = buffer.split("\n")
            for line in lines:
                status = parse_status_line(line)
                if status is not None:
                    await self._report_status(group_key, status, on_status)
                    continue
                if line:
                    logger.debug("[%s] %s", group_key, line)
                capture.add(line + "\n")

        if buffer:
            status = parse_status_line(buffer)
            if status is not None:
                await self._report_status(group_key, status, on_status)
            else:
                capture.add(buffer)

    async def _report_status(
        self,
        group_key: str,
        status: str,
        on_status: StatusCallback | None,
    ) -> None:
        logger.debug("Worker status (%s): %s", group_key, status)
        if on_status is not None:
            try:
                on_status(status)
            except Exception:
                logger.exception("Status callback failed")
        if self._bus is not None:
            await self._bus.publish(Event(
                type=EventTypes.WORKER_STATUS,
                source="host.runner",
                payload={"group_key": group_key, "status": status},
            ))

    async def _terminate(self, proc: asyncio.subprocess.Process) -> int | None:
        if proc.returncode is not None:
            return proc.returncode
        proc.terminate()
        try:
            return await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Worker ignored SIGTERM, killing")
            proc.kill()
            return await proc.wait()

    # ------------------------------------------------------------------
    # Run logs
    # ------------------------------------------------------------------

    def _write_run_log(
        self,
        logs_dir: Path,
        request: WorkRequest,
        command: list[str],
        code: int | None,
        duration_ms: int,
        stdout: _Capture,
        stderr: _Capture,
    ) -> None:
        verbose = self._config.logging.level.upper() == "DEBUG"
        lines = [
            "=== Worker Run Log ===",
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            f"Group: {request.group_key}",
            f"IsPrimary: {request.is_primary}",
            f"Duration: {duration_ms}ms",
            f"Exit Code: {code}",
            f"Stdout Truncated: {stdout.truncated}",
            f"Stderr Truncated: {stderr.truncated}",
            "",
        ]
        if verbose:
            lines += [
                "=== Input ===",
                request.model_dump_json(by_alias=True, indent=2),
                "",
                "=== Command ===",
                " ".join(command),
                "",
                f"=== Stderr{' (TRUNCATED)' if stderr.truncated else ''} ===",
                stderr.text,
                "",
                f"=== Stdout{' (TRUNCATED)' if stdout.truncated else ''} ===",
                stdout.text,
            ]
        else:
            lines += [
                "=== Input Summary ===",
                f"Prompt length: {len(request.prompt)} chars",
                f"Session ID: {request.session_id or 'new'}",
                "",
            ]
            if code != 0:
                lines += [
                    f"=== Stderr (last {_STDERR_TAIL} chars) ===",
                    stderr.text[-_STDERR_TAIL:],
                    "",
                ]
        self._write_log(logs_dir, lines)

    def _write_log(self, logs_dir: Path, lines: list[str]) -> None:
        stamp = _safe_name(datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f"))
        path = logs_dir / f"worker-{stamp}.log"
        try:
            path.write_text("\n".join(lines), encoding="utf-8")
        except OSError:
            logger.exception("Failed to write run log %s", path)
        else:
            logger.debug("Run log written to %s", path)
