"""Runtime handle for one external capture/encode worker process."""
from __future__ import annotations

import asyncio
import logging
import math
import os
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

from .state import StopReason

logger = logging.getLogger(__name__)
# Raw diagnostic output of workers, one line per record.
output_logger = logging.getLogger("chicken_cams.worker")

# Keys whose presence with a numeric value proves the worker is still producing output.
PROGRESS_KEYS: frozenset[str] = frozenset({"out_time_ms", "out_time_us", "frame"})


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Information extracted from a single ``key=value`` progress line."""

    fps: float | None = None
    progressed: bool = False


def parse_progress_line(line: str) -> ProgressUpdate | None:
    """Parse a progress line, returning ``None`` for anything uninteresting."""

    key, separator, value = line.partition("=")
    key = key.strip()
    value = value.strip()
    if not separator or not key:
        return None
    if key == "fps":
        try:
            fps = float(value)
        except ValueError:
            return None
        if not math.isfinite(fps):
            return None
        return ProgressUpdate(fps=fps)
    if key in PROGRESS_KEYS:
        try:
            int(value)
        except ValueError:
            return None
        return ProgressUpdate(progressed=True)
    return None


class ProgressLineBuffer:
    """Split an arbitrary byte stream into complete text lines."""

    def __init__(self, *, max_pending: int = 64 * 1024) -> None:
        self._pending = bytearray()
        self._max_pending = max_pending

    def feed(self, data: bytes) -> list[str]:
        self._pending.extend(data)
        *complete, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        if len(self._pending) > self._max_pending:
            # A worker that never emits newlines must not grow memory unbounded.
            complete.append(bytes(self._pending))
            self._pending.clear()
        return [self._decode(raw) for raw in complete if raw.strip()]

    def flush(self) -> list[str]:
        rest = bytes(self._pending)
        self._pending.clear()
        return [self._decode(rest)] if rest.strip() else []

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r")


def build_capture_command(
    command: str,
    camera_id: str,
    descriptor: str,
    host: str,
    port: int,
    audio_device: str | None = None,
) -> list[str]:
    """Return the argv for the capture worker contract."""

    args = [str(command), camera_id, descriptor, host, str(int(port))]
    if audio_device:
        args.append(audio_device)
    return args


ProgressCallback = Callable[["WorkerProcess", ProgressUpdate], None]
ExitCallback = Callable[["WorkerProcess", "int | None"], None]


class WorkerProcess:
    """Own a spawned worker, its output readers and its exit notification.

    Output is pushed to ``on_progress`` as it arrives and ``on_exit`` fires
    exactly once after the process has exited and its pipes are drained. Both
    callbacks run on the event loop that called :meth:`start`.
    """

    def __init__(
        self,
        camera_id: str,
        command: Sequence[str],
        *,
        on_progress: ProgressCallback,
        on_exit: ExitCallback,
        env: Mapping[str, str] | None = None,
        stop_grace_seconds: float = 5.0,
        read_chunk_size: int = 4096,
    ) -> None:
        self.camera_id = camera_id
        self.command = list(command)
        self.stop_reason: StopReason | None = None
        self._on_progress = on_progress
        self._on_exit = on_exit
        self._env = dict(env) if env is not None else None
        self._stop_grace_seconds = max(0.0, float(stop_grace_seconds))
        self._read_chunk_size = max(1, int(read_chunk_size))
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._monitor_task: asyncio.Task[None] | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._exited = asyncio.Event()
        self._returncode: int | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def alive(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    async def start(self) -> None:
        """Spawn the worker. ``OSError`` propagates when it cannot be launched."""

        if self._process is not None:
            raise RuntimeError(f"Worker for {self.camera_id} already started")
        env = None
        if self._env is not None:
            env = os.environ.copy()
            env.update(self._env)
        self._process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.info("[%s] Worker started with PID %d", self.camera_id, self._process.pid)
        self._tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        self._monitor_task = asyncio.create_task(self._monitor())

    def request_stop(self, reason: StopReason) -> None:
        """Ask the worker to terminate gracefully, escalating after the grace period."""

        if self.stop_reason is None:
            self.stop_reason = reason
        process = self._process
        if process is None or self._exited.is_set():
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        if self._kill_handle is None:
            loop = asyncio.get_running_loop()
            self._kill_handle = loop.call_later(self._stop_grace_seconds, self._kill)

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self._returncode

    def _kill(self) -> None:
        self._kill_handle = None
        process = self._process
        if process is None or self._exited.is_set():
            return
        logger.warning(
            "[%s] Worker ignored termination for %.1fs, killing",
            self.camera_id,
            self._stop_grace_seconds,
        )
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        buffer = ProgressLineBuffer()
        try:
            while True:
                chunk = await process.stdout.read(self._read_chunk_size)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._handle_line(line)
            for line in buffer.flush():
                self._handle_line(line)
        except Exception:
            logger.exception("[%s] stdout reader error", self.camera_id)

    def _handle_line(self, line: str) -> None:
        update = parse_progress_line(line)
        if update is None:
            logger.debug("[%s] %s", self.camera_id, line)
            return
        self._on_progress(self, update)

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    output_logger.info("[%s] %s", self.camera_id, text)
        except Exception:
            logger.exception("[%s] stderr reader error", self.camera_id)

    async def _monitor(self) -> None:
        process = self._process
        assert process is not None
        returncode = await process.wait()
        # Grandchildren may keep the pipes open; do not wait on them forever.
        await asyncio.wait(self._tasks, timeout=1.0)
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None
        self._returncode = returncode
        self._exited.set()
        logger.info("[%s] Worker exited with code %s", self.camera_id, returncode)
        try:
            self._on_exit(self, returncode)
        except Exception:
            logger.exception("[%s] Exit handler failed", self.camera_id)


__all__ = [
    "PROGRESS_KEYS",
    "ProgressLineBuffer",
    "ProgressUpdate",
    "WorkerProcess",
    "build_capture_command",
    "parse_progress_line",
]
