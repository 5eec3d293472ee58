"""The supervision loop that keeps one capture worker running per camera."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Mapping, Protocol

from ..config import CameraDefinition, CameraThresholds, Registry
from ..devices import is_stable_source, source_present
from ..events import CameraEventLog
from .resources import UNKNOWN_SAMPLE, ResourceSample, ResourceSampler
from .state import CameraHealth, CameraStatus, HealthSnapshot, StopReason, SupervisionState
from .worker import ProgressUpdate, WorkerProcess, build_capture_command

logger = logging.getLogger(__name__)

WORKER_ENVIRONMENT: Mapping[str, str] = MappingProxyType({"FFMPEG_PROGRESS": "1"})


class Sampler(Protocol):
    async def sample(self, pid: int | None) -> ResourceSample: ...

    def forget(self, pid: int | None) -> None: ...


WorkerFactory = Callable[..., WorkerProcess]


class CameraSupervisor:
    """Reconcile the registry against running workers on a fixed interval.

    Every mutation of :class:`SupervisionState` happens on the event loop that
    runs :meth:`tick`, either inside the tick itself or in the progress and exit
    callbacks of the workers it spawned. Callers outside that loop only read
    :attr:`snapshot`, which is replaced wholesale at the end of each tick.
    """

    def __init__(
        self,
        registry_provider: Callable[[], Registry],
        *,
        worker_factory: WorkerFactory = WorkerProcess,
        sampler: Sampler | None = None,
        device_probe: Callable[[CameraDefinition], bool] = source_present,
        stability_check: Callable[[CameraDefinition], bool] = is_stable_source,
        telemetry_path: Path | str | None = None,
        event_log: CameraEventLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry_provider = registry_provider
        self._worker_factory = worker_factory
        self._sampler: Sampler = sampler or ResourceSampler()
        self._device_probe = device_probe
        self._stability_check = stability_check
        self._telemetry_path = Path(telemetry_path) if telemetry_path is not None else None
        self._event_log = event_log
        self._clock = clock
        self._states: dict[str, SupervisionState] = {}
        self._refused: dict[str, str | None] = {}
        self._snapshot = HealthSnapshot(updated_at=clock())
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Read access
    @property
    def snapshot(self) -> HealthSnapshot:
        return self._snapshot

    @property
    def states(self) -> Mapping[str, SupervisionState]:
        return MappingProxyType(self._states)

    @property
    def event_log(self) -> CameraEventLog | None:
        return self._event_log

    @property
    def running(self) -> bool:
        return self._task is not None

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> None:
        """Start the background supervision task."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run())

    async def aclose(self) -> None:
        """Stop the loop, then stop every worker and wait for them to exit."""

        task = self._task
        if task is not None:
            assert self._stop_event is not None
            self._stop_event.set()
            try:
                await task
            finally:
                self._task = None
                self._stop_event = None
        await self.shutdown_workers()

    async def shutdown_workers(self, *, timeout: float | None = None) -> None:
        handles: list[WorkerProcess] = []
        grace = 0.0
        try:
            grace = float(self._registry_provider().capture.stop_grace_seconds)
        except Exception:  # pragma: no cover - provider failure
            logger.exception("Registry provider failed during shutdown")
        for state in self._states.values():
            if state.handle is not None:
                self._stop(state, StopReason.ADMINISTRATIVE)
            if state.retiring is not None and state.retiring.alive:
                handles.append(state.retiring)
        if not handles:
            return
        waiters = [asyncio.ensure_future(handle.wait()) for handle in handles]
        limit = timeout if timeout is not None else grace + 2.0
        _, pending = await asyncio.wait(waiters, timeout=limit)
        for waiter in pending:
            waiter.cancel()
        if pending:
            logger.warning("%d worker(s) still running after shutdown", len(pending))

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Supervision tick failed")
            interval = self._poll_interval()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def _poll_interval(self) -> float:
        try:
            return self._registry_provider().defaults.poll_interval_seconds
        except Exception:
            logger.exception("Unable to read poll interval, using 2s")
            return 2.0

    # ------------------------------------------------------------------
    # Administrative actions
    def reset(self, camera_id: str) -> SupervisionState:
        """Clear the dead flag and restart history of ``camera_id``."""

        registry = self._registry_provider()
        if registry.camera(camera_id) is None and camera_id not in self._states:
            raise KeyError(camera_id)
        state = self._ensure_state(camera_id)
        was_dead = state.dead
        state.reset()
        self._refused.pop(camera_id, None)
        logger.info("[%s] Supervision state reset (was dead: %s)", camera_id, was_dead)
        self._record(camera_id, "reset", "Restart budget cleared by operator")
        self._snapshot = self._build_snapshot(registry)
        return state

    def stop_camera(self, camera_id: str) -> bool:
        """Stop the current worker of ``camera_id`` without counting a restart.

        The next tick starts a fresh worker unless the camera is disabled, so
        this doubles as a manual restart.
        """

        registry = self._registry_provider()
        if registry.camera(camera_id) is None and camera_id not in self._states:
            raise KeyError(camera_id)
        state = self._states.get(camera_id)
        if state is None or state.handle is None:
            return False
        self._stop(state, StopReason.ADMINISTRATIVE)
        self._snapshot = self._build_snapshot(registry)
        return True

    # ------------------------------------------------------------------
    # The tick
    async def tick(self) -> HealthSnapshot:
        """Run one reconciliation pass and publish a fresh snapshot."""

        registry = self._registry_provider()
        self._retire_removed(registry)

        for index, camera in enumerate(registry.cameras):
            state = self._ensure_state(camera.id)
            if not camera.enabled:
                if state.handle is not None:
                    self._stop(state, StopReason.DISABLED)
                state.set_status(CameraStatus.OFFLINE)
                continue

            try:
                present = bool(self._device_probe(camera))
            except Exception:
                logger.exception("[%s] Device probe failed", camera.id)
                present = False
            state.device_present = present
            if not present:
                if state.handle is not None:
                    self._stop(state, StopReason.MISSING_DEVICE)
                state.set_status(CameraStatus.OFFLINE)
                continue

            if state.handle is None and not state.dead:
                await self._start(registry, camera, index, state)

        self._check_watchdog(registry)
        await self._check_resources(registry)

        snapshot = self._build_snapshot(registry)
        self._snapshot = snapshot
        await self._write_telemetry(registry, snapshot)
        return snapshot

    def _retire_removed(self, registry: Registry) -> None:
        known = set(registry.camera_ids)
        for camera_id in list(self._states):
            if camera_id in known:
                continue
            state = self._states[camera_id]
            if state.handle is not None:
                logger.info("[%s] Camera removed from registry, stopping worker", camera_id)
                self._stop(state, StopReason.ADMINISTRATIVE)
            if state.retiring is None or not state.retiring.alive:
                del self._states[camera_id]
                self._refused.pop(camera_id, None)

    def _check_watchdog(self, registry: Registry) -> None:
        now = self._clock()
        for camera in registry.cameras:
            state = self._states.get(camera.id)
            if state is None or state.handle is None or state.last_frame_observed is None:
                continue
            timeout = camera.thresholds(registry.defaults).freeze_timeout_seconds
            stalled = now - state.last_frame_observed
            if stalled > timeout:
                logger.warning(
                    "[%s] No progress for %.1fs (limit %.1fs), stopping worker",
                    camera.id,
                    stalled,
                    timeout,
                )
                self._stop(state, StopReason.FROZEN, stalled_seconds=round(stalled, 1))

    async def _check_resources(self, registry: Registry) -> None:
        running: list[tuple[CameraDefinition, SupervisionState, WorkerProcess]] = []
        for camera in registry.cameras:
            state = self._states.get(camera.id)
            if state is not None and state.handle is not None:
                running.append((camera, state, state.handle))
        if not running:
            return
        results = await asyncio.gather(
            *(self._sampler.sample(handle.pid) for _, _, handle in running),
            return_exceptions=True,
        )
        for (camera, state, handle), result in zip(running, results):
            if state.handle is not handle:
                # The worker exited or was stopped while sampling.
                continue
            if isinstance(result, BaseException):
                logger.debug("[%s] Resource sample failed: %s", camera.id, result)
                sample = UNKNOWN_SAMPLE
            else:
                sample = result
            state.cpu_percent = sample.cpu_percent
            state.memory_mb = sample.memory_mb
            violation = _limit_violation(sample, camera.thresholds(registry.defaults))
            if violation is not None:
                logger.warning("[%s] %s, stopping worker", camera.id, violation)
                self._stop(
                    state,
                    StopReason.RESOURCE_LIMIT,
                    cpu_percent=sample.cpu_percent,
                    memory_mb=sample.memory_mb,
                )

    # ------------------------------------------------------------------
    # Worker lifecycle
    async def _start(
        self,
        registry: Registry,
        camera: CameraDefinition,
        index: int,
        state: SupervisionState,
    ) -> None:
        if state.retiring is not None and state.retiring.alive:
            logger.debug("[%s] Previous worker still exiting, start deferred", camera.id)
            return
        descriptor = camera.descriptor
        if not descriptor or not self._stability_check(camera):
            if self._refused.get(camera.id, object()) != descriptor:
                logger.warning(
                    "[%s] Refusing to start unstable capture source %r; use a "
                    "/dev/v4l/by-id or /dev/v4l/by-path link",
                    camera.id,
                    descriptor,
                )
                self._record(
                    camera.id,
                    "refused",
                    "Capture source is not a stable descriptor",
                    source=descriptor,
                )
                self._refused[camera.id] = descriptor
            state.set_status(CameraStatus.OFFLINE)
            return
        self._refused.pop(camera.id, None)

        host, port = camera.destination(registry.defaults, index)
        command = build_capture_command(
            str(registry.capture_command),
            camera.id,
            descriptor,
            host,
            port,
            camera.audio_device,
        )
        handle = self._worker_factory(
            camera.id,
            command,
            on_progress=self._handle_progress,
            on_exit=self._handle_exit,
            env=WORKER_ENVIRONMENT,
            stop_grace_seconds=registry.capture.stop_grace_seconds,
        )
        state.handle = handle
        state.retiring = None
        state.last_frame_observed = None
        state.fps = None
        state.set_status(CameraStatus.ONLINE)
        try:
            await handle.start()
        except OSError as exc:
            logger.exception("[%s] Failed to launch capture worker", camera.id)
            if state.handle is handle:
                state.handle = None
                state.set_status(CameraStatus.OFFLINE)
                self._record(camera.id, "exited", f"Worker failed to launch: {exc}")
                self._record_crash(state, camera.thresholds(registry.defaults))
            elif state.retiring is handle:
                state.retiring = None
            return

        if state.handle is not handle:
            # Stopped while launching; deliver the stop now that a process exists.
            handle.request_stop(handle.stop_reason or StopReason.ADMINISTRATIVE)
            return
        logger.info("[%s] Capture worker started for %s -> %s:%d", camera.id, descriptor, host, port)
        self._record(
            camera.id,
            "started",
            "Capture worker started",
            pid=handle.pid,
            source=descriptor,
            destination=f"{host}:{port}",
        )

    def _stop(self, state: SupervisionState, reason: StopReason, **metadata: object) -> None:
        handle = state.handle
        if handle is None:
            return
        # The slot is freed immediately; the retiring worker blocks restarts until it exits.
        state.handle = None
        state.retiring = handle
        handle.request_stop(reason)
        if reason is StopReason.MISSING_DEVICE:
            state.set_status(CameraStatus.OFFLINE)
        else:
            state.set_status(CameraStatus.DEGRADED)
        logger.info("[%s] Stopping capture worker (%s)", state.camera_id, reason.value)
        self._record(
            state.camera_id,
            "stopped",
            f"Worker stop requested: {reason.value}",
            reason=reason,
            pid=handle.pid,
            **metadata,
        )

    def _handle_progress(self, handle: WorkerProcess, update: ProgressUpdate) -> None:
        state = self._states.get(handle.camera_id)
        if state is None or state.handle is not handle:
            return
        if update.fps is not None:
            state.fps = update.fps
        if update.progressed:
            state.last_frame_observed = self._clock()

    def _handle_exit(self, handle: WorkerProcess, returncode: int | None) -> None:
        # Runs synchronously on the loop, so the accounting below cannot interleave.
        self._sampler.forget(handle.pid)
        state = self._states.get(handle.camera_id)
        if state is None:
            return
        was_current = state.handle is handle
        if was_current:
            state.handle = None
        if state.retiring is handle:
            state.retiring = None
        if was_current or state.handle is None:
            state.cpu_percent = None
            state.memory_mb = None
            if not state.dead:
                state.set_status(CameraStatus.OFFLINE)

        reason = handle.stop_reason
        self._record(
            handle.camera_id,
            "exited",
            f"Worker exited with code {returncode}",
            reason=reason,
            pid=handle.pid,
            returncode=returncode,
        )
        if reason is not None and reason.voluntary:
            logger.info("[%s] Worker exited after %s stop", handle.camera_id, reason.value)
            return
        self._record_crash(state, self._thresholds_for(handle.camera_id))

    def _record_crash(self, state: SupervisionState, thresholds: CameraThresholds) -> None:
        if state.dead:
            return
        now = self._clock()
        became_dead = state.record_restart(
            now,
            limit=thresholds.restart_limit,
            window_seconds=thresholds.restart_window_seconds,
        )
        in_window = len(state.restart_window)
        if became_dead:
            logger.error(
                "[%s] %d restarts within %.0fs exceeds limit of %d, camera marked DEAD",
                state.camera_id,
                in_window,
                thresholds.restart_window_seconds,
                thresholds.restart_limit,
            )
            self._record(
                state.camera_id,
                "dead",
                "Restart budget exhausted",
                restarts_in_window=in_window,
                restart_limit=thresholds.restart_limit,
            )
        else:
            logger.warning(
                "[%s] Worker failure %d/%d in window, restart scheduled",
                state.camera_id,
                in_window,
                thresholds.restart_limit,
            )
            self._record(
                state.camera_id,
                "restart",
                "Worker failure counted against restart budget",
                restarts_in_window=in_window,
                restart_count=state.restart_count,
            )

    def _thresholds_for(self, camera_id: str) -> CameraThresholds:
        registry = self._registry_provider()
        camera = registry.camera(camera_id)
        if camera is None:
            camera = CameraDefinition(id=camera_id, name=camera_id)
        return camera.thresholds(registry.defaults)

    # ------------------------------------------------------------------
    # Helpers
    def _ensure_state(self, camera_id: str) -> SupervisionState:
        state = self._states.get(camera_id)
        if state is None:
            state = SupervisionState(camera_id=camera_id)
            self._states[camera_id] = state
        return state

    def _build_snapshot(self, registry: Registry) -> HealthSnapshot:
        entries: list[CameraHealth] = []
        for camera in registry.cameras:
            state = self._states.get(camera.id) or SupervisionState(camera_id=camera.id)
            entries.append(
                CameraHealth(
                    id=camera.id,
                    name=camera.name,
                    status=state.status,
                    device_path=camera.device_path,
                    source=camera.source,
                    last_frame_observed=state.last_frame_observed,
                    fps=state.fps,
                    restart_count=state.restart_count,
                    cpu_percent=state.cpu_percent,
                    memory_mb=state.memory_mb,
                )
            )
        return HealthSnapshot(updated_at=self._clock(), cameras=tuple(entries))

    async def _write_telemetry(self, registry: Registry, snapshot: HealthSnapshot) -> None:
        path = self._telemetry_path or registry.telemetry_path
        payload = json.dumps(snapshot.to_dict(), indent=2)
        try:
            await asyncio.to_thread(_atomic_write, path, payload)
        except OSError as exc:
            logger.warning("Unable to write telemetry to %s: %s", path, exc)

    def _record(
        self,
        camera_id: str,
        event: str,
        message: str,
        *,
        reason: StopReason | None = None,
        **metadata: object,
    ) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            camera_id,
            event,
            message,
            reason=reason.value if reason is not None else None,
            metadata=dict(metadata) or None,
        )


def _limit_violation(sample: ResourceSample, thresholds: CameraThresholds) -> str | None:
    cpu_limit = thresholds.cpu_limit_percent
    if cpu_limit is not None and sample.cpu_percent is not None and sample.cpu_percent > cpu_limit:
        return f"CPU {sample.cpu_percent:.1f}% above limit {cpu_limit:.1f}%"
    memory_limit = thresholds.memory_limit_mb
    if (
        memory_limit is not None
        and sample.memory_mb is not None
        and sample.memory_mb > memory_limit
    ):
        return f"Memory {sample.memory_mb:.1f} MB above limit {memory_limit:.1f} MB"
    return None


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(tmp_path, path)


__all__ = ["CameraSupervisor", "Sampler", "WORKER_ENVIRONMENT", "WorkerFactory"]
