"""Behavioural tests for the camera supervision loop using fake workers."""

from __future__ import annotations

import asyncio
import itertools
import json
from pathlib import Path
from typing import Any

import pytest

from chicken_cams.config import CameraDefinition, Registry, parse_registry
from chicken_cams.events import CameraEventLog
from chicken_cams.supervision import (
    CameraStatus,
    CameraSupervisor,
    ProgressUpdate,
    ResourceSample,
    StopReason,
)

_PIDS = itertools.count(1000)


class _FakeWorker:
    def __init__(
        self,
        camera_id: str,
        command: list[str],
        *,
        on_progress,
        on_exit,
        env=None,
        stop_grace_seconds: float = 5.0,
        fail: bool = False,
    ) -> None:
        self.camera_id = camera_id
        self.command = list(command)
        self.env = dict(env or {})
        self.stop_grace_seconds = stop_grace_seconds
        self.stop_reason: StopReason | None = None
        self.stop_requests: list[StopReason] = []
        self.pid: int | None = None
        self.returncode: int | None = None
        self._on_progress = on_progress
        self._on_exit = on_exit
        self._fail = fail
        self._alive = False

    @property
    def alive(self) -> bool:
        return self._alive

    async def start(self) -> None:
        if self._fail:
            raise FileNotFoundError(self.command[0])
        self.pid = next(_PIDS)
        self._alive = True

    def request_stop(self, reason: StopReason) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop_requests.append(reason)

    async def wait(self) -> int | None:
        return self.returncode

    def progress(self, **kwargs: Any) -> None:
        self._on_progress(self, ProgressUpdate(**kwargs))

    def exit(self, code: int = 1) -> None:
        self._alive = False
        self.returncode = code
        self._on_exit(self, code)


class _WorkerFactory:
    def __init__(self) -> None:
        self.workers: list[_FakeWorker] = []
        self.fail = False

    def __call__(self, camera_id: str, command: list[str], **kwargs: Any) -> _FakeWorker:
        worker = _FakeWorker(camera_id, command, fail=self.fail, **kwargs)
        self.workers.append(worker)
        return worker

    def for_camera(self, camera_id: str) -> list[_FakeWorker]:
        return [worker for worker in self.workers if worker.camera_id == camera_id]

    @property
    def last(self) -> _FakeWorker:
        return self.workers[-1]


class _FakeSampler:
    def __init__(self) -> None:
        self.samples: dict[int, ResourceSample | Exception] = {}
        self.forgotten: list[int | None] = []

    async def sample(self, pid: int | None) -> ResourceSample:
        result = self.samples.get(pid, ResourceSample(cpu_percent=5.0, memory_mb=50.0))
        if isinstance(result, Exception):
            raise result
        return result

    def forget(self, pid: int | None) -> None:
        self.forgotten.append(pid)


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _Registry:
    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    def __call__(self) -> Registry:
        return self.registry


def _camera(camera_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": camera_id,
        "name": camera_id.title(),
        "devicePath": f"/dev/v4l/by-id/usb-{camera_id}",
    }
    payload.update(overrides)
    return payload


class _Harness:
    def __init__(self, tmp_path: Path, cameras: list[dict[str, Any]], **defaults: Any) -> None:
        self.tmp_path = tmp_path
        self.defaults = {"restartLimit": 5, "restartWindowSeconds": 120, **defaults}
        self.provider = _Registry(self._parse(cameras))
        self.factory = _WorkerFactory()
        self.sampler = _FakeSampler()
        self.clock = _Clock()
        self.missing: set[str] = set()
        self.events = CameraEventLog()
        self.supervisor = CameraSupervisor(
            self.provider,
            worker_factory=self.factory,
            sampler=self.sampler,
            device_probe=lambda camera: camera.id not in self.missing,
            telemetry_path=tmp_path / "telemetry.json",
            event_log=self.events,
            clock=self.clock,
        )

    def _parse(self, cameras: list[dict[str, Any]]) -> Registry:
        return parse_registry(
            {"defaults": self.defaults, "cameras": cameras}, base_dir=self.tmp_path
        )

    def set_cameras(self, cameras: list[dict[str, Any]]) -> None:
        self.provider.registry = self._parse(cameras)

    def tick(self):
        return asyncio.run(self.supervisor.tick())

    def state(self, camera_id: str = "coop"):
        return self.supervisor.states[camera_id]

    def event_names(self, camera_id: str = "coop") -> list[str]:
        return [entry.event for entry in self.events.tail(camera_id=camera_id)]


def test_tick_starts_worker_with_capture_contract(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop"), _camera("run", audioDevice="hw:1,0")])

    snapshot = harness.tick()

    coop, run = harness.factory.workers
    assert coop.command == [
        str(tmp_path / "capture.sh"),
        "coop",
        "/dev/v4l/by-id/usb-coop",
        "chickens.local",
        "9001",
    ]
    assert run.command[-2:] == ["9002", "hw:1,0"]
    assert coop.env == {"FFMPEG_PROGRESS": "1"}
    assert [entry.status for entry in snapshot.cameras] == [CameraStatus.ONLINE] * 2
    assert harness.event_names() == ["started"]

    telemetry = json.loads((tmp_path / "telemetry.json").read_text(encoding="utf-8"))
    assert [entry["id"] for entry in telemetry["cameras"]] == ["coop", "run"]
    assert telemetry["cameras"][0]["status"] == "ONLINE"


def test_running_worker_is_not_started_twice(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])

    for _ in range(5):
        harness.tick()

    assert len(harness.factory.workers) == 1
    assert harness.state().handle is harness.factory.last


def test_progress_updates_fps_and_last_frame(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])
    harness.tick()
    worker = harness.factory.last

    worker.progress(fps=24.5)
    worker.progress(progressed=True)

    state = harness.state()
    assert state.fps == pytest.approx(24.5)
    assert state.last_frame_observed == harness.clock.now

    snapshot = harness.tick()
    entry = snapshot.camera("coop")
    assert entry is not None
    payload = entry.to_dict()
    assert payload["lastFrameObserved"] == int(harness.clock.now * 1000)
    assert payload["fps"] == pytest.approx(24.5)


def test_six_crashes_within_window_mark_camera_dead(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])

    for attempt in range(6):
        harness.tick()
        harness.clock.advance(15)
        harness.factory.last.exit(1)
        state = harness.state()
        if attempt < 5:
            assert state.dead is False
            assert state.status is CameraStatus.OFFLINE

    state = harness.state()
    assert state.dead is True
    assert state.status is CameraStatus.DEAD
    assert state.restart_count == 6

    for _ in range(3):
        snapshot = harness.tick()
    assert len(harness.factory.workers) == 6
    assert snapshot.camera("coop").status is CameraStatus.DEAD
    assert "dead" in harness.event_names()


def test_restart_window_slides(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])

    for _ in range(20):
        harness.tick()
        harness.clock.advance(30)
        harness.factory.last.exit(1)

    state = harness.state()
    assert state.dead is False
    assert state.restart_count == 20
    assert len(state.restart_window) == 4
    assert all(harness.clock.now - ts < 120 for ts in state.restart_window)


def test_disable_enable_cycles_never_count(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], restartLimit=1)

    for _ in range(10):
        harness.set_cameras([_camera("coop")])
        harness.tick()
        worker = harness.factory.last
        harness.set_cameras([_camera("coop", enabled=False)])
        harness.tick()
        assert worker.stop_reason is StopReason.DISABLED
        assert harness.state().status is CameraStatus.OFFLINE
        worker.exit(-15)

    state = harness.state()
    assert len(harness.factory.workers) == 10
    assert state.restart_count == 0
    assert not state.restart_window
    assert state.dead is False


def test_missing_device_stops_without_counting(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])
    harness.tick()
    worker = harness.factory.last

    harness.missing.add("coop")
    harness.tick()
    assert worker.stop_reason is StopReason.MISSING_DEVICE
    assert harness.state().status is CameraStatus.OFFLINE
    assert harness.state().device_present is False

    worker.exit(255)
    harness.tick()
    assert len(harness.factory.workers) == 1
    assert harness.state().restart_count == 0

    harness.missing.clear()
    harness.tick()
    assert len(harness.factory.workers) == 2
    assert harness.state().status is CameraStatus.ONLINE


def test_watchdog_stops_frozen_worker_and_counts(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], freezeTimeoutSeconds=8)
    harness.tick()
    worker = harness.factory.last
    worker.progress(progressed=True)

    harness.clock.advance(9)
    harness.tick()

    assert worker.stop_reason is StopReason.FROZEN
    assert harness.state().status is CameraStatus.DEGRADED
    assert harness.state().handle is None

    worker.exit(-15)
    state = harness.state()
    assert state.restart_count == 1
    assert len(state.restart_window) == 1
    assert state.status is CameraStatus.OFFLINE

    harness.tick()
    assert len(harness.factory.workers) == 2


def test_watchdog_waits_for_first_progress(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], freezeTimeoutSeconds=8)
    harness.tick()

    harness.clock.advance(60)
    harness.tick()

    assert harness.factory.last.stop_reason is None


def test_per_camera_freeze_timeout_override(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path, [_camera("coop", freezeTimeoutSeconds=20)], freezeTimeoutSeconds=8
    )
    harness.tick()
    harness.factory.last.progress(progressed=True)

    harness.clock.advance(9)
    harness.tick()

    assert harness.factory.last.stop_reason is None


def test_resource_limit_stops_worker(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop"), _camera("run")], cpuLimitPercent=150)
    harness.tick()
    coop, run = harness.factory.workers
    harness.sampler.samples[coop.pid] = ResourceSample(cpu_percent=240.0, memory_mb=80.0)
    harness.sampler.samples[run.pid] = ResourceSample(cpu_percent=20.0, memory_mb=80.0)

    harness.tick()

    assert coop.stop_reason is StopReason.RESOURCE_LIMIT
    assert run.stop_reason is None
    assert harness.state("run").cpu_percent == pytest.approx(20.0)

    coop.exit(-15)
    assert harness.state().restart_count == 1


def test_memory_limit_override(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop", memoryLimitMb=100)])
    harness.tick()
    worker = harness.factory.last
    harness.sampler.samples[worker.pid] = ResourceSample(cpu_percent=1.0, memory_mb=150.0)

    harness.tick()

    assert worker.stop_reason is StopReason.RESOURCE_LIMIT


def test_zero_camera_limits_disable_resource_checks(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        [_camera("coop", cpuLimitPercent=0, memoryLimitMb=0)],
        cpuLimitPercent=150,
        memoryLimitMb=100,
    )
    harness.tick()
    worker = harness.factory.last
    harness.sampler.samples[worker.pid] = ResourceSample(cpu_percent=400.0, memory_mb=900.0)

    harness.tick()
    harness.tick()

    assert worker.stop_reason is None
    assert harness.factory.workers == [worker]
    assert harness.state().restart_count == 0
    assert harness.supervisor.snapshot.camera("coop").status is CameraStatus.ONLINE


def test_failed_resource_samples_never_stop(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop"), _camera("run")])
    harness.tick()
    coop, run = harness.factory.workers
    harness.sampler.samples[coop.pid] = RuntimeError("ps unavailable")
    harness.sampler.samples[run.pid] = ResourceSample()

    snapshot = harness.tick()

    assert coop.stop_reason is None
    assert run.stop_reason is None
    assert snapshot.camera("coop").cpu_percent is None
    assert snapshot.camera("run").memory_mb is None
    assert [entry.status for entry in snapshot.cameras] == [CameraStatus.ONLINE] * 2


def test_retiring_worker_blocks_new_start(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], freezeTimeoutSeconds=8)
    harness.tick()
    worker = harness.factory.last
    worker.progress(progressed=True)
    harness.clock.advance(9)
    harness.tick()

    for _ in range(3):
        harness.tick()
    assert len(harness.factory.workers) == 1
    assert harness.state().retiring is worker

    worker.exit(-9)
    harness.tick()
    assert len(harness.factory.workers) == 2
    live = [w for w in harness.factory.for_camera("coop") if w.alive]
    assert live == [harness.factory.last]


def test_late_exit_of_replaced_worker_is_ignored(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])
    harness.tick()
    first = harness.factory.last
    assert harness.supervisor.stop_camera("coop") is True
    # The process is gone but its exit notification has not been delivered yet.
    first._alive = False

    harness.tick()
    second = harness.factory.last
    assert second is not first

    first.progress(fps=1.0)
    first.exit(0)

    state = harness.state()
    assert state.handle is second
    assert state.status is CameraStatus.ONLINE
    assert state.fps is None
    assert state.restart_count == 0


def test_spawn_failure_counts_as_crash(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], restartLimit=2)
    harness.factory.fail = True

    harness.tick()
    state = harness.state()
    assert state.handle is None
    assert state.restart_count == 1
    assert state.status is CameraStatus.OFFLINE

    harness.tick()
    harness.tick()
    assert harness.state().status is CameraStatus.DEAD
    harness.tick()
    assert len(harness.factory.workers) == 3


def test_unstable_source_is_refused_once(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop", devicePath="/dev/video0")])

    harness.tick()
    harness.tick()

    assert harness.factory.workers == []
    assert harness.state().status is CameraStatus.OFFLINE
    assert harness.event_names() == ["refused"]


def test_reset_clears_dead_camera(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], restartLimit=0)
    harness.tick()
    harness.factory.last.exit(1)
    assert harness.state().status is CameraStatus.DEAD

    state = harness.supervisor.reset("coop")
    assert state.dead is False
    assert state.status is CameraStatus.OFFLINE
    assert state.restart_count == 1
    assert harness.supervisor.snapshot.camera("coop").status is CameraStatus.OFFLINE

    harness.tick()
    assert len(harness.factory.workers) == 2
    assert harness.state().status is CameraStatus.ONLINE

    with pytest.raises(KeyError):
        harness.supervisor.reset("barn")


def test_removed_camera_is_stopped_and_forgotten(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop"), _camera("run")])
    harness.tick()
    run = harness.factory.for_camera("run")[0]

    harness.set_cameras([_camera("coop")])
    snapshot = harness.tick()
    assert run.stop_reason is StopReason.ADMINISTRATIVE
    assert [entry.id for entry in snapshot.cameras] == ["coop"]
    assert "run" in harness.supervisor.states

    run.exit(0)
    harness.tick()
    assert "run" not in harness.supervisor.states


def test_reload_with_identical_registry_keeps_state(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])
    harness.tick()
    harness.factory.last.exit(1)
    harness.tick()
    before = harness.state()
    counters = (before.restart_count, list(before.restart_window), before.status)

    harness.set_cameras([_camera("coop")])
    harness.tick()

    after = harness.state()
    assert after is before
    assert (after.restart_count, list(after.restart_window), after.status) == counters
    assert len(harness.factory.workers) == 2


def test_stop_camera_unknown_raises(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")])
    with pytest.raises(KeyError):
        harness.supervisor.stop_camera("barn")
    assert harness.supervisor.stop_camera("coop") is False


def test_shutdown_stops_every_worker(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop"), _camera("run")])

    async def _exercise() -> None:
        await harness.supervisor.tick()
        await harness.supervisor.aclose()

    asyncio.run(_exercise())

    assert [worker.stop_reason for worker in harness.factory.workers] == [
        StopReason.ADMINISTRATIVE,
        StopReason.ADMINISTRATIVE,
    ]


def test_background_loop_ticks_until_closed(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], pollIntervalMs=100)

    async def _exercise() -> None:
        harness.supervisor.start()
        await asyncio.sleep(0.05)
        assert harness.supervisor.running is True
        assert len(harness.factory.workers) == 1
        await harness.supervisor.aclose()
        assert harness.supervisor.running is False

    asyncio.run(_exercise())
    assert harness.factory.last.stop_reason is StopReason.ADMINISTRATIVE


def test_disabled_dead_camera_stays_dead(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_camera("coop")], restartLimit=0)
    harness.tick()
    harness.factory.last.exit(1)

    harness.set_cameras([_camera("coop", enabled=False)])
    harness.tick()
    assert harness.state().status is CameraStatus.DEAD


def test_camera_definition_defaults_are_usable(tmp_path: Path) -> None:
    registry = Registry(
        base_dir=tmp_path,
        cameras=(CameraDefinition(id="coop", name="Coop", source="srt://10.0.0.9:9001"),),
    )
    provider = _Registry(registry)
    factory = _WorkerFactory()
    supervisor = CameraSupervisor(
        provider,
        worker_factory=factory,
        sampler=_FakeSampler(),
        telemetry_path=tmp_path / "telemetry.json",
    )

    asyncio.run(supervisor.tick())

    assert factory.last.command[2] == "srt://10.0.0.9:9001"
    assert supervisor.snapshot.camera("coop").status is CameraStatus.ONLINE
