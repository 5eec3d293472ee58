"""Per-camera supervision state and the published health snapshot."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .worker import WorkerProcess


class CameraStatus(str, Enum):
    """Externally visible health of a camera."""

    OFFLINE = "OFFLINE"
    ONLINE = "ONLINE"
    DEGRADED = "DEGRADED"
    DEAD = "DEAD"


class StopReason(str, Enum):
    """Why the supervisor asked a worker to stop."""

    DISABLED = "disabled"
    MISSING_DEVICE = "missing-device"
    FROZEN = "frozen"
    RESOURCE_LIMIT = "resource-limit"
    ADMINISTRATIVE = "administrative"

    @property
    def voluntary(self) -> bool:
        """Voluntary stops never count against the restart budget."""

        return self in _VOLUNTARY_REASONS


_VOLUNTARY_REASONS = frozenset(
    {StopReason.DISABLED, StopReason.MISSING_DEVICE, StopReason.ADMINISTRATIVE}
)


@dataclass(slots=True)
class SupervisionState:
    """Mutable bookkeeping owned by the supervision loop for one camera."""

    camera_id: str
    status: CameraStatus = CameraStatus.OFFLINE
    handle: "WorkerProcess | None" = None
    retiring: "WorkerProcess | None" = None
    last_frame_observed: float | None = None
    fps: float | None = None
    restart_count: int = 0
    restart_window: deque[float] = field(default_factory=deque)
    last_restart_at: float | None = None
    cpu_percent: float | None = None
    memory_mb: float | None = None
    device_present: bool = False
    dead: bool = False

    @property
    def running(self) -> bool:
        return self.handle is not None

    def set_status(self, status: CameraStatus) -> None:
        """Apply ``status`` unless the camera is dead, which is terminal."""

        if self.dead:
            self.status = CameraStatus.DEAD
            return
        self.status = status

    def prune_restart_window(self, now: float, window_seconds: float) -> None:
        while self.restart_window and now - self.restart_window[0] >= window_seconds:
            self.restart_window.popleft()

    def record_restart(self, now: float, *, limit: int, window_seconds: float) -> bool:
        """Count a crash exit and return ``True`` when the camera became dead."""

        self.prune_restart_window(now, window_seconds)
        self.restart_window.append(now)
        self.restart_count += 1
        self.last_restart_at = now
        if len(self.restart_window) > limit:
            self.dead = True
            self.status = CameraStatus.DEAD
            return True
        return False

    def reset(self) -> None:
        """Clear the terminal flag and restart history after operator action."""

        self.dead = False
        self.restart_window.clear()
        self.status = CameraStatus.OFFLINE


@dataclass(frozen=True, slots=True)
class CameraHealth:
    """Point-in-time view of one camera, safe to hand to readers."""

    id: str
    name: str
    status: CameraStatus
    device_path: str | None
    source: str | None
    last_frame_observed: float | None
    fps: float | None
    restart_count: int
    cpu_percent: float | None
    memory_mb: float | None

    def to_dict(self) -> dict[str, object | None]:
        last_frame_ms = (
            int(self.last_frame_observed * 1000) if self.last_frame_observed is not None else None
        )
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "devicePath": self.device_path,
            "source": self.source,
            "lastFrameObserved": last_frame_ms,
            "fps": self.fps,
            "restartCount": self.restart_count,
            "cpuPercent": self.cpu_percent,
            "memoryMb": self.memory_mb,
        }


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Immutable health report published at the end of every tick."""

    updated_at: float
    cameras: tuple[CameraHealth, ...] = ()

    def camera(self, camera_id: str) -> CameraHealth | None:
        for entry in self.cameras:
            if entry.id == camera_id:
                return entry
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "updatedAt": datetime.fromtimestamp(self.updated_at, tz=timezone.utc).isoformat(),
            "cameras": [entry.to_dict() for entry in self.cameras],
        }


__all__ = [
    "CameraHealth",
    "CameraStatus",
    "HealthSnapshot",
    "StopReason",
    "SupervisionState",
]
