"""Configuration management for Chicken Cams."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

DEFAULT_SERVER_HOST = "chickens.local"
DEFAULT_SERVER_PORT_BASE = 9001
DEFAULT_RESTART_LIMIT = 5
DEFAULT_RESTART_WINDOW_SECONDS = 120.0
DEFAULT_FREEZE_TIMEOUT_SECONDS = 8.0
DEFAULT_POLL_INTERVAL_MS = 2000
DEFAULT_CPU_LIMIT_PERCENT = 160.0
DEFAULT_MEMORY_LIMIT_MB = 600.0


@dataclass(frozen=True, slots=True)
class CameraThresholds:
    """Effective supervision limits for a single camera."""

    restart_limit: int
    restart_window_seconds: float
    freeze_timeout_seconds: float
    cpu_limit_percent: float | None
    memory_limit_mb: float | None


@dataclass(frozen=True, slots=True)
class SupervisorDefaults:
    """Fleet-wide tunables applied when a camera does not override them."""

    server_host: str = DEFAULT_SERVER_HOST
    server_port_base: int = DEFAULT_SERVER_PORT_BASE
    restart_limit: int = DEFAULT_RESTART_LIMIT
    restart_window_seconds: float = DEFAULT_RESTART_WINDOW_SECONDS
    freeze_timeout_seconds: float = DEFAULT_FREEZE_TIMEOUT_SECONDS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    cpu_limit_percent: float | None = DEFAULT_CPU_LIMIT_PERCENT
    memory_limit_mb: float | None = DEFAULT_MEMORY_LIMIT_MB

    def __post_init__(self) -> None:
        if not isinstance(self.server_host, str) or not self.server_host.strip():
            raise ValueError("Server host must be a non-empty string")
        if not (1 <= int(self.server_port_base) <= 65535):
            raise ValueError("Server port base must be between 1 and 65535")
        if int(self.restart_limit) < 0:
            raise ValueError("Restart limit must not be negative")
        if float(self.restart_window_seconds) <= 0:
            raise ValueError("Restart window must be positive")
        if float(self.freeze_timeout_seconds) <= 0:
            raise ValueError("Freeze timeout must be positive")
        if int(self.poll_interval_ms) < 100:
            raise ValueError("Poll interval must be at least 100 ms")

    @property
    def poll_interval_seconds(self) -> float:
        return int(self.poll_interval_ms) / 1000.0

    def to_dict(self) -> dict[str, object]:
        return {
            "serverHost": self.server_host,
            "serverPortBase": int(self.server_port_base),
            "restartLimit": int(self.restart_limit),
            "restartWindowSeconds": float(self.restart_window_seconds),
            "freezeTimeoutSeconds": float(self.freeze_timeout_seconds),
            "pollIntervalMs": int(self.poll_interval_ms),
            "cpuLimitPercent": self.cpu_limit_percent,
            "memoryLimitMb": self.memory_limit_mb,
        }


@dataclass(frozen=True, slots=True)
class CameraDefinition:
    """A camera entry from the registry.

    Exactly one of ``device_path`` (a local capture device) or ``source`` (a raw
    descriptor such as ``srt://host:9001``) identifies the capture source.
    Threshold fields left as ``None`` fall back to :class:`SupervisorDefaults`.
    """

    id: str
    name: str
    enabled: bool = True
    device_path: str | None = None
    source: str | None = None
    server_host: str | None = None
    server_port: int | None = None
    audio_device: str | None = None
    restart_limit: int | None = None
    restart_window_seconds: float | None = None
    freeze_timeout_seconds: float | None = None
    cpu_limit_percent: float | None = None
    memory_limit_mb: float | None = None
    poll_interval_ms: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("Camera id must be a non-empty string")
        if self.id != Path(self.id).name or self.id in {".", ".."}:
            raise ValueError(f"Camera id {self.id!r} must not contain path separators")
        if self.server_port is not None and not (1 <= int(self.server_port) <= 65535):
            raise ValueError(f"Camera {self.id} server port must be between 1 and 65535")
        if self.restart_limit is not None and int(self.restart_limit) < 0:
            raise ValueError(f"Camera {self.id} restart limit must not be negative")
        for field_name in ("restart_window_seconds", "freeze_timeout_seconds"):
            value = getattr(self, field_name)
            if value is not None and float(value) <= 0:
                raise ValueError(f"Camera {self.id} {field_name} must be positive")

    @property
    def descriptor(self) -> str | None:
        """Return the capture source descriptor handed to the worker."""

        return self.device_path if self.device_path else self.source

    def thresholds(self, defaults: SupervisorDefaults) -> CameraThresholds:
        def pick(own: Any, fallback: Any) -> Any:
            return fallback if own is None else own

        def limit(own: float | None, fallback: float | None) -> float | None:
            # An explicit zero or negative override disables the check.
            if own is None:
                return fallback
            return float(own) if own > 0 else None

        return CameraThresholds(
            restart_limit=int(pick(self.restart_limit, defaults.restart_limit)),
            restart_window_seconds=float(
                pick(self.restart_window_seconds, defaults.restart_window_seconds)
            ),
            freeze_timeout_seconds=float(
                pick(self.freeze_timeout_seconds, defaults.freeze_timeout_seconds)
            ),
            cpu_limit_percent=limit(self.cpu_limit_percent, defaults.cpu_limit_percent),
            memory_limit_mb=limit(self.memory_limit_mb, defaults.memory_limit_mb),
        )

    def destination(self, defaults: SupervisorDefaults, index: int) -> tuple[str, int]:
        """Return the live server host and port this camera publishes to."""

        host = self.server_host or defaults.server_host
        if self.server_port is not None:
            return host, int(self.server_port)
        return host, int(defaults.server_port_base) + max(0, int(index))

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
        }
        optional = {
            "devicePath": self.device_path,
            "source": self.source,
            "serverHost": self.server_host,
            "serverPort": self.server_port,
            "audioDevice": self.audio_device,
            "restartLimit": self.restart_limit,
            "restartWindowSeconds": self.restart_window_seconds,
            "freezeTimeoutSeconds": self.freeze_timeout_seconds,
            "cpuLimitPercent": self.cpu_limit_percent,
            "memoryLimitMb": self.memory_limit_mb,
            "pollIntervalMs": self.poll_interval_ms,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self) -> None:
        if not (1 <= int(self.port) <= 65535):
            raise ValueError("Server port must be between 1 and 65535")

    def to_dict(self) -> dict[str, object]:
        return {"host": self.host, "port": int(self.port)}


@dataclass(frozen=True, slots=True)
class PathSettings:
    """Storage locations, relative entries resolve against the registry folder."""

    streams_root: str = "streams"
    recordings_root: str = "recordings"
    activity_root: str = "activity"
    tmp_root: str = ".tmp"
    telemetry: str = "telemetry.json"
    events: str = "events.jsonl"

    def to_dict(self) -> dict[str, str]:
        return {
            "streams_root": self.streams_root,
            "recordings_root": self.recordings_root,
            "activity_root": self.activity_root,
            "tmp_root": self.tmp_root,
            "telemetry": self.telemetry,
            "events": self.events,
        }


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """How the external capture worker is launched."""

    command: str = "capture.sh"
    stop_grace_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not isinstance(self.command, str) or not self.command.strip():
            raise ValueError("Capture command must be a non-empty string")
        if float(self.stop_grace_seconds) < 0:
            raise ValueError("Stop grace period must not be negative")

    def to_dict(self) -> dict[str, object]:
        return {"command": self.command, "stop_grace_seconds": float(self.stop_grace_seconds)}


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Segment layout and the concatenation tool used for downloads."""

    segment_duration_seconds: int = 60
    safety_buffer_seconds: float = 5.0
    ffmpeg: str = "ffmpeg"
    stitch_timeout_seconds: float = 600.0

    def __post_init__(self) -> None:
        if int(self.segment_duration_seconds) <= 0:
            raise ValueError("Segment duration must be positive")
        if float(self.safety_buffer_seconds) < 0:
            raise ValueError("Safety buffer must not be negative")
        if float(self.stitch_timeout_seconds) <= 0:
            raise ValueError("Stitch timeout must be positive")

    def to_dict(self) -> dict[str, object]:
        return {
            "segment_duration_seconds": int(self.segment_duration_seconds),
            "safety_buffer_seconds": float(self.safety_buffer_seconds),
            "ffmpeg": self.ffmpeg,
            "stitch_timeout_seconds": float(self.stitch_timeout_seconds),
        }


@dataclass(frozen=True, slots=True)
class Registry:
    """Immutable snapshot of the camera registry and its tunables."""

    base_dir: Path
    server: ServerSettings = field(default_factory=ServerSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    recordings: RecordingSettings = field(default_factory=RecordingSettings)
    defaults: SupervisorDefaults = field(default_factory=SupervisorDefaults)
    cameras: tuple[CameraDefinition, ...] = ()

    def camera(self, camera_id: str) -> CameraDefinition | None:
        for camera in self.cameras:
            if camera.id == camera_id:
                return camera
        return None

    @property
    def camera_ids(self) -> tuple[str, ...]:
        return tuple(camera.id for camera in self.cameras)

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    @property
    def streams_root(self) -> Path:
        return self._resolve(self.paths.streams_root)

    @property
    def recordings_root(self) -> Path:
        return self._resolve(self.paths.recordings_root)

    @property
    def activity_root(self) -> Path:
        return self._resolve(self.paths.activity_root)

    @property
    def tmp_root(self) -> Path:
        return self._resolve(self.paths.tmp_root)

    @property
    def telemetry_path(self) -> Path:
        return self._resolve(self.paths.telemetry)

    @property
    def events_path(self) -> Path:
        return self._resolve(self.paths.events)

    @property
    def capture_command(self) -> Path:
        return self._resolve(self.capture.command)

    def to_dict(self) -> dict[str, object]:
        return {
            "server": self.server.to_dict(),
            "paths": self.paths.to_dict(),
            "capture": self.capture.to_dict(),
            "recordings": self.recordings.to_dict(),
            "defaults": self.defaults.to_dict(),
            "cameras": [camera.to_dict() for camera in self.cameras],
        }


def _parse_bool(value: Any, *, default: bool, label: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalised = value.strip().lower()
        if normalised in {"1", "true", "yes", "on"}:
            return True
        if normalised in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{label} must be a boolean value")


def _parse_int(value: Any, *, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be an integer")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if not math.isfinite(number) or number != int(number):
        raise ValueError(f"{label} must be an integer")
    return int(number)


def _parse_float(value: Any, *, label: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be numeric") from exc
    if not math.isfinite(number):
        raise ValueError(f"{label} must be finite")
    return number


def _parse_optional_int(value: Any, *, label: str) -> int | None:
    if value is None or value == "":
        return None
    return _parse_int(value, label=label)


def _parse_optional_float(value: Any, *, label: str) -> float | None:
    if value is None or value == "":
        return None
    return _parse_float(value, label=label)


def _parse_limit(payload: Mapping[str, Any], key: str, *, default: float | None) -> float | None:
    # An explicit null, zero or negative limit disables the check.
    if key not in payload:
        return default
    value = payload[key]
    if value is None or value == "":
        return None
    parsed = _parse_float(value, label=key)
    return parsed if parsed > 0 else None


def _parse_camera_limit(value: Any, *, label: str) -> float | None:
    # None inherits the default; zero or below is kept as 0.0, meaning disabled.
    parsed = _parse_optional_float(value, label=label)
    if parsed is None:
        return None
    return parsed if parsed > 0 else 0.0


def _parse_optional_str(value: Any, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string")
    cleaned = value.strip()
    return cleaned or None


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{key}' must be a JSON object")
    return value


def _parse_defaults(value: Mapping[str, Any]) -> SupervisorDefaults:
    base = SupervisorDefaults()
    host = _parse_optional_str(value.get("serverHost"), label="serverHost")
    port_base = value.get("serverPortBase")
    limit = value.get("restartLimit")
    window = value.get("restartWindowSeconds")
    freeze = value.get("freezeTimeoutSeconds")
    poll = value.get("pollIntervalMs")
    return SupervisorDefaults(
        server_host=host or base.server_host,
        server_port_base=(
            base.server_port_base
            if port_base is None
            else _parse_int(port_base, label="serverPortBase")
        ),
        restart_limit=(
            base.restart_limit if limit is None else _parse_int(limit, label="restartLimit")
        ),
        restart_window_seconds=(
            base.restart_window_seconds
            if window is None
            else _parse_float(window, label="restartWindowSeconds")
        ),
        freeze_timeout_seconds=(
            base.freeze_timeout_seconds
            if freeze is None
            else _parse_float(freeze, label="freezeTimeoutSeconds")
        ),
        poll_interval_ms=(
            base.poll_interval_ms if poll is None else _parse_int(poll, label="pollIntervalMs")
        ),
        cpu_limit_percent=_parse_limit(
            value, "cpuLimitPercent", default=base.cpu_limit_percent
        ),
        memory_limit_mb=_parse_limit(value, "memoryLimitMb", default=base.memory_limit_mb),
    )


def _parse_camera(value: Any, *, index: int) -> CameraDefinition:
    if not isinstance(value, Mapping):
        raise ValueError(f"Camera entry {index} must be a JSON object")
    camera_id = value.get("id")
    if not isinstance(camera_id, str) or not camera_id.strip():
        raise ValueError(f"Camera entry {index} is missing an id")
    camera_id = camera_id.strip()
    label = f"Camera {camera_id}"
    name = _parse_optional_str(value.get("name"), label=f"{label} name") or camera_id
    return CameraDefinition(
        id=camera_id,
        name=name,
        enabled=_parse_bool(value.get("enabled"), default=True, label=f"{label} enabled"),
        device_path=_parse_optional_str(value.get("devicePath"), label=f"{label} devicePath"),
        source=_parse_optional_str(value.get("source"), label=f"{label} source"),
        server_host=_parse_optional_str(value.get("serverHost"), label=f"{label} serverHost"),
        server_port=_parse_optional_int(value.get("serverPort"), label=f"{label} serverPort"),
        audio_device=_parse_optional_str(value.get("audioDevice"), label=f"{label} audioDevice"),
        restart_limit=_parse_optional_int(
            value.get("restartLimit"), label=f"{label} restartLimit"
        ),
        restart_window_seconds=_parse_optional_float(
            value.get("restartWindowSeconds"), label=f"{label} restartWindowSeconds"
        ),
        freeze_timeout_seconds=_parse_optional_float(
            value.get("freezeTimeoutSeconds"), label=f"{label} freezeTimeoutSeconds"
        ),
        cpu_limit_percent=_parse_camera_limit(
            value.get("cpuLimitPercent"), label=f"{label} cpuLimitPercent"
        ),
        memory_limit_mb=_parse_camera_limit(
            value.get("memoryLimitMb"), label=f"{label} memoryLimitMb"
        ),
        poll_interval_ms=_parse_optional_int(
            value.get("pollIntervalMs"), label=f"{label} pollIntervalMs"
        ),
    )


def _parse_cameras(value: Any) -> tuple[CameraDefinition, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError("'cameras' must be a list")
    cameras: list[CameraDefinition] = []
    seen: set[str] = set()
    for index, entry in enumerate(value):
        camera = _parse_camera(entry, index=index)
        if camera.id in seen:
            raise ValueError(f"Duplicate camera id: {camera.id}")
        seen.add(camera.id)
        cameras.append(camera)
    return tuple(cameras)


def parse_registry(payload: Mapping[str, Any], *, base_dir: Path) -> Registry:
    """Build a :class:`Registry` from a decoded JSON payload."""

    if not isinstance(payload, Mapping):
        raise ValueError("Configuration file must contain a JSON object")

    server_payload = _section(payload, "server")
    server = ServerSettings(
        host=_parse_optional_str(server_payload.get("host"), label="server host") or "0.0.0.0",
        port=_parse_int(server_payload.get("port", 8080), label="server port"),
    )

    paths_payload = _section(payload, "paths")
    path_defaults = PathSettings()
    path_values: dict[str, str] = {}
    for key in path_defaults.to_dict():
        raw = _parse_optional_str(paths_payload.get(key), label=f"paths.{key}")
        path_values[key] = raw or getattr(path_defaults, key)
    paths = PathSettings(**path_values)

    capture_payload = _section(payload, "capture")
    capture = CaptureSettings(
        command=_parse_optional_str(capture_payload.get("command"), label="capture command")
        or CaptureSettings().command,
        stop_grace_seconds=_parse_float(
            capture_payload.get("stop_grace_seconds", CaptureSettings().stop_grace_seconds),
            label="capture stop_grace_seconds",
        ),
    )

    recordings_payload = _section(payload, "recordings")
    recording_defaults = RecordingSettings()
    recordings = RecordingSettings(
        segment_duration_seconds=_parse_int(
            recordings_payload.get(
                "segment_duration_seconds", recording_defaults.segment_duration_seconds
            ),
            label="segment_duration_seconds",
        ),
        safety_buffer_seconds=_parse_float(
            recordings_payload.get(
                "safety_buffer_seconds", recording_defaults.safety_buffer_seconds
            ),
            label="safety_buffer_seconds",
        ),
        ffmpeg=_parse_optional_str(recordings_payload.get("ffmpeg"), label="ffmpeg")
        or recording_defaults.ffmpeg,
        stitch_timeout_seconds=_parse_float(
            recordings_payload.get(
                "stitch_timeout_seconds", recording_defaults.stitch_timeout_seconds
            ),
            label="stitch_timeout_seconds",
        ),
    )

    return Registry(
        base_dir=base_dir,
        server=server,
        paths=paths,
        capture=capture,
        recordings=recordings,
        defaults=_parse_defaults(_section(payload, "defaults")),
        cameras=_parse_cameras(payload.get("cameras")),
    )


class ConfigManager:
    """Stores the camera registry on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        self._registry = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Registry:
        base_dir = self._path.parent
        if not self._path.exists():
            return Registry(base_dir=base_dir)
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            return parse_registry(payload, base_dir=base_dir)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self, registry: Registry) -> None:
        payload: Dict[str, Any] = registry.to_dict()
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_registry(self) -> Registry:
        with self._lock:
            return self._registry

    def reload(self) -> Registry:
        """Re-read the registry file, keeping the current snapshot on failure."""

        registry = self._load()
        with self._lock:
            self._registry = registry
        return registry

    def update(self, payload: Mapping[str, Any]) -> Registry:
        """Merge ``payload`` over the current registry and persist the result."""

        if not isinstance(payload, Mapping):
            raise ValueError("Configuration update must be a JSON object")
        with self._lock:
            merged = {**self._registry.to_dict(), **dict(payload)}
            registry = parse_registry(merged, base_dir=self._path.parent)
            self._registry = registry
            self._save(registry)
        return registry

    def to_dict(self) -> dict[str, object]:
        return self.get_registry().to_dict()


__all__ = [
    "CameraDefinition",
    "CameraThresholds",
    "CaptureSettings",
    "ConfigManager",
    "PathSettings",
    "RecordingSettings",
    "Registry",
    "ServerSettings",
    "SupervisorDefaults",
    "parse_registry",
]
