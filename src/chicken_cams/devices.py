"""Capture source helpers: descriptor stability, presence and discovery."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from .config import CameraDefinition

STABLE_DEVICE_PREFIXES: tuple[str, ...] = (
    "/dev/v4l/by-id/",
    "/dev/v4l/by-path/",
    "/dev/serial/",
)

NETWORK_SCHEMES: frozenset[str] = frozenset({"srt", "rtsp", "rtmp", "udp", "tcp", "http", "https"})


def is_stable_device_path(device_path: str | None) -> bool:
    """Return ``True`` when ``device_path`` is a persistent udev symlink.

    Raw nodes such as ``/dev/video0`` are numbered in enumeration order and can
    point at a different physical camera after a reboot or replug.
    """

    return isinstance(device_path, str) and device_path.startswith(STABLE_DEVICE_PREFIXES)


def _network_endpoint(source: str) -> tuple[str, int] | None:
    try:
        parts = urlsplit(source)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in NETWORK_SCHEMES or not parts.hostname or port is None:
        return None
    return parts.hostname, port


def is_stable_source(camera: CameraDefinition) -> bool:
    """Return whether the camera's descriptor always names the same endpoint."""

    if camera.device_path:
        return is_stable_device_path(camera.device_path)
    if camera.source:
        if camera.source.startswith("/dev/"):
            return is_stable_device_path(camera.source)
        return _network_endpoint(camera.source) is not None
    return False


def source_present(camera: CameraDefinition) -> bool:
    """Return whether the capture source can currently be opened.

    Local devices must exist on disk. Network descriptors are not probed; the
    worker reports its own connection failures through its exit status.
    """

    descriptor = camera.descriptor
    if not descriptor:
        return False
    if camera.device_path or descriptor.startswith("/dev/"):
        return Path(descriptor).exists()
    return True


@dataclass(frozen=True, slots=True)
class VideoDevice:
    """A capture device node discovered on the host."""

    path: str
    target: str | None
    stable: bool

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "target": self.target, "stable": self.stable}


def list_video_devices(dev_root: Path | str = Path("/dev")) -> list[VideoDevice]:
    """List persistent video symlinks first, followed by raw ``video*`` nodes."""

    root = Path(dev_root)
    devices: list[VideoDevice] = []
    for folder in (root / "v4l" / "by-id", root / "v4l" / "by-path"):
        try:
            entries = sorted(folder.iterdir())
        except OSError:
            continue
        for entry in entries:
            try:
                target = str(entry.resolve())
            except OSError:
                target = None
            # Report the canonical /dev form even when discovery ran under another root.
            relative = entry.relative_to(root)
            devices.append(
                VideoDevice(path=f"/dev/{relative.as_posix()}", target=target, stable=True)
            )
    try:
        raw_nodes = sorted(path for path in root.iterdir() if path.name.startswith("video"))
    except OSError:
        raw_nodes = []
    for node in raw_nodes:
        devices.append(VideoDevice(path=f"/dev/{node.name}", target=None, stable=False))
    return devices


__all__ = [
    "STABLE_DEVICE_PREFIXES",
    "VideoDevice",
    "is_stable_device_path",
    "is_stable_source",
    "list_video_devices",
    "source_present",
]
