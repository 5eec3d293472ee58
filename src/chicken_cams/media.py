"""Lookups for live rewind playlists and recent activity clips."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .config import CameraDefinition

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
DEFAULT_ACTIVITY_LIMIT = 5
MAX_ACTIVITY_LIMIT = 100


def rewind_playlist_path(streams_root: Path | str, camera_id: str) -> Path:
    """Return the DVR playlist of ``camera_id``.

    Raises :class:`FileNotFoundError` until the live server has written one.
    """

    if not camera_id or camera_id != Path(camera_id).name or camera_id in {".", ".."}:
        raise FileNotFoundError(camera_id)
    path = Path(streams_root) / camera_id / "dvr" / "playlist.m3u8"
    if not path.is_file():
        raise FileNotFoundError(str(path))
    return path


@dataclass(frozen=True, slots=True)
class ActivityItem:
    camera_id: str
    camera_name: str
    filename: str
    timestamp: float

    @property
    def url(self) -> str:
        return f"/activity/{self.camera_id}/{self.filename}"

    def to_dict(self) -> dict[str, object]:
        return {
            "cameraId": self.camera_id,
            "cameraName": self.camera_name,
            "url": self.url,
            # Milliseconds, as browsers expect.
            "timestamp": int(self.timestamp * 1000),
        }


def load_activity_items(
    activity_root: Path | str, cameras: Iterable[CameraDefinition]
) -> list[ActivityItem]:
    """List activity clips of every camera, newest first."""

    root = Path(activity_root)
    items: list[ActivityItem] = []
    for camera in cameras:
        folder = root / camera.id
        try:
            entries = list(folder.iterdir())
        except OSError:
            continue
        for entry in entries:
            if entry.suffix.lower() != ".mp4":
                continue
            try:
                modified = entry.stat().st_mtime
            except OSError:
                continue
            items.append(
                ActivityItem(
                    camera_id=camera.id,
                    camera_name=camera.name,
                    filename=entry.name,
                    timestamp=modified,
                )
            )
    items.sort(key=lambda item: item.timestamp, reverse=True)
    return items


def paginate(
    items: Sequence[ActivityItem], cursor: int = 0, limit: int = DEFAULT_ACTIVITY_LIMIT
) -> tuple[list[ActivityItem], int | None]:
    """Return one page of ``items`` and the cursor of the next page, if any."""

    start = max(0, int(cursor))
    size = min(MAX_ACTIVITY_LIMIT, max(1, int(limit)))
    page = list(items[start : start + size])
    next_cursor = start + size if start + size < len(items) else None
    return page, next_cursor


__all__ = [
    "ActivityItem",
    "DEFAULT_ACTIVITY_LIMIT",
    "PLAYLIST_MEDIA_TYPE",
    "load_activity_items",
    "paginate",
    "rewind_playlist_path",
]
