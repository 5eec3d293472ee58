"""Validate download requests, stitch per camera and stream a ZIP archive."""
from __future__ import annotations

import asyncio
import logging
import math
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping, Sequence

from .config import Registry
from .segments import (
    QUALITY_PRESETS,
    SegmentFile,
    StitchError,
    find_segments_for_range,
    stitch_segments,
)

logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = "chickencams-download.zip"
DEFAULT_CHUNK_SIZE = 64 * 1024

Stitcher = Callable[..., Awaitable[Path]]


class DownloadRequestError(ValueError):
    """A download request rejected before any work was started."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True, slots=True)
class DownloadRequest:
    """A validated request for the recordings of some cameras over a range."""

    cameras: tuple[str, ...]
    start_ms: int
    end_ms: int
    quality: str = "high"

    @property
    def start_seconds(self) -> int:
        return self.start_ms // 1000

    @property
    def end_seconds(self) -> int:
        return self.end_ms // 1000

    def arcname(self, camera_id: str) -> str:
        return f"{camera_id}-{self.start_ms}-{self.end_ms}.mp4"


@dataclass(frozen=True, slots=True)
class StitchedFile:
    camera_id: str
    path: Path
    arcname: str


def _parse_timestamp(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def validate_download_request(
    payload: Mapping[str, Any], known_ids: Iterable[str]
) -> DownloadRequest:
    """Turn a raw request body into a :class:`DownloadRequest`.

    Unknown camera ids are dropped; :class:`DownloadRequestError` is raised
    when nothing usable remains or the range is invalid.
    """

    cameras = payload.get("cameras")
    if isinstance(cameras, (str, bytes)) or not isinstance(cameras, Sequence) or not cameras:
        raise DownloadRequestError(400, "Select at least one camera.")

    start = _parse_timestamp(payload.get("startTimestamp"))
    end = _parse_timestamp(payload.get("endTimestamp"))
    if start is None or end is None or end <= start:
        raise DownloadRequestError(400, "Invalid time range.")

    quality = payload.get("quality") or "high"
    if not isinstance(quality, str) or quality not in QUALITY_PRESETS:
        raise DownloadRequestError(400, f"Unknown quality preset: {quality}")

    known = set(known_ids)
    selected: list[str] = []
    for camera_id in cameras:
        if isinstance(camera_id, str) and camera_id in known and camera_id not in selected:
            selected.append(camera_id)
        else:
            logger.debug("Ignoring unrecognised camera %r in download request", camera_id)
    if not selected:
        raise DownloadRequestError(400, "No recognised cameras selected.")

    return DownloadRequest(
        cameras=tuple(selected), start_ms=start, end_ms=end, quality=quality
    )


async def prepare_download(
    request: DownloadRequest,
    registry: Registry,
    *,
    stitcher: Stitcher = stitch_segments,
    now: float | None = None,
) -> list[StitchedFile]:
    """Stitch each requested camera, skipping cameras that yield nothing."""

    files: list[StitchedFile] = []
    settings = registry.recordings
    try:
        for camera_id in request.cameras:
            segments: list[SegmentFile] = await asyncio.to_thread(
                find_segments_for_range,
                registry.recordings_root,
                camera_id,
                request.start_seconds,
                request.end_seconds,
                segment_duration=settings.segment_duration_seconds,
                safety_buffer=settings.safety_buffer_seconds,
                now=now,
            )
            if not segments:
                logger.info("No recorded segments for %s in requested range", camera_id)
                continue
            try:
                path = await stitcher(
                    camera_id,
                    segments,
                    tmp_root=registry.tmp_root,
                    quality=request.quality,
                    ffmpeg=settings.ffmpeg,
                    timeout=settings.stitch_timeout_seconds,
                )
            except StitchError as exc:
                logger.warning("Skipping %s in download: %s", camera_id, exc)
                continue
            files.append(StitchedFile(camera_id, Path(path), request.arcname(camera_id)))
    except BaseException:
        cleanup_files(files)
        raise
    return files


class _ArchiveSink:
    """Write-only, unseekable buffer that :mod:`zipfile` streams into."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._position = 0

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def iter_archive(
    files: Sequence[StitchedFile], *, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[bytes]:
    """Yield a ZIP of ``files`` piece by piece, removing them afterwards.

    The temporary files are removed when the iterator finishes, fails, or is
    closed early because the client went away.
    """

    sink = _ArchiveSink()
    try:
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_STORED) as archive:
            for item in files:
                info = zipfile.ZipInfo.from_file(item.path, arcname=item.arcname)
                info.compress_type = zipfile.ZIP_STORED
                with item.path.open("rb") as source, archive.open(info, "w") as target:
                    while True:
                        chunk = source.read(chunk_size)
                        if not chunk:
                            break
                        target.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
                data = sink.drain()
                if data:
                    yield data
        data = sink.drain()
        if data:
            yield data
    finally:
        cleanup_files(files)


def cleanup_files(files: Iterable[StitchedFile]) -> None:
    for item in files:
        try:
            item.path.unlink(missing_ok=True)
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to remove temporary file %s: %s", item.path, exc)


__all__ = [
    "ARCHIVE_FILENAME",
    "DownloadRequest",
    "DownloadRequestError",
    "StitchedFile",
    "cleanup_files",
    "iter_archive",
    "prepare_download",
    "validate_download_request",
]
