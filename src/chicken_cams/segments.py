"""Locate recorded segments for a time range and stitch them into one file."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

AUDIO_BITRATE = "128k"
SEGMENT_EXTENSION = ".mp4"

# ffmpeg output arguments per download quality.
QUALITY_PRESETS: Mapping[str, tuple[str, ...]] = {
    "high": ("-c", "copy"),
    "med": (
        "-c:v", "libx264", "-preset", "veryfast", "-crf", "28",
        "-c:a", "aac", "-b:a", AUDIO_BITRATE,
    ),
    "low": (
        "-vf", "scale=-2:480",
        "-c:v", "libx264", "-preset", "veryfast", "-crf", "32",
        "-c:a", "aac", "-b:a", AUDIO_BITRATE,
    ),
}


class StitchError(RuntimeError):
    """Raised when the concatenation step fails for a camera."""


@dataclass(frozen=True, slots=True)
class SegmentFile:
    """A recorded chunk whose filename encodes its start time."""

    path: Path
    timestamp: int
    size_bytes: int
    modified_at: float

    def covers(self, start: float, end: float, duration: float) -> bool:
        # A segment starting exactly at ``end`` is still included.
        return self.timestamp + duration > start and self.timestamp <= end


def parse_segment_timestamp(name: str, extension: str = SEGMENT_EXTENSION) -> int | None:
    """Return the start timestamp of a ``<timestamp><extension>`` name or ``None``.

    Sidecar files (``100.jpg``) and partial writes (``100.mp4.part``) do not
    qualify.
    """

    if not name.lower().endswith(extension.lower()):
        return None
    stem = name[: len(name) - len(extension)]
    if not (stem.isascii() and stem.isdigit()):
        return None
    return int(stem)


def list_segment_files(
    directory: Path | str, *, extension: str = SEGMENT_EXTENSION
) -> list[SegmentFile]:
    """List every segment in ``directory`` ordered by timestamp."""

    folder = Path(directory)
    try:
        entries = list(folder.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    segments: list[SegmentFile] = []
    for entry in entries:
        timestamp = parse_segment_timestamp(entry.name, extension)
        if timestamp is None:
            continue
        try:
            stat = entry.stat()
        except OSError:
            # Deleted by retention between listing and stat.
            continue
        if not entry.is_file():
            continue
        segments.append(
            SegmentFile(
                path=entry,
                timestamp=timestamp,
                size_bytes=stat.st_size,
                modified_at=stat.st_mtime,
            )
        )
    segments.sort(key=lambda segment: segment.timestamp)
    return segments


def find_segments_for_range(
    root: Path | str,
    camera_id: str,
    start: float,
    end: float,
    *,
    segment_duration: float,
    safety_buffer: float,
    now: float | None = None,
) -> list[SegmentFile]:
    """Return the complete segments of ``camera_id`` overlapping ``[start, end)``.

    Empty files and files modified less than ``safety_buffer`` seconds ago are
    skipped since the recorder may still be writing them. The result is sorted
    numerically by timestamp, which is the playback order.
    """

    current = time.time() if now is None else now
    selected = [
        segment
        for segment in list_segment_files(Path(root) / camera_id)
        if segment.size_bytes > 0
        and current - segment.modified_at >= safety_buffer
        and segment.covers(start, end, segment_duration)
    ]
    logger.debug(
        "Found %d segment(s) for %s in [%s, %s)", len(selected), camera_id, start, end
    )
    return selected


def quality_arguments(quality: str) -> list[str]:
    try:
        return list(QUALITY_PRESETS[quality])
    except KeyError:
        raise ValueError(f"Unknown quality preset: {quality!r}") from None


def _quote(path: Path) -> str:
    return "'" + str(path).replace("'", "'\\''") + "'"


def write_concat_manifest(path: Path, segments: Iterable[SegmentFile | Path]) -> Path:
    """Write an ffmpeg concat demuxer list for ``segments`` to ``path``."""

    lines = []
    for segment in segments:
        segment_path = segment.path if isinstance(segment, SegmentFile) else Path(segment)
        lines.append(f"file {_quote(segment_path.resolve())}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def build_stitch_command(
    ffmpeg: str, manifest: Path, output: Path, quality: str
) -> list[str]:
    return [
        ffmpeg,
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(manifest),
        *quality_arguments(quality),
        "-movflags", "+faststart",
        str(output),
    ]


async def stitch_segments(
    camera_id: str,
    segments: Sequence[SegmentFile],
    *,
    tmp_root: Path | str,
    quality: str = "high",
    ffmpeg: str = "ffmpeg",
    timeout: float = 600.0,
) -> Path:
    """Concatenate ``segments`` into a temporary MP4 and return its path.

    The manifest is removed whatever the outcome; the output file is removed
    when the step fails. Raises :class:`StitchError` on failure.
    """

    if not segments:
        raise StitchError(f"No segments to stitch for {camera_id}")
    quality_arguments(quality)  # unknown presets fail before any file is written

    folder = Path(tmp_root)
    folder.mkdir(parents=True, exist_ok=True)
    token = f"{camera_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    manifest = folder / f"{token}.txt"
    output = folder / f"{token}.mp4"
    command = build_stitch_command(ffmpeg, manifest, output, quality)

    succeeded = False
    try:
        await asyncio.to_thread(write_concat_manifest, manifest, segments)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise StitchError(f"Unable to launch {ffmpeg}: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise StitchError(
                f"Stitching {camera_id} timed out after {timeout:.0f}s"
            ) from exc
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
            message = detail[-1] if detail else "no output"
            raise StitchError(
                f"{ffmpeg} exited with code {process.returncode} for {camera_id}: {message}"
            )
        if not output.exists():
            raise StitchError(f"{ffmpeg} produced no output for {camera_id}")
        succeeded = True
        logger.info(
            "Stitched %d segment(s) for %s at %s quality", len(segments), camera_id, quality
        )
        return output
    finally:
        manifest.unlink(missing_ok=True)
        if not succeeded:
            output.unlink(missing_ok=True)


__all__ = [
    "QUALITY_PRESETS",
    "SEGMENT_EXTENSION",
    "SegmentFile",
    "StitchError",
    "build_stitch_command",
    "find_segments_for_range",
    "list_segment_files",
    "parse_segment_timestamp",
    "quality_arguments",
    "stitch_segments",
    "write_concat_manifest",
]
