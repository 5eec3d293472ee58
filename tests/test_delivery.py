from __future__ import annotations

import asyncio
import io
import os
import zipfile
from pathlib import Path

import pytest

from chicken_cams.config import parse_registry
from chicken_cams.delivery import (
    DownloadRequest,
    DownloadRequestError,
    StitchedFile,
    iter_archive,
    prepare_download,
    validate_download_request,
)
from chicken_cams.segments import StitchError

KNOWN = ("coop", "run", "nest")


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"startTimestamp": 0, "endTimestamp": 1000}, "Select at least one camera."),
        ({"cameras": [], "startTimestamp": 0, "endTimestamp": 1000}, "Select at least one camera."),
        ({"cameras": "coop", "startTimestamp": 0, "endTimestamp": 1000}, "Select at least one camera."),
        ({"cameras": ["coop"], "endTimestamp": 1000}, "Invalid time range."),
        ({"cameras": ["coop"], "startTimestamp": 1000, "endTimestamp": 1000}, "Invalid time range."),
        ({"cameras": ["coop"], "startTimestamp": "soon", "endTimestamp": 1000}, "Invalid time range."),
        ({"cameras": ["coop"], "startTimestamp": True, "endTimestamp": 1000}, "Invalid time range."),
        (
            {"cameras": ["coop"], "startTimestamp": 0, "endTimestamp": 1000, "quality": "ultra"},
            "Unknown quality preset: ultra",
        ),
        ({"cameras": ["barn", 7], "startTimestamp": 0, "endTimestamp": 1000}, "No recognised cameras selected."),
    ],
)
def test_validate_rejects_bad_requests(payload: dict, message: str) -> None:
    with pytest.raises(DownloadRequestError) as excinfo:
        validate_download_request(payload, KNOWN)
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == message


def test_validate_drops_unknown_and_duplicate_cameras() -> None:
    request = validate_download_request(
        {
            "cameras": ["run", "barn", "coop", "run"],
            "startTimestamp": "1700000000999",
            "endTimestamp": 1700000060500.0,
            "quality": "low",
        },
        KNOWN,
    )

    assert request.cameras == ("run", "coop")
    assert request.start_ms == 1700000000999
    assert request.start_seconds == 1700000000
    assert request.end_seconds == 1700000060
    assert request.quality == "low"
    assert request.arcname("run") == "run-1700000000999-1700000060500.mp4"


def test_validate_defaults_to_high_quality() -> None:
    request = validate_download_request(
        {"cameras": ["coop"], "startTimestamp": 0, "endTimestamp": 1000, "quality": None}, KNOWN
    )
    assert request.quality == "high"


def _registry(tmp_path: Path):
    return parse_registry(
        {
            "recordings": {"segment_duration_seconds": 60, "safety_buffer_seconds": 5},
            "cameras": [{"id": camera_id, "source": "srt://h:1"} for camera_id in KNOWN],
        },
        base_dir=tmp_path,
    )


def _segment(root: Path, camera_id: str, timestamp: int) -> None:
    folder = root / camera_id
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / f"{timestamp}.mp4"
    path.write_bytes(b"segment")
    os.utime(path, (500.0, 500.0))


class _FakeStitcher:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.calls: list[dict] = []
        self.failing = failing or set()

    async def __call__(self, camera_id, segments, **kwargs) -> Path:
        self.calls.append({"camera_id": camera_id, "segments": list(segments), **kwargs})
        if camera_id in self.failing:
            raise StitchError("concat failed")
        tmp_root = Path(kwargs["tmp_root"])
        tmp_root.mkdir(parents=True, exist_ok=True)
        output = tmp_root / f"{camera_id}.mp4"
        output.write_bytes(f"{camera_id}:{len(segments)}".encode())
        return output


def test_prepare_download_stitches_each_camera(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _segment(registry.recordings_root, "coop", 100)
    _segment(registry.recordings_root, "coop", 160)
    _segment(registry.recordings_root, "coop", 220)
    _segment(registry.recordings_root, "run", 900)
    _segment(registry.recordings_root, "nest", 150)
    stitcher = _FakeStitcher(failing={"nest"})
    request = DownloadRequest(cameras=("coop", "run", "nest"), start_ms=150_000, end_ms=200_999)

    files = asyncio.run(prepare_download(request, registry, stitcher=stitcher, now=1000.0))

    assert [item.camera_id for item in files] == ["coop"]
    assert files[0].arcname == "coop-150000-200999.mp4"
    assert files[0].path.read_bytes() == b"coop:2"
    coop_call, nest_call = stitcher.calls
    assert [segment.timestamp for segment in coop_call["segments"]] == [100, 160]
    assert coop_call["quality"] == "high"
    assert coop_call["tmp_root"] == registry.tmp_root
    assert nest_call["camera_id"] == "nest"


def test_prepare_download_removes_files_on_failure(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _segment(registry.recordings_root, "coop", 100)
    _segment(registry.recordings_root, "run", 100)
    produced: list[Path] = []

    async def stitcher(camera_id, segments, **kwargs) -> Path:
        if camera_id == "run":
            raise RuntimeError("disk full")
        output = Path(kwargs["tmp_root"]) / "coop.mp4"
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"coop")
        produced.append(output)
        return output

    request = DownloadRequest(cameras=("coop", "run"), start_ms=0, end_ms=300_000)
    with pytest.raises(RuntimeError, match="disk full"):
        asyncio.run(prepare_download(request, registry, stitcher=stitcher, now=1000.0))

    assert produced and not produced[0].exists()


def _stitched(tmp_path: Path, camera_id: str, payload: bytes) -> StitchedFile:
    path = tmp_path / f"{camera_id}.mp4"
    path.write_bytes(payload)
    return StitchedFile(camera_id, path, f"{camera_id}-1-2.mp4")


def test_iter_archive_streams_valid_zip_and_cleans_up(tmp_path: Path) -> None:
    large = os.urandom(200 * 1024)
    files = [_stitched(tmp_path, "coop", large), _stitched(tmp_path, "run", b"small clip")]

    chunks = list(iter_archive(files, chunk_size=16 * 1024))

    assert len(chunks) > 2
    with zipfile.ZipFile(io.BytesIO(b"".join(chunks))) as archive:
        assert archive.namelist() == ["coop-1-2.mp4", "run-1-2.mp4"]
        assert archive.read("coop-1-2.mp4") == large
        assert archive.read("run-1-2.mp4") == b"small clip"
        assert all(info.compress_type == zipfile.ZIP_STORED for info in archive.infolist())
    assert not any(item.path.exists() for item in files)


def test_iter_archive_cleans_up_when_closed_early(tmp_path: Path) -> None:
    files = [_stitched(tmp_path, "coop", os.urandom(64 * 1024)), _stitched(tmp_path, "run", b"x")]

    stream = iter_archive(files, chunk_size=4096)
    assert next(stream)
    stream.close()

    assert not any(item.path.exists() for item in files)
