"""FastAPI application exposing camera health, recordings and downloads."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .config import ConfigManager
from .delivery import (
    ARCHIVE_FILENAME,
    DownloadRequestError,
    Stitcher,
    cleanup_files,
    iter_archive,
    prepare_download,
    validate_download_request,
)
from .devices import list_video_devices
from .events import CameraEventLog
from .media import (
    DEFAULT_ACTIVITY_LIMIT,
    PLAYLIST_MEDIA_TYPE,
    load_activity_items,
    paginate,
    rewind_playlist_path,
)
from .segments import stitch_segments
from .supervision import CameraSupervisor
from .version import APP_VERSION

NO_STORE = {"Cache-Control": "no-store"}


class DownloadPayload(BaseModel):
    # Loosely typed so that bad values produce the documented 400 responses.
    cameras: Any = None
    startTimestamp: Any = None
    endTimestamp: Any = None
    quality: Any = "high"


def create_app(
    config_path: Path | str = Path("data/registry.json"),
    *,
    supervisor: CameraSupervisor | None = None,
    stitcher: Stitcher | None = None,
    start_supervisor: bool = True,
) -> FastAPI:
    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    registry = config_manager.get_registry()

    if supervisor is None:
        supervisor = CameraSupervisor(
            config_manager.get_registry,
            event_log=CameraEventLog(registry.events_path),
        )
    event_log = supervisor.event_log
    stitch: Stitcher = stitcher or stitch_segments

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # pragma: no cover - framework hook
        if start_supervisor:
            logger.info("Starting camera supervision for %d camera(s)", len(registry.cameras))
            supervisor.start()
        try:
            yield
        finally:
            await supervisor.aclose()
            logger.info("Camera supervision stopped")

    app = FastAPI(title="Chicken Cams", version=APP_VERSION, lifespan=lifespan)

    static_roots = (("/streams", registry.streams_root), ("/activity", registry.activity_root))
    for mount, folder in static_roots:
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Unable to prepare %s: %s", folder, exc)
            continue
        app.mount(mount, StaticFiles(directory=folder, check_dir=False), name=mount.strip("/"))

    @app.get("/api/health")
    async def get_health() -> dict[str, object]:
        payload = supervisor.snapshot.to_dict()
        payload["version"] = APP_VERSION
        return payload

    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        cameras = config_manager.get_registry().cameras
        return {
            "cameras": [
                {
                    "id": camera.id,
                    "name": camera.name,
                    "enabled": camera.enabled,
                    "source": camera.descriptor,
                }
                for camera in cameras
            ]
        }

    @app.post("/api/cameras/{camera_id}/reset")
    async def reset_camera(camera_id: str) -> dict[str, object]:
        try:
            state = supervisor.reset(camera_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown camera") from exc
        return {"id": camera_id, "status": state.status.value}

    @app.post("/api/cameras/{camera_id}/stop")
    async def stop_camera(camera_id: str) -> dict[str, object]:
        try:
            stopped = supervisor.stop_camera(camera_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown camera") from exc
        return {"id": camera_id, "stopped": stopped}

    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return config_manager.to_dict()

    @app.post("/api/config")
    async def update_config(payload: dict[str, Any] = Body(...)) -> dict[str, str]:
        try:
            await run_in_threadpool(config_manager.update, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Registry updated with keys: %s", ", ".join(sorted(payload)))
        return {"status": "ok"}

    @app.post("/api/config/reload")
    async def reload_config() -> dict[str, object]:
        try:
            reloaded = await run_in_threadpool(config_manager.reload)
        except RuntimeError as exc:
            logger.warning("Registry reload failed: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "ok", "cameras": len(reloaded.cameras)}

    @app.get("/api/devices")
    async def get_devices() -> dict[str, object]:
        devices = await run_in_threadpool(list_video_devices)
        return {"devices": [device.to_dict() for device in devices]}

    @app.get("/api/events")
    async def get_events(limit: int = 100, camera: str | None = None) -> dict[str, object]:
        if event_log is None:
            return {"entries": []}
        entries = await run_in_threadpool(event_log.tail, limit, camera_id=camera)
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    @app.get("/api/activity")
    async def get_activity(
        limit: int = DEFAULT_ACTIVITY_LIMIT, cursor: int = 0
    ) -> dict[str, object]:
        current = config_manager.get_registry()
        items = await run_in_threadpool(
            load_activity_items, current.activity_root, current.cameras
        )
        page, next_cursor = paginate(items, cursor, limit)
        return {"items": [item.to_dict() for item in page], "nextCursor": next_cursor}

    @app.get("/api/rewind/{camera_id}")
    async def get_rewind_playlist(camera_id: str) -> Response:
        streams_root = config_manager.get_registry().streams_root
        try:
            path = await run_in_threadpool(rewind_playlist_path, streams_root, camera_id)
        except FileNotFoundError:
            return JSONResponse(status_code=404, content={"error": "Playlist not found"})
        return FileResponse(path, media_type=PLAYLIST_MEDIA_TYPE, headers=NO_STORE)

    @app.post("/api/download")
    async def download(payload: DownloadPayload) -> StreamingResponse:
        current = config_manager.get_registry()
        try:
            request = validate_download_request(payload.model_dump(), current.camera_ids)
        except DownloadRequestError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
        files = await prepare_download(request, current, stitcher=stitch)
        if not files:
            raise HTTPException(
                status_code=404,
                detail="No recordings found for the selected cameras and time range.",
            )
        logger.info(
            "Streaming download of %d file(s) for %s",
            len(files),
            ", ".join(item.camera_id for item in files),
        )
        # The archive iterator removes the files itself; this covers responses
        # that are never iterated.
        cleanup = BackgroundTasks()
        cleanup.add_task(cleanup_files, files)
        return StreamingResponse(
            iter_archive(files),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{ARCHIVE_FILENAME}"'},
            background=cleanup,
        )

    return app


__all__ = ["create_app"]
