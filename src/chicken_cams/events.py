"""Persistent journal of supervisor decisions for each camera."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CameraEvent:
    """A single supervision event such as a start, stop or restart."""

    timestamp: float
    camera_id: str
    event: str
    message: str
    reason: str | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "camera": self.camera_id,
            "event": self.event,
            "message": self.message,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class CameraEventLog:
    """Bounded event history, optionally mirrored to a JSON lines file."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[CameraEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        camera_id: str,
        event: str,
        message: str,
        *,
        reason: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> CameraEvent:
        """Append an event and return the stored entry."""

        cleaned = None
        if metadata:
            cleaned = {key: value for key, value in metadata.items() if value is not None} or None
        entry = CameraEvent(
            timestamp=time.time(),
            camera_id=camera_id,
            event=event,
            message=message,
            reason=reason,
            metadata=cleaned,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(self, limit: int | None = None, *, camera_id: str | None = None) -> list[CameraEvent]:
        """Return the newest entries in chronological order."""

        with self._lock:
            entries: Iterable[CameraEvent] = list(self._entries)
        if camera_id:
            entries = [entry for entry in entries if entry.camera_id == camera_id]
        entries = list(entries)
        if limit is not None:
            limit_value = max(1, int(limit))
            entries = entries[-limit_value:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines[-(self._entries.maxlen or 0):]:
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            if not isinstance(payload, dict):
                continue
            camera_id = payload.get("camera")
            event = payload.get("event")
            message = payload.get("message")
            if not all(isinstance(item, str) for item in (camera_id, event, message)):
                continue
            try:
                timestamp = float(payload.get("timestamp", 0.0))
            except (TypeError, ValueError):
                timestamp = 0.0
            metadata = payload.get("metadata")
            reason = payload.get("reason")
            self._entries.append(
                CameraEvent(
                    timestamp=timestamp,
                    camera_id=camera_id,
                    event=event,
                    message=message,
                    reason=reason if isinstance(reason, str) else None,
                    metadata=metadata if isinstance(metadata, dict) else None,
                )
            )

    def _persist(self, entry: CameraEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["CameraEvent", "CameraEventLog"]
