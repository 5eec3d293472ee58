"""Per-camera worker supervision."""
from __future__ import annotations

from .resources import ResourceSample, ResourceSampler
from .state import CameraHealth, CameraStatus, HealthSnapshot, StopReason, SupervisionState
from .supervisor import CameraSupervisor
from .worker import ProgressLineBuffer, ProgressUpdate, WorkerProcess, parse_progress_line

__all__ = [
    "CameraHealth",
    "CameraStatus",
    "CameraSupervisor",
    "HealthSnapshot",
    "ProgressLineBuffer",
    "ProgressUpdate",
    "ResourceSample",
    "ResourceSampler",
    "StopReason",
    "SupervisionState",
    "WorkerProcess",
    "parse_progress_line",
]
