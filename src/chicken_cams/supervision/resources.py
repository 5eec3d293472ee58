"""CPU and memory sampling for worker processes using psutil."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceSample:
    """CPU percentage and resident memory of a process, ``None`` when unknown."""

    cpu_percent: float | None = None
    memory_mb: float | None = None

    @property
    def known(self) -> bool:
        return self.cpu_percent is not None or self.memory_mb is not None


UNKNOWN_SAMPLE = ResourceSample()


class ResourceSampler:
    """Sample worker processes with a bounded wait per query.

    ``psutil.Process.cpu_percent`` measures against the previous call on the same
    object, so one ``Process`` is cached per PID. The first sample of a new PID
    therefore reports ``0.0`` CPU.
    """

    def __init__(self, *, timeout: float = 1.5) -> None:
        self._timeout = max(0.1, float(timeout))
        self._processes: Dict[int, psutil.Process] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    async def sample(self, pid: int | None) -> ResourceSample:
        if pid is None:
            return UNKNOWN_SAMPLE
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._sample_sync, pid), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Resource sample for PID %s timed out", pid)
            return UNKNOWN_SAMPLE

    def forget(self, pid: int | None) -> None:
        if pid is not None:
            self._processes.pop(pid, None)

    def _sample_sync(self, pid: int) -> ResourceSample:
        try:
            process = self._processes.get(pid)
            if process is None:
                process = psutil.Process(pid)
                self._processes[pid] = process
            with process.oneshot():
                cpu = process.cpu_percent(interval=None)
                rss = process.memory_info().rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._processes.pop(pid, None)
            return UNKNOWN_SAMPLE
        except psutil.AccessDenied:
            logger.debug("Access denied sampling PID %s", pid)
            return UNKNOWN_SAMPLE
        return ResourceSample(cpu_percent=round(cpu, 1), memory_mb=round(rss / (1024 * 1024), 1))


__all__ = ["ResourceSample", "ResourceSampler", "UNKNOWN_SAMPLE"]
