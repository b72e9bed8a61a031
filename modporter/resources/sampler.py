"""
System Resource Sampler
=======================
Point-in-time CPU, memory and disk availability for the allocator.

Uses psutil. Any sampling failure falls back to a fixed conservative
estimate so the allocator never stops on a flaky reading.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class SystemResources:
    """
    Snapshot of host capacity.

    Attributes:
        total_cpu: Logical cores
        available_cpu: Cores not in use at sampling time
        total_memory_mb: Physical memory
        available_memory_mb: Memory available without swapping
        total_disk_mb: Size of the volume holding the work directory
        available_disk_mb: Free space on that volume
        sampled_at: When the sample was taken
    """
    total_cpu: float
    available_cpu: float
    total_memory_mb: float
    available_memory_mb: float
    total_disk_mb: float
    available_disk_mb: float
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "cpu": {"total": self.total_cpu, "available": self.available_cpu},
            "memory_mb": {"total": self.total_memory_mb, "available": self.available_memory_mb},
            "disk_mb": {"total": self.total_disk_mb, "available": self.available_disk_mb},
            "sampled_at": self.sampled_at.isoformat(),
        }


# Used whenever sampling fails
FALLBACK_RESOURCES = SystemResources(
    total_cpu=4,
    available_cpu=2,
    total_memory_mb=8192,
    available_memory_mb=4096,
    total_disk_mb=51200,
    available_disk_mb=40960,
)


class ResourceSampler:
    """
    Samples host resources with psutil.

    ``sample()`` blocks for ``cpu_interval`` seconds while psutil measures
    CPU load; the allocator calls it from a thread executor.
    """

    def __init__(self, disk_path: Union[Path, str] = ".", cpu_interval: float = 0.1):
        self.disk_path = Path(disk_path)
        self.cpu_interval = cpu_interval

    def sample(self) -> SystemResources:
        """
        Take a resource sample.

        Returns:
            Current resources, or FALLBACK_RESOURCES if any reading fails
        """
        try:
            cores = psutil.cpu_count(logical=True) or 1
            cpu_percent = psutil.cpu_percent(interval=self.cpu_interval)
            mem = psutil.virtual_memory()
            disk = psutil.disk_usage(str(self.disk_path))
        except Exception as e:
            logger.warning(f"Resource sampling failed, using fallback estimate: {e}")
            return fallback_resources()

        return SystemResources(
            total_cpu=float(cores),
            available_cpu=max(0.0, cores * (1 - cpu_percent / 100)),
            total_memory_mb=mem.total / MB,
            available_memory_mb=mem.available / MB,
            total_disk_mb=disk.total / MB,
            available_disk_mb=disk.free / MB,
        )


def fallback_resources() -> SystemResources:
    """FALLBACK_RESOURCES stamped with the current time."""
    return replace(FALLBACK_RESOURCES, sampled_at=datetime.now(timezone.utc))
