"""
Worker Records
==============
Logical execution slots owned by the WorkerPool, plus their
performance counters and read-only views.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import numpy as np

WILDCARD = "*"


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


@dataclass
class WorkerPerformance:
    """Completed/failed counters and a rolling average processing time."""
    completed: int = 0
    failed: int = 0
    history_size: int = 20
    _durations: deque = field(default_factory=deque, repr=False)

    def __post_init__(self):
        self._durations = deque(self._durations, maxlen=self.history_size)

    @property
    def jobs_processed(self) -> int:
        return self.completed + self.failed

    @property
    def average_processing_time(self) -> float:
        """Mean of the last ``history_size`` durations in seconds."""
        if not self._durations:
            return 0.0
        return float(np.mean(self._durations))

    def record(self, duration: float, success: bool) -> None:
        if success:
            self.completed += 1
        else:
            self.failed += 1
        self._durations.append(max(0.0, duration))


@dataclass
class Worker:
    """
    One logical execution slot.

    Attributes:
        id: Worker identifier (``<group>-<n>``)
        capabilities: Job types this worker accepts; ``*`` accepts any
        status: idle, busy or error
        current_job: Id of the job held while busy
        performance: Rolling counters
        last_heartbeat: Monotonic time of the last heartbeat
        assignment: Incremented on every assignment; results carrying an
            older value belong to work this worker no longer owns
    """
    id: str
    capabilities: frozenset[str]
    last_heartbeat: float
    status: WorkerStatus = WorkerStatus.IDLE
    current_job: Optional[str] = None
    performance: WorkerPerformance = field(default_factory=WorkerPerformance)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    assignment: int = 0

    def accepts(self, job_type: Optional[str]) -> bool:
        return job_type is None or WILDCARD in self.capabilities or job_type in self.capabilities

    def info(self, now: float) -> "WorkerInfo":
        return WorkerInfo(
            id=self.id,
            status=self.status,
            current_job=self.current_job,
            capabilities=self.capabilities,
            completed=self.performance.completed,
            failed=self.performance.failed,
            average_processing_time=self.performance.average_processing_time,
            heartbeat_age=max(0.0, now - self.last_heartbeat),
            started_at=self.started_at,
        )


@dataclass(frozen=True)
class WorkerInfo:
    """Read-only view of a worker handed out by the pool."""
    id: str
    status: WorkerStatus
    current_job: Optional[str]
    capabilities: frozenset[str]
    completed: int
    failed: int
    average_processing_time: float
    heartbeat_age: float
    started_at: datetime

    @property
    def jobs_processed(self) -> int:
        return self.completed + self.failed


@dataclass(frozen=True)
class PoolStats:
    """Aggregate worker statistics."""
    total_workers: int
    idle_workers: int
    busy_workers: int
    error_workers: int
    total_processed_jobs: int
    total_failed_jobs: int

    @property
    def average_jobs_per_worker(self) -> float:
        if self.total_workers == 0:
            return 0.0
        return self.total_processed_jobs / self.total_workers

    def to_dict(self) -> dict:
        return {
            "total_workers": self.total_workers,
            "idle_workers": self.idle_workers,
            "busy_workers": self.busy_workers,
            "error_workers": self.error_workers,
            "total_processed_jobs": self.total_processed_jobs,
            "total_failed_jobs": self.total_failed_jobs,
            "average_jobs_per_worker": self.average_jobs_per_worker,
        }
