"""
Job Data Models
===============
Job records, lifecycle states and queue statistics.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from modporter.errors import JobError


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def generate_job_id() -> str:
    """Unique id of the form ``job_<millis>_<9 hex chars>``."""
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """
    One queued unit of work.

    Only the JobQueue mutates these records. Everything handed out by
    the queue is a copy made with ``snapshot()``.

    Attributes:
        id: Stable unique identifier
        type: Tag matched against worker capabilities
        data: Opaque payload for the job's collaborators
        priority: Higher values are dispatched first
        created_at: Creation time, FIFO tie-breaker within a priority
        sequence: Insertion counter, breaks ties on equal timestamps
        status: Current lifecycle state
        attempts: Number of times the job was dispatched
        result: Set when completed
        error: Set when failed
    """
    id: str
    type: str
    data: Any
    priority: int
    created_at: datetime
    sequence: int = 0
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: Optional[JobError] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def sort_key(self) -> tuple:
        """Descending priority, then ascending creation order."""
        return (-self.priority, self.created_at, self.sequence)

    def snapshot(self) -> "Job":
        """Shallow copy safe to hand to callers."""
        return replace(self)

    def to_dict(self) -> dict:
        """Serialise to the snapshot record layout."""
        record = {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.result is not None:
            record["result"] = self.result
        if self.error is not None:
            record["error"] = self.error.to_dict()
        if self.started_at is not None:
            record["started_at"] = self.started_at.isoformat()
        if self.finished_at is not None:
            record["finished_at"] = self.finished_at.isoformat()
        return record

    @classmethod
    def from_dict(cls, record: dict) -> "Job":
        """Rebuild a job from a snapshot record."""
        error = record.get("error")
        if isinstance(error, str):
            error = JobError.coerce(error)
        elif isinstance(error, dict):
            error = JobError.from_dict(error)

        return cls(
            id=record["id"],
            type=record["type"],
            data=record.get("data"),
            priority=int(record.get("priority", 1)),
            created_at=_parse_datetime(record.get("created_at")),
            sequence=int(record.get("sequence", 0)),
            status=JobStatus(record.get("status", JobStatus.PENDING.value)),
            attempts=int(record.get("attempts", 0)),
            result=record.get("result"),
            error=error,
            started_at=_parse_datetime(record.get("started_at"), default=None),
            finished_at=_parse_datetime(record.get("finished_at"), default=None),
        )


_MISSING = object()


def _parse_datetime(value: Any, default: Any = _MISSING) -> Optional[datetime]:
    if value is None:
        return utc_now() if default is _MISSING else default
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class QueueStats:
    """Job counts per status."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed + self.cancelled

    def to_dict(self) -> dict:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }
