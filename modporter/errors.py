"""
Error Handling Module
=====================
Custom exceptions and error records for the ModPorter orchestration core.
Provides consistent error codes for capacity, job, worker and persistence failures.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ErrorCode(Enum):
    """Error codes for the orchestration core."""
    # Capacity errors (E001-E099)
    E001 = "No idle worker available"
    E002 = "Insufficient resources"

    # Job errors (E100-E199)
    E100 = "Conversion stage failed"
    E101 = "Unsupported job type"
    E102 = "Invalid job payload"
    E103 = "Unexpected job error"

    # Worker errors (E200-E299)
    E200 = "Worker heartbeat timeout"

    # Persistence errors (E300-E399)
    E300 = "Queue snapshot write failed"
    E301 = "Queue snapshot read failed"

    # Configuration errors (E400-E499)
    E400 = "Invalid configuration"


@dataclass
class OrchestratorError(Exception):
    """Base exception for the orchestration core with error codes."""
    code: ErrorCode
    message: str
    details: Optional[str] = None

    def __str__(self) -> str:
        base = f"[{self.code.name}] {self.code.value}: {self.message}"
        if self.details:
            base += f" ({self.details})"
        return base


class CapacityError(OrchestratorError):
    """No worker or resource grant is available right now."""
    def __init__(self, message: str, details: str = None, code: ErrorCode = ErrorCode.E001):
        super().__init__(code=code, message=message, details=details)


class StageFailedError(OrchestratorError):
    """A conversion stage raised or reported a critical note."""
    def __init__(self, stage: str, message: str, details: str = None):
        super().__init__(
            code=ErrorCode.E100,
            message=f"Stage '{stage}' failed: {message}",
            details=details
        )
        self.stage = stage


class UnsupportedJobTypeError(OrchestratorError):
    """No stage plan is registered for a job type."""
    def __init__(self, job_type: str):
        super().__init__(
            code=ErrorCode.E101,
            message=f"No stage plan for job type '{job_type}'"
        )


class InvalidJobDataError(OrchestratorError):
    """A job payload field cannot be used as given."""
    def __init__(self, field_name: str, value: Any, reason: str):
        super().__init__(
            code=ErrorCode.E102,
            message=f"Invalid job field '{field_name}': {value!r}",
            details=reason
        )


class WorkerTimeoutError(OrchestratorError):
    """A busy worker stopped sending heartbeats."""
    def __init__(self, worker_id: str, job_id: str, timeout: float):
        super().__init__(
            code=ErrorCode.E200,
            message=f"Worker {worker_id} timed out while processing job {job_id}",
            details=f"No heartbeat for more than {timeout:.1f}s"
        )


class PersistenceError(OrchestratorError):
    """Snapshot read or write failed."""
    def __init__(self, message: str, file_path: Path = None, code: ErrorCode = ErrorCode.E300):
        super().__init__(
            code=code,
            message=message,
            details=f"File: {file_path}" if file_path else None
        )


class InvalidConfigError(OrchestratorError):
    """Configuration value outside its accepted range."""
    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            code=ErrorCode.E400,
            message=f"Invalid value for '{key}': {value!r}",
            details=reason
        )


# ===========================================
# Job error records
# ===========================================

@dataclass(frozen=True)
class JobError:
    """
    Serialisable error attached to a failed job.

    Exceptions are not JSON-friendly, so the queue stores this record
    instead and the snapshot carries it as a plain dict.
    """
    code: str
    message: str
    details: Optional[str] = None
    error_type: str = "Exception"
    trace: list[str] = field(default_factory=list)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobError":
        """Convert any exception into a job error record."""
        if isinstance(exc, OrchestratorError):
            code, message, details = exc.code.name, exc.message, exc.details
        else:
            code, message, details = ErrorCode.E103.name, str(exc) or type(exc).__name__, None
        trace = traceback.format_exception_only(type(exc), exc)
        return cls(
            code=code,
            message=message,
            details=details,
            error_type=type(exc).__name__,
            trace=[line.rstrip() for line in trace],
        )

    @classmethod
    def coerce(cls, error: "JobError | BaseException | str") -> "JobError":
        """Accept an exception, a message or an existing record."""
        if isinstance(error, JobError):
            return error
        if isinstance(error, BaseException):
            return cls.from_exception(error)
        return cls(code=ErrorCode.E103.name, message=str(error))

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "error_type": self.error_type,
            "trace": list(self.trace),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobError":
        return cls(
            code=data.get("code", ErrorCode.E103.name),
            message=data.get("message", ""),
            details=data.get("details"),
            error_type=data.get("error_type", "Exception"),
            trace=list(data.get("trace") or []),
        )

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" ({self.details})"
        return base
