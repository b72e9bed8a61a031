"""
Conversion Notes
================
Structured messages that stage collaborators report while converting a
mod, and the per-job collector that summarises them by severity.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class NoteSeverity(str, Enum):
    """Severity of a conversion note."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ConversionNote:
    """One message reported by a stage."""
    stage: str
    severity: NoteSeverity
    message: str
    code: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "severity": self.severity.value,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ErrorSummary:
    """Note counts by severity; ``total_errors`` counts every note."""
    total_errors: int = 0
    critical_errors: int = 0
    errors: int = 0
    warnings: int = 0
    info: int = 0

    def to_dict(self) -> dict:
        return {
            "total_errors": self.total_errors,
            "critical_errors": self.critical_errors,
            "errors": self.errors,
            "warnings": self.warnings,
            "info": self.info,
        }


class NoteCollector:
    """
    Thread-safe note sink for one job.

    Collaborators run in executor threads, so ``add()`` takes a lock.
    """

    def __init__(self):
        self._notes: list[ConversionNote] = []
        self._lock = threading.Lock()

    def add(
        self,
        stage: str,
        severity: NoteSeverity | str,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> ConversionNote:
        note = ConversionNote(
            stage=stage,
            severity=NoteSeverity(severity),
            message=message,
            code=code,
            details=details,
        )
        with self._lock:
            self._notes.append(note)
        return note

    def info(self, stage: str, message: str, **kwargs) -> ConversionNote:
        return self.add(stage, NoteSeverity.INFO, message, **kwargs)

    def warning(self, stage: str, message: str, **kwargs) -> ConversionNote:
        return self.add(stage, NoteSeverity.WARNING, message, **kwargs)

    def error(self, stage: str, message: str, **kwargs) -> ConversionNote:
        return self.add(stage, NoteSeverity.ERROR, message, **kwargs)

    def critical(self, stage: str, message: str, **kwargs) -> ConversionNote:
        return self.add(stage, NoteSeverity.CRITICAL, message, **kwargs)

    @property
    def notes(self) -> list[ConversionNote]:
        with self._lock:
            return list(self._notes)

    def for_stage(self, stage: str) -> list[ConversionNote]:
        return [note for note in self.notes if note.stage == stage]

    def has_critical(self, stage: Optional[str] = None) -> bool:
        notes = self.for_stage(stage) if stage is not None else self.notes
        return any(note.severity == NoteSeverity.CRITICAL for note in notes)

    def summary(self) -> ErrorSummary:
        notes = self.notes
        counts = {severity: 0 for severity in NoteSeverity}
        for note in notes:
            counts[note.severity] += 1
        return ErrorSummary(
            total_errors=len(notes),
            critical_errors=counts[NoteSeverity.CRITICAL],
            errors=counts[NoteSeverity.ERROR],
            warnings=counts[NoteSeverity.WARNING],
            info=counts[NoteSeverity.INFO],
        )
