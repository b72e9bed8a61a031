"""
Conversion Stages
=================
Stage identifiers, per-job-type stage plans and the collaborator
interface the pipeline controller drives.

Collaborators do the real conversion work (reading the jar, translating
assets, generating the addon). They are synchronous and run in a thread
executor; the controller only sequences them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from modporter.pipeline.notes import NoteCollector


class PipelineStage(str, Enum):
    """Conversion stages in execution order."""
    INGESTION = "ingestion"
    ASSETS = "assets"
    CONFIGURATION = "configuration"
    LOGIC = "logic"
    PACKAGING = "packaging"
    VALIDATION = "validation"


# Job type -> stages run for it, in order
STAGE_PLANS: dict[str, tuple[PipelineStage, ...]] = {
    "conversion": tuple(PipelineStage),
    "analysis": (PipelineStage.INGESTION,),
    "validation": (PipelineStage.INGESTION, PipelineStage.VALIDATION),
    "packaging": (PipelineStage.PACKAGING, PipelineStage.VALIDATION),
}


@dataclass
class StageContext:
    """
    Everything a collaborator sees for one stage of one job.

    Attributes:
        job_id: Job being converted
        job_type: Its type
        data: Job payload
        stage: Stage being run
        outputs: Outputs of earlier stages keyed by stage name (read-only)
        notes: Sink for conversion notes
    """
    job_id: str
    job_type: str
    data: Any
    stage: PipelineStage
    outputs: Mapping[str, Any] = field(default_factory=dict)
    notes: NoteCollector = field(default_factory=NoteCollector)

    def __post_init__(self):
        self.outputs = MappingProxyType(dict(self.outputs))

    def output_of(self, stage: PipelineStage | str) -> Any:
        return self.outputs.get(PipelineStage(stage).value)

    def info(self, message: str, **kwargs) -> None:
        self.notes.info(self.stage.value, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self.notes.warning(self.stage.value, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self.notes.error(self.stage.value, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        self.notes.critical(self.stage.value, message, **kwargs)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage as recorded on the job."""
    stage: PipelineStage
    output: Any = None
    duration: float = 0.0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "output": self.output,
            "duration": round(self.duration, 4),
            "skipped": self.skipped,
        }


class StageCollaborator(ABC):
    """
    Abstract base class for stage implementations.

    ``run()`` returns the stage output, reports notes through the context
    and raises on unrecoverable failure.
    """

    @property
    @abstractmethod
    def stage(self) -> PipelineStage:
        """Stage this collaborator implements."""
        pass

    @abstractmethod
    def run(self, context: StageContext) -> Any:
        pass


class FunctionStage(StageCollaborator):
    """Adapts a plain ``fn(context) -> output`` callable."""

    def __init__(self, stage: PipelineStage | str, fn: Callable[[StageContext], Any]):
        self._stage = PipelineStage(stage)
        self._fn = fn

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    def run(self, context: StageContext) -> Any:
        return self._fn(context)


def stage_plan(job_type: str) -> Optional[tuple[PipelineStage, ...]]:
    """Stages for a job type, or None if the type is unsupported."""
    return STAGE_PLANS.get(job_type)
