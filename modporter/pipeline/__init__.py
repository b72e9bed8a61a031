"""
Pipeline Module
===============
Conversion stage plans, note collection and the controller that runs
dispatched jobs through their stages.
"""

from .notes import ConversionNote, ErrorSummary, NoteCollector, NoteSeverity
from .stages import (
    STAGE_PLANS,
    FunctionStage,
    PipelineStage,
    StageCollaborator,
    StageContext,
    StageResult,
    stage_plan,
)
from .controller import JobStatusView, PipelineController

__all__ = [
    "ConversionNote",
    "ErrorSummary",
    "NoteCollector",
    "NoteSeverity",
    "STAGE_PLANS",
    "FunctionStage",
    "PipelineStage",
    "StageCollaborator",
    "StageContext",
    "StageResult",
    "stage_plan",
    "JobStatusView",
    "PipelineController",
]
