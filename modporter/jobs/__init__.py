"""
Jobs Module
===========
Job records, the priority queue and its snapshot store.
"""

from .models import Job, JobStatus, QueueStats, TERMINAL_STATUSES
from .persistence import QueueSnapshotStore
from .queue import JobQueue

__all__ = [
    "Job",
    "JobStatus",
    "QueueStats",
    "TERMINAL_STATUSES",
    "QueueSnapshotStore",
    "JobQueue",
]
