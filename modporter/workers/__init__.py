"""
Workers Module
==============
Logical workers and the pool that assigns jobs to them.
"""

from .worker import WILDCARD, PoolStats, Worker, WorkerInfo, WorkerPerformance, WorkerStatus
from .pool import WorkerContext, WorkerPool

__all__ = [
    "WILDCARD",
    "PoolStats",
    "Worker",
    "WorkerInfo",
    "WorkerPerformance",
    "WorkerStatus",
    "WorkerContext",
    "WorkerPool",
]
