"""
Orchestrator Event Contracts
============================
Typed events for job and worker lifecycle updates, plus the in-process
bus that delivers them between the queue, pool and pipeline controller.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event channels."""

    JOB_ADDED = "job:added"
    JOB_PROCESS = "job:process"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
    JOB_CANCELLED = "job:cancelled"
    JOB_PRIORITY = "job:priority"
    JOB_REQUEUED = "job:requeued"
    WORKER_ADDED = "worker:added"
    WORKER_REMOVED = "worker:removed"
    WORKER_TIMEOUT = "worker:timeout"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class JobAddedEvent:
    """A job entered the queue in pending state."""

    job_id: str
    job_type: str
    priority: int
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_ADDED


@dataclass(frozen=True)
class JobProcessEvent:
    """A job moved to processing and is ready for a worker."""

    job_id: str
    job_type: str
    data: Any
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_PROCESS


@dataclass(frozen=True)
class JobCompletedEvent:
    """A job finished successfully."""

    job_id: str
    result: Any
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_COMPLETED


@dataclass(frozen=True)
class JobFailedEvent:
    """A job finished with an error."""

    job_id: str
    error: Any
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_FAILED


@dataclass(frozen=True)
class JobCancelledEvent:
    """A pending or processing job was cancelled."""

    job_id: str
    was_processing: bool
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_CANCELLED


@dataclass(frozen=True)
class JobPriorityEvent:
    """A pending job's priority changed."""

    job_id: str
    old_priority: int
    priority: int
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_PRIORITY


@dataclass(frozen=True)
class JobRequeuedEvent:
    """A processing job was pushed back to pending."""

    job_id: str
    reason: str = ""
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.JOB_REQUEUED


@dataclass(frozen=True)
class WorkerAddedEvent:
    """A worker joined the pool."""

    worker_id: str
    capabilities: frozenset[str]
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.WORKER_ADDED


@dataclass(frozen=True)
class WorkerRemovedEvent:
    """An idle worker left the pool."""

    worker_id: str
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.WORKER_REMOVED


@dataclass(frozen=True)
class WorkerTimeoutEvent:
    """A busy worker missed its heartbeat deadline."""

    worker_id: str
    job_id: Optional[str]
    requeued: bool
    timestamp: str = field(default_factory=_now_iso)
    event_type: EventType = EventType.WORKER_TIMEOUT


OrchestratorEvent = Union[
    JobAddedEvent,
    JobProcessEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobCancelledEvent,
    JobPriorityEvent,
    JobRequeuedEvent,
    WorkerAddedEvent,
    WorkerRemovedEvent,
    WorkerTimeoutEvent,
]

EventHandler = Callable[[OrchestratorEvent], None]


class EventBus:
    """
    Synchronous in-process publish/subscribe bus.

    Handlers run in subscription order on the publisher's call stack.
    A handler that raises is logged and skipped; the remaining handlers
    still receive the event.

    Example:
        bus = EventBus()
        bus.subscribe(EventType.JOB_COMPLETED, lambda e: print(e.job_id))
        bus.publish(JobCompletedEvent(job_id="job_1", result={}))
    """

    def __init__(self):
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for one event type.

        Returns:
            A callable that removes the subscription
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Remove a handler. Returns False if it was not subscribed."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def publish(self, event: OrchestratorEvent) -> None:
        """Deliver an event to every handler subscribed to its type."""
        for handler in list(self._handlers.get(event.event_type, ())):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {event.event_type.value}")

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        """Drop all subscriptions."""
        self._handlers.clear()
