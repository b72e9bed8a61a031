"""
App Module
==========
Configuration, event contracts and the conversion service facade.

The service is imported from ``modporter.app.service`` directly; it
depends on every other subpackage.
"""

from .config import (
    DEFAULT_WORKER_CAPABILITIES,
    AllocatorConfig,
    PersistenceConfig,
    QueueConfig,
    ServiceConfig,
    WorkerPoolConfig,
    configure_logging,
)
from .events import (
    EventBus,
    EventType,
    JobAddedEvent,
    JobCancelledEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobPriorityEvent,
    JobProcessEvent,
    JobRequeuedEvent,
    WorkerAddedEvent,
    WorkerRemovedEvent,
    WorkerTimeoutEvent,
)

__all__ = [
    # Config
    "DEFAULT_WORKER_CAPABILITIES",
    "AllocatorConfig",
    "PersistenceConfig",
    "QueueConfig",
    "ServiceConfig",
    "WorkerPoolConfig",
    "configure_logging",
    # Events
    "EventBus",
    "EventType",
    "JobAddedEvent",
    "JobCancelledEvent",
    "JobCompletedEvent",
    "JobFailedEvent",
    "JobPriorityEvent",
    "JobProcessEvent",
    "JobRequeuedEvent",
    "WorkerAddedEvent",
    "WorkerRemovedEvent",
    "WorkerTimeoutEvent",
]
