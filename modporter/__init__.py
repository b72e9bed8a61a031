"""
ModPorter Orchestration Core
============================
Job queue, worker pool, resource allocator and pipeline controller for
converting Java Edition mods into Bedrock addons.
"""

__version__ = "0.1.0"

from .app.config import ServiceConfig, configure_logging
from .app.events import EventBus, EventType
from .app.service import ConversionInput, ConversionService, build_service

__all__ = [
    "ServiceConfig",
    "configure_logging",
    "EventBus",
    "EventType",
    "ConversionInput",
    "ConversionService",
    "build_service",
]
