"""
Orchestrator Configuration
==========================
Configuration for the job queue, worker pool, resource allocator and
the service that wires them together.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from modporter.errors import InvalidConfigError

# Default worker roster: group name -> job types its workers accept
DEFAULT_WORKER_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "conversion-worker": ("conversion",),
    "validation-worker": ("validation",),
    "analysis-worker": ("analysis",),
    "packaging-worker": ("packaging",),
}


@dataclass
class PersistenceConfig:
    """
    Queue snapshot settings.

    Attributes:
        enabled: Write snapshots after mutations and load one at startup
        file_path: Snapshot file location
        debounce: Seconds to coalesce bursts of mutations into one write
    """
    enabled: bool = False
    file_path: Optional[Path] = None
    debounce: float = 1.0

    def __post_init__(self):
        if self.file_path is not None:
            self.file_path = Path(self.file_path)
        if self.enabled and self.file_path is None:
            raise InvalidConfigError("persistence.file_path", None, "required when persistence is enabled")
        if self.debounce < 0:
            raise InvalidConfigError("persistence.debounce", self.debounce, "must be >= 0")


@dataclass
class QueueConfig:
    """Job queue settings."""
    max_concurrent: int = 5
    default_priority: int = 1
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise InvalidConfigError("queue.max_concurrent", self.max_concurrent, "must be >= 1")
        if isinstance(self.persistence, dict):
            self.persistence = PersistenceConfig(**self.persistence)


@dataclass
class WorkerPoolConfig:
    """
    Worker pool settings.

    Attributes:
        size: Initial number of workers
        capabilities: Capability groups used to build the initial roster
        heartbeat_interval: Seconds between watchdog sweeps
        worker_timeout: Heartbeat age after which a busy worker is stuck
        cooldown: Seconds a timed-out worker stays in error before reset
        max_timeout_retries: Times a timed-out job is requeued before failing
    """
    size: int = 4
    capabilities: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_WORKER_CAPABILITIES)
    )
    heartbeat_interval: float = 30.0
    worker_timeout: float = 300.0
    cooldown: float = 5.0
    max_timeout_retries: int = 1

    def __post_init__(self):
        if self.size < 0:
            raise InvalidConfigError("pool.size", self.size, "must be >= 0")
        if not self.capabilities:
            raise InvalidConfigError("pool.capabilities", self.capabilities, "at least one group required")
        self.capabilities = {name: tuple(types) for name, types in self.capabilities.items()}
        for key in ("heartbeat_interval", "worker_timeout"):
            if getattr(self, key) <= 0:
                raise InvalidConfigError(f"pool.{key}", getattr(self, key), "must be positive")
        if self.cooldown < 0:
            raise InvalidConfigError("pool.cooldown", self.cooldown, "must be >= 0")
        if self.max_timeout_retries < 0:
            raise InvalidConfigError("pool.max_timeout_retries", self.max_timeout_retries, "must be >= 0")


@dataclass
class AllocatorConfig:
    """Resource allocator settings."""
    check_interval: float = 30.0
    min_workers: int = 1
    max_workers: int = 10
    strategy: str = "adaptive"
    per_worker_memory_mb: float = 512.0
    disk_path: Path = field(default_factory=lambda: Path("."))

    def __post_init__(self):
        self.disk_path = Path(self.disk_path)
        if self.check_interval <= 0:
            raise InvalidConfigError("allocator.check_interval", self.check_interval, "must be positive")
        if self.min_workers < 0 or self.max_workers < self.min_workers:
            raise InvalidConfigError(
                "allocator.min_workers/max_workers",
                (self.min_workers, self.max_workers),
                "require 0 <= min_workers <= max_workers",
            )
        if self.per_worker_memory_mb <= 0:
            raise InvalidConfigError("allocator.per_worker_memory_mb", self.per_worker_memory_mb, "must be positive")


# camelCase key -> (snake_case field, scale). camelCase configuration
# files express intervals in milliseconds.
_QUEUE_ALIASES = {
    "maxConcurrent": ("max_concurrent", None),
    "defaultPriority": ("default_priority", None),
}
_PERSISTENCE_ALIASES = {
    "filePath": ("file_path", None),
    "debounceMs": ("debounce", 0.001),
}
_POOL_ALIASES = {
    "maxWorkers": ("size", None),
    "workerCapabilities": ("capabilities", None),
    "heartbeatInterval": ("heartbeat_interval", 0.001),
    "workerTimeout": ("worker_timeout", 0.001),
    "cooldownMs": ("cooldown", 0.001),
    "maxTimeoutRetries": ("max_timeout_retries", None),
}
_ALLOCATOR_ALIASES = {
    "checkInterval": ("check_interval", 0.001),
    "minWorkers": ("min_workers", None),
    "maxWorkers": ("max_workers", None),
    "perWorkerMemory": ("per_worker_memory_mb", None),
    "diskPath": ("disk_path", None),
}


def _normalize(section: Optional[dict], aliases: dict) -> dict:
    processed: dict[str, Any] = {}
    for key, value in (section or {}).items():
        if key in aliases:
            name, scale = aliases[key]
            processed[name] = value * scale if scale is not None and value is not None else value
        else:
            processed[key] = value
    return processed


@dataclass
class ServiceConfig:
    """
    Full orchestrator configuration.

    Attributes:
        queue: Job queue settings
        pool: Worker pool settings
        allocator: Resource allocator settings
        enable_allocator: Run the periodic allocator loop
        log_level: Level passed to configure_logging() by build_service()
    """
    queue: QueueConfig = field(default_factory=QueueConfig)
    pool: WorkerPoolConfig = field(default_factory=WorkerPoolConfig)
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    enable_allocator: bool = True
    log_level: Optional[str] = None

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ServiceConfig":
        """
        Create config from a dictionary.

        Accepts snake_case keys and the camelCase keys of JSON
        configuration files (``jobQueue.maxConcurrent``,
        ``resourceAllocator.checkInterval`` in ms, ...).

        Args:
            config_dict: Configuration dictionary

        Returns:
            ServiceConfig instance
        """
        queue_section = dict(config_dict.get("queue") or config_dict.get("jobQueue") or {})
        persistence = _normalize(queue_section.pop("persistence", None), _PERSISTENCE_ALIASES)
        persistence.pop("cleanupInterval", None)
        queue = _normalize(queue_section, _QUEUE_ALIASES)

        pool = _normalize(config_dict.get("pool") or config_dict.get("workerPool"), _POOL_ALIASES)
        allocator = _normalize(
            config_dict.get("allocator") or config_dict.get("resourceAllocator"),
            _ALLOCATOR_ALIASES,
        )

        return cls(
            queue=QueueConfig(persistence=PersistenceConfig(**persistence), **queue),
            pool=WorkerPoolConfig(**pool),
            allocator=AllocatorConfig(**allocator),
            enable_allocator=config_dict.get("enable_allocator", config_dict.get("enableAllocator", True)),
            log_level=config_dict.get("log_level", config_dict.get("logLevel")),
        )

    @classmethod
    def from_file(cls, path: Union[Path, str]) -> "ServiceConfig":
        """Load config from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> dict:
        """
        Convert config to dictionary.

        Returns:
            Configuration dictionary (snake_case, seconds)
        """
        persistence = self.queue.persistence
        return {
            "queue": {
                "max_concurrent": self.queue.max_concurrent,
                "default_priority": self.queue.default_priority,
                "persistence": {
                    "enabled": persistence.enabled,
                    "file_path": str(persistence.file_path) if persistence.file_path else None,
                    "debounce": persistence.debounce,
                },
            },
            "pool": {
                "size": self.pool.size,
                "capabilities": {name: list(types) for name, types in self.pool.capabilities.items()},
                "heartbeat_interval": self.pool.heartbeat_interval,
                "worker_timeout": self.pool.worker_timeout,
                "cooldown": self.pool.cooldown,
                "max_timeout_retries": self.pool.max_timeout_retries,
            },
            "allocator": {
                "check_interval": self.allocator.check_interval,
                "min_workers": self.allocator.min_workers,
                "max_workers": self.allocator.max_workers,
                "strategy": self.allocator.strategy,
                "per_worker_memory_mb": self.allocator.per_worker_memory_mb,
                "disk_path": str(self.allocator.disk_path),
            },
            "enable_allocator": self.enable_allocator,
            "log_level": self.log_level,
        }


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """Basic log format for applications embedding the orchestrator."""
    logging.basicConfig(
        level=level if isinstance(level, int) else level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
