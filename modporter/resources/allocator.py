"""
Resource Allocator
==================
Periodically resizes the worker pool from host resources and queue
backlog, and hands out per-job resource grants.

Features:
- Strategy-driven target worker count, clamped to configured bounds
- Sampling in a thread executor so the event loop never blocks
- Grant bookkeeping that refuses over-commit against the last sample
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional, Union

from modporter.app.config import AllocatorConfig
from modporter.concurrency import PeriodicTask
from modporter.errors import CapacityError, ErrorCode, InvalidJobDataError
from modporter.jobs.queue import JobQueue
from modporter.resources.sampler import ResourceSampler, SystemResources
from modporter.resources.strategies import AllocationStrategy, StrategyFactory
from modporter.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRequirements:
    """Resources reserved for one job."""
    memory_mb: float = 512.0
    cpu: float = 0.5
    disk_mb: float = 256.0

    def is_valid(self) -> bool:
        return self.memory_mb >= 0 and self.cpu >= 0 and self.disk_mb >= 0

    @classmethod
    def from_dict(cls, data: Any) -> "ResourceRequirements":
        """
        Build requirements from a job payload's ``resources`` mapping.

        Raises:
            InvalidJobDataError: Not a mapping, or a key or value that cannot be reserved
        """
        if not isinstance(data, dict):
            raise InvalidJobDataError("resources", data, "expected a mapping")
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                raise InvalidJobDataError(f"resources.{key}", value, f"expected one of {sorted(known)}")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidJobDataError(f"resources.{key}", value, "expected a number")
            if not math.isfinite(value) or value < 0:
                raise InvalidJobDataError(f"resources.{key}", value, "expected a finite, non-negative number")
            values[key] = float(value)
        return cls(**values)


@dataclass(frozen=True)
class ResourceAllocation:
    """A live grant held by a processing job."""
    job_id: str
    requirements: ResourceRequirements
    allocated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ResourceAllocator:
    """
    Keeps the pool sized to what the host can carry.

    Example:
        allocator = ResourceAllocator(pool, queue, AllocatorConfig(strategy="conservative"))
        allocator.start()
        grant = allocator.allocate(job.id, ResourceRequirements(memory_mb=1024))
        ...
        allocator.release(job.id)
        await allocator.stop()
    """

    def __init__(
        self,
        pool: WorkerPool,
        queue: JobQueue,
        config: Optional[AllocatorConfig] = None,
        sampler: Optional[ResourceSampler] = None,
        strategy: Optional[AllocationStrategy] = None,
    ):
        """
        Initialize the allocator.

        Args:
            pool: Pool to scale
            queue: Queue whose backlog feeds the strategy
            config: Allocator configuration (defaults if None)
            sampler: Resource sampler (psutil-backed if None)
            strategy: Strategy instance (built from config.strategy if None)
        """
        self.pool = pool
        self.queue = queue
        self.config = config or AllocatorConfig()
        self.sampler = sampler or ResourceSampler(self.config.disk_path)
        self._strategy = strategy or self._build_strategy(self.config.strategy)
        self._min_workers = self.config.min_workers
        self._max_workers = self.config.max_workers

        self._resources: Optional[SystemResources] = None
        self._allocations: dict[str, ResourceAllocation] = {}
        self._last_target: Optional[int] = None
        self._loop_task = PeriodicTask(
            "resource-allocator",
            self.config.check_interval,
            self.tick,
            run_immediately=True,
        )

    def _build_strategy(self, name: str) -> AllocationStrategy:
        if name.lower() == "adaptive":
            return StrategyFactory.create(name, per_worker_memory_mb=self.config.per_worker_memory_mb)
        return StrategyFactory.create(name)

    # ==================== Properties ====================

    @property
    def strategy(self) -> AllocationStrategy:
        return self._strategy

    @property
    def min_workers(self) -> int:
        return self._min_workers

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def last_resources(self) -> Optional[SystemResources]:
        return self._resources

    @property
    def last_target(self) -> Optional[int]:
        return self._last_target

    # ==================== Scaling ====================

    async def tick(self) -> int:
        """
        Sample resources off the loop, then rescale the pool.

        Returns:
            Clamped target worker count
        """
        loop = asyncio.get_running_loop()
        resources = await loop.run_in_executor(None, self.sampler.sample)
        return self.allocate_resources(resources)

    def allocate_resources(self, resources: SystemResources) -> int:
        """
        Apply the strategy to a sample and scale the pool.

        Args:
            resources: Resource sample to decide on

        Returns:
            Clamped target worker count
        """
        self._resources = resources
        stats = self.queue.get_stats()
        raw = self._strategy.target_workers(resources, stats)
        target = self._clamp(raw)
        self._last_target = target

        logger.debug(
            f"Allocation ({self._strategy.name}): cpu={resources.available_cpu:.1f}, "
            f"memory={resources.available_memory_mb:.0f}MB, pending={stats.pending} "
            f"-> {raw} (clamped {target})"
        )
        if target != self.pool.size:
            logger.info(f"Scaling worker pool from {self.pool.size} to {target} workers")
            self.pool.scale_pool(target)
        if stats.pending:
            # Jobs refused a grant earlier are only retried on a queue change
            self.queue.process_next_jobs()
        return target

    def _clamp(self, target: int) -> int:
        return max(self._min_workers, min(self._max_workers, int(target)))

    def set_strategy(self, strategy: Union[AllocationStrategy, str]) -> bool:
        """
        Swap the allocation strategy.

        Returns:
            False if the name is not registered
        """
        if isinstance(strategy, str):
            try:
                strategy = self._build_strategy(strategy)
            except ValueError as e:
                logger.warning(str(e))
                return False
        self._strategy = strategy
        logger.info(f"Allocation strategy set to {strategy.name}")
        return True

    def set_bounds(self, min_workers: int, max_workers: int) -> bool:
        """
        Change the worker bounds and rescale immediately.

        Returns:
            False (bounds unchanged) unless 0 <= min_workers <= max_workers
        """
        if min_workers < 0 or max_workers < min_workers:
            logger.warning(f"Ignoring invalid worker bounds ({min_workers}, {max_workers})")
            return False
        self._min_workers = min_workers
        self._max_workers = max_workers
        logger.info(f"Worker bounds set to [{min_workers}, {max_workers}]")

        if self._resources is not None:
            self.allocate_resources(self._resources)
        else:
            target = self._clamp(self.pool.size)
            if target != self.pool.size:
                self.pool.scale_pool(target)
            self._last_target = target
        return True

    # ==================== Grants ====================

    def allocate(
        self,
        job_id: str,
        requirements: Optional[ResourceRequirements] = None,
    ) -> Optional[ResourceAllocation]:
        """
        Reserve resources for a job.

        Args:
            job_id: Job taking the grant
            requirements: Requested resources (defaults if None)

        Returns:
            The grant, or None if the request is invalid or does not fit
        """
        requirements = requirements or ResourceRequirements()
        if not requirements.is_valid():
            logger.warning(f"Rejected negative resource request for job {job_id}: {requirements}")
            return None

        existing = self._allocations.get(job_id)
        if existing is not None:
            return existing

        if self._resources is None:
            self._resources = self.sampler.sample()

        available = self.get_available()
        if (
            requirements.memory_mb > available.memory_mb
            or requirements.cpu > available.cpu
            or requirements.disk_mb > available.disk_mb
        ):
            error = CapacityError(
                f"Cannot reserve resources for job {job_id}",
                details=f"requested {requirements}, available {available}",
                code=ErrorCode.E002,
            )
            logger.warning(str(error))
            return None

        allocation = ResourceAllocation(job_id=job_id, requirements=requirements)
        self._allocations[job_id] = allocation
        logger.debug(f"Allocated resources for job {job_id}: {requirements}")
        return allocation

    def release(self, job_id: str) -> bool:
        """Return a job's grant. False if it held none."""
        allocation = self._allocations.pop(job_id, None)
        if allocation is None:
            return False
        logger.debug(f"Released resources for job {job_id}")
        return True

    def get_allocation(self, job_id: str) -> Optional[ResourceAllocation]:
        return self._allocations.get(job_id)

    def get_allocated(self) -> ResourceRequirements:
        """Sum of all live grants."""
        grants = [a.requirements for a in self._allocations.values()]
        return ResourceRequirements(
            memory_mb=sum(g.memory_mb for g in grants),
            cpu=sum(g.cpu for g in grants),
            disk_mb=sum(g.disk_mb for g in grants),
        )

    def get_available(self) -> ResourceRequirements:
        """Last sampled availability minus live grants (zero before any sample)."""
        if self._resources is None:
            return ResourceRequirements(memory_mb=0, cpu=0, disk_mb=0)
        allocated = self.get_allocated()
        return ResourceRequirements(
            memory_mb=max(0.0, self._resources.available_memory_mb - allocated.memory_mb),
            cpu=max(0.0, self._resources.available_cpu - allocated.cpu),
            disk_mb=max(0.0, self._resources.available_disk_mb - allocated.disk_mb),
        )

    def get_utilization(self) -> dict[str, float]:
        """
        Share of the last sample currently granted, as percentages.

        Returns:
            Dict with ``memory``, ``cpu`` and ``disk`` keys
        """
        allocated = self.get_allocated()
        resources = self._resources

        def percent(used: float, capacity: float) -> float:
            return round(used / capacity * 100, 2) if capacity > 0 else 0.0

        if resources is None:
            return {"memory": 0.0, "cpu": 0.0, "disk": 0.0}
        return {
            "memory": percent(allocated.memory_mb, resources.available_memory_mb),
            "cpu": percent(allocated.cpu, resources.available_cpu),
            "disk": percent(allocated.disk_mb, resources.available_disk_mb),
        }

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the periodic loop; the first tick runs immediately."""
        self._loop_task.start()
        logger.info(
            f"Resource allocator started (strategy={self._strategy.name}, "
            f"interval={self.config.check_interval}s)"
        )

    async def stop(self) -> None:
        await self._loop_task.stop()
        logger.info("Resource allocator stopped")
