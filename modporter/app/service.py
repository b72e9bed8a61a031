"""
Conversion Service
==================
Facade over the orchestration core for API layers and CLIs.

Builds the queue, worker pool, allocator and pipeline controller from a
ServiceConfig and exposes the handful of calls a front end needs.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Union

from modporter.app.config import ServiceConfig, configure_logging
from modporter.app.events import EventBus, EventType
from modporter.jobs.models import Job, JobStatus, QueueStats
from modporter.jobs.queue import JobQueue
from modporter.pipeline.controller import Collaborators, JobStatusView, PipelineController
from modporter.resources.allocator import ResourceAllocator
from modporter.workers.pool import WorkerPool
from modporter.workers.worker import PoolStats

logger = logging.getLogger(__name__)


@dataclass
class ConversionInput:
    """Request to convert one Java Edition mod into a Bedrock addon."""
    input_path: str
    output_path: Optional[str] = None
    mod_id: Optional[str] = None
    mod_name: Optional[str] = None
    mod_version: Optional[str] = None
    mod_description: Optional[str] = None
    mod_author: Optional[str] = None
    generate_report: bool = True
    package_addon: bool = True

    def __post_init__(self):
        if not self.input_path:
            raise ValueError("input_path is required")
        self.input_path = str(self.input_path)
        if self.output_path is not None:
            self.output_path = str(self.output_path)

    def to_dict(self) -> dict:
        return asdict(self)


class ConversionService:
    """
    Thin facade over PipelineController.

    Example:
        service = build_service(ServiceConfig(), collaborators=[...])
        service.start()
        job_id = service.create_conversion_job(ConversionInput("mods/example.jar"))
        status = service.get_job_status(job_id)
        await service.stop()
    """

    def __init__(self, controller: PipelineController):
        self.controller = controller
        self.queue = controller.queue
        self.pool = controller.pool
        self.allocator = controller.allocator
        self.bus = controller.bus

    def create_conversion_job(
        self,
        conversion_input: Union[ConversionInput, dict],
        priority: Optional[int] = None,
    ) -> str:
        """
        Queue a mod conversion.

        Args:
            conversion_input: ConversionInput or an equivalent dict
            priority: Job priority (queue default if None)

        Returns:
            Job id
        """
        if isinstance(conversion_input, dict):
            conversion_input = ConversionInput(**conversion_input)
        return self.controller.queue_conversion(conversion_input, priority)

    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        return self.controller.get_job_status(job_id)

    def get_jobs(self, status: Optional[Union[JobStatus, str]] = None) -> list[Job]:
        return self.queue.get_jobs(status=status)

    def cancel_job(self, job_id: str) -> bool:
        return self.controller.cancel_job(job_id)

    def update_job_priority(self, job_id: str, priority: int) -> bool:
        return self.queue.update_job_priority(job_id, priority)

    def get_job_result(self, job_id: str) -> Optional[Any]:
        """Result of a completed job, None otherwise."""
        job = self.queue.get_job(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            return None
        return job.result

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def get_worker_stats(self) -> PoolStats:
        return self.pool.get_stats()

    def on(self, event_type: Union[EventType, str], handler: Callable[[Any], None]) -> Callable[[], None]:
        """
        Relay orchestrator events to a front-end handler.

        Returns:
            Callable that removes the subscription
        """
        return self.bus.subscribe(EventType(event_type), handler)

    def start(self) -> None:
        self.controller.start()

    async def stop(self) -> None:
        await self.controller.stop()


def build_service(
    config: Optional[ServiceConfig] = None,
    collaborators: Optional[Collaborators] = None,
    bus: Optional[EventBus] = None,
) -> ConversionService:
    """
    Assemble the full object graph from configuration.

    Args:
        config: Service configuration (defaults if None)
        collaborators: Stage implementations handed to the controller
        bus: Event bus shared by all components (new one if None)

    Returns:
        ConversionService ready to ``start()``
    """
    config = config or ServiceConfig()
    if config.log_level:
        configure_logging(config.log_level)

    bus = bus or EventBus()
    queue = JobQueue(config.queue, bus=bus)
    pool = WorkerPool(queue, config.pool, bus=bus)
    allocator = ResourceAllocator(pool, queue, config.allocator) if config.enable_allocator else None
    controller = PipelineController(queue, pool, allocator, collaborators)

    logger.info(
        f"Conversion service built (workers={pool.size}, "
        f"allocator={'on' if allocator else 'off'})"
    )
    return ConversionService(controller)
