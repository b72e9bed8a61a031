"""
Pipeline Controller
===================
Connects the job queue, worker pool and resource allocator, and runs the
conversion stage plan for every dispatched job.

Flow per job:
    job:process -> reserve resources -> claim a worker -> run stages
    -> complete_job / fail_job

Backpressure (no grant, no idle worker) pushes the job back to pending;
it is offered again on the next queue state change or allocator tick.
A job whose dispatch raises is failed so its slot is not lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from modporter.app.events import EventType, JobProcessEvent
from modporter.errors import CapacityError, JobError, StageFailedError, UnsupportedJobTypeError
from modporter.jobs.models import Job, JobStatus
from modporter.jobs.queue import JobQueue
from modporter.pipeline.notes import NoteCollector, NoteSeverity
from modporter.pipeline.stages import (
    PipelineStage,
    StageCollaborator,
    StageContext,
    StageResult,
    stage_plan,
)
from modporter.resources.allocator import ResourceAllocator, ResourceRequirements
from modporter.workers.pool import WorkerContext, WorkerPool

logger = logging.getLogger(__name__)

Collaborators = Union[Mapping[Union[PipelineStage, str], StageCollaborator], Iterable[StageCollaborator]]


@dataclass
class _Progress:
    total: int
    completed: int = 0
    current_stage: Optional[PipelineStage] = None


@dataclass(frozen=True)
class JobStatusView:
    """Externally visible state of a job."""
    job_id: str
    job_type: str
    status: JobStatus
    progress: float
    current_stage: Optional[str]
    priority: int
    error: Optional[JobError] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "progress": self.progress,
            "current_stage": self.current_stage,
            "priority": self.priority,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class PipelineController:
    """
    Drives dispatched jobs through their stage plans.

    Example:
        controller = PipelineController(queue, pool, allocator, collaborators=[
            FunctionStage("ingestion", read_jar),
            FunctionStage("packaging", build_mcaddon),
        ])
        controller.start()
        job_id = controller.queue_conversion({"input_path": "mod.jar"})
        ...
        await controller.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        pool: WorkerPool,
        allocator: Optional[ResourceAllocator] = None,
        collaborators: Optional[Collaborators] = None,
        default_requirements: Optional[ResourceRequirements] = None,
    ):
        """
        Initialize the controller and subscribe to dispatch events.

        Args:
            queue: Job queue
            pool: Worker pool bound to the same queue
            allocator: Optional allocator for per-job grants and pool scaling
            collaborators: Stage implementations, as a list or a stage-keyed mapping
            default_requirements: Grant requested for jobs that do not name one
        """
        self.queue = queue
        self.pool = pool
        self.allocator = allocator
        self.bus = queue.bus
        self.default_requirements = default_requirements or ResourceRequirements()

        self._collaborators: dict[PipelineStage, StageCollaborator] = {}
        for collaborator in self._iter_collaborators(collaborators):
            self.register_collaborator(collaborator)

        self._progress: dict[str, _Progress] = {}
        self._running = False
        self._unsubscribers = [
            self.bus.subscribe(EventType.JOB_PROCESS, self._on_job_process),
            self.bus.subscribe(EventType.JOB_COMPLETED, self._on_job_left_processing),
            self.bus.subscribe(EventType.JOB_FAILED, self._on_job_left_processing),
            self.bus.subscribe(EventType.JOB_CANCELLED, self._on_job_left_processing),
            self.bus.subscribe(EventType.JOB_REQUEUED, self._on_job_left_processing),
        ]

    @staticmethod
    def _iter_collaborators(collaborators: Optional[Collaborators]) -> Iterable[StageCollaborator]:
        if collaborators is None:
            return []
        if isinstance(collaborators, Mapping):
            return list(collaborators.values())
        return list(collaborators)

    def register_collaborator(self, collaborator: StageCollaborator) -> None:
        """Register (or replace) the implementation of a stage."""
        stage = PipelineStage(collaborator.stage)
        if stage in self._collaborators:
            logger.info(f"Replacing collaborator for stage '{stage.value}'")
        self._collaborators[stage] = collaborator

    @property
    def running(self) -> bool:
        return self._running

    # ==================== Public API ====================

    def submit(self, job_type: str, data: Any, priority: Optional[int] = None) -> str:
        """Queue a job of any supported type and return its id."""
        return self.queue.add_job(job_type, data, priority).id

    def queue_conversion(self, conversion_input: Any, priority: Optional[int] = None) -> str:
        """
        Queue a full mod conversion.

        Args:
            conversion_input: Payload dict, or an object with ``to_dict()``
            priority: Job priority (queue default if None)

        Returns:
            Job id
        """
        data = conversion_input.to_dict() if hasattr(conversion_input, "to_dict") else conversion_input
        job_id = self.submit("conversion", data, priority)
        logger.info(f"Queued conversion job {job_id}")
        return job_id

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or processing job (status becomes ``cancelled``)."""
        return self.queue.cancel_job(job_id)

    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        """
        Status, progress percentage and current stage of a job.

        Returns:
            None for unknown jobs
        """
        job = self.queue.get_job(job_id)
        if job is None:
            self._progress.pop(job_id, None)
            return None

        progress = self._progress.get(job_id)
        if job.status == JobStatus.COMPLETED:
            percent = 100.0
        elif progress is not None and progress.total:
            percent = round(progress.completed / progress.total * 100, 1)
        else:
            percent = 0.0

        current_stage = None
        if job.status == JobStatus.PROCESSING and progress is not None and progress.current_stage:
            current_stage = progress.current_stage.value

        return JobStatusView(
            job_id=job.id,
            job_type=job.type,
            status=job.status,
            progress=percent,
            current_stage=current_stage,
            priority=job.priority,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    # ==================== Dispatch handling ====================

    def _on_job_process(self, event: JobProcessEvent) -> None:
        job = self.queue.get_job(event.job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return

        if not self._running:
            self.queue.requeue_job(job.id, reason="controller not started")
            return

        if stage_plan(job.type) is None:
            self.queue.fail_job(job.id, UnsupportedJobTypeError(job.type))
            return

        try:
            self._dispatch(job)
        except Exception as e:
            logger.exception(f"Job {job.id} could not be dispatched")
            if self.allocator is not None:
                self.allocator.release(job.id)
            self.queue.fail_job(job.id, e)

    def _dispatch(self, job: Job) -> None:
        if self.allocator is not None:
            grant = self.allocator.allocate(job.id, self._requirements_for(job))
            if grant is None:
                self.queue.requeue_job(job.id, reason="insufficient resources")
                return

        worker_id = self.pool.assign_job(job, self._run_job)
        if worker_id is None:
            if self.allocator is not None:
                self.allocator.release(job.id)
            logger.warning(str(CapacityError(f"No worker can take job {job.id}", details=f"type '{job.type}'")))
            self.queue.requeue_job(job.id, reason="no idle worker")

    def _requirements_for(self, job: Job) -> ResourceRequirements:
        if not isinstance(job.data, dict) or job.data.get("resources") is None:
            return self.default_requirements
        return ResourceRequirements.from_dict(job.data["resources"])

    def _on_job_left_processing(self, event) -> None:
        if self.allocator is not None:
            self.allocator.release(event.job_id)
        if event.event_type == EventType.JOB_REQUEUED:
            self._progress.pop(event.job_id, None)

    # ==================== Stage execution ====================

    async def _run_job(self, job: Job, context: WorkerContext) -> dict:
        """
        Run the job's stage plan on the current worker.

        Returns:
            Conversion outcome dict

        Raises:
            StageFailedError: A stage raised or reported a critical note
        """
        plan = stage_plan(job.type)
        if plan is None:
            raise UnsupportedJobTypeError(job.type)

        loop = asyncio.get_running_loop()
        notes = NoteCollector()
        outputs: dict[str, Any] = {}
        results: list[StageResult] = []
        progress = _Progress(total=len(plan))
        self._progress[job.id] = progress

        for stage in plan:
            if not self._still_owned(job.id, context):
                logger.info(f"Job {job.id} no longer processing, stopping before stage '{stage.value}'")
                return {}

            progress.current_stage = stage
            collaborator = self._collaborators.get(stage)
            if collaborator is None:
                notes.warning(stage.value, f"No collaborator registered for stage '{stage.value}', skipped")
                results.append(StageResult(stage=stage, skipped=True))
                progress.completed += 1
                continue

            stage_context = StageContext(
                job_id=job.id,
                job_type=job.type,
                data=job.data,
                stage=stage,
                outputs=outputs,
                notes=notes,
            )
            logger.debug(f"Job {job.id}: running stage '{stage.value}'")
            started = time.perf_counter()
            try:
                output = await loop.run_in_executor(None, collaborator.run, stage_context)
            except Exception as e:
                logger.exception(f"Job {job.id}: stage '{stage.value}' raised")
                raise StageFailedError(stage.value, str(e) or type(e).__name__, details=type(e).__name__) from e

            critical = [n for n in notes.for_stage(stage.value) if n.severity == NoteSeverity.CRITICAL]
            if critical:
                raise StageFailedError(stage.value, critical[0].message, details=critical[0].code)

            outputs[stage.value] = output
            results.append(StageResult(stage=stage, output=output, duration=time.perf_counter() - started))
            progress.completed += 1
            context.heartbeat()

        progress.current_stage = None
        summary = notes.summary()
        return {
            "success": summary.errors == 0 and summary.critical_errors == 0,
            "job_id": job.id,
            "job_type": job.type,
            "stages": outputs,
            "stage_results": [result.to_dict() for result in results],
            "notes": [note.to_dict() for note in notes.notes],
            "error_summary": summary.to_dict(),
        }

    def _still_owned(self, job_id: str, context: WorkerContext) -> bool:
        job = self.queue.get_job(job_id)
        return job is not None and job.status == JobStatus.PROCESSING and context.is_current

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the watchdog and allocator, then dispatch waiting jobs."""
        if self._running:
            return
        self._running = True
        self.pool.start()
        if self.allocator is not None:
            self.allocator.start()
        dispatched = self.queue.process_next_jobs()
        logger.info(f"Pipeline controller started ({dispatched} jobs dispatched)")

    async def stop(self) -> None:
        """Stop in reverse order, return in-flight jobs to pending and flush the snapshot."""
        if not self._running:
            return
        self._running = False
        if self.allocator is not None:
            await self.allocator.stop()
        await self.pool.stop()

        for job in self.queue.get_jobs(JobStatus.PROCESSING):
            self.queue.requeue_job(job.id, reason="shutdown")

        await self.queue.flush()
        self.queue.close()
        logger.info("Pipeline controller stopped")

    def close(self) -> None:
        """Drop all event subscriptions."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.pool.close()
