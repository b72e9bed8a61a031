"""
Job Queue
=========
Priority-ordered in-memory job list with bounded concurrent execution
and optional debounced snapshots.

The queue is the single writer for every Job record. Workers and the
pipeline controller report outcomes through its methods; it announces
every state change on the event bus.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from modporter.app.config import QueueConfig
from modporter.app.events import (
    EventBus,
    JobAddedEvent,
    JobCancelledEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobPriorityEvent,
    JobProcessEvent,
    JobRequeuedEvent,
)
from modporter.concurrency import Debouncer
from modporter.errors import JobError
from modporter.jobs.models import Job, JobStatus, QueueStats, generate_job_id, utc_now
from modporter.jobs.persistence import QueueSnapshotStore

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Job queue with priority dispatch.

    State machine:
        pending -> processing -> completed | failed
        pending | processing -> cancelled
        processing -> pending (requeue only)

    Ordering is descending priority, then ascending creation order.
    At most ``max_concurrent`` jobs are in ``processing`` at any time.

    Example:
        bus = EventBus()
        queue = JobQueue(QueueConfig(max_concurrent=2), bus=bus)
        bus.subscribe(EventType.JOB_PROCESS, on_ready)
        job = queue.add_job("conversion", {"input_path": "mod.jar"}, priority=5)
        ...
        queue.complete_job(job.id, result)
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        bus: Optional[EventBus] = None,
        store: Optional[QueueSnapshotStore] = None,
    ):
        """
        Initialize the queue.

        Args:
            config: Queue configuration (defaults if None)
            bus: Event bus to publish on (a private one if None)
            store: Snapshot store; built from the persistence config if None
        """
        self.config = config or QueueConfig()
        self.bus = bus or EventBus()

        self._jobs: list[Job] = []
        self._index: dict[str, Job] = {}
        self._processing: set[str] = set()
        self._max_concurrent = self.config.max_concurrent
        self._default_priority = self.config.default_priority
        self._sequence = itertools.count()

        self._dispatching = False
        self._redispatch = False

        persistence = self.config.persistence
        if store is None and persistence.enabled:
            store = QueueSnapshotStore(persistence.file_path)
        self._store = store
        self._save_debouncer = Debouncer(persistence.debounce, self._flush_snapshot)
        self._pending_writes: set[asyncio.Task] = set()

        if self._store is not None:
            self._restore(self._store.load())

        logger.info(
            f"JobQueue initialized (max_concurrent={self._max_concurrent}, "
            f"default_priority={self._default_priority}, "
            f"persistence={'on' if self._store else 'off'})"
        )

    # ==================== Properties ====================

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def default_priority(self) -> int:
        return self._default_priority

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    def __len__(self) -> int:
        return len(self._jobs)

    # ==================== Queries ====================

    def get_job(self, job_id: str) -> Optional[Job]:
        """Copy of a job, or None if unknown."""
        job = self._index.get(job_id)
        return job.snapshot() if job else None

    def get_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        job_type: Optional[str] = None,
    ) -> list[Job]:
        """
        Copies of jobs in queue order.

        Args:
            status: Only jobs in this status
            job_type: Only jobs of this type

        Returns:
            Jobs ordered by descending priority, then creation time
        """
        wanted = JobStatus(status) if status is not None else None
        return [
            job.snapshot()
            for job in self._jobs
            if (wanted is None or job.status == wanted)
            and (job_type is None or job.type == job_type)
        ]

    def get_stats(self) -> QueueStats:
        """Job counts per status."""
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs:
            counts[job.status] += 1
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            processing=len(self._processing),
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
        )

    # ==================== Mutations ====================

    def add_job(self, job_type: str, data: Any, priority: Optional[int] = None) -> Job:
        """
        Add a new pending job and try to dispatch.

        Args:
            job_type: Job type identifier
            data: Job payload
            priority: Job priority (default priority if None)

        Returns:
            Copy of the created job (already ``processing`` if a slot was free)
        """
        job = Job(
            id=generate_job_id(),
            type=job_type,
            data=data,
            priority=self._default_priority if priority is None else int(priority),
            created_at=utc_now(),
            sequence=next(self._sequence),
        )
        self._insert(job)
        self._index[job.id] = job
        logger.debug(f"Job {job.id} added (type={job_type}, priority={job.priority})")

        self.bus.publish(JobAddedEvent(job_id=job.id, job_type=job.type, priority=job.priority))
        self.process_next_jobs()
        self._schedule_save()
        return job.snapshot()

    def complete_job(self, job_id: str, result: Any = None) -> bool:
        """
        Mark a processing job as completed.

        Returns:
            False if the job is unknown or not processing
        """
        job = self._index.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False

        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = utc_now()
        self._processing.discard(job_id)
        logger.info(f"Job {job_id} completed")

        self.bus.publish(JobCompletedEvent(job_id=job_id, result=result))
        self.process_next_jobs()
        self._schedule_save()
        return True

    def fail_job(self, job_id: str, error: Union[JobError, BaseException, str]) -> bool:
        """
        Mark a processing job as failed.

        Args:
            job_id: Job identifier
            error: Exception, message or JobError describing the failure

        Returns:
            False if the job is unknown or not processing
        """
        job = self._index.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False

        job.status = JobStatus.FAILED
        job.error = JobError.coerce(error)
        job.finished_at = utc_now()
        self._processing.discard(job_id)
        logger.warning(f"Job {job_id} failed: {job.error}")

        self.bus.publish(JobFailedEvent(job_id=job_id, error=job.error))
        self.process_next_jobs()
        self._schedule_save()
        return True

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job.

        A processing job's slot is freed immediately; its in-flight work is
        abandoned and any late result is ignored.

        Returns:
            False for unknown or already-terminal jobs
        """
        job = self._index.get(job_id)
        if job is None or job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
            return False

        was_processing = job.status == JobStatus.PROCESSING
        self._processing.discard(job_id)
        job.status = JobStatus.CANCELLED
        job.finished_at = utc_now()
        logger.info(f"Job {job_id} cancelled")

        self.bus.publish(JobCancelledEvent(job_id=job_id, was_processing=was_processing))
        self._schedule_save()
        self.process_next_jobs()
        return True

    def requeue_job(self, job_id: str, reason: str = "") -> bool:
        """
        Push a processing job back to pending.

        Used for backpressure and worker timeouts. The slot is freed but
        no dispatch runs here; the job is offered again on the next
        state change.

        Returns:
            False if the job is unknown or not processing
        """
        job = self._index.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False

        job.status = JobStatus.PENDING
        job.started_at = None
        self._processing.discard(job_id)
        logger.debug(f"Job {job_id} requeued{': ' + reason if reason else ''}")

        self.bus.publish(JobRequeuedEvent(job_id=job_id, reason=reason))
        self._schedule_save()
        return True

    def update_job_priority(self, job_id: str, priority: int) -> bool:
        """
        Change the priority of a pending job and re-sort.

        Returns:
            False if the job is unknown or not pending
        """
        job = self._index.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False

        old_priority = job.priority
        self._jobs.remove(job)
        job.priority = int(priority)
        self._insert(job)

        self.bus.publish(JobPriorityEvent(job_id=job_id, old_priority=old_priority, priority=job.priority))
        self._schedule_save()
        return True

    def clear_finished(self, older_than: Optional[timedelta] = None) -> int:
        """
        Drop terminal jobs.

        Args:
            older_than: Only drop jobs finished at least this long ago

        Returns:
            Number of jobs removed
        """
        cutoff: Optional[datetime] = utc_now() - older_than if older_than is not None else None
        keep, removed = [], 0
        for job in self._jobs:
            finished = job.finished_at or job.created_at
            if job.is_terminal and (cutoff is None or finished <= cutoff):
                del self._index[job.id]
                removed += 1
            else:
                keep.append(job)
        self._jobs = keep
        if removed:
            logger.info(f"Removed {removed} finished jobs")
            self._schedule_save()
        return removed

    # ==================== Settings ====================

    def set_max_concurrent(self, max_concurrent: int) -> bool:
        """Change the processing limit and re-dispatch. Rejects values < 1."""
        if max_concurrent < 1:
            logger.warning(f"Ignoring invalid max_concurrent={max_concurrent}")
            return False
        self._max_concurrent = max_concurrent
        logger.info(f"Updated max_concurrent to {max_concurrent}")
        self.process_next_jobs()
        return True

    def set_default_priority(self, priority: int) -> bool:
        self._default_priority = int(priority)
        logger.info(f"Updated default_priority to {priority}")
        return True

    # ==================== Dispatch ====================

    def process_next_jobs(self) -> int:
        """
        Move pending jobs to processing while slots are free.

        Each job is offered at most once per call, so a job pushed back by
        a handler does not spin. Calls made from inside a handler are folded
        into one more cycle of the outer call.

        Returns:
            Number of jobs dispatched by this call
        """
        if self._dispatching:
            self._redispatch = True
            return 0

        self._dispatching = True
        offered: set[str] = set()
        dispatched = 0
        try:
            while True:
                self._redispatch = False
                dispatched += self._dispatch_cycle(offered)
                if not self._redispatch:
                    break
        finally:
            self._dispatching = False

        if dispatched:
            self._schedule_save()
        return dispatched

    def _dispatch_cycle(self, offered: set[str]) -> int:
        dispatched = 0
        while len(self._processing) < self._max_concurrent:
            job = next(
                (j for j in self._jobs if j.status == JobStatus.PENDING and j.id not in offered),
                None,
            )
            if job is None:
                break

            offered.add(job.id)
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.started_at = utc_now()
            self._processing.add(job.id)
            dispatched += 1

            self.bus.publish(JobProcessEvent(job_id=job.id, job_type=job.type, data=job.data))
        return dispatched

    def _insert(self, job: Job) -> None:
        bisect.insort(self._jobs, job, key=Job.sort_key)

    # ==================== Persistence ====================

    def _restore(self, jobs: list[Job]) -> None:
        self._jobs = sorted(jobs, key=Job.sort_key)
        self._index = {job.id: job for job in self._jobs}
        self._processing.clear()
        start = max((job.sequence for job in self._jobs), default=-1) + 1
        self._sequence = itertools.count(start)

    def _schedule_save(self) -> None:
        if self._store is None:
            return
        if not self._save_debouncer.trigger():
            # No event loop to debounce on: write through
            self._store.save(self._jobs)

    def _flush_snapshot(self) -> None:
        content = self._store.serialize(self._jobs)
        task = asyncio.get_running_loop().create_task(self._store.save_async(content))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def flush(self) -> bool:
        """
        Write the snapshot now, replacing any pending debounced write.

        Returns:
            False if persistence is disabled or the write failed
        """
        if self._store is None:
            return False
        self._save_debouncer.cancel()
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)
        return await self._store.save_async(self._store.serialize(self._jobs))

    def close(self) -> None:
        """Drop any pending debounced write."""
        self._save_debouncer.cancel()
