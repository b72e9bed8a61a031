"""
Worker Pool
===========
Manages the roster of logical workers that claim dispatched jobs.

Features:
- Capability groups for job-type affinity
- Least-loaded selection among idle workers
- Heartbeat watchdog that resets stuck workers
- Scaling that never removes a busy worker
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from modporter.app.config import WorkerPoolConfig
from modporter.app.events import (
    EventBus,
    EventType,
    JobCancelledEvent,
    WorkerAddedEvent,
    WorkerRemovedEvent,
    WorkerTimeoutEvent,
)
from modporter.concurrency import PeriodicTask
from modporter.errors import WorkerTimeoutError
from modporter.jobs.models import Job
from modporter.jobs.queue import JobQueue
from modporter.workers.worker import (
    WILDCARD,
    PoolStats,
    Worker,
    WorkerInfo,
    WorkerStatus,
)

logger = logging.getLogger(__name__)


class WorkerContext:
    """
    Handle given to a job runner for the duration of one assignment.

    Runners call ``heartbeat()`` between units of work. Once the worker
    loses the job (cancel, timeout, shutdown) ``is_current`` turns False
    and heartbeats are ignored.
    """

    def __init__(self, pool: "WorkerPool", worker_id: str, job_id: str, assignment: int):
        self._pool = pool
        self.worker_id = worker_id
        self.job_id = job_id
        self._assignment = assignment

    @property
    def is_current(self) -> bool:
        return self._pool._owns(self.worker_id, self.job_id, self._assignment)

    def heartbeat(self) -> bool:
        """Refresh the worker's heartbeat. Returns False if the job was lost."""
        if not self.is_current:
            return False
        return self._pool.heartbeat(self.worker_id)


JobRunner = Callable[[Job, WorkerContext], Awaitable[Any]]


class WorkerPool:
    """
    Pool of logical workers bound to a JobQueue.

    A worker is claimed through ``assign_job()``; the runner's return value
    completes the job and an exception fails it. Results that arrive after
    the worker lost the job are discarded.

    Example:
        pool = WorkerPool(queue, WorkerPoolConfig(size=4))
        pool.start()
        worker_id = pool.assign_job(job, runner)
        ...
        await pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        config: Optional[WorkerPoolConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pool and build the initial roster.

        Args:
            queue: Queue that receives completion/failure reports
            config: Pool configuration (defaults if None)
            bus: Event bus (the queue's bus if None)
            clock: Monotonic time source for heartbeats
        """
        self.queue = queue
        self.config = config or WorkerPoolConfig()
        self.bus = bus or queue.bus
        self._clock = clock

        self._workers: dict[str, Worker] = {}
        self._job_workers: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._timeouts: dict[str, int] = {}
        self._reset_handles: dict[str, asyncio.TimerHandle] = {}
        self._scaled_ids = itertools.count()

        self._watchdog = PeriodicTask(
            "heartbeat-watchdog",
            self.config.heartbeat_interval,
            self.check_heartbeats,
        )
        self._unsubscribe = self.bus.subscribe(EventType.JOB_CANCELLED, self._on_job_cancelled)

        self._initialize_workers()

    # ==================== Roster ====================

    def _initialize_workers(self) -> None:
        groups = list(self.config.capabilities.items())
        per_group = math.ceil(self.config.size / len(groups)) if self.config.size else 0

        for group, capabilities in groups:
            for i in range(per_group):
                if len(self._workers) >= self.config.size:
                    break
                self._add_worker(f"{group}-{i}", capabilities)

        logger.info(f"Worker pool initialized with {len(self._workers)} workers")

    def _add_worker(self, worker_id: str, capabilities: Iterable[str]) -> Worker:
        worker = Worker(
            id=worker_id,
            capabilities=frozenset(capabilities),
            last_heartbeat=self._clock(),
        )
        self._workers[worker_id] = worker
        logger.debug(f"Added worker {worker_id} with capabilities: {', '.join(sorted(worker.capabilities))}")
        self.bus.publish(WorkerAddedEvent(worker_id=worker_id, capabilities=worker.capabilities))
        return worker

    def _next_scaled_id(self) -> str:
        while True:
            worker_id = f"worker-{next(self._scaled_ids)}"
            if worker_id not in self._workers:
                return worker_id

    @property
    def size(self) -> int:
        return len(self._workers)

    def get_worker(self, worker_id: str) -> Optional[WorkerInfo]:
        worker = self._workers.get(worker_id)
        return worker.info(self._clock()) if worker else None

    def get_workers(self) -> list[WorkerInfo]:
        now = self._clock()
        return [worker.info(now) for worker in self._workers.values()]

    def get_available_workers(self, job_type: Optional[str] = None) -> list[WorkerInfo]:
        now = self._clock()
        return [
            worker.info(now)
            for worker in self._workers.values()
            if worker.status == WorkerStatus.IDLE and worker.accepts(job_type)
        ]

    def has_available_worker(self, job_type: Optional[str] = None) -> bool:
        return self._find_available_worker(job_type) is not None

    def get_worker_for_job(self, job_id: str) -> Optional[str]:
        return self._job_workers.get(job_id)

    def get_stats(self) -> PoolStats:
        workers = list(self._workers.values())
        return PoolStats(
            total_workers=len(workers),
            idle_workers=sum(1 for w in workers if w.status == WorkerStatus.IDLE),
            busy_workers=sum(1 for w in workers if w.status == WorkerStatus.BUSY),
            error_workers=sum(1 for w in workers if w.status == WorkerStatus.ERROR),
            total_processed_jobs=sum(w.performance.completed for w in workers),
            total_failed_jobs=sum(w.performance.failed for w in workers),
        )

    def _find_available_worker(self, job_type: Optional[str]) -> Optional[Worker]:
        candidates = [
            worker for worker in self._workers.values()
            if worker.status == WorkerStatus.IDLE and worker.accepts(job_type)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda w: (w.performance.jobs_processed, w.id))

    # ==================== Assignment ====================

    def assign_job(self, job: Job, runner: JobRunner) -> Optional[str]:
        """
        Claim an idle worker for a job and start the runner.

        Args:
            job: Job in processing state
            runner: Coroutine function run as ``runner(job, context)``

        Returns:
            Worker id, or None when no capable worker is idle
        """
        if job.id in self._job_workers:
            logger.warning(f"Job {job.id} is already held by worker {self._job_workers[job.id]}")
            return None

        worker = self._find_available_worker(job.type)
        if worker is None:
            logger.warning(f"No available worker found for job type: {job.type}")
            return None

        loop = asyncio.get_running_loop()

        worker.status = WorkerStatus.BUSY
        worker.current_job = job.id
        worker.last_heartbeat = self._clock()
        worker.assignment += 1
        self._job_workers[job.id] = worker.id

        context = WorkerContext(self, worker.id, job.id, worker.assignment)
        task = loop.create_task(self._run(worker, job, runner, context), name=f"job:{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._forget_task(job_id, _t))

        logger.info(f"Job {job.id} assigned to worker {worker.id}")
        return worker.id

    def _forget_task(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _run(self, worker: Worker, job: Job, runner: JobRunner, context: WorkerContext) -> None:
        started = self._clock()
        try:
            result = await runner(job, context)
        except asyncio.CancelledError:
            self._release(worker, context, started, success=False)
            raise
        except Exception as e:
            if self._release(worker, context, started, success=False):
                logger.error(f"Worker {worker.id} failed job {job.id}: {e}")
                self.queue.fail_job(job.id, e)
            else:
                logger.info(f"Ignoring late failure of job {job.id} on worker {worker.id}")
            return

        if self._release(worker, context, started, success=True):
            logger.info(f"Worker {worker.id} completed job {job.id} in {self._clock() - started:.2f}s")
            self.queue.complete_job(job.id, result)
        else:
            logger.info(f"Discarding late result of job {job.id} from worker {worker.id}")

    def _owns(self, worker_id: str, job_id: str, assignment: int) -> bool:
        worker = self._workers.get(worker_id)
        return (
            worker is not None
            and worker.status == WorkerStatus.BUSY
            and worker.current_job == job_id
            and worker.assignment == assignment
        )

    def _release(self, worker: Worker, context: WorkerContext, started: float, success: bool) -> bool:
        """Return the worker to idle if it still owns the job."""
        if not self._owns(worker.id, context.job_id, context._assignment):
            return False
        worker.status = WorkerStatus.IDLE
        worker.current_job = None
        worker.last_heartbeat = self._clock()
        worker.performance.record(self._clock() - started, success)
        self._job_workers.pop(context.job_id, None)
        self._timeouts.pop(context.job_id, None)
        return True

    def heartbeat(self, worker_id: str) -> bool:
        """Refresh a worker's heartbeat. Returns False for unknown workers."""
        worker = self._workers.get(worker_id)
        if worker is None:
            return False
        worker.last_heartbeat = self._clock()
        return True

    def release_job(self, job_id: str) -> bool:
        """
        Detach a job from its worker without reporting to the queue.

        Used when a processing job is cancelled; the worker returns to idle
        and whatever the runner produces later is discarded.

        Returns:
            False if no worker holds the job
        """
        worker_id = self._job_workers.pop(job_id, None)
        if worker_id is None:
            return False
        worker = self._workers.get(worker_id)
        if worker is not None and worker.current_job == job_id:
            worker.status = WorkerStatus.IDLE
            worker.current_job = None
            worker.last_heartbeat = self._clock()
        self._timeouts.pop(job_id, None)
        logger.info(f"Job {job_id} released from worker {worker_id}")
        return True

    def _on_job_cancelled(self, event: JobCancelledEvent) -> None:
        if event.was_processing:
            self.release_job(event.job_id)
        self._timeouts.pop(event.job_id, None)

    # ==================== Heartbeat watchdog ====================

    def check_heartbeats(self, now: Optional[float] = None) -> list[str]:
        """
        Reset busy workers whose heartbeat is older than ``worker_timeout``.

        The stuck job is requeued up to ``max_timeout_retries`` times and
        failed after that. The worker sits in ``error`` for ``cooldown``
        seconds and then returns to idle.

        Returns:
            Ids of the workers that timed out in this sweep
        """
        now = self._clock() if now is None else now
        timed_out = []
        for worker in list(self._workers.values()):
            if worker.status != WorkerStatus.BUSY:
                continue
            if now - worker.last_heartbeat <= self.config.worker_timeout:
                continue
            timed_out.append(worker.id)
            self._handle_timeout(worker)
        return timed_out

    def _handle_timeout(self, worker: Worker) -> None:
        job_id = worker.current_job
        logger.warning(f"Worker {worker.id} timeout detected (job {job_id})")

        worker.status = WorkerStatus.ERROR
        worker.current_job = None
        worker.performance.record(self.config.worker_timeout, success=False)

        requeue = False
        if job_id is not None:
            self._job_workers.pop(job_id, None)
            attempts = self._timeouts.get(job_id, 0)
            requeue = attempts < self.config.max_timeout_retries
            self._timeouts[job_id] = attempts + 1

        self.bus.publish(WorkerTimeoutEvent(worker_id=worker.id, job_id=job_id, requeued=requeue))

        if job_id is not None:
            if requeue:
                self.queue.requeue_job(job_id, reason=f"worker {worker.id} timed out")
                self.queue.process_next_jobs()
            else:
                self._timeouts.pop(job_id, None)
                self.queue.fail_job(job_id, WorkerTimeoutError(worker.id, job_id, self.config.worker_timeout))

        self._schedule_reset(worker.id)

    def _schedule_reset(self, worker_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._reset_worker(worker_id)
            return
        previous = self._reset_handles.pop(worker_id, None)
        if previous is not None:
            previous.cancel()
        self._reset_handles[worker_id] = loop.call_later(self.config.cooldown, self._reset_worker, worker_id)

    def _reset_worker(self, worker_id: str) -> None:
        self._reset_handles.pop(worker_id, None)
        worker = self._workers.get(worker_id)
        if worker is None or worker.status != WorkerStatus.ERROR:
            return
        worker.status = WorkerStatus.IDLE
        worker.last_heartbeat = self._clock()
        logger.info(f"Worker {worker_id} restarted after timeout")
        self.queue.process_next_jobs()

    # ==================== Scaling ====================

    def scale_pool(self, target_size: int) -> int:
        """
        Grow or shrink the roster towards ``target_size``.

        Growth adds wildcard workers. Shrinking removes idle workers only,
        newest first, and keeps the last worker able to serve each job type.

        Returns:
            Pool size after scaling
        """
        target_size = max(0, int(target_size))
        current = len(self._workers)

        if target_size > current:
            for _ in range(target_size - current):
                self._add_worker(self._next_scaled_id(), (WILDCARD,))
            logger.info(f"Scaled worker pool up from {current} to {len(self._workers)}")
            self.queue.process_next_jobs()

        elif target_size < current:
            to_remove = current - target_size
            for worker in reversed(list(self._workers.values())):
                if to_remove == 0:
                    break
                if worker.status != WorkerStatus.IDLE or self._is_last_provider(worker):
                    continue
                del self._workers[worker.id]
                to_remove -= 1
                self.bus.publish(WorkerRemovedEvent(worker_id=worker.id))
            logger.info(
                f"Scaled worker pool down from {current} to {len(self._workers)} "
                f"(target {target_size})"
            )

        return len(self._workers)

    def _is_last_provider(self, worker: Worker) -> bool:
        others = [w for w in self._workers.values() if w is not worker]
        if any(WILDCARD in w.capabilities for w in others):
            return False
        if WILDCARD in worker.capabilities:
            return not others
        return any(not any(w.accepts(cap) for w in others) for cap in worker.capabilities)

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the heartbeat watchdog. Requires a running event loop."""
        self._watchdog.start()

    async def stop(self) -> None:
        """Stop the watchdog and abandon all in-flight work."""
        await self._watchdog.stop()
        for handle in self._reset_handles.values():
            handle.cancel()
        self._reset_handles.clear()

        tasks = list(self._tasks.values())
        for job_id in list(self._job_workers):
            self.release_job(job_id)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker pool stopped")

    def close(self) -> None:
        """Drop the pool's event subscriptions."""
        self._unsubscribe()
