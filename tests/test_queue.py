"""
Job Queue Tests
===============
Tests for ordering, dispatch, state transitions and events.
"""

import pytest
from datetime import timedelta

from modporter.app.config import QueueConfig
from modporter.app.events import EventType
from modporter.errors import ErrorCode, JobError, WorkerTimeoutError
from modporter.jobs.models import JobStatus, generate_job_id
from modporter.jobs.queue import JobQueue


def hold_dispatch(queue):
    """Push every dispatched job straight back to pending (no workers)."""
    return queue.bus.subscribe(
        EventType.JOB_PROCESS,
        lambda event: queue.requeue_job(event.job_id, reason="held"),
    )


class TestJobIds:
    """Tests for job id generation."""

    def test_format(self):
        job_id = generate_job_id()
        prefix, millis, suffix = job_id.split("_")
        assert prefix == "job"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_unique(self):
        assert len({generate_job_id() for _ in range(500)}) == 500


class TestAddJob:
    """Tests for add_job()."""

    def test_default_priority_applied(self, queue):
        job = queue.add_job("conversion", {"input_path": "a.jar"})
        assert job.priority == 1

    def test_explicit_zero_priority_kept(self, queue):
        job = queue.add_job("conversion", {}, priority=0)
        assert job.priority == 0

    def test_dispatches_when_slot_free(self, queue, recorder):
        job = queue.add_job("conversion", {})
        assert job.status == JobStatus.PROCESSING
        assert recorder.types() == [EventType.JOB_ADDED, EventType.JOB_PROCESS]

    def test_respects_max_concurrent(self, queue):
        for _ in range(5):
            queue.add_job("conversion", {})
        stats = queue.get_stats()
        assert stats.processing == 2
        assert stats.pending == 3

    def test_returns_copy(self, queue):
        job = queue.add_job("conversion", {"x": 1})
        job.priority = 99
        job.status = JobStatus.FAILED
        stored = queue.get_job(job.id)
        assert stored.priority == 1
        assert stored.status == JobStatus.PROCESSING


class TestOrdering:
    """Tests for priority dispatch order."""

    def test_high_priority_dispatched_first(self, queue, recorder):
        """Three jobs at 1, 1, 5 with two slots: the priority 5 job goes first."""
        unsubscribe = hold_dispatch(queue)
        low_a = queue.add_job("conversion", {}, priority=1)
        low_b = queue.add_job("conversion", {}, priority=1)
        high = queue.add_job("conversion", {}, priority=5)
        unsubscribe()
        recorder.clear()

        assert queue.process_next_jobs() == 2
        dispatched = [e.job_id for e in recorder.of_type(EventType.JOB_PROCESS)]
        assert dispatched == [high.id, low_a.id]
        assert queue.get_job(low_b.id).status == JobStatus.PENDING

    def test_fifo_within_priority(self, queue):
        unsubscribe = hold_dispatch(queue)
        ids = [queue.add_job("conversion", {}, priority=3).id for _ in range(4)]
        unsubscribe()
        assert [job.id for job in queue.get_jobs()] == ids

    def test_get_jobs_filters(self, queue):
        queue.add_job("conversion", {})
        queue.add_job("analysis", {})
        queue.add_job("analysis", {})
        assert len(queue.get_jobs(job_type="analysis")) == 2
        assert len(queue.get_jobs(status="pending")) == 1
        assert len(queue.get_jobs(status=JobStatus.PROCESSING, job_type="conversion")) == 1

    def test_requeued_job_not_offered_twice_in_one_call(self, queue, recorder):
        unsubscribe = hold_dispatch(queue)
        queue.add_job("conversion", {})
        unsubscribe()
        offers = recorder.of_type(EventType.JOB_PROCESS)
        assert len(offers) == 1


class TestTransitions:
    """Tests for complete/fail/cancel/requeue."""

    def test_complete(self, queue, recorder):
        job = queue.add_job("conversion", {})
        assert queue.complete_job(job.id, {"ok": True})
        stored = queue.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"ok": True}
        assert stored.finished_at is not None
        assert len(recorder.of_type(EventType.JOB_COMPLETED)) == 1

    def test_double_complete_is_noop(self, queue, recorder):
        job = queue.add_job("conversion", {})
        assert queue.complete_job(job.id, 1)
        assert not queue.complete_job(job.id, 2)
        assert not queue.fail_job(job.id, "late")
        assert queue.get_job(job.id).result == 1
        assert len(recorder.of_type(EventType.JOB_COMPLETED)) == 1
        assert recorder.of_type(EventType.JOB_FAILED) == []

    def test_complete_pending_rejected(self, queue):
        unsubscribe = hold_dispatch(queue)
        job = queue.add_job("conversion", {})
        unsubscribe()
        assert not queue.complete_job(job.id)

    def test_fail_records_error(self, queue, recorder):
        job = queue.add_job("conversion", {})
        assert queue.fail_job(job.id, WorkerTimeoutError("w-1", job.id, 300))
        stored = queue.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert isinstance(stored.error, JobError)
        assert stored.error.code == ErrorCode.E200.name
        assert stored.error.error_type == "WorkerTimeoutError"
        assert recorder.of_type(EventType.JOB_FAILED)[0].error == stored.error

    def test_fail_with_message(self, queue):
        job = queue.add_job("conversion", {})
        queue.fail_job(job.id, "boom")
        assert queue.get_job(job.id).error.message == "boom"

    def test_completion_frees_slot(self, queue):
        first = queue.add_job("conversion", {})
        queue.add_job("conversion", {})
        third = queue.add_job("conversion", {})
        assert queue.get_job(third.id).status == JobStatus.PENDING
        queue.complete_job(first.id)
        assert queue.get_job(third.id).status == JobStatus.PROCESSING

    def test_cancel_pending(self, queue, recorder):
        unsubscribe = hold_dispatch(queue)
        job = queue.add_job("conversion", {})
        unsubscribe()
        assert queue.cancel_job(job.id)
        assert queue.get_job(job.id).status == JobStatus.CANCELLED
        event = recorder.of_type(EventType.JOB_CANCELLED)[0]
        assert not event.was_processing

    def test_cancel_processing_frees_slot(self, queue, recorder):
        first = queue.add_job("conversion", {})
        queue.add_job("conversion", {})
        third = queue.add_job("conversion", {})
        assert queue.cancel_job(first.id)
        assert recorder.of_type(EventType.JOB_CANCELLED)[0].was_processing
        assert queue.get_job(third.id).status == JobStatus.PROCESSING
        assert queue.processing_count == 2

    def test_cancel_emits_before_dispatch(self, queue, recorder):
        first = queue.add_job("conversion", {})
        queue.add_job("conversion", {})
        queue.add_job("conversion", {})
        recorder.clear()
        queue.cancel_job(first.id)
        assert recorder.types() == [EventType.JOB_CANCELLED, EventType.JOB_PROCESS]

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_cancel_terminal_returns_false(self, queue, recorder, finish):
        job = queue.add_job("conversion", {})
        if finish == "complete":
            queue.complete_job(job.id)
        elif finish == "fail":
            queue.fail_job(job.id, "x")
        else:
            queue.cancel_job(job.id)
        recorder.clear()
        assert not queue.cancel_job(job.id)
        assert recorder.events == []

    def test_unknown_ids(self, queue, recorder):
        assert not queue.cancel_job("missing")
        assert not queue.complete_job("missing")
        assert not queue.fail_job("missing", "x")
        assert not queue.requeue_job("missing")
        assert not queue.update_job_priority("missing", 3)
        assert queue.get_job("missing") is None
        assert recorder.events == []

    def test_requeue_does_not_dispatch(self, queue, recorder):
        job = queue.add_job("conversion", {})
        recorder.clear()
        assert queue.requeue_job(job.id, reason="backpressure")
        assert queue.get_job(job.id).status == JobStatus.PENDING
        assert recorder.types() == [EventType.JOB_REQUEUED]
        assert recorder.events[0].reason == "backpressure"

    def test_attempts_counted(self, queue):
        job = queue.add_job("conversion", {})
        queue.requeue_job(job.id)
        queue.process_next_jobs()
        assert queue.get_job(job.id).attempts == 2


class TestPriorityUpdates:
    """Tests for update_job_priority()."""

    def test_resorts_pending(self, queue, recorder):
        unsubscribe = hold_dispatch(queue)
        first = queue.add_job("conversion", {})
        second = queue.add_job("conversion", {})
        unsubscribe()
        assert queue.update_job_priority(second.id, 10)
        assert [job.id for job in queue.get_jobs()] == [second.id, first.id]
        event = recorder.of_type(EventType.JOB_PRIORITY)[0]
        assert (event.old_priority, event.priority) == (1, 10)

    def test_processing_rejected(self, queue):
        job = queue.add_job("conversion", {})
        assert not queue.update_job_priority(job.id, 10)


class TestSettings:
    """Tests for runtime setters and cleanup."""

    def test_raise_max_concurrent_dispatches(self, queue):
        for _ in range(4):
            queue.add_job("conversion", {})
        assert queue.set_max_concurrent(3)
        assert queue.get_stats().processing == 3

    @pytest.mark.parametrize("value", [0, -1])
    def test_invalid_max_concurrent(self, queue, value):
        assert not queue.set_max_concurrent(value)
        assert queue.max_concurrent == 2

    def test_default_priority(self, queue):
        queue.set_default_priority(4)
        assert queue.add_job("conversion", {}).priority == 4

    def test_clear_finished(self, queue):
        done = queue.add_job("conversion", {})
        queue.add_job("conversion", {})
        queue.complete_job(done.id)
        assert queue.clear_finished() == 1
        assert queue.get_job(done.id) is None
        assert len(queue) == 1

    def test_clear_finished_respects_age(self, queue):
        done = queue.add_job("conversion", {})
        queue.complete_job(done.id)
        assert queue.clear_finished(older_than=timedelta(hours=1)) == 0
        assert queue.get_job(done.id) is not None


class TestReentrancy:
    """Dispatch triggered from inside an event handler."""

    def test_handler_completing_job_continues_dispatch(self, bus, recorder):
        queue = JobQueue(QueueConfig(max_concurrent=1), bus=bus)
        unsubscribe = hold_dispatch(queue)
        bus.subscribe(EventType.JOB_PROCESS, lambda e: queue.complete_job(e.job_id, "done"))
        ids = [queue.add_job("analysis", {}).id for _ in range(3)]
        unsubscribe()

        queue.process_next_jobs()
        assert all(queue.get_job(job_id).status == JobStatus.COMPLETED for job_id in ids)
        assert queue.processing_count == 0
