"""
Queue Persistence Tests
=======================
Tests for snapshot writes, restore and failure handling.
"""

import asyncio
import json

import pytest

from modporter.app.events import EventBus, EventType
from modporter.jobs.models import Job, JobStatus, utc_now
from modporter.jobs.persistence import QueueSnapshotStore
from modporter.jobs.queue import JobQueue


class TestSnapshotStore:
    """Tests for QueueSnapshotStore."""

    def test_missing_file_loads_empty(self, snapshot_path):
        assert QueueSnapshotStore(snapshot_path).load() == []

    def test_corrupt_file_loads_empty(self, snapshot_path):
        snapshot_path.parent.mkdir(parents=True)
        snapshot_path.write_text("{not json", encoding="utf-8")
        assert QueueSnapshotStore(snapshot_path).load() == []

    def test_non_list_root_loads_empty(self, snapshot_path):
        snapshot_path.parent.mkdir(parents=True)
        snapshot_path.write_text('{"id": "x"}', encoding="utf-8")
        assert QueueSnapshotStore(snapshot_path).load() == []

    def test_save_and_load(self, snapshot_path):
        store = QueueSnapshotStore(snapshot_path)
        job = Job(id="job_1_abcdef012", type="conversion", data={"input_path": "a.jar"},
                  priority=3, created_at=utc_now(), sequence=7)
        assert store.save([job])

        records = json.loads(snapshot_path.read_text(encoding="utf-8"))
        assert records[0]["id"] == "job_1_abcdef012"
        assert records[0]["status"] == "pending"

        loaded = store.load()
        assert loaded[0].id == job.id
        assert loaded[0].priority == 3
        assert loaded[0].sequence == 7
        assert loaded[0].created_at == job.created_at

    def test_processing_demoted_on_load(self, snapshot_path):
        store = QueueSnapshotStore(snapshot_path)
        job = Job(id="job_2_abcdef012", type="conversion", data={}, priority=1,
                  created_at=utc_now(), status=JobStatus.PROCESSING, started_at=utc_now())
        store.save([job])
        loaded = store.load()
        assert loaded[0].status == JobStatus.PENDING
        assert loaded[0].started_at is None

    def test_no_temp_files_left(self, snapshot_path):
        store = QueueSnapshotStore(snapshot_path)
        store.save([])
        assert [p.name for p in snapshot_path.parent.iterdir()] == [snapshot_path.name]

    def test_write_failure_returns_false(self, tmp_path):
        # Target is an existing directory, so the final rename fails
        target = tmp_path / "occupied"
        target.mkdir()
        store = QueueSnapshotStore(target)
        assert not store.save([])
        assert not any(p.name.endswith(".tmp") for p in tmp_path.iterdir())

    @pytest.mark.asyncio
    async def test_save_async(self, snapshot_path):
        store = QueueSnapshotStore(snapshot_path)
        assert await store.save_async("[]")
        assert snapshot_path.read_text(encoding="utf-8") == "[]"


class TestQueuePersistence:
    """Snapshot behaviour driven through JobQueue."""

    def test_round_trip_without_loop(self, persistent_config, snapshot_path):
        """With no event loop running, mutations write through."""
        queue = JobQueue(persistent_config, bus=EventBus())
        done = queue.add_job("conversion", {"input_path": "a.jar"}, priority=2)
        running = queue.add_job("analysis", {"input_path": "b.jar"})
        waiting = queue.add_job("validation", {"input_path": "c.jar"}, priority=5)
        queue.complete_job(done.id, {"addon": "a.mcaddon"})
        assert snapshot_path.exists()

        restored = JobQueue(persistent_config, bus=EventBus())
        assert {job.id for job in restored.get_jobs()} == {done.id, running.id, waiting.id}
        assert restored.get_job(done.id).status == JobStatus.COMPLETED
        assert restored.get_job(done.id).result == {"addon": "a.mcaddon"}
        assert restored.get_job(running.id).status == JobStatus.PENDING
        assert restored.get_job(waiting.id).status == JobStatus.PENDING
        assert restored.processing_count == 0

    def test_restored_jobs_dispatch_in_order(self, persistent_config):
        queue = JobQueue(persistent_config, bus=EventBus())
        low = queue.add_job("conversion", {}, priority=1)
        high = queue.add_job("conversion", {}, priority=5)

        bus = EventBus()
        offered = []
        bus.subscribe(EventType.JOB_PROCESS, lambda e: offered.append(e.job_id))
        restored = JobQueue(persistent_config, bus=bus)
        assert offered == []
        restored.process_next_jobs()
        assert offered == [high.id, low.id]

    def test_new_jobs_sort_after_restored(self, persistent_config):
        queue = JobQueue(persistent_config, bus=EventBus())
        queue.set_max_concurrent(1)
        first = queue.add_job("conversion", {})
        second = queue.add_job("conversion", {})

        restored = JobQueue(persistent_config, bus=EventBus())
        third = restored.add_job("conversion", {})
        assert restored.get_job(third.id).sequence > restored.get_job(second.id).sequence
        assert [job.id for job in restored.get_jobs()][:2] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_debounced_write(self, persistent_config, snapshot_path):
        queue = JobQueue(persistent_config, bus=EventBus())
        for _ in range(5):
            queue.add_job("conversion", {})
        assert not snapshot_path.exists()

        await asyncio.sleep(0.1)
        await queue.flush()
        records = json.loads(snapshot_path.read_text(encoding="utf-8"))
        assert len(records) == 5

    @pytest.mark.asyncio
    async def test_flush_writes_latest_state(self, persistent_config, snapshot_path):
        queue = JobQueue(persistent_config, bus=EventBus())
        job = queue.add_job("conversion", {})
        queue.cancel_job(job.id)
        assert await queue.flush()
        records = json.loads(snapshot_path.read_text(encoding="utf-8"))
        assert records[0]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_flush_without_persistence(self, queue):
        assert not await queue.flush()
