"""
Conversion Service Tests
========================
Tests for the facade and build_service() wiring.
"""

import asyncio
import json

import pytest

from modporter import ConversionInput, ServiceConfig, build_service
from modporter.app.config import PersistenceConfig, QueueConfig, WorkerPoolConfig
from modporter.app.events import EventType
from modporter.jobs.models import JobStatus
from modporter.pipeline.stages import FunctionStage, PipelineStage


async def wait_for(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def collaborators():
    return [
        FunctionStage(stage, lambda ctx, name=stage.value: {"stage": name, "mod": ctx.data["input_path"]})
        for stage in PipelineStage
    ]


@pytest.fixture
def config():
    return ServiceConfig(
        queue=QueueConfig(max_concurrent=2),
        pool=WorkerPoolConfig(size=2, capabilities={"worker": ("*",)}),
        enable_allocator=False,
    )


class TestConversionInput:
    """Tests for ConversionInput."""

    def test_requires_input_path(self):
        with pytest.raises(ValueError):
            ConversionInput(input_path="")

    def test_to_dict(self):
        data = ConversionInput("mods/ore.jar", mod_id="ores").to_dict()
        assert data["input_path"] == "mods/ore.jar"
        assert data["mod_id"] == "ores"
        assert data["package_addon"] is True


class TestBuildService:
    """Tests for build_service()."""

    def test_defaults(self):
        service = build_service()
        assert service.pool.size == 4
        assert service.allocator is not None
        assert service.queue.max_concurrent == 5

    def test_allocator_disabled(self, config):
        assert build_service(config).allocator is None


class TestFacade:
    """End-to-end calls through ConversionService."""

    @pytest.mark.asyncio
    async def test_create_and_complete(self, config):
        service = build_service(config, collaborators())
        completed = []
        service.on(EventType.JOB_COMPLETED, lambda e: completed.append(e.job_id))
        service.start()

        job_id = service.create_conversion_job(ConversionInput("mods/ore.jar"), priority=3)
        await wait_for(lambda: service.get_job_status(job_id).status == JobStatus.COMPLETED)

        assert completed == [job_id]
        result = service.get_job_result(job_id)
        assert result["success"] is True
        assert result["stages"]["validation"] == {"stage": "validation", "mod": "mods/ore.jar"}
        assert service.get_job_status(job_id).progress == 100.0
        assert service.get_queue_stats().completed == 1
        assert service.get_worker_stats().total_processed_jobs == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_accepts_dict_input(self, config):
        service = build_service(config, collaborators())
        service.start()
        job_id = service.create_conversion_job({"input_path": "a.jar", "mod_name": "A"})
        await wait_for(lambda: service.get_job_status(job_id).status == JobStatus.COMPLETED)
        assert service.get_jobs(status="completed")[0].data["mod_name"] == "A"
        await service.stop()

    @pytest.mark.asyncio
    async def test_cancel_and_priority_before_start(self, config):
        service = build_service(config, collaborators())
        first = service.create_conversion_job(ConversionInput("a.jar"))
        second = service.create_conversion_job(ConversionInput("b.jar"))

        assert service.update_job_priority(second, 9)
        assert [job.id for job in service.get_jobs()] == [second, first]
        assert service.cancel_job(first)
        assert not service.cancel_job(first)
        assert service.get_job_status(first).status == JobStatus.CANCELLED
        assert service.get_job_result(first) is None

        service.start()
        await wait_for(lambda: service.get_job_status(second).status == JobStatus.COMPLETED)
        await service.stop()

    @pytest.mark.asyncio
    async def test_on_accepts_channel_name(self, config):
        service = build_service(config, collaborators())
        added = []
        unsubscribe = service.on("job:added", added.append)
        service.create_conversion_job(ConversionInput("a.jar"))
        unsubscribe()
        service.create_conversion_job(ConversionInput("b.jar"))
        assert len(added) == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_snapshot(self, config, tmp_path):
        path = tmp_path / "queue.json"
        config.queue.persistence = PersistenceConfig(enabled=True, file_path=path, debounce=30)
        service = build_service(config, collaborators())
        service.start()
        job_id = service.create_conversion_job(ConversionInput("a.jar"))
        await wait_for(lambda: service.get_job_status(job_id).status == JobStatus.COMPLETED)
        await service.stop()

        records = json.loads(path.read_text(encoding="utf-8"))
        assert records[0]["id"] == job_id
        assert records[0]["status"] == "completed"
