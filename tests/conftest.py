import pytest
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from modporter.app.config import PersistenceConfig, QueueConfig, WorkerPoolConfig
from modporter.app.events import EventBus, EventType
from modporter.jobs.queue import JobQueue
from modporter.resources.sampler import SystemResources


class EventRecorder:
    """Collects published events so tests can assert outside handlers."""

    def __init__(self, bus: EventBus):
        self.events = []
        for event_type in EventType:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: EventType) -> list:
        return [e for e in self.events if e.event_type == event_type]

    def types(self) -> list:
        return [e.event_type for e in self.events]

    def clear(self) -> None:
        self.events.clear()


class FixedSampler:
    """Sampler double returning a preset resource snapshot."""

    def __init__(self, resources: SystemResources):
        self.resources = resources
        self.calls = 0

    def sample(self) -> SystemResources:
        self.calls += 1
        return self.resources


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_resources(cpu: float = 8, memory_mb: float = 16384, disk_mb: float = 100000) -> SystemResources:
    return SystemResources(
        total_cpu=cpu,
        available_cpu=cpu,
        total_memory_mb=memory_mb,
        available_memory_mb=memory_mb,
        total_disk_mb=disk_mb,
        available_disk_mb=disk_mb,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def queue(bus):
    """Queue with two processing slots and no persistence."""
    return JobQueue(QueueConfig(max_concurrent=2), bus=bus)


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "state" / "job-queue.json"


@pytest.fixture
def persistent_config(snapshot_path):
    return QueueConfig(
        max_concurrent=2,
        persistence=PersistenceConfig(enabled=True, file_path=snapshot_path, debounce=0.01),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wildcard_pool_config():
    """Two workers that accept any job type, fast watchdog timings."""
    return WorkerPoolConfig(
        size=2,
        capabilities={"worker": ("*",)},
        heartbeat_interval=0.05,
        worker_timeout=1.0,
        cooldown=0.01,
        max_timeout_retries=1,
    )
