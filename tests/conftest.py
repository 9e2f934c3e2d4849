import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from clipflow.api.main import create_app
from clipflow.queue import SQLiteJobQueue, StageRegistry, WorkerPoolManager, passthrough_handler


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0, days=0):
        self.now += timedelta(seconds=seconds, minutes=minutes, days=days)


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_queue.db"
        yield str(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db, clock):
    """SQLiteJobQueue on a temp database, driven by a fake clock."""
    q = SQLiteJobQueue(temp_db, lease_seconds=60, clock=clock)
    yield q
    q.close()


@pytest.fixture
def job(queue):
    return queue.create_job({"title": "Test video"})


@pytest.fixture
def passthrough_registry():
    registry = StageRegistry()
    for stage in ("upload", "split_chunks", "store_chunks", "queue_analysis",
                  "ai_analysis", "assemble_timeline", "render_video"):
        registry.register(stage, passthrough_handler)
    return registry


@pytest.fixture
def pool(queue, passthrough_registry):
    manager = WorkerPoolManager(
        queue,
        passthrough_registry,
        worker_counts={"upload": 1},
        poll_interval_s=0.01,
        recovery_interval_s=0,
    )
    yield manager
    if manager.is_running:
        manager.stop(timeout=5)


@pytest.fixture
async def client(queue, pool):
    app = create_app(queue, pool)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
