"""Tests for the worker pool manager (real threads)."""

import threading
import time

import pytest

from clipflow.queue import (
    JobStatus,
    PoolStateError,
    StageRegistry,
    UnknownStageError,
    WorkerNotFoundError,
    WorkerPoolManager,
    passthrough_handler,
)


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestLifecycle:
    def test_start_spawns_named_workers(self, pool):
        started = pool.start({"upload": 2, "render_video": 1})

        assert started == ["upload-worker-1", "upload-worker-2", "render_video-worker-1"]
        assert pool.is_running
        assert {s.worker_id for s in pool.get_worker_statuses()} == set(started)

    def test_start_twice_raises(self, pool):
        pool.start()
        with pytest.raises(RuntimeError):
            pool.start()

    def test_start_validates_before_spawning(self, queue):
        registry = StageRegistry({"upload": passthrough_handler})
        manager = WorkerPoolManager(queue, registry, recovery_interval_s=0)

        with pytest.raises(UnknownStageError) as exc_info:
            manager.start({"upload": 1, "render_video": 1})
        assert exc_info.value.stages == ["render_video"]
        assert not manager.is_running
        assert manager.get_worker_statuses() == []

    def test_start_rejects_unknown_stage(self, pool):
        with pytest.raises(UnknownStageError):
            pool.start({"transcode": 1})

    def test_stop_clears_pool(self, pool):
        pool.start({"upload": 2})
        pool.stop(timeout=5)

        assert not pool.is_running
        assert pool.get_worker_statuses() == []

    def test_stop_waits_for_in_flight_item(self, queue, passthrough_registry):
        entered = threading.Event()
        release = threading.Event()

        def slow(stage, job_id, payload):
            entered.set()
            release.wait(5)
            return {"slow": True}

        passthrough_registry.register("upload", slow)
        manager = WorkerPoolManager(
            queue, passthrough_registry, worker_counts={"upload": 1},
            poll_interval_s=0.01, recovery_interval_s=0,
        )
        job = queue.create_job({"title": "x", "initial_stage": "upload"})
        manager.start()
        assert entered.wait(5)

        stopper = threading.Thread(target=manager.stop)
        stopper.start()
        time.sleep(0.05)
        assert stopper.is_alive()

        release.set()
        stopper.join(5)
        assert not stopper.is_alive()
        assert queue.get_job(job.id).result_data["upload"] == {"slow": True}


class TestResize:
    def test_add_worker(self, pool):
        pool.start({"upload": 1})
        worker_id = pool.add_worker("upload")

        assert worker_id == "upload-worker-2"
        assert pool.get_system_health().total_workers == 2

    def test_worker_ids_not_reused_after_removal(self, pool):
        pool.start({"upload": 2})
        pool.remove_worker("upload-worker-2")

        assert pool.add_worker("upload") == "upload-worker-3"

    def test_add_worker_requires_running_pool(self, pool):
        with pytest.raises(PoolStateError):
            pool.add_worker("upload")

    def test_add_worker_unknown_stage(self, pool):
        pool.start({"upload": 1})
        with pytest.raises(UnknownStageError):
            pool.add_worker("transcode")

    def test_remove_worker(self, pool):
        pool.start({"upload": 2})

        assert pool.remove_worker("upload-worker-1") is True
        assert [s.worker_id for s in pool.get_worker_statuses()] == ["upload-worker-2"]

    def test_remove_unknown_worker(self, pool):
        with pytest.raises(WorkerNotFoundError):
            pool.remove_worker("nope")

    def test_restart_worker(self, pool):
        pool.start({"upload": 1})
        assert wait_for(lambda: pool.get_worker_details("upload-worker-1").healthy)

        assert pool.restart_worker("upload-worker-1") == "upload-worker-1"
        details = pool.get_worker_details("upload-worker-1")
        assert details.running is True
        assert details.jobs_processed == 0

    def test_restart_aborts_when_pool_stops_meanwhile(self, pool):
        pool.start({"upload": 1})
        worker = pool._workers["upload-worker-1"]
        original_stop = worker.stop

        def stop_then_pool_stops(wait=True, timeout=None):
            stopped = original_stop(wait=wait, timeout=timeout)
            del worker.stop
            pool.stop(timeout=5)
            return stopped

        worker.stop = stop_then_pool_stops
        with pytest.raises(PoolStateError):
            pool.restart_worker("upload-worker-1")

        assert not pool.is_running
        assert pool.get_worker_statuses() == []
        assert not any(t.name == "upload-worker-1" and t.is_alive() for t in threading.enumerate())


class TestProcessing:
    def test_pool_runs_job_through_pipeline(self, queue, passthrough_registry):
        manager = WorkerPoolManager(
            queue,
            passthrough_registry,
            worker_counts={stage: 1 for stage in passthrough_registry.stages},
            poll_interval_s=0.01,
            recovery_interval_s=0,
        )
        job = queue.create_job({"title": "x", "initial_stage": "upload"})
        manager.start()
        try:
            assert wait_for(lambda: queue.get_job(job.id).status == JobStatus.COMPLETED)
        finally:
            manager.stop(timeout=5)

        assert queue.get_job(job.id).progress_percentage == 100


class TestHealth:
    def test_system_health(self, pool):
        pool.start({"upload": 2, "render_video": 1})
        assert wait_for(lambda: pool.get_system_health().healthy_workers == 3)

        health = pool.get_system_health()
        assert health.total_workers == 3
        assert health.running_workers == 3
        assert health.workers_by_stage["upload"] == 2
        assert health.workers_by_stage["ai_analysis"] == 0
        assert health.system_uptime >= 0

        data = health.model_dump(by_alias=True)
        assert {"totalWorkers", "runningWorkers", "healthyWorkers", "workersByStage",
                "systemUptime", "lastHealthCheck"} <= set(data)

    def test_worker_details_unknown(self, pool):
        with pytest.raises(WorkerNotFoundError):
            pool.get_worker_details("nope")

    def test_health_before_start(self, pool):
        health = pool.get_system_health()
        assert health.total_workers == 0
        assert health.system_uptime == 0


class TestSweep:
    def test_sweep_once_recovers_expired_claims(self, queue, pool, clock):
        queue.create_job({"title": "x", "initial_stage": "upload"})
        queue.claim_next_item("upload", "dead-worker", lease_seconds=5)
        clock.advance(seconds=6)

        assert pool.sweep_once() == 1
        assert queue.get_queue_stats().by_stage["upload"].waiting == 1

    def test_sweep_thread_runs(self, queue, passthrough_registry, clock):
        manager = WorkerPoolManager(
            queue, passthrough_registry, worker_counts={}, recovery_interval_s=0.05
        )
        queue.create_job({"title": "x", "initial_stage": "upload"})
        queue.claim_next_item("upload", "dead-worker", lease_seconds=5)
        clock.advance(seconds=6)

        manager.start()
        try:
            assert wait_for(lambda: queue.get_queue_stats().by_stage["upload"].waiting == 1)
        finally:
            manager.stop(timeout=5)

    def test_sweep_thread_survives_unexpected_errors(self, queue, passthrough_registry, monkeypatch, caplog):
        calls = []

        def flaky_recover(stuck_minutes):
            calls.append(stuck_minutes)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        monkeypatch.setattr(queue, "recover_stuck_jobs", flaky_recover)
        manager = WorkerPoolManager(
            queue, passthrough_registry, worker_counts={}, recovery_interval_s=0.01
        )
        manager.start()
        try:
            assert wait_for(lambda: len(calls) >= 3)
        finally:
            manager.stop(timeout=5)

        assert "Recovery sweep failed" in caplog.text
