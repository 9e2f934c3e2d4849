"""Tests for stuck-claim recovery and concurrent claim safety."""

import threading

import pytest

from clipflow.queue import ItemStateError, ItemStatus, JobStatus, LogLevel, SQLiteJobQueue, ValidationError


class TestRecoverStuckJobs:
    """Test crash recovery of abandoned claims."""

    def test_expired_lease_recovered(self, queue, clock):
        job = queue.create_job({"title": "x", "priority": "high", "initial_stage": "upload"})
        item = queue.claim_next_item("upload", "upload-worker-1", lease_seconds=5)
        clock.advance(seconds=6)

        assert queue.recover_stuck_jobs(0) == 1

        recovered = queue.get_item(item.id)
        assert recovered.status == ItemStatus.WAITING
        assert recovered.worker_id is None
        assert recovered.claimed_at is None
        assert recovered.attempts == 0
        assert queue.get_job(job.id).status == JobStatus.QUEUED

        warning = queue.get_job_logs(job.id, level="warn")[0]
        assert warning.level == LogLevel.WARN
        assert "Lease expired" in warning.message
        assert warning.metadata["worker_id"] == "upload-worker-1"
        assert warning.metadata["reason"] == "lease_expired"

    def test_recovered_item_claimable_immediately(self, queue, clock):
        queue.create_job({"title": "x", "initial_stage": "upload"})
        item = queue.claim_next_item("upload", "w1", lease_seconds=5)
        clock.advance(seconds=6)
        queue.recover_stuck_jobs(10)

        reclaimed = queue.claim_next_item("upload", "w2")
        assert reclaimed.id == item.id
        assert reclaimed.worker_id == "w2"

    def test_recovers_exactly_stuck_items(self, queue, clock):
        short = queue.create_job({"title": "short lease", "initial_stage": "upload"})
        long = queue.create_job({"title": "long lease", "initial_stage": "split_chunks"})
        waiting = queue.create_job({"title": "waiting", "initial_stage": "store_chunks"})
        done = queue.create_job({"title": "done", "initial_stage": "ai_analysis"})

        short_item = queue.claim_next_item("upload", "w1", lease_seconds=5)
        long_item = queue.claim_next_item("split_chunks", "w2", lease_seconds=3600)
        done_item = queue.claim_next_item("ai_analysis", "w3", lease_seconds=5)
        queue.complete_item(done_item.id)

        clock.advance(seconds=6)
        assert queue.recover_stuck_jobs(10) == 1
        assert queue.get_item(short_item.id).status == ItemStatus.WAITING
        assert queue.get_item(long_item.id).status == ItemStatus.CLAIMED

        # Lease still valid, but the claim is older than the threshold
        clock.advance(minutes=11)
        assert queue.recover_stuck_jobs(10) == 1
        assert queue.get_item(long_item.id).status == ItemStatus.WAITING
        assert queue.get_job_logs(long.id, level="warn")[0].metadata["reason"] == "claim_too_old"

        assert queue.get_item(done_item.id).status == ItemStatus.DONE
        waiting_items = queue.get_job_items(waiting.id)
        assert [i.status for i in waiting_items] == [ItemStatus.WAITING]
        assert waiting_items[0].updated_at == waiting_items[0].created_at
        assert queue.get_job_logs(short.id, level="warn")[0].metadata["queue_id"] == short_item.id

    def test_nothing_to_recover(self, queue):
        queue.create_job({"title": "x", "initial_stage": "upload"})
        queue.claim_next_item("upload", "w1")
        assert queue.recover_stuck_jobs(10) == 0

    def test_negative_threshold_rejected(self, queue):
        with pytest.raises(ValidationError):
            queue.recover_stuck_jobs(-1)


class TestRecoverJob:
    """Test manual single-job recovery."""

    def test_manual_recovery(self, queue, clock):
        job = queue.create_job({"title": "x", "initial_stage": "upload"})
        item = queue.claim_next_item("upload", "w1")

        assert queue.recover_job(job.id) == 1

        released = queue.get_item(item.id)
        assert released.status == ItemStatus.WAITING
        assert (released.claim_expires_at - clock.now).total_seconds() == 5

        entry = queue.get_job_logs(job.id)[0]
        assert entry.message == "Job manually recovered from stuck state"
        assert entry.metadata["recovered_by"] == "manual_recovery"

        assert queue.claim_next_item("upload", "w2") is None
        clock.advance(seconds=5)
        assert queue.claim_next_item("upload", "w2").id == item.id

    def test_manual_recovery_not_stuck(self, queue):
        job = queue.create_job({"title": "x", "initial_stage": "upload"})
        assert queue.recover_job(job.id) == 0
        assert queue.get_job_logs(job.id) == []


class TestLateReports:
    """A worker whose claim was recovered and handed on can no longer report."""

    def reclaimed(self, queue, clock):
        job = queue.create_job({"title": "x", "initial_stage": "upload"})
        item = queue.claim_next_item("upload", "w-a", lease_seconds=5)
        clock.advance(seconds=6)
        queue.recover_stuck_jobs(0)
        queue.claim_next_item("upload", "w-b", lease_seconds=60)
        return job, item

    def test_late_failure_keeps_new_claim(self, queue, clock):
        _, item = self.reclaimed(queue, clock)

        with pytest.raises(ItemStateError):
            queue.fail_item(item.id, "late failure from w-a", worker_id="w-a")

        current = queue.get_item(item.id)
        assert current.status == ItemStatus.CLAIMED
        assert current.worker_id == "w-b"
        assert current.attempts == 0
        assert queue.claim_next_item("upload", "w-c") is None

    def test_late_completion_rejected(self, queue, clock):
        job, item = self.reclaimed(queue, clock)

        with pytest.raises(ItemStateError):
            queue.complete_item(item.id, {"late": True}, worker_id="w-a")

        assert queue.get_item(item.id).worker_id == "w-b"
        assert "upload" not in queue.get_job(job.id).result_data

    def test_report_on_recovered_waiting_item_rejected(self, queue, clock):
        queue.create_job({"title": "x", "initial_stage": "upload"})
        item = queue.claim_next_item("upload", "w-a", lease_seconds=5)
        clock.advance(seconds=6)
        queue.recover_stuck_jobs(0)

        with pytest.raises(ItemStateError):
            queue.fail_item(item.id, "late", worker_id="w-a")
        assert queue.get_item(item.id).status == ItemStatus.WAITING

    def test_current_holder_can_report(self, queue, clock):
        job, item = self.reclaimed(queue, clock)

        queue.complete_item(item.id, {"ok": True}, worker_id="w-b")
        assert queue.get_item(item.id).status == ItemStatus.DONE
        assert queue.get_job(job.id).result_data["upload"] == {"ok": True}


class TestConcurrentClaims:
    """Claims through separate connections to one database file."""

    def test_two_workers_race_for_one_item(self, temp_db):
        setup = SQLiteJobQueue(temp_db)
        setup.create_job({"title": "hot", "priority": "high", "initial_stage": "upload"})

        queues = [SQLiteJobQueue(temp_db) for _ in range(2)]
        barrier = threading.Barrier(2)
        results = []

        def race(q, worker_id):
            barrier.wait()
            results.append(q.claim_next_item("upload", worker_id))

        threads = [
            threading.Thread(target=race, args=(q, f"upload-worker-{n}"))
            for n, q in enumerate(queues, start=1)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        winners = [r for r in results if r is not None]
        assert len(results) == 2
        assert len(winners) == 1

        for q in queues + [setup]:
            q.close()

    def test_no_duplicate_claims_under_load(self, temp_db):
        setup = SQLiteJobQueue(temp_db)
        for n in range(40):
            setup.create_job({"title": f"job {n}", "initial_stage": "upload"})

        queues = [SQLiteJobQueue(temp_db) for _ in range(4)]
        claimed = []
        lock = threading.Lock()

        def drain(q, worker_id):
            while True:
                item = q.claim_next_item("upload", worker_id)
                if item is None:
                    return
                with lock:
                    claimed.append(item.id)

        threads = [
            threading.Thread(target=drain, args=(q, f"worker-{n}")) for n, q in enumerate(queues)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(claimed) == 40
        assert len(set(claimed)) == 40
        assert setup.get_queue_stats().by_stage["upload"].claimed == 40

        for q in queues + [setup]:
            q.close()
