"""Tests for the administrative HTTP API and its error mapping."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "poolRunning": False}


@pytest.mark.asyncio(loop_scope="function")
async def test_create_job_with_initial_stage(client: AsyncClient):
    """Creating a job with initial_stage should queue it."""
    response = await client.post(
        "/jobs", json={"title": "Match 12", "priority": "high", "initial_stage": "upload"}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "queued"
    assert data["priority"] == "high"

    detail = await client.get(f"/jobs/{data['id']}")
    assert detail.status_code == 200
    assert [i["stage"] for i in detail.json()["items"]] == ["upload"]


@pytest.mark.asyncio(loop_scope="function")
async def test_create_job_missing_title_returns_400(client: AsyncClient):
    response = await client.post("/jobs", json={"description": "no title"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio(loop_scope="function")
async def test_unknown_job_returns_404(client: AsyncClient):
    response = await client.get("/jobs/missing")
    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["code"] == "JOB_NOT_FOUND"
    assert "missing" in detail["message"]

    assert (await client.delete("/jobs/missing")).status_code == 404
    assert (await client.get("/jobs/missing/logs")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_list_jobs_filters(client: AsyncClient):
    await client.post("/jobs", json={"title": "mine", "owner_id": "user-1", "initial_stage": "upload"})
    await client.post("/jobs", json={"title": "pending", "owner_id": "user-1"})
    await client.post("/jobs", json={"title": "other", "owner_id": "user-2"})

    mine = (await client.get("/jobs", params={"owner_id": "user-1"})).json()
    assert {j["title"] for j in mine} == {"mine", "pending"}

    queued = (await client.get("/jobs", params={"owner_id": "user-1", "status": "queued"})).json()
    assert [j["title"] for j in queued] == ["mine"]

    assert len((await client.get("/jobs", params={"limit": 2})).json()) == 2


@pytest.mark.asyncio(loop_scope="function")
async def test_owner_status_filter_applied_before_limit(client: AsyncClient, clock):
    await client.post("/jobs", json={"title": "queued", "owner_id": "user-1", "initial_stage": "upload"})
    clock.advance(seconds=1)
    await client.post("/jobs", json={"title": "newer", "owner_id": "user-1"})
    clock.advance(seconds=1)
    await client.post("/jobs", json={"title": "newest", "owner_id": "user-1"})

    response = await client.get("/jobs", params={"owner_id": "user-1", "status": "queued", "limit": 1})
    assert [j["title"] for j in response.json()] == ["queued"]


@pytest.mark.asyncio(loop_scope="function")
async def test_cancel_and_retry(client: AsyncClient):
    job_id = (await client.post("/jobs", json={"title": "x", "initial_stage": "upload"})).json()["id"]

    cancelled = await client.post(f"/jobs/{job_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    retried = await client.post(f"/jobs/{job_id}/retry", json={"stage": "split_chunks"})
    assert retried.status_code == 200
    assert retried.json()["item"]["stage"] == "split_chunks"
    assert retried.json()["job"]["status"] == "queued"

    # Only failed/cancelled jobs can be retried
    again = await client.post(f"/jobs/{job_id}/retry")
    assert again.status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_logs_items_and_delete(client: AsyncClient, queue):
    job_id = (await client.post("/jobs", json={"title": "x", "initial_stage": "upload"})).json()["id"]
    queue.add_log(job_id, "warn", "upload", "slow upload")

    logs = (await client.get(f"/jobs/{job_id}/logs", params={"level": "warn"})).json()
    assert [e["message"] for e in logs] == ["slow upload"]

    items = (await client.get(f"/jobs/{job_id}/items")).json()
    assert items[0]["status"] == "waiting"

    deleted = await client.delete(f"/jobs/{job_id}")
    assert deleted.json() == {"status": "deleted", "id": job_id}
    assert (await client.get(f"/jobs/{job_id}")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_chunks(client: AsyncClient):
    job_id = (await client.post("/jobs", json={"title": "x"})).json()["id"]
    chunk = {
        "chunk_index": 0,
        "chunk_name": "chunk_0.mp4",
        "storage_path": f"jobs/{job_id}/chunk_0.mp4",
        "start_time": 0,
        "end_time": 10,
        "duration": 10,
        "file_size": 2048,
    }

    created = await client.post(f"/jobs/{job_id}/chunks", json={"chunks": [chunk]})
    assert created.status_code == 201

    listed = (await client.get(f"/jobs/{job_id}/chunks")).json()
    assert [c["chunk_index"] for c in listed] == [0]

    duplicate = await client.post(f"/jobs/{job_id}/chunks", json={"chunks": [chunk]})
    assert duplicate.status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_item_state_conflict_returns_409(client: AsyncClient, queue, monkeypatch):
    from clipflow.queue import ItemStateError

    job_id = (await client.post("/jobs", json={"title": "x"})).json()["id"]

    def already_done(job_id):
        raise ItemStateError("Item abc is already done")

    monkeypatch.setattr(queue, "cancel_job", already_done)
    response = await client.post(f"/jobs/{job_id}/cancel")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_ITEM_STATE"


@pytest.mark.asyncio(loop_scope="function")
async def test_cancel_completed_job_returns_400(client: AsyncClient, queue):
    job_id = (await client.post("/jobs", json={"title": "x"})).json()["id"]
    queue.enqueue_job(job_id, "render_video")
    queue.complete_item(queue.claim_next_item("render_video", "w1").id)

    assert (await client.post(f"/jobs/{job_id}/cancel")).status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_recover_stuck_items(client: AsyncClient, queue, clock):
    job_id = (await client.post("/jobs", json={"title": "x", "initial_stage": "upload"})).json()["id"]
    queue.claim_next_item("upload", "dead-worker", lease_seconds=5)
    clock.advance(seconds=6)

    response = await client.post("/jobs/recover", json={})
    assert response.status_code == 200
    assert response.json()["recovered"] == 1

    items = (await client.get(f"/jobs/{job_id}/items")).json()
    assert items[0]["status"] == "waiting"


@pytest.mark.asyncio(loop_scope="function")
async def test_recover_single_job(client: AsyncClient, queue):
    job_id = (await client.post("/jobs", json={"title": "x", "initial_stage": "upload"})).json()["id"]

    not_stuck = await client.post("/jobs/recover", json={"job_id": job_id})
    assert not_stuck.json()["recovered"] == 0

    queue.claim_next_item("upload", "w1")
    recovered = await client.post("/jobs/recover", json={"job_id": job_id})
    assert recovered.json()["recovered"] == 1
    assert recovered.json()["message"] == "Job recovered"


@pytest.mark.asyncio(loop_scope="function")
async def test_queue_stats_and_cleanup(client: AsyncClient, clock):
    job_id = (await client.post("/jobs", json={"title": "x", "initial_stage": "upload"})).json()["id"]

    stats = (await client.get("/queue/stats")).json()
    assert stats["queue"]["by_stage"]["upload"]["waiting"] == 1
    assert stats["queue"]["jobs_by_status"]["queued"] == 1
    assert stats["workers"]["totalWorkers"] == 0

    await client.post(f"/jobs/{job_id}/cancel")
    clock.advance(days=10)
    cleaned = await client.post("/queue/cleanup", json={"days_old": 7})
    assert cleaned.json()["deleted"] == 1


@pytest.mark.asyncio(loop_scope="function")
async def test_worker_control(client: AsyncClient):
    started = await client.post("/workers", json={"action": "start"})
    assert started.status_code == 200
    assert started.json()["workers"] == ["upload-worker-1"]

    conflict = await client.post("/workers", json={"action": "start"})
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "POOL_STATE_CONFLICT"

    added = await client.post("/workers", json={"action": "add", "stage": "render_video"})
    assert added.json()["workerId"] == "render_video-worker-1"

    listing = (await client.get("/workers")).json()
    assert listing["health"]["totalWorkers"] == 2
    assert {w["workerId"] for w in listing["workers"]} == {"upload-worker-1", "render_video-worker-1"}

    detail = await client.get("/workers/upload-worker-1")
    assert detail.json()["stage"] == "upload"

    restarted = await client.post("/workers/upload-worker-1/restart")
    assert restarted.json()["running"] is True

    removed = await client.delete("/workers/render_video-worker-1", params={"wait": "true"})
    assert removed.json()["stopped"] is True

    stopped = await client.post("/workers", json={"action": "stop"})
    assert stopped.json()["health"]["totalWorkers"] == 0


@pytest.mark.asyncio(loop_scope="function")
async def test_worker_errors(client: AsyncClient):
    missing = await client.get("/workers/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "WORKER_NOT_FOUND"

    no_stage = await client.post("/workers", json={"action": "add"})
    assert no_stage.status_code == 400

    not_running = await client.post("/workers", json={"action": "add", "stage": "upload"})
    assert not_running.status_code == 409

    bad_action = await client.post("/workers", json={"action": "explode"})
    assert bad_action.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_store_error_returns_503(client: AsyncClient, queue, monkeypatch):
    from clipflow.queue import StoreError

    def unavailable():
        raise StoreError("Store unavailable: disk I/O error")

    monkeypatch.setattr(queue, "get_queue_stats", unavailable)
    response = await client.get("/queue/stats")
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "STORE_UNAVAILABLE"
