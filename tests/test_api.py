import asyncio
import json

import pytest
from conftest import wait_until

from cliprr.api.main import event_generator, format_sse
from cliprr.models import SegmentMatch


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    response = await client.get("/health/status")
    data = response.json()
    assert data["status"] == "healthy"
    assert data["workers"] == {"cpu": 0, "gpu": 0}
    assert data["subscribers"] == 0


class TestProcessingEndpoints:
    @pytest.mark.asyncio
    async def test_scan_and_duplicates(self, client):
        response = await client.post("/processing/scan", json={"episodeIds": [101, 102, 999]})
        assert response.status_code == 200
        assert response.json() == {"enqueued": 2, "duplicates": 0, "unknown": 1}

        response = await client.post("/processing/scan", json={"episodeIds": [101]})
        assert response.json() == {"enqueued": 0, "duplicates": 1, "unknown": 0}

    @pytest.mark.asyncio
    async def test_scan_requires_ids(self, client):
        response = await client.post("/processing/scan", json={"episodeIds": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_jobs(self, client):
        await client.post("/processing/scan", json={"episodeIds": [101, 102]})

        response = await client.get("/processing/jobs", params={"state": "queued"})
        assert response.status_code == 200
        jobs = response.json()
        assert [j["episode_id"] for j in jobs] == [101, 102]
        assert jobs[0]["state"] == "queued"

        response = await client.get("/processing/jobs", params={"state": "bogus"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_queue_status(self, client):
        await client.post("/processing/scan", json={"episodeIds": [101], "queueName": "backfill"})

        response = await client.get("/processing/queue/status", params={"queueName": "backfill"})
        assert response.json()["queued"] == 1

        response = await client.get("/processing/queue/status")
        assert set(response.json()) == {"backfill", "show-processing"}

    @pytest.mark.asyncio
    async def test_processing_status_includes_budget(self, client):
        response = await client.get("/processing/status")
        data = response.json()
        assert data["budget"]["cpu"] == 2
        assert data["budget"]["gpu"] == 0
        assert data["queues"]["show-processing"]["queued"] == 0

    @pytest.mark.asyncio
    async def test_delete_jobs(self, client, service):
        await client.post("/processing/scan", json={"episodeIds": [101, 102]})
        ids = [j.id for j in service.list_jobs()]

        response = await client.post("/processing/jobs/delete", json={"jobIds": ids})
        assert response.json() == {"deleted": 2}

        await client.post("/processing/scan", json={"episodeIds": [103]})
        response = await client.delete("/processing/shows/7/jobs")
        assert response.json() == {"deleted": 1}

    @pytest.mark.asyncio
    async def test_delete_active_job_conflicts(self, client, service):
        await client.post("/processing/scan", json={"episodeIds": [101]})
        job = service.queue.dequeue_next("cpu", worker_id="test")

        response = await client.post("/processing/jobs/delete", json={"jobIds": [job.id]})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "JOB_BUSY"
        assert detail["jobIds"] == [job.id]

    @pytest.mark.asyncio
    async def test_retry(self, client, service):
        await client.post("/processing/scan", json={"episodeIds": [101]})
        job = service.queue.dequeue_next("cpu", worker_id="test")
        service.queue.fail(job.id, "decode: bad stream", "decode")

        response = await client.post("/processing/retry", json={"maxAttempts": 2})
        assert response.json() == {"enqueued": 1, "exhausted": 0}

    @pytest.mark.asyncio
    async def test_cleanup(self, client, tmp_path):
        (tmp_path / "temp" / "cliprr-job-9-x").mkdir(parents=True)

        response = await client.post("/processing/cleanup-temp-files")
        assert response.json() == {"removed_count": 1}


class TestHardwareEndpoints:
    @pytest.mark.asyncio
    async def test_info_and_detect(self, client):
        response = await client.get("/hardware/info")
        assert response.json()["cpu_cores"] == 3

        response = await client.post("/hardware/detect")
        assert response.status_code == 200
        assert response.json()["accelerators"] == []

    @pytest.mark.asyncio
    async def test_benchmark_results(self, client):
        response = await client.get("/hardware/benchmark/results")
        assert response.status_code == 404

        response = await client.post("/hardware/benchmark")
        assert response.json()["cpu_benchmark_fps"] == 250.0

        response = await client.get("/hardware/benchmark/results")
        assert response.status_code == 200
        assert response.json()["benchmarked_at"] is not None


class TestSettingsEndpoints:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client):
        response = await client.post("/settings/queue/pause-cpu")
        data = response.json()
        assert data["paused"] == "cpu"
        assert data["budget"]["cpu"] == 0
        assert data["budget"]["cpu_paused"] is True

        response = await client.post("/settings/queue/resume-cpu")
        data = response.json()
        assert data["resumed"] == "cpu"
        assert data["budget"]["cpu"] == 2

    @pytest.mark.asyncio
    async def test_unknown_resource_class(self, client):
        response = await client.post("/settings/queue/pause-tpu")
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_show_segments(client, service):
    service.segment_store.replace_for_episode(
        101,
        [
            SegmentMatch(
                show_id=7, episode_id=101, season_number=1, start_offset=12.0, end_offset=42.0,
                confidence=0.9,
            )
        ],
    )

    response = await client.get("/shows/7/segments", params={"season": 1})
    assert [(s["episode_id"], s["label"]) for s in response.json()] == [(101, "intro")]

    response = await client.get("/shows/7/segments", params={"season": 2})
    assert response.json() == []



class TestShowEndpoints:
    @pytest.mark.asyncio
    async def test_scan_shows(self, client, service):
        response = await client.post("/shows/scan", json={"showIds": [7]})
        assert response.status_code == 200
        assert response.json() == {"enqueued": 3, "duplicates": 0, "unknown": 0, "episodes": 3}

        response = await client.post("/shows/scan", json={"showIds": [7]})
        assert response.json()["duplicates"] == 3

    @pytest.mark.asyncio
    async def test_rescan_clears_stored_segments(self, client, service):
        service.segment_store.replace_for_episode(
            101,
            [
                SegmentMatch(
                    show_id=7, episode_id=101, season_number=1, start_offset=12.0, end_offset=42.0,
                    confidence=0.9,
                )
            ],
        )

        response = await client.post("/shows/rescan", json={"showIds": [7], "queueName": "backfill"})
        assert response.status_code == 200
        assert response.json()["enqueued"] == 3

        assert (await client.get("/shows/7/segments")).json() == []
        assert service.get_queue_status("backfill").queued == 3

    @pytest.mark.asyncio
    async def test_scan_shows_requires_ids(self, client):
        response = await client.post("/shows/scan", json={"showIds": []})
        assert response.status_code == 422

def test_format_sse():
    text = format_sse({"type": "alarm", "message": "boom"})
    assert text.startswith("event: alarm\ndata: ")
    assert text.endswith("\n\n")
    assert json.loads(text.split("data: ", 1)[1]) == {"type": "alarm", "message": "boom"}


class FakeRequest:
    async def is_disconnected(self):
        return False


class TestEventStream:
    @pytest.mark.asyncio
    async def test_initial_status_then_relayed_events(self, service):
        stream = event_generator(service, FakeRequest(), keepalive_s=5.0)

        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert first.startswith("event: queue_status")
        assert '"queue_name": "show-processing"' in first
        assert service.broadcaster.subscriber_count == 1

        await asyncio.to_thread(service.submit_scan, [101])
        relayed = await asyncio.wait_for(stream.__anext__(), timeout=5)
        payload = json.loads(relayed.split("data: ", 1)[1])
        assert payload["type"] == "queue_status"
        assert payload["snapshot"]["queued"] == 1

        await stream.aclose()
        assert wait_until(lambda: service.broadcaster.subscriber_count == 0, timeout=2)

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self, service):
        stream = event_generator(service, FakeRequest(), keepalive_s=0.05)

        await stream.__anext__()
        assert await asyncio.wait_for(stream.__anext__(), timeout=5) == ": keepalive\n\n"
        await stream.aclose()
