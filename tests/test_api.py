"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from conftest import run
from reel_engine.core.jobs import JobStatus
from reel_engine.main import create_app


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def submit_video(client, payload, **extra):
    body = {"kind": "video_generation", "subjectId": "car-1", "payload": payload, **extra}
    return client.post("/v1/jobs", json=body)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["backend"] == "memory"


class TestSubmitJob:

    def test_accepted(self, client, video_payload):
        response = submit_video(client, video_payload)

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["jobId"].startswith("video_car-1_")
        assert data["status"] == "queued"
        assert data["estimatedSeconds"] == 400

    def test_fields_at_top_level(self, client, image_payload):
        response = client.post("/v1/jobs", json={"kind": "image_processing", "subjectId": "car-1", **image_payload})

        assert response.status_code == 202
        assert response.json()["data"]["estimatedSeconds"] == 45

    def test_wrong_item_count(self, client, video_payload):
        video_payload["image_urls"] = video_payload["image_urls"][:2]

        response = submit_video(client, video_payload)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "INVALID_ITEM_COUNT"
        assert body["expected"] == 3
        assert body["received"] == 2

    def test_malformed_body(self, client):
        response = client.post("/v1/jobs", json={"kind": "video_generation"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    def test_unknown_subject(self, client, video_payload):
        response = client.post(
            "/v1/jobs",
            json={"kind": "video_generation", "subjectId": "car-404", "payload": video_payload},
        )

        assert response.status_code == 404
        assert response.json()["code"] == "SUBJECT_NOT_FOUND"

    def test_subject_owned_by_someone_else(self, client, video_payload):
        response = client.post(
            "/v1/jobs",
            json={"kind": "video_generation", "subjectId": "car-1", "payload": video_payload},
            headers={"X-User-Id": "user-2"},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_owner_may_submit(self, client, video_payload):
        response = client.post(
            "/v1/jobs",
            json={"kind": "video_generation", "subjectId": "car-1", "payload": video_payload},
            headers={"X-User-Id": "user-1"},
        )

        assert response.status_code == 202


class TestJobStatus:

    def test_queued_job(self, client, video_payload):
        job_id = submit_video(client, video_payload).json()["data"]["jobId"]

        response = client.get(f"/v1/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["jobId"] == job_id
        assert data["status"] == "queued"
        assert data["progress"] == 0
        assert data["etaSeconds"] == 400
        assert data["subjectId"] == "car-1"

    def test_unknown_id(self, client):
        response = client.get("/v1/jobs/video_ghost_1_abcdef")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "unknown"

    def test_history(self, client, services, video_payload, image_payload):
        submit_video(client, video_payload)
        client.post("/v1/jobs", json={"kind": "image_processing", "subjectId": "car-1", "payload": image_payload})
        client.post("/v1/jobs", json={"kind": "image_processing", "subjectId": "car-2", "payload": image_payload})

        response = client.get("/v1/jobs", params={"subjectId": "car-1"})

        assert response.status_code == 200
        jobs = response.json()["data"]
        assert len(jobs) == 2
        assert {job["subjectId"] for job in jobs} == {"car-1"}

        limited = client.get("/v1/jobs", params={"subjectId": "car-1", "limit": 1}).json()["data"]
        assert len(limited) == 1


class TestCancelJob:

    def test_cancel_then_cancel_again(self, client, services, video_payload):
        job_id = submit_video(client, video_payload).json()["data"]["jobId"]

        response = client.delete(f"/v1/jobs/{job_id}")

        assert response.status_code == 200
        assert response.json()["data"]["result"] == "cancelled"
        assert run(services.records.get(job_id)).status == JobStatus.CANCELLED
        assert client.get(f"/v1/jobs/{job_id}").json()["data"]["status"] == "cancelled"

        again = client.delete(f"/v1/jobs/{job_id}")

        assert again.status_code == 400
        assert again.json()["code"] == "CANNOT_CANCEL"
        assert again.json()["currentState"] == "cancelled"

    def test_unknown_job(self, client):
        response = client.delete("/v1/jobs/video_ghost_1_abcdef")

        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"


class TestBatches:

    def items(self, payload, count):
        return [{"itemId": f"img-{i}", "subjectId": "car-1", "payload": payload} for i in range(count)]

    def test_submit_and_status(self, client, image_payload):
        response = client.post("/v1/batches", json={"kind": "image_processing", "items": self.items(image_payload, 3)})

        assert response.status_code == 202
        batch = response.json()["data"]
        assert batch["total"] == 3
        assert batch["submitted"] == 3
        assert batch["failed"] == 0

        status = client.get(f"/v1/batches/{batch['batchId']}").json()["data"]
        assert status["total"] == 3
        assert status["counts"]["queued"] == 3
        assert status["progress"] == 0

    def test_status_for_explicit_jobs(self, client, image_payload):
        batch = client.post(
            "/v1/batches", json={"kind": "image_processing", "items": self.items(image_payload, 3)}
        ).json()["data"]
        first = batch["jobs"][0]["jobId"]

        status = client.get(f"/v1/batches/{batch['batchId']}", params={"jobIds": first}).json()["data"]

        assert status["total"] == 1
        assert status["jobs"][0]["jobId"] == first

    def test_bad_item_reported_per_item(self, client, image_payload):
        items = self.items(image_payload, 2)
        items[1]["payload"] = {"image_url": "https://cdn.example.com/a.jpg", "operation": "teleport"}

        batch = client.post("/v1/batches", json={"kind": "image_processing", "items": items}).json()["data"]

        assert batch["submitted"] == 1
        assert batch["jobs"][1]["status"] == "failed"
        assert batch["jobs"][1]["jobId"] is None

    def test_empty_items_rejected(self, client):
        response = client.post("/v1/batches", json={"kind": "image_processing", "items": []})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    def test_unsupported_kind(self, client, image_payload):
        response = client.post("/v1/batches", json={"kind": "hologram", "items": self.items(image_payload, 1)})

        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_KIND"


def test_queue_stats(client, video_payload, image_payload):
    submit_video(client, video_payload)
    client.post("/v1/jobs", json={"kind": "image_processing", "subjectId": "car-1", "payload": image_payload})

    response = client.get("/v1/queue/stats")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["queue"]["waiting"] == 2
    assert data["records"] == {"queued": 2}
    assert data["paused"] is False


class TestQueueAdmin:

    def test_pause_and_resume(self, client, services, image_payload):
        assert client.post("/v1/queue/pause").json()["data"]["paused"] is True
        assert client.get("/v1/queue/stats").json()["data"]["paused"] is True
        # Submissions are still accepted while paused
        job = client.post("/v1/jobs", json={"kind": "image_processing", "subjectId": "car-1", "payload": image_payload})
        assert job.status_code == 202
        assert run(services.queue.fetch_next()) is None

        assert client.post("/v1/queue/resume").json()["data"]["paused"] is False
        assert run(services.queue.fetch_next()).job_id == job.json()["data"]["jobId"]

    def test_clean_failed_entries(self, client, services, image_payload, clock):
        job_id = client.post(
            "/v1/jobs", json={"kind": "image_processing", "subjectId": "car-1", "payload": image_payload},
        ).json()["data"]["jobId"]
        for backoff in (0, 1, 2):
            clock.advance(backoff)
            run(services.queue.fetch_next())
            run(services.queue.fail(job_id, "boom"))

        kept = client.post("/v1/queue/clean", json={"olderThanMs": 60_000})
        clock.advance(60)
        cleaned = client.post("/v1/queue/clean", json={"olderThanMs": 60_000})

        assert kept.json()["data"]["removed"] == 0
        assert cleaned.json()["data"]["removed"] == 1
        assert client.get("/v1/queue/stats").json()["data"]["queue"]["failed"] == 0

    def test_clean_rejects_negative_age(self, client):
        response = client.post("/v1/queue/clean", json={"olderThanMs": -1})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"


class TestSubjects:

    def test_register_then_submit(self, client, video_payload):
        response = client.post(
            "/v1/subjects", json={"subjectId": "car-9", "ownerId": "user-9", "name": "2024 Hatchback"},
        )

        assert response.status_code == 201
        assert response.json()["data"] == {"id": "car-9", "ownerId": "user-9", "name": "2024 Hatchback"}

        job = client.post(
            "/v1/jobs",
            json={"kind": "video_generation", "subjectId": "car-9", "payload": video_payload},
            headers={"X-User-Id": "user-9"},
        )
        assert job.status_code == 202

    def test_get_subject(self, client):
        client.post("/v1/subjects", json={"subjectId": "car-9", "name": "2024 Hatchback"})

        response = client.get("/v1/subjects/car-9")

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "2024 Hatchback"
        assert response.json()["data"]["ownerId"] is None

    def test_unknown_subject(self, client):
        response = client.get("/v1/subjects/car-404")

        assert response.status_code == 404
        assert response.json()["code"] == "SUBJECT_NOT_FOUND"

    def test_subject_id_required(self, client):
        response = client.post("/v1/subjects", json={"ownerId": "user-9"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"
