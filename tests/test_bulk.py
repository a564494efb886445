"""Tests for bulk fan-out."""

import pytest

from conftest import run
from reel_engine.core.errors import ValidationFailedError
from reel_engine.core.jobs import JobStatus
from reel_engine.services.bulk import BatchItem


def image_items(payload, count, subject="car-1"):
    return [BatchItem(item_id=f"img-{i}", subject_id=subject, payload=dict(payload)) for i in range(count)]


class TestSubmitBatch:

    def test_stagger_ordering(self, services, image_payload):
        batch = run(services.bulk.submit_batch("image_processing", image_items(image_payload, 5)))

        assert batch.batch_id.startswith("batch_image_processing_")
        assert batch.submitted == 5
        for i, job in enumerate(batch.jobs):
            entry = run(services.queue.get(job.job_id))
            assert entry.delay_ms == i * 1000
            assert entry.batch_id == batch.batch_id
            assert job.item_id == f"img-{i}"

    def test_custom_stagger_interval(self, services, image_payload):
        services.bulk.stagger_interval_ms = 250
        batch = run(services.bulk.submit_batch("image_processing", image_items(image_payload, 3)))

        delays = [run(services.queue.get(job.job_id)).delay_ms for job in batch.jobs]
        assert delays == [0, 250, 500]

    def test_one_bad_item_does_not_abort_batch(self, services, image_payload):
        items = image_items(image_payload, 4)
        items[2].payload = {"image_url": "not a url", "operation": "enhance"}

        batch = run(services.bulk.submit_batch("image_processing", items))

        assert len(batch.jobs) == 4
        assert batch.submitted == 3
        assert batch.failed == 1
        bad = batch.jobs[2]
        assert bad.job_id is None
        assert bad.code == "INVALID_URLS"
        assert bad.status == "failed"
        # Item 3 still gets its own stagger slot
        assert run(services.queue.get(batch.jobs[3].job_id)).delay_ms == 3000

    def test_unknown_subject_isolated(self, services, image_payload):
        items = image_items(image_payload, 2)
        items[0].subject_id = "car-404"

        batch = run(services.bulk.submit_batch("image_processing", items))

        assert [job.code for job in batch.jobs] == ["SUBJECT_NOT_FOUND", None]

    def test_unexpected_error_isolated(self, services, image_payload, monkeypatch):
        original = services.submission.submit
        calls = []

        async def flaky_submit(*args, **kwargs):
            calls.append(kwargs["delay_ms"])
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await original(*args, **kwargs)

        monkeypatch.setattr(services.submission, "submit", flaky_submit)
        batch = run(services.bulk.submit_batch("image_processing", image_items(image_payload, 3)))

        assert [job.code for job in batch.jobs] == ["INTERNAL_ERROR", None, None]
        assert calls == [0, 1000, 2000]

    def test_unsupported_kind_rejects_whole_call(self, services, image_payload):
        with pytest.raises(ValidationFailedError):
            run(services.bulk.submit_batch("hologram", image_items(image_payload, 2)))


class TestBatchStatus:

    def test_counts_and_progress(self, services, image_payload):
        batch = run(services.bulk.submit_batch("image_processing", image_items(image_payload, 4)))
        job_ids = [job.job_id for job in batch.jobs]

        # 0: half way, 1: still delayed, 2: completed, 3: cancelled
        active = run(services.queue.fetch_next())
        assert active.job_id == job_ids[0]
        run(services.cache.merge(job_ids[0], status="processing", progress=50))
        run(services.records.finish(job_ids[2], JobStatus.COMPLETED, progress=100))
        run(services.queue.remove(job_ids[2]))
        run(services.cancellation.cancel(job_ids[3]))

        status = run(services.bulk.batch_status(batch.batch_id))

        assert status.total == 4
        assert status.counts == {
            "queued": 1,
            "processing": 1,
            "completed": 1,
            "failed": 0,
            "cancelled": 1,
            "unknown": 0,
        }
        assert status.progress == 37.5

    def test_explicit_job_ids(self, services, image_payload):
        batch = run(services.bulk.submit_batch("image_processing", image_items(image_payload, 3)))

        status = run(services.bulk.batch_status(batch.batch_id, [batch.jobs[0].job_id, "image_ghost_1_ffffff"]))

        assert status.total == 2
        assert status.counts["queued"] == 1
        assert status.counts["unknown"] == 1

    def test_empty_batch(self, services):
        status = run(services.bulk.batch_status("batch_image_processing_0_000000"))

        assert status.total == 0
        assert status.progress == 0.0
