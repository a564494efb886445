"""Tests for status reconciliation."""

from datetime import datetime

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import run
from reel_engine.core.errors import StoreUnavailableError
from reel_engine.core.jobs import Job, JobKind, JobStatus, QueueState
from reel_engine.services.reconciler import StatusReconciler, estimate_eta, reconcile
from reel_engine.stores.interfaces import ProgressSnapshot, QueueEntry
from reel_engine.stores.memory import MemoryJobRecordStore, MemoryProgressCache, MemoryWorkQueue

JOB_ID = "video_car-1_1700000000000_abc123"


def make_entry(state: QueueState, **kwargs) -> QueueEntry:
    return QueueEntry(job_id=JOB_ID, kind=JobKind.VIDEO_GENERATION, subject_id="car-1", state=state, **kwargs)


def make_record(status: JobStatus, **kwargs) -> Job:
    return Job(id=JOB_ID, kind=JobKind.VIDEO_GENERATION, subject_id="car-1", status=status, **kwargs)


class TestReconcile:
    """Precedence rules of the pure merge function."""

    @pytest.mark.parametrize("state", [QueueState.WAITING, QueueState.DELAYED])
    def test_waiting_and_delayed_are_queued(self, state):
        view = reconcile(JOB_ID, make_entry(state), None, make_record(JobStatus.QUEUED))

        assert view.status == JobStatus.QUEUED
        assert view.progress == 0
        assert view.eta_seconds == 400
        assert view.queue_state == state.value

    def test_active_uses_snapshot(self):
        snapshot = ProgressSnapshot(
            job_id=JOB_ID,
            status="processing",
            stage="generating_videos",
            progress=50,
            current_step="Rendered clip 2/3",
        )
        view = reconcile(JOB_ID, make_entry(QueueState.ACTIVE), snapshot, make_record(JobStatus.PROCESSING))

        assert view.status == JobStatus.PROCESSING
        assert view.progress == 50
        assert view.current_step == "Rendered clip 2/3"
        assert view.stage == "generating_videos"
        assert 190 <= view.eta_seconds <= 210

    def test_active_without_snapshot_falls_back_to_processing(self):
        view = reconcile(JOB_ID, make_entry(QueueState.ACTIVE), None, make_record(JobStatus.PROCESSING))

        assert view.status == JobStatus.PROCESSING
        assert view.progress == 0
        assert view.eta_seconds == 400

    def test_completed_entry_forces_full_progress(self):
        snapshot = ProgressSnapshot(job_id=JOB_ID, status="processing", progress=95)
        view = reconcile(JOB_ID, make_entry(QueueState.COMPLETED), snapshot, make_record(JobStatus.PROCESSING))

        assert view.status == JobStatus.COMPLETED
        assert view.progress == 100
        assert view.eta_seconds is None

    def test_failed_entry_reports_queue_reason(self):
        entry = make_entry(QueueState.FAILED, failed_reason="clips: provider exploded", attempts=3, attempts_made=3)
        view = reconcile(JOB_ID, entry, None, make_record(JobStatus.PROCESSING))

        assert view.status == JobStatus.FAILED
        assert view.error == "clips: provider exploded"
        assert view.eta_seconds is None

    def test_queue_state_wins_over_record(self):
        # The record says processing but the job is back in the queue for a retry
        entry = make_entry(QueueState.DELAYED, attempts=3, attempts_made=1, failed_reason="timeout")
        view = reconcile(JOB_ID, entry, None, make_record(JobStatus.PROCESSING))

        assert view.status == JobStatus.QUEUED
        assert "Retrying" in view.current_step

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    def test_terminal_record_is_authoritative_without_queue_entry(self, status):
        record = make_record(
            status,
            progress=100 if status == JobStatus.COMPLETED else 40,
            error=None if status == JobStatus.COMPLETED else "boom",
            completed_at=datetime(2024, 1, 1, 12, 0, 0),
        )
        view = reconcile(JOB_ID, None, None, record)

        assert view.status == status
        assert view.progress == record.progress
        assert view.error == record.error
        assert view.eta_seconds is None
        assert view.completed_at == "2024-01-01T12:00:00"

    def test_non_terminal_record_without_queue_entry_is_unknown(self):
        view = reconcile(JOB_ID, None, None, make_record(JobStatus.PROCESSING, progress=60))

        assert view.status == JobStatus.UNKNOWN
        assert view.eta_seconds is None

    def test_nothing_anywhere_is_unknown(self):
        view = reconcile("missing", None, None, None)

        assert view.status == JobStatus.UNKNOWN
        assert view.kind is None
        assert view.artifacts == {}

    def test_fields_fall_back_per_source(self):
        entry = make_entry(QueueState.ACTIVE, batch_id="batch_1")
        snapshot = ProgressSnapshot(job_id=JOB_ID, status="processing", progress=30)
        record = make_record(JobStatus.PROCESSING, current_step="Started")

        view = reconcile(JOB_ID, entry, snapshot, record)

        assert view.current_step == "Started"
        assert view.batch_id == "batch_1"
        assert view.subject_id == "car-1"
        assert view.kind == "video_generation"

    def test_artifacts_union_record_and_snapshot(self):
        snapshot = ProgressSnapshot(
            job_id=JOB_ID,
            status="processing",
            artifacts={"video_clips": ["clip-1.mp4", "clip-2.mp4"]},
        )
        record = make_record(
            JobStatus.PROCESSING,
            artifacts={"scenes": [{"description": "Scene 1"}], "video_clips": ["clip-0.mp4"]},
        )

        view = reconcile(JOB_ID, make_entry(QueueState.ACTIVE), snapshot, record)

        assert view.artifacts["scenes"] == [{"description": "Scene 1"}]
        assert view.artifacts["video_clips"] == ["clip-0.mp4", "clip-1.mp4", "clip-2.mp4"]

    def test_terminal_record_ignores_later_snapshot_writes(self):
        record = make_record(
            JobStatus.CANCELLED,
            current_step="Cancelled by user",
            artifacts={"scenes": ["s1"], "video_clips": ["clip-1.mp4"]},
        )
        late = ProgressSnapshot(
            job_id=JOB_ID,
            status="processing",
            stage="music",
            current_step="Generating music",
            artifacts={"video_clips": ["clip-1.mp4", "clip-2.mp4"], "music": "m.mp3"},
        )

        view = reconcile(JOB_ID, None, late, record)

        assert view.status == JobStatus.CANCELLED
        assert view.artifacts == {"scenes": ["s1"], "video_clips": ["clip-1.mp4"]}
        assert view.stage is None
        assert view.current_step == "Cancelled by user"

    def test_custom_estimates(self):
        view = reconcile(JOB_ID, make_entry(QueueState.WAITING), None, None, estimates={"video_generation": 100})
        assert view.eta_seconds == 100


def test_estimate_eta_clamps_at_zero():
    assert estimate_eta(JobStatus.PROCESSING, 120, 400) == 0
    assert estimate_eta(JobStatus.PROCESSING, 50, 400) == 200
    assert estimate_eta(JobStatus.COMPLETED, 50, 400) is None
    assert estimate_eta(JobStatus.QUEUED, 0, None) is None


class BrokenCache(MemoryProgressCache):
    async def get(self, job_id):
        raise RedisConnectionError("cache down")


class BrokenQueue(MemoryWorkQueue):
    async def get(self, job_id):
        raise RedisConnectionError("queue down")


class TestStatusReconciler:
    """Store reads and failure handling."""

    def test_repeated_reads_are_identical(self, services, video_payload):
        result = run(services.submission.submit("video_generation", "car-1", video_payload))

        first = run(services.reconciler.get_status(result.job_id))
        second = run(services.reconciler.get_status(result.job_id))

        assert first == second
        assert first.status == JobStatus.QUEUED

    def test_half_way_video_job(self, services, video_payload):
        result = run(services.submission.submit("video_generation", "car-1", video_payload))
        run(services.queue.fetch_next())
        run(services.cache.merge(result.job_id, status="processing", progress=50, current_step="Rendering"))

        view = run(services.reconciler.get_status(result.job_id))

        assert view.status == JobStatus.PROCESSING
        assert 190 <= view.eta_seconds <= 210

    def test_cache_failure_degrades_to_no_snapshot(self, video_payload):
        queue, records = MemoryWorkQueue(), MemoryJobRecordStore()
        job = make_record(JobStatus.QUEUED, payload=video_payload)
        run(records.create(job))
        run(queue.enqueue(job))
        run(queue.fetch_next())

        reconciler = StatusReconciler(queue, BrokenCache(), records, store_timeout=1.0)
        view = run(reconciler.get_status(JOB_ID))

        assert view.status == JobStatus.PROCESSING
        assert view.progress == 0

    def test_queue_failure_is_surfaced(self):
        reconciler = StatusReconciler(BrokenQueue(), MemoryProgressCache(), MemoryJobRecordStore(), store_timeout=1.0)

        with pytest.raises(StoreUnavailableError) as exc_info:
            run(reconciler.get_status(JOB_ID))

        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert exc_info.value.store == "work queue"
