"""Status reconciliation across the work queue, progress cache and durable records.

Precedence, first applicable source wins per field:

1. Work queue entry: waiting/delayed -> queued; active -> progress snapshot
   (falling back to processing at 0%); completed -> completed at 100%;
   failed -> failed with the queue's failure reason.
2. Durable record, when the queue no longer has the job. Only a terminal
   record is authoritative; a non-terminal record without a queue entry
   means the job vanished and is reported as unknown.
3. Nothing anywhere -> unknown.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from reel_engine.core.errors import StoreUnavailableError
from reel_engine.core.jobs import Job, JobStatus, QueueState, estimated_seconds_for
from reel_engine.stores.guard import call_store
from reel_engine.stores.interfaces import JobRecordStore, ProgressCache, ProgressSnapshot, QueueEntry, WorkQueue, merge_artifacts

logger = logging.getLogger(__name__)

ETA_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})

QUEUED_STATES = frozenset({QueueState.WAITING, QueueState.DELAYED})


@dataclass
class JobStatusView:
    """Single coherent status as presented to callers."""
    job_id: str
    status: JobStatus
    progress: float = 0.0
    current_step: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None
    eta_seconds: Optional[int] = None
    artifacts: Dict[str, Any] = field(default_factory=dict)
    kind: Optional[str] = None
    subject_id: Optional[str] = None
    batch_id: Optional[str] = None
    queue_state: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "currentStep": self.current_step,
            "stage": self.stage,
            "error": self.error,
            "etaSeconds": self.eta_seconds,
            "artifacts": self.artifacts,
            "kind": self.kind,
            "subjectId": self.subject_id,
            "batchId": self.batch_id,
            "queueState": self.queue_state,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }


def estimate_eta(status: JobStatus, progress: float, total_seconds: Optional[int]) -> Optional[int]:
    """Remaining seconds from a fixed per-kind total; None for terminal or unknown jobs."""
    if status not in ETA_STATUSES or total_seconds is None:
        return None
    return max(0, round(total_seconds * (1 - progress / 100)))


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _snapshot_status(snapshot: Optional[ProgressSnapshot]) -> JobStatus:
    if snapshot is None:
        return JobStatus.PROCESSING
    try:
        status = JobStatus(snapshot.status)
    except ValueError:
        return JobStatus.PROCESSING
    return JobStatus.PROCESSING if status == JobStatus.UNKNOWN else status


def reconcile(
    job_id: str,
    entry: Optional[QueueEntry],
    snapshot: Optional[ProgressSnapshot],
    record: Optional[Job],
    estimates: Optional[Mapping[str, int]] = None,
) -> JobStatusView:
    """Merge the three sources into one view. Pure: no I/O, no clock."""
    error: Optional[str] = None
    stage: Optional[str] = None
    current_step: Optional[str] = None

    if entry is not None:
        if entry.state in QUEUED_STATES:
            status = JobStatus.QUEUED
            progress = 0.0
            current_step = "Scheduled" if entry.state == QueueState.DELAYED else "Queued"
            if entry.attempts_made and entry.failed_reason:
                current_step = f"Retrying after failure ({entry.attempts_made}/{entry.attempts})"
        elif entry.state == QueueState.ACTIVE:
            status = _snapshot_status(snapshot)
            progress = snapshot.progress if snapshot else 0.0
            current_step = snapshot.current_step if snapshot else None
            stage = snapshot.stage if snapshot else None
        elif entry.state == QueueState.COMPLETED:
            status = JobStatus.COMPLETED
            progress = 100.0
        else:
            status = JobStatus.FAILED
            progress = snapshot.progress if snapshot else 0.0
            error = entry.failed_reason
    elif record is not None and record.is_terminal:
        status = record.status
        progress = record.progress
        error = record.error
        current_step = record.current_step
    else:
        status = JobStatus.UNKNOWN
        progress = 0.0
        if record is not None:
            logger.warning("Job %s has a %s record but no queue entry", job_id, record.status.value)

    # A terminal record is final: snapshot writes that land after it are ignored
    settled = record is not None and record.is_terminal
    live = None if settled else snapshot
    record_step = record.current_step if record is not None else None
    snapshot_step = live.current_step if live is not None else None
    kind = _first(entry.kind.value if entry else None, snapshot.kind if snapshot else None,
                  record.kind.value if record else None)

    total = None
    if kind is not None:
        total = (estimates or {}).get(kind, estimated_seconds_for(kind))

    return JobStatusView(
        job_id=job_id,
        status=status,
        progress=float(progress or 0.0),
        current_step=_first(current_step, snapshot_step, record_step),
        stage=_first(stage, live.stage if live else None),
        error=_first(error, record.error if record and status == JobStatus.FAILED else None),
        eta_seconds=estimate_eta(status, float(progress or 0.0), total),
        artifacts=merge_artifacts(
            record.artifacts if record else None,
            live.artifacts if live else None,
        ),
        kind=kind,
        subject_id=_first(entry.subject_id if entry else None, record.subject_id if record else None),
        batch_id=_first(entry.batch_id if entry else None, record.batch_id if record else None),
        queue_state=entry.state.value if entry else None,
        created_at=_first(
            _iso(record.created_at) if record else None,
            snapshot.created_at if snapshot else None,
        ),
        completed_at=_iso(record.completed_at) if record and record.is_terminal else None,
    )


class StatusReconciler:
    """Reads the three stores concurrently and merges them with ``reconcile``."""

    def __init__(
        self,
        queue: WorkQueue,
        cache: ProgressCache,
        records: JobRecordStore,
        store_timeout: float = 5.0,
        estimates: Optional[Mapping[str, int]] = None,
    ):
        self.queue = queue
        self.cache = cache
        self.records = records
        self.store_timeout = store_timeout
        self.estimates = estimates

    async def _read_snapshot(self, job_id: str) -> Optional[ProgressSnapshot]:
        try:
            return await call_store(self.cache.get(job_id), "progress cache", self.store_timeout)
        except StoreUnavailableError as e:
            logger.warning("Progress for %s unavailable, reconciling without it: %s", job_id, e)
            return None

    async def get_status(self, job_id: str) -> JobStatusView:
        entry, snapshot, record = await asyncio.gather(
            call_store(self.queue.get(job_id), "work queue", self.store_timeout),
            self._read_snapshot(job_id),
            call_store(self.records.get(job_id), "record store", self.store_timeout),
        )
        return reconcile(job_id, entry, snapshot, record, self.estimates)
