"""Job submission: validate, record, enqueue, seed progress."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from reel_engine.core.errors import (
    EnqueueFailedError,
    OrchestrationError,
    StoreUnavailableError,
    SubjectNotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from reel_engine.core.jobs import KIND_PROFILES, Job, JobStatus, PipelineStage, new_job_id
from reel_engine.services.validation import parse_kind, validate_payload, validate_scheduling
from reel_engine.stores.guard import call_store
from reel_engine.stores.interfaces import JobRecordStore, ProgressCache, ProgressSnapshot, SubjectDirectory, WorkQueue

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


@dataclass
class SubmissionResult:
    job_id: str
    status: JobStatus
    estimated_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "estimatedSeconds": self.estimated_seconds,
        }


class JobSubmissionService:
    """Single entry point for starting work.

    Writes happen in a fixed order: durable record, then work queue, then
    progress snapshot. A record therefore always exists for anything that
    reached the queue, and an enqueue failure leaves a ``failed`` record
    behind instead of an orphaned queue entry.
    """

    def __init__(
        self,
        queue: WorkQueue,
        cache: ProgressCache,
        records: JobRecordStore,
        subjects: SubjectDirectory,
        store_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.cache = cache
        self.records = records
        self.subjects = subjects
        self.store_timeout = store_timeout
        self.clock = clock

    async def submit(
        self,
        kind: Any,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        delay_ms: int = 0,
        batch_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SubmissionResult:
        job_kind = parse_kind(kind)
        if not subject_id:
            raise ValidationFailedError("Missing required fields: subjectId", code="MISSING_FIELDS", fields=["subjectId"])
        validate_scheduling(priority, delay_ms)
        clean_payload = validate_payload(job_kind, payload)

        await self._check_subject(subject_id, user_id)

        profile = KIND_PROFILES[job_kind]
        job = Job(
            id=new_job_id(job_kind, subject_id, int(self.clock() * 1000)),
            kind=job_kind,
            subject_id=subject_id,
            status=JobStatus.QUEUED,
            current_step="Queued",
            priority=profile.priority if priority is None else priority,
            delay_ms=delay_ms,
            attempts=profile.attempts,
            batch_id=batch_id,
            payload=clean_payload,
        )

        await call_store(self.records.create(job), "record store", self.store_timeout)

        try:
            await call_store(self.queue.enqueue(job), "work queue", self.store_timeout)
        except (StoreUnavailableError, ValueError) as e:
            reason = f"Failed to enqueue: {e}"
            logger.error("Job %s recorded but not queued: %s", job.id, e)
            await self._mark_enqueue_failed(job.id, reason)
            raise EnqueueFailedError(job.id, reason) from e

        try:
            # A worker may already have picked the job up; never overwrite its progress
            await call_store(
                self.cache.seed(ProgressSnapshot(
                    job_id=job.id,
                    kind=job_kind.value,
                    status=JobStatus.QUEUED.value,
                    stage=PipelineStage.QUEUED.value,
                    progress=0.0,
                    current_step="Queued",
                )),
                "progress cache",
                self.store_timeout,
            )
        except StoreUnavailableError as e:
            # The reconciler tolerates a missing snapshot
            logger.warning("Could not seed progress for %s: %s", job.id, e)

        logger.info(
            "Submitted %s (%s, subject=%s, priority=%d, delay=%dms%s)",
            job.id, job_kind.value, subject_id, job.priority, delay_ms,
            f", batch={batch_id}" if batch_id else "",
        )
        return SubmissionResult(job_id=job.id, status=JobStatus.QUEUED, estimated_seconds=profile.estimated_seconds)

    async def _check_subject(self, subject_id: str, user_id: Optional[str]) -> None:
        subject = await call_store(self.subjects.get(subject_id), "subject directory", self.store_timeout)
        if subject is None:
            raise SubjectNotFoundError(f"Subject {subject_id} not found", subjectId=subject_id)
        if user_id and user_id != ANONYMOUS_USER and subject.owner_id and subject.owner_id != user_id:
            raise UnauthorizedError(f"Subject {subject_id} does not belong to the caller", subjectId=subject_id)

    async def _mark_enqueue_failed(self, job_id: str, reason: str) -> None:
        try:
            await call_store(
                self.records.finish(job_id, JobStatus.FAILED, error=reason, current_step="Failed to start"),
                "record store",
                self.store_timeout,
            )
        except OrchestrationError as e:
            logger.error("Could not mark %s as failed: %s", job_id, e)
