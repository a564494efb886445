"""Bulk fan-out with staggered starts and per-item isolation."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from reel_engine.core.errors import OrchestrationError, StoreUnavailableError
from reel_engine.core.jobs import JobStatus, new_batch_id
from reel_engine.services.reconciler import JobStatusView, StatusReconciler
from reel_engine.services.submission import JobSubmissionService
from reel_engine.services.validation import parse_kind
from reel_engine.stores.guard import call_store

logger = logging.getLogger(__name__)

BATCH_STATUSES = (
    JobStatus.QUEUED,
    JobStatus.PROCESSING,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.UNKNOWN,
)


@dataclass
class BatchItem:
    item_id: str
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchJob:
    """Outcome of one item: a job id on success, an error code otherwise."""
    item_id: str
    job_id: Optional[str] = None
    status: str = JobStatus.QUEUED.value
    code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"itemId": self.item_id, "jobId": self.job_id, "status": self.status}
        if self.code:
            data["code"] = self.code
            data["message"] = self.message
        return data


@dataclass
class BatchSubmission:
    batch_id: str
    jobs: List[BatchJob] = field(default_factory=list)

    @property
    def submitted(self) -> int:
        return sum(1 for job in self.jobs if job.code is None)

    @property
    def failed(self) -> int:
        return len(self.jobs) - self.submitted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "total": len(self.jobs),
            "submitted": self.submitted,
            "failed": self.failed,
            "jobs": [job.to_dict() for job in self.jobs],
        }


@dataclass
class BatchStatus:
    batch_id: str
    total: int
    counts: Dict[str, int]
    progress: float
    jobs: List[JobStatusView]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "total": self.total,
            "counts": self.counts,
            "progress": self.progress,
            "jobs": [job.to_dict() for job in self.jobs],
        }


class BulkFanOutController:
    """Creates one job per item, item ``i`` delayed by ``i * stagger_interval_ms``.

    A failing item is recorded on its own entry and never aborts the rest of
    the batch. Batch status is recomputed from the members on every read.
    """

    def __init__(
        self,
        submission: JobSubmissionService,
        reconciler: StatusReconciler,
        stagger_interval_ms: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.submission = submission
        self.reconciler = reconciler
        self.stagger_interval_ms = stagger_interval_ms
        self.clock = clock

    async def submit_batch(
        self,
        kind: Any,
        items: List[BatchItem],
        priority: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> BatchSubmission:
        job_kind = parse_kind(kind)
        batch = BatchSubmission(batch_id=new_batch_id(job_kind, int(self.clock() * 1000)))

        for index, item in enumerate(items):
            try:
                result = await self.submission.submit(
                    job_kind,
                    item.subject_id,
                    item.payload,
                    priority=priority,
                    delay_ms=index * self.stagger_interval_ms,
                    batch_id=batch.batch_id,
                    user_id=user_id,
                )
                batch.jobs.append(BatchJob(item_id=item.item_id, job_id=result.job_id, status=result.status.value))
            except OrchestrationError as e:
                job_id = e.details.get("jobId")
                logger.warning("Batch %s item %s failed: %s", batch.batch_id, item.item_id, e.message)
                await self._mark_failed(job_id, e.message)
                batch.jobs.append(BatchJob(
                    item_id=item.item_id,
                    job_id=job_id,
                    status=JobStatus.FAILED.value,
                    code=e.code,
                    message=e.message,
                ))
            except Exception as e:
                logger.exception("Batch %s item %s failed unexpectedly", batch.batch_id, item.item_id)
                batch.jobs.append(BatchJob(
                    item_id=item.item_id,
                    status=JobStatus.FAILED.value,
                    code="INTERNAL_ERROR",
                    message=str(e),
                ))

        logger.info(
            "Batch %s: %d/%d items submitted (%s)",
            batch.batch_id, batch.submitted, len(items), job_kind.value,
        )
        return batch

    async def _mark_failed(self, job_id: Optional[str], reason: str) -> None:
        if not job_id:
            return
        records = self.submission.records
        try:
            await call_store(
                records.finish(job_id, JobStatus.FAILED, error=reason),
                "record store",
                self.submission.store_timeout,
            )
        except StoreUnavailableError as e:
            logger.error("Could not mark batch job %s as failed: %s", job_id, e)

    async def batch_status(self, batch_id: str, job_ids: Optional[List[str]] = None) -> BatchStatus:
        if not job_ids:
            members = await call_store(
                self.submission.records.list_for_batch(batch_id),
                "record store",
                self.submission.store_timeout,
            )
            job_ids = [job.id for job in members]

        views = list(await asyncio.gather(*(self.reconciler.get_status(job_id) for job_id in job_ids)))

        counts = {status.value: 0 for status in BATCH_STATUSES}
        for view in views:
            counts[view.status.value] = counts.get(view.status.value, 0) + 1
        progress = round(sum(view.progress for view in views) / len(views), 1) if views else 0.0

        return BatchStatus(batch_id=batch_id, total=len(views), counts=counts, progress=progress, jobs=views)
