"""Best-effort job cancellation."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from reel_engine.core.errors import StoreUnavailableError
from reel_engine.core.jobs import CANCELABLE_QUEUE_STATES, JobStatus
from reel_engine.stores.guard import call_store
from reel_engine.stores.interfaces import JobRecordStore, ProgressCache, ProgressSnapshot, WorkQueue

logger = logging.getLogger(__name__)

CANCEL_REASON = "cancelled by user"


class CancelResult(str, Enum):
    CANCELLED = "cancelled"
    NOT_CANCELABLE = "not_cancelable"
    NOT_FOUND = "not_found"


@dataclass
class CancelOutcome:
    result: CancelResult
    job_id: str
    current_state: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.result == CancelResult.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "result": self.result.value,
            "currentState": self.current_state,
        }


class CancellationController:
    """Moves a job to ``cancelled`` while it is still waiting, delayed or active.

    A provider call already in flight is not aborted; the worker's later
    terminal write is rejected by the record store because the cancelled
    record is already terminal.
    """

    def __init__(self, queue: WorkQueue, cache: ProgressCache, records: JobRecordStore, store_timeout: float = 5.0):
        self.queue = queue
        self.cache = cache
        self.records = records
        self.store_timeout = store_timeout

    async def cancel(self, job_id: str) -> CancelOutcome:
        record = await call_store(self.records.get(job_id), "record store", self.store_timeout)
        if record is not None and record.is_terminal:
            return CancelOutcome(CancelResult.NOT_CANCELABLE, job_id, record.status.value)

        entry = await call_store(self.queue.get(job_id), "work queue", self.store_timeout)
        if entry is None and record is None:
            return CancelOutcome(CancelResult.NOT_FOUND, job_id)

        if entry is not None and entry.state not in CANCELABLE_QUEUE_STATES:
            return CancelOutcome(CancelResult.NOT_CANCELABLE, job_id, entry.state.value)

        artifacts: Dict[str, Any] = {}
        if entry is not None:
            snapshot = await self._read_snapshot(job_id)
            if snapshot is not None:
                artifacts = snapshot.artifacts
            await call_store(self.queue.remove(job_id), "work queue", self.store_timeout)

        written = await call_store(
            self.records.finish(
                job_id,
                JobStatus.CANCELLED,
                error=CANCEL_REASON,
                current_step="Cancelled by user",
                artifacts=artifacts,
            ),
            "record store",
            self.store_timeout,
        )
        if not written:
            latest = await call_store(self.records.get(job_id), "record store", self.store_timeout)
            if latest is not None and latest.is_terminal:
                # A worker reached a terminal state first
                logger.info("Cancel of %s lost to terminal state %s", job_id, latest.status.value)
                return CancelOutcome(CancelResult.NOT_CANCELABLE, job_id, latest.status.value)
            logger.warning("Cancelled queue entry %s has no durable record", job_id)

        try:
            await call_store(self.cache.delete(job_id), "progress cache", self.store_timeout)
        except StoreUnavailableError as e:
            logger.warning("Could not delete progress for cancelled job %s: %s", job_id, e)

        logger.info("Cancelled job %s (was %s)", job_id, entry.state.value if entry else "not queued")
        return CancelOutcome(CancelResult.CANCELLED, job_id, JobStatus.CANCELLED.value)

    async def _read_snapshot(self, job_id: str) -> Optional[ProgressSnapshot]:
        try:
            return await call_store(self.cache.get(job_id), "progress cache", self.store_timeout)
        except StoreUnavailableError as e:
            logger.warning("Progress for %s unavailable during cancel: %s", job_id, e)
            return None
