"""Pipeline worker: pulls jobs from the work queue and runs them."""

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from reel_engine.core.errors import StoreUnavailableError
from reel_engine.core.jobs import JobKind, JobStatus, PipelineStage, QueueState
from reel_engine.services.pipeline import Pipeline, ProgressReporter
from reel_engine.stores.guard import call_store
from reel_engine.stores.interfaces import JobRecordStore, ProgressCache, QueueEntry, WorkQueue, merge_artifacts

logger = logging.getLogger(__name__)


class PipelineWorker:
    """Runs queued jobs one at a time.

    Several workers may run concurrently against the same stores; the queue
    hands each job to a single worker and the record store refuses to
    overwrite a terminal record, so a job cancelled mid-flight stays
    cancelled whatever its pipeline does afterwards.

    While a job runs the worker keeps its queue lease alive. A worker that
    dies mid-job stops renewing it, and the next worker to poll reclaims
    the job as a failed attempt.
    """

    def __init__(
        self,
        queue: WorkQueue,
        cache: ProgressCache,
        records: JobRecordStore,
        pipelines: Iterable[Pipeline],
        store_timeout: float = 5.0,
        idle_sleep: float = 2.0,
        worker_id: int = 0,
        heartbeat_interval: float = 20.0,
        failed_retention_ms: int = 7 * 24 * 3600 * 1000,
        clean_interval: float = 300.0,
    ):
        self.queue = queue
        self.cache = cache
        self.records = records
        self.pipelines: Dict[JobKind, Pipeline] = {p.kind: p for p in pipelines}
        self.store_timeout = store_timeout
        self.idle_sleep = idle_sleep
        self.worker_id = worker_id
        self.heartbeat_interval = heartbeat_interval
        self.failed_retention_ms = failed_retention_ms
        self.clean_interval = clean_interval
        self._next_clean = 0.0

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Worker loop polling the queue until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Worker %d started (%s)", self.worker_id, ", ".join(k.value for k in self.pipelines))

        while not stop_event.is_set():
            try:
                processed = await self.run_once()
                if not processed:
                    await self.clean_if_due()
                    await asyncio.sleep(self.idle_sleep)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Worker %d loop error: %s", self.worker_id, e)
                await asyncio.sleep(5)

        logger.info("Worker %d stopped", self.worker_id)

    async def run_once(self) -> bool:
        """Process at most one job. Returns False when nothing was eligible."""
        await self.reclaim_stalled()

        entry = await call_store(self.queue.fetch_next(), "work queue", self.store_timeout)
        if entry is None:
            return False

        record = await call_store(self.records.get(entry.job_id), "record store", self.store_timeout)
        if record is not None and record.is_terminal:
            logger.info("Skipping %s: record already %s", entry.job_id, record.status.value)
            await call_store(self.queue.remove(entry.job_id), "work queue", self.store_timeout)
            return True

        await call_store(self.records.mark_started(entry.job_id), "record store", self.store_timeout)
        logger.info(
            "Worker %d picked up job %s (%s, attempt %d/%d)",
            self.worker_id, entry.job_id, entry.kind.value, entry.attempts_made + 1, entry.attempts,
        )
        await self._execute(entry)
        return True

    async def reclaim_stalled(self) -> int:
        """Fail the attempts of jobs whose worker stopped renewing the lease."""
        reclaimed = await call_store(self.queue.reclaim_stalled(), "work queue", self.store_timeout)
        for job_id, state in reclaimed.items():
            entry = await call_store(self.queue.get(job_id), "work queue", self.store_timeout)
            if entry is None:
                continue
            reporter = ProgressReporter(self.cache, job_id, entry.kind, self.store_timeout)
            reason = entry.failed_reason or "stalled"
            await self._settle_failure(entry, reporter, state, reason, attempt=entry.attempts_made)
        return len(reclaimed)

    async def clean_if_due(self) -> int:
        """Drop failed queue entries past retention, at most once per ``clean_interval``."""
        now = asyncio.get_running_loop().time()
        if now < self._next_clean:
            return 0
        self._next_clean = now + self.clean_interval
        removed = await call_store(self.queue.clean(self.failed_retention_ms), "work queue", self.store_timeout)
        if removed:
            logger.info("Cleaned %d failed job(s) from the queue", removed)
        return removed

    async def _execute(self, entry: QueueEntry) -> None:
        reporter = ProgressReporter(self.cache, entry.job_id, entry.kind, self.store_timeout)
        pipeline = self.pipelines.get(entry.kind)
        heartbeat = asyncio.create_task(self._keep_lease(entry.job_id))

        try:
            if pipeline is None:
                raise RuntimeError(f"No pipeline registered for {entry.kind.value}")
            artifacts = await pipeline.run(entry, reporter)
        except StoreUnavailableError:
            raise
        except Exception as e:
            await self._stop(heartbeat)
            await self._handle_failure(entry, reporter, e)
            return
        finally:
            await self._stop(heartbeat)

        artifacts = merge_artifacts(await self._snapshot_artifacts(entry.job_id), artifacts)
        written = await call_store(
            self.records.finish(
                entry.job_id,
                JobStatus.COMPLETED,
                progress=100.0,
                current_step="Completed",
                artifacts=artifacts,
            ),
            "record store",
            self.store_timeout,
        )
        if written:
            await reporter.report(PipelineStage.COMPLETED, 100, "Completed", artifacts=artifacts, status=JobStatus.COMPLETED)
            logger.info("Job %s completed", entry.job_id)
        else:
            logger.info("Discarding late completion of %s: record already terminal", entry.job_id)
            await self._drop_snapshot(entry.job_id)
        await call_store(self.queue.complete(entry.job_id), "work queue", self.store_timeout)

    async def _keep_lease(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                touched = await call_store(self.queue.touch(job_id), "work queue", self.store_timeout)
            except StoreUnavailableError as e:
                logger.warning("Lease renewal for %s failed: %s", job_id, e)
                continue
            if not touched:
                logger.info("Stopped renewing lease for %s: no longer active", job_id)
                return

    @staticmethod
    async def _stop(task: "asyncio.Task[None]") -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _handle_failure(self, entry: QueueEntry, reporter: ProgressReporter, error: Exception) -> None:
        reason = str(error) or error.__class__.__name__
        state = await call_store(self.queue.fail(entry.job_id, reason), "work queue", self.store_timeout)
        await self._settle_failure(entry, reporter, state, reason, attempt=entry.attempts_made + 1)

    async def _settle_failure(
        self,
        entry: QueueEntry,
        reporter: ProgressReporter,
        state: Optional[QueueState],
        reason: str,
        attempt: int,
    ) -> None:
        if state == QueueState.FAILED:
            # Keep what earlier stages produced on the durable record
            artifacts = await self._snapshot_artifacts(entry.job_id)
            written = await call_store(
                self.records.finish(
                    entry.job_id, JobStatus.FAILED, error=reason, current_step="Failed", artifacts=artifacts,
                ),
                "record store",
                self.store_timeout,
            )
            if written:
                await reporter.report(PipelineStage.FAILED, None, f"Failed: {reason}", status=JobStatus.FAILED)
            logger.error("Job %s failed after %d attempts: %s", entry.job_id, entry.attempts, reason)
        elif state == QueueState.DELAYED:
            await reporter.report(
                PipelineStage.QUEUED, 0,
                f"Retrying after failure ({attempt}/{entry.attempts})",
                status=JobStatus.QUEUED,
            )
            logger.warning("Job %s attempt %d failed, retry scheduled: %s", entry.job_id, attempt, reason)
        else:
            # Removed from the queue while running (cancelled)
            logger.info("Job %s failed after leaving the queue: %s", entry.job_id, reason)
            await self._drop_snapshot(entry.job_id)

    async def _snapshot_artifacts(self, job_id: str) -> Dict[str, Any]:
        try:
            snapshot = await call_store(self.cache.get(job_id), "progress cache", self.store_timeout)
        except StoreUnavailableError as e:
            logger.warning("Could not read progress for %s: %s", job_id, e)
            return {}
        return dict(snapshot.artifacts) if snapshot else {}

    async def _drop_snapshot(self, job_id: str) -> None:
        """Remove progress written after the job was cancelled."""
        try:
            await call_store(self.cache.delete(job_id), "progress cache", self.store_timeout)
        except StoreUnavailableError as e:
            logger.warning("Could not drop progress for %s: %s", job_id, e)
