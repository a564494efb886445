"""In-process store implementations for tests and single-process deployments."""

import copy
import itertools
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from reel_engine.core.jobs import Job, JobStatus, QueueState, utcnow
from reel_engine.stores.interfaces import STALLED_REASON, ProgressSnapshot, QueueEntry, SubjectRef, merge_artifacts


class MemoryWorkQueue:
    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        retry_backoff_ms: int = 2000,
        lease_ms: int = 60000,
    ) -> None:
        self._clock = clock
        self._retry_backoff_ms = retry_backoff_ms
        self._lease_ms = lease_ms
        self._entries: Dict[str, QueueEntry] = {}
        self._order: Dict[str, Tuple[int, int]] = {}
        self._ready_at: Dict[str, int] = {}
        self._lease_until: Dict[str, int] = {}
        self._paused = False
        self._seq = itertools.count(1)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _make_waiting(self, entry: QueueEntry) -> None:
        entry.state = QueueState.WAITING
        self._order[entry.job_id] = (entry.priority, next(self._seq))
        self._ready_at.pop(entry.job_id, None)

    async def enqueue(self, job: Job) -> QueueEntry:
        if job.id in self._entries:
            raise ValueError(f"Job {job.id} is already queued")
        now = self._now_ms()
        if job.delay_ms > 0:
            entry = QueueEntry.from_job(job, QueueState.DELAYED, created_at=now)
            self._ready_at[job.id] = now + job.delay_ms
        else:
            entry = QueueEntry.from_job(job, QueueState.WAITING, created_at=now)
            self._make_waiting(entry)
        self._entries[job.id] = entry
        return replace(entry)

    async def get(self, job_id: str) -> Optional[QueueEntry]:
        entry = self._entries.get(job_id)
        return replace(entry) if entry else None

    async def remove(self, job_id: str) -> bool:
        self._order.pop(job_id, None)
        self._ready_at.pop(job_id, None)
        self._lease_until.pop(job_id, None)
        return self._entries.pop(job_id, None) is not None

    async def fetch_next(self) -> Optional[QueueEntry]:
        now = self._now_ms()
        for job_id, ready_at in list(self._ready_at.items()):
            if ready_at <= now:
                self._make_waiting(self._entries[job_id])

        if self._paused:
            return None
        waiting = [job_id for job_id, entry in self._entries.items() if entry.state == QueueState.WAITING]
        if not waiting:
            return None
        job_id = min(waiting, key=lambda j: self._order[j])
        entry = self._entries[job_id]
        entry.state = QueueState.ACTIVE
        entry.processed_at = now
        self._order.pop(job_id, None)
        self._lease_until[job_id] = now + self._lease_ms
        return replace(entry)

    async def complete(self, job_id: str) -> bool:
        return await self.remove(job_id)

    def _record_failure(self, entry: QueueEntry, reason: str, now: int) -> QueueState:
        self._lease_until.pop(entry.job_id, None)
        entry.attempts_made += 1
        entry.failed_reason = reason
        if entry.attempts_made < entry.attempts:
            entry.state = QueueState.DELAYED
            self._ready_at[entry.job_id] = now + self._retry_backoff_ms * 2 ** (entry.attempts_made - 1)
        else:
            entry.state = QueueState.FAILED
            entry.finished_at = now
        return entry.state

    async def fail(self, job_id: str, reason: str) -> Optional[QueueState]:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        return self._record_failure(entry, reason, self._now_ms())

    async def touch(self, job_id: str) -> bool:
        entry = self._entries.get(job_id)
        if entry is None or entry.state != QueueState.ACTIVE:
            return False
        self._lease_until[job_id] = self._now_ms() + self._lease_ms
        return True

    async def reclaim_stalled(self) -> Dict[str, QueueState]:
        now = self._now_ms()
        stalled = [job_id for job_id, until in self._lease_until.items() if until <= now]
        return {job_id: self._record_failure(self._entries[job_id], STALLED_REASON, now) for job_id in stalled}

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused

    async def clean(self, grace_ms: int = 0) -> int:
        cutoff = self._now_ms() - grace_ms
        expired = [
            job_id for job_id, entry in self._entries.items()
            if entry.state == QueueState.FAILED and (entry.finished_at or 0) <= cutoff
        ]
        for job_id in expired:
            await self.remove(job_id)
        return len(expired)

    async def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in QueueState}
        for entry in self._entries.values():
            counts[entry.state.value] += 1
        return counts


class MemoryProgressCache:
    def __init__(self) -> None:
        self._snapshots: Dict[str, ProgressSnapshot] = {}

    async def get(self, job_id: str) -> Optional[ProgressSnapshot]:
        snapshot = self._snapshots.get(job_id)
        return copy.deepcopy(snapshot) if snapshot else None

    async def put(self, snapshot: ProgressSnapshot) -> None:
        self._snapshots[snapshot.job_id] = copy.deepcopy(snapshot)

    async def seed(self, snapshot: ProgressSnapshot) -> bool:
        if snapshot.job_id in self._snapshots:
            return False
        self._snapshots[snapshot.job_id] = copy.deepcopy(snapshot)
        return True

    async def merge(self, job_id: str, artifacts: Optional[Dict[str, Any]] = None, **changes: Any) -> ProgressSnapshot:
        current = self._snapshots.get(job_id) or ProgressSnapshot(job_id=job_id)
        snapshot = current.updated(artifacts=artifacts, **changes)
        self._snapshots[job_id] = snapshot
        return copy.deepcopy(snapshot)

    async def delete(self, job_id: str) -> bool:
        return self._snapshots.pop(job_id, None) is not None


class MemoryJobRecordStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def create(self, job: Job) -> Job:
        if job.id in self._jobs:
            raise ValueError(f"Job {job.id} already recorded")
        self._jobs[job.id] = copy.deepcopy(job)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def mark_started(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        job.status = JobStatus.PROCESSING
        job.started_at = utcnow()
        return True

    async def finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        progress: Optional[float] = None,
        current_step: Optional[str] = None,
        artifacts: Optional[Dict[str, Any]] = None,
    ) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        job.status = status
        job.completed_at = utcnow()
        if error is not None:
            job.error = error
        if progress is not None:
            job.progress = progress
        if current_step is not None:
            job.current_step = current_step
        if artifacts:
            job.artifacts = merge_artifacts(job.artifacts, artifacts)
        return True

    async def list_for_subject(self, subject_id: str, limit: int = 10) -> List[Job]:
        jobs = [job for job in self._jobs.values() if job.subject_id == subject_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return [copy.deepcopy(job) for job in jobs[:limit]]

    async def list_for_batch(self, batch_id: str) -> List[Job]:
        return [copy.deepcopy(job) for job in self._jobs.values() if job.batch_id == batch_id]

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts


class MemorySubjectDirectory:
    def __init__(self, subjects: Optional[Dict[str, Optional[str]]] = None) -> None:
        self._subjects: Dict[str, SubjectRef] = {}
        for subject_id, owner_id in (subjects or {}).items():
            self._subjects[subject_id] = SubjectRef(id=subject_id, owner_id=owner_id)

    async def get(self, subject_id: str) -> Optional[SubjectRef]:
        return self._subjects.get(subject_id)

    async def add(self, subject_id: str, owner_id: Optional[str] = None, name: Optional[str] = None) -> SubjectRef:
        ref = SubjectRef(id=subject_id, owner_id=owner_id, name=name)
        self._subjects[subject_id] = ref
        return ref
