"""Store contracts and the value objects that cross them.

The three stores are written independently by submitters, workers and the
cancellation path; none of them offers a cross-store transaction. Services
depend on these protocols only, so Redis/SQL and in-memory implementations
are interchangeable.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol

from reel_engine.core.jobs import Job, JobKind, JobStatus, PipelineStage, QueueState, utcnow

# Failure reason recorded when an active job outlives its lease
STALLED_REASON = "Job stalled: worker lease expired"


def merge_artifacts(*sources: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge artifact maps, oldest first, without ever dropping an entry.

    Lists are unioned in order of first appearance, nested maps are merged
    recursively and scalars are taken from the latest source that has them.
    """
    merged: Dict[str, Any] = {}
    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            if value is None:
                continue
            current = merged.get(key)
            if isinstance(value, list):
                combined = list(current) if isinstance(current, list) else []
                for item in value:
                    if item not in combined:
                        combined.append(item)
                merged[key] = combined
            elif isinstance(value, dict):
                merged[key] = merge_artifacts(current if isinstance(current, dict) else None, value)
            else:
                merged[key] = value
    return merged


@dataclass
class QueueEntry:
    """A job as seen by the work queue."""
    job_id: str
    kind: JobKind
    subject_id: str
    state: QueueState
    priority: int = 0
    delay_ms: int = 0
    attempts: int = 1
    attempts_made: int = 0
    batch_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    failed_reason: Optional[str] = None
    created_at: int = 0  # epoch ms
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None

    @classmethod
    def from_job(cls, job: Job, state: QueueState, created_at: int) -> "QueueEntry":
        return cls(
            job_id=job.id,
            kind=job.kind,
            subject_id=job.subject_id,
            state=state,
            priority=job.priority,
            delay_ms=job.delay_ms,
            attempts=job.attempts,
            batch_id=job.batch_id,
            payload=dict(job.payload),
            created_at=created_at,
        )


@dataclass
class ProgressSnapshot:
    """Ephemeral, frequently overwritten view of an in-flight job."""
    job_id: str
    kind: Optional[str] = None
    status: str = JobStatus.QUEUED.value
    stage: str = PipelineStage.QUEUED.value
    progress: float = 0.0
    current_step: str = ""
    artifacts: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    def updated(self, artifacts: Optional[Dict[str, Any]] = None, **changes: Any) -> "ProgressSnapshot":
        """Return a copy with ``changes`` applied and ``artifacts`` accumulated."""
        changes = {k: (v.value if hasattr(v, "value") else v) for k, v in changes.items() if v is not None}
        return replace(
            self,
            artifacts=merge_artifacts(self.artifacts, artifacts),
            updated_at=utcnow().isoformat(),
            **changes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "stage": self.stage,
            "progress": self.progress,
            "currentStep": self.current_step,
            "artifacts": self.artifacts,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressSnapshot":
        return cls(
            job_id=data["jobId"],
            kind=data.get("kind"),
            status=data.get("status") or JobStatus.QUEUED.value,
            stage=data.get("stage") or PipelineStage.QUEUED.value,
            progress=float(data.get("progress") or 0.0),
            current_step=data.get("currentStep") or "",
            artifacts=data.get("artifacts") or {},
            created_at=data.get("createdAt") or utcnow().isoformat(),
            updated_at=data.get("updatedAt") or utcnow().isoformat(),
        )


@dataclass(frozen=True)
class SubjectRef:
    id: str
    owner_id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "ownerId": self.owner_id, "name": self.name}


class WorkQueue(Protocol):
    async def enqueue(self, job: Job) -> QueueEntry:
        ...

    async def get(self, job_id: str) -> Optional[QueueEntry]:
        ...

    async def remove(self, job_id: str) -> bool:
        ...

    async def fetch_next(self) -> Optional[QueueEntry]:
        ...

    async def complete(self, job_id: str) -> bool:
        ...

    async def fail(self, job_id: str, reason: str) -> Optional[QueueState]:
        ...

    async def touch(self, job_id: str) -> bool:
        ...

    async def reclaim_stalled(self) -> Dict[str, QueueState]:
        ...

    async def pause(self) -> None:
        ...

    async def resume(self) -> None:
        ...

    async def is_paused(self) -> bool:
        ...

    async def clean(self, grace_ms: int = 0) -> int:
        ...

    async def counts(self) -> Dict[str, int]:
        ...


class ProgressCache(Protocol):
    async def get(self, job_id: str) -> Optional[ProgressSnapshot]:
        ...

    async def put(self, snapshot: ProgressSnapshot) -> None:
        ...

    async def seed(self, snapshot: ProgressSnapshot) -> bool:
        ...

    async def merge(self, job_id: str, artifacts: Optional[Dict[str, Any]] = None, **changes: Any) -> ProgressSnapshot:
        ...

    async def delete(self, job_id: str) -> bool:
        ...


class JobRecordStore(Protocol):
    async def create(self, job: Job) -> Job:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def mark_started(self, job_id: str) -> bool:
        ...

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
        ...

    async def list_for_subject(self, subject_id: str, limit: int = 10) -> List[Job]:
        ...

    async def list_for_batch(self, batch_id: str) -> List[Job]:
        ...

    async def count_by_status(self) -> Dict[str, int]:
        ...


class SubjectDirectory(Protocol):
    async def get(self, subject_id: str) -> Optional[SubjectRef]:
        ...

    async def add(self, subject_id: str, owner_id: Optional[str] = None, name: Optional[str] = None) -> SubjectRef:
        ...
