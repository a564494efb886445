"""Job vocabulary shared by the stores, the services and the worker."""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp (the durable store keeps naive datetimes)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    """Coarse job status exposed to callers."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def is_terminal(status: Any) -> bool:
    """Whether a status value (enum or raw string) is terminal."""
    try:
        return JobStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return False


class QueueState(str, Enum):
    """Work queue engine states."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


CANCELABLE_QUEUE_STATES = frozenset({QueueState.WAITING, QueueState.DELAYED, QueueState.ACTIVE})


class JobKind(str, Enum):
    """Job type enumeration."""
    VIDEO_GENERATION = "video_generation"
    IMAGE_PROCESSING = "image_processing"


class PipelineStage(str, Enum):
    """Fine-grained pipeline stages reported in progress snapshots."""
    QUEUED = "queued"
    GENERATING_SCENES = "generating_scenes"
    GENERATING_VIDEOS = "generating_videos"
    GENERATING_MUSIC = "generating_music"
    COMPILING = "compiling"
    PROCESSING_IMAGE = "processing_image"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class KindProfile:
    """Static per-kind scheduling parameters."""
    id_prefix: str
    estimated_seconds: int
    priority: int
    attempts: int


KIND_PROFILES: Dict[JobKind, KindProfile] = {
    # 6-7 minutes for scenes + 3 clips + music + assembly
    JobKind.VIDEO_GENERATION: KindProfile(id_prefix="video", estimated_seconds=400, priority=1, attempts=3),
    JobKind.IMAGE_PROCESSING: KindProfile(id_prefix="image", estimated_seconds=45, priority=5, attempts=3),
}


def estimated_seconds_for(kind: Any) -> Optional[int]:
    """Fixed total duration estimate for a kind, None when the kind is unknown."""
    try:
        return KIND_PROFILES[JobKind(kind)].estimated_seconds
    except (KeyError, ValueError):
        return None


def new_job_id(kind: JobKind, subject_id: str, timestamp_ms: int) -> str:
    """Human-traceable id: kind prefix, subject and submission time."""
    prefix = KIND_PROFILES[kind].id_prefix
    return f"{prefix}_{subject_id}_{timestamp_ms}_{secrets.token_hex(3)}"


def new_batch_id(kind: JobKind, timestamp_ms: int) -> str:
    return f"batch_{kind.value}_{timestamp_ms}_{secrets.token_hex(3)}"


@dataclass
class Job:
    """Durable job record (transient object, detached from the ORM)."""
    id: str
    kind: JobKind
    subject_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    current_step: str = ""
    error: Optional[str] = None
    priority: int = 0
    delay_ms: int = 0
    attempts: int = 1
    batch_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "kind": self.kind.value if isinstance(self.kind, JobKind) else self.kind,
            "subjectId": self.subject_id,
            "status": self.status.value if isinstance(self.status, JobStatus) else self.status,
            "progress": self.progress,
            "currentStep": self.current_step,
            "error": self.error,
            "priority": self.priority,
            "delayMs": self.delay_ms,
            "attempts": self.attempts,
            "batchId": self.batch_id,
            "payload": self.payload,
            "artifacts": self.artifacts,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
