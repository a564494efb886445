"""Job record model for persistence."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Float, Integer, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from reel_engine.core.database import Base
from reel_engine.core.jobs import Job, JobKind, JobStatus, utcnow


class JobRecord(Base):
    """Job record model - durable audit trail of every submitted job."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(96), nullable=True, index=True)

    # Job info
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.QUEUED.value, index=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    current_step: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Scheduling parameters as submitted
    priority: Mapped[int] = mapped_column(Integer, default=0)
    delay_ms: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=1)

    # Kind-specific fields (style, theme, platform...), never mutated
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    artifacts: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            subject_id=job.subject_id,
            batch_id=job.batch_id,
            kind=job.kind.value,
            status=job.status.value,
            progress=job.progress,
            current_step=job.current_step,
            error=job.error,
            priority=job.priority,
            delay_ms=job.delay_ms,
            attempts=job.attempts,
            payload=job.payload,
            artifacts=job.artifacts,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    def to_job(self) -> Job:
        """Detach into a transient Job."""
        return Job(
            id=self.id,
            kind=JobKind(self.kind),
            subject_id=self.subject_id,
            status=JobStatus(self.status),
            progress=self.progress or 0.0,
            current_step=self.current_step or "",
            error=self.error,
            priority=self.priority,
            delay_ms=self.delay_ms,
            attempts=self.attempts,
            batch_id=self.batch_id,
            payload=self.payload or {},
            artifacts=self.artifacts or {},
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
