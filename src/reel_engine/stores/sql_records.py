"""SQL-backed durable job records and subject lookup."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reel_engine.core.jobs import TERMINAL_STATUSES, Job, JobStatus, utcnow
from reel_engine.models.job import JobRecord
from reel_engine.models.subject import Subject
from reel_engine.stores.interfaces import SubjectRef, merge_artifacts

logger = logging.getLogger(__name__)

TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class SqlJobRecordStore:
    """Durable job records. Terminal records are never overwritten."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def create(self, job: Job) -> Job:
        async with self._session_maker() as db:
            db.add(JobRecord.from_job(job))
            await db.commit()
        logger.debug("Recorded job %s (%s)", job.id, job.kind.value)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._session_maker() as db:
            result = await db.execute(select(JobRecord).where(JobRecord.id == job_id))
            record = result.scalar_one_or_none()
            return record.to_job() if record else None

    async def mark_started(self, job_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status.not_in(TERMINAL_VALUES))
                .values(status=JobStatus.PROCESSING.value, started_at=utcnow(), updated_at=utcnow())
            )
            await db.commit()
            return result.rowcount > 0

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
        """Move a record to a terminal status.

        The update is conditional on the record not being terminal yet, so
        whichever of completion/failure/cancellation lands first wins and the
        others report False.
        """
        async with self._session_maker() as db:
            result = await db.execute(select(JobRecord.artifacts).where(JobRecord.id == job_id))
            existing = result.scalar_one_or_none()

            values: Dict[str, Any] = {
                "status": status.value,
                "completed_at": utcnow(),
                "updated_at": utcnow(),
            }
            if error is not None:
                values["error"] = error
            if progress is not None:
                values["progress"] = progress
            if current_step is not None:
                values["current_step"] = current_step
            if artifacts:
                values["artifacts"] = merge_artifacts(existing, artifacts)

            result = await db.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status.not_in(TERMINAL_VALUES))
                .values(**values)
            )
            await db.commit()

        written = result.rowcount > 0
        if not written:
            logger.info("Record %s already terminal, %s not written", job_id, status.value)
        return written

    async def list_for_subject(self, subject_id: str, limit: int = 10) -> List[Job]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(JobRecord)
                .where(JobRecord.subject_id == subject_id)
                .order_by(JobRecord.created_at.desc())
                .limit(limit)
            )
            return [record.to_job() for record in result.scalars().all()]

    async def list_for_batch(self, batch_id: str) -> List[Job]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(JobRecord)
                .where(JobRecord.batch_id == batch_id)
                .order_by(JobRecord.created_at, JobRecord.id)
            )
            return [record.to_job() for record in result.scalars().all()]

    async def count_by_status(self) -> Dict[str, int]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(JobRecord.status, func.count()).group_by(JobRecord.status)
            )
            return {status: count for status, count in result.all()}


class SqlSubjectDirectory:
    """Subject lookup against the ``subjects`` table."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get(self, subject_id: str) -> Optional[SubjectRef]:
        async with self._session_maker() as db:
            result = await db.execute(select(Subject).where(Subject.id == subject_id))
            subject = result.scalar_one_or_none()
            return SubjectRef(id=subject.id, owner_id=subject.owner_id, name=subject.name) if subject else None

    async def add(self, subject_id: str, owner_id: Optional[str] = None, name: Optional[str] = None) -> SubjectRef:
        async with self._session_maker() as db:
            # Upsert: registering a known subject updates its owner and name
            await db.merge(Subject(id=subject_id, owner_id=owner_id, name=name))
            await db.commit()
        return SubjectRef(id=subject_id, owner_id=owner_id, name=name)
