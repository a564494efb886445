"""Job endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from reel_engine.api.v1.deps import get_services, get_user_id
from reel_engine.core.container import Services
from reel_engine.core.errors import CannotCancelError, JobNotFoundError
from reel_engine.services.cancellation import CancelResult
from reel_engine.stores.guard import call_store

router = APIRouter()


class SubmitJobRequest(BaseModel):
    """Kind-specific fields may be sent inside ``payload`` or at the top level."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kind: str
    subject_id: str = Field(alias="subjectId")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    delay_ms: int = Field(0, alias="delayMs")

    def merged_payload(self) -> Dict[str, Any]:
        return {**(self.model_extra or {}), **self.payload}


@router.post("", status_code=202)
async def submit_job(
    request: SubmitJobRequest,
    services: Services = Depends(get_services),
    user_id: Optional[str] = Depends(get_user_id),
) -> dict:
    """Submit a job. Returns as soon as it is queued."""
    result = await services.submission.submit(
        request.kind,
        request.subject_id,
        request.merged_payload(),
        priority=request.priority,
        delay_ms=request.delay_ms,
        user_id=user_id,
    )
    return {"success": True, "data": result.to_dict()}


@router.get("")
async def list_jobs(
    subject_id: str = Query(..., alias="subjectId"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    services: Services = Depends(get_services),
) -> dict:
    """Durable job history for a subject, newest first."""
    jobs = await call_store(
        services.records.list_for_subject(subject_id, limit or services.settings.HISTORY_LIMIT),
        "record store",
        services.settings.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": [job.to_dict() for job in jobs]}


@router.get("/{job_id}")
async def get_job(job_id: str, services: Services = Depends(get_services)) -> dict:
    """Reconciled job status and progress."""
    view = await services.reconciler.get_status(job_id)
    return {"success": True, "data": view.to_dict()}


@router.delete("/{job_id}")
async def cancel_job(job_id: str, services: Services = Depends(get_services)) -> dict:
    """Cancel a job that is still waiting, delayed or running."""
    outcome = await services.cancellation.cancel(job_id)

    if outcome.result == CancelResult.NOT_FOUND:
        raise JobNotFoundError(f"Job {job_id} not found", jobId=job_id)
    if outcome.result == CancelResult.NOT_CANCELABLE:
        raise CannotCancelError(
            f"Job {job_id} cannot be cancelled in state '{outcome.current_state}'",
            jobId=job_id,
            currentState=outcome.current_state,
        )

    return {"success": True, "data": outcome.to_dict()}
