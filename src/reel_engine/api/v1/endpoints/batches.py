"""Batch endpoints."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from reel_engine.api.v1.deps import get_services, get_user_id
from reel_engine.core.container import Services
from reel_engine.services.bulk import BatchItem

router = APIRouter()


class BatchItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(alias="itemId")
    subject_id: str = Field(alias="subjectId")
    payload: Dict[str, Any] = Field(default_factory=dict)


class SubmitBatchRequest(BaseModel):
    kind: str
    items: List[BatchItemRequest] = Field(min_length=1)
    priority: Optional[int] = None


@router.post("", status_code=202)
async def submit_batch(
    request: SubmitBatchRequest,
    services: Services = Depends(get_services),
    user_id: Optional[str] = Depends(get_user_id),
) -> dict:
    """Submit one job per item with staggered start times."""
    batch = await services.bulk.submit_batch(
        request.kind,
        [BatchItem(item_id=i.item_id, subject_id=i.subject_id, payload=i.payload) for i in request.items],
        priority=request.priority,
        user_id=user_id,
    )
    return {"success": True, "data": batch.to_dict()}


@router.get("/{batch_id}")
async def get_batch(
    batch_id: str,
    job_ids: Optional[str] = Query(None, alias="jobIds"),
    services: Services = Depends(get_services),
) -> dict:
    """Aggregated and per-job status, recomputed on every call."""
    ids = [j.strip() for j in job_ids.split(",") if j.strip()] if job_ids else None
    status = await services.bulk.batch_status(batch_id, ids)
    return {"success": True, "data": status.to_dict()}
