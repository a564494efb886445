"""Subject registration endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from reel_engine.api.v1.deps import get_services
from reel_engine.core.container import Services
from reel_engine.core.errors import SubjectNotFoundError
from reel_engine.stores.guard import call_store

router = APIRouter()


class RegisterSubjectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_id: str = Field(alias="subjectId", min_length=1, max_length=64)
    owner_id: Optional[str] = Field(None, alias="ownerId", max_length=64)
    name: Optional[str] = Field(None, max_length=255)


@router.post("", status_code=201)
async def register_subject(request: RegisterSubjectRequest, services: Services = Depends(get_services)) -> dict:
    """Register a subject (or update its owner and name) so jobs can target it."""
    ref = await call_store(
        services.subjects.add(request.subject_id, owner_id=request.owner_id, name=request.name),
        "subject directory",
        services.settings.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": ref.to_dict()}


@router.get("/{subject_id}")
async def get_subject(subject_id: str, services: Services = Depends(get_services)) -> dict:
    ref = await call_store(
        services.subjects.get(subject_id), "subject directory", services.settings.STORE_TIMEOUT_SECONDS
    )
    if ref is None:
        raise SubjectNotFoundError(f"Subject {subject_id} not found", subjectId=subject_id)
    return {"success": True, "data": ref.to_dict()}
