"""Queue statistics and administration endpoints."""

import asyncio

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from reel_engine.api.v1.deps import get_services
from reel_engine.core.container import Services
from reel_engine.stores.guard import call_store

router = APIRouter()


class CleanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_ms: int = Field(0, alias="olderThanMs", ge=0)


@router.get("/stats")
async def queue_stats(services: Services = Depends(get_services)) -> dict:
    """Work queue counts per state and durable record counts per status."""
    timeout = services.settings.STORE_TIMEOUT_SECONDS
    queue_counts, record_counts, paused = await asyncio.gather(
        call_store(services.queue.counts(), "work queue", timeout),
        call_store(services.records.count_by_status(), "record store", timeout),
        call_store(services.queue.is_paused(), "work queue", timeout),
    )
    return {"success": True, "data": {"queue": queue_counts, "records": record_counts, "paused": paused}}


@router.post("/pause")
async def pause_queue(services: Services = Depends(get_services)) -> dict:
    """Stop handing out jobs. Running jobs finish; submissions are still accepted."""
    await call_store(services.queue.pause(), "work queue", services.settings.STORE_TIMEOUT_SECONDS)
    return {"success": True, "data": {"paused": True}}


@router.post("/resume")
async def resume_queue(services: Services = Depends(get_services)) -> dict:
    await call_store(services.queue.resume(), "work queue", services.settings.STORE_TIMEOUT_SECONDS)
    return {"success": True, "data": {"paused": False}}


@router.post("/clean")
async def clean_queue(request: CleanRequest, services: Services = Depends(get_services)) -> dict:
    """Drop failed queue entries older than ``olderThanMs``. Durable records are kept."""
    removed = await call_store(
        services.queue.clean(request.older_than_ms), "work queue", services.settings.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": {"removed": removed}}
