"""Main API router for v1."""

from fastapi import APIRouter

from reel_engine.api.v1.endpoints import batches, jobs, queue, subjects

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
api_router.include_router(batches.router, prefix="/batches", tags=["Batches"])
api_router.include_router(queue.router, prefix="/queue", tags=["Queue"])
api_router.include_router(subjects.router, prefix="/subjects", tags=["Subjects"])
