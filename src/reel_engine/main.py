"""REEL Engine - Main FastAPI Application."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reel_engine.api.v1.router import api_router
from reel_engine.core.config import settings
from reel_engine.core.container import Services, build_pipelines, build_worker, close_services, create_services
from reel_engine.core.errors import OrchestrationError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def start_embedded_workers(services: Services, stop_event: asyncio.Event):
    """Run pipeline workers inside the API process."""
    pipelines = build_pipelines(services.settings, services)
    tasks = [
        asyncio.create_task(build_worker(services, pipelines, worker_id=i).run(stop_event))
        for i in range(services.settings.WORKER_CONCURRENCY)
    ]
    logger.info("Started %d embedded workers", len(tasks))
    return tasks


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``services`` may be injected (tests); otherwise they are built from
    settings when the application starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting REEL Engine v%s", settings.VERSION)

        owned = services is None
        app.state.services = services or await create_services(settings)
        logger.info("Stores ready (%s backend)", app.state.services.settings.STORE_BACKEND)

        stop_event = asyncio.Event()
        workers = []
        if app.state.services.settings.EMBEDDED_WORKER:
            workers = await start_embedded_workers(app.state.services, stop_event)

        yield

        # Cleanup
        logger.info("Shutting down REEL Engine...")
        stop_event.set()
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        if owned:
            await close_services(app.state.services)
        logger.info("Shutdown complete")

    app = FastAPI(
        title="REEL Engine",
        description="Job orchestration backend for multi-stage video generation",
        version=settings.VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "code": "INVALID_REQUEST",
                "message": "Request body is malformed",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "backend": app.state.services.settings.STORE_BACKEND,
        }

    # Include API router
    app.include_router(api_router, prefix="/v1")

    return app


# Create app instance
app = create_app()


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "reel_engine.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
