"""Service wiring.

Stores are created once per process and handed to every service through
its constructor; nothing reaches for a module-level singleton.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from reel_engine.core.config import Settings
from reel_engine.services.bulk import BulkFanOutController
from reel_engine.services.cancellation import CancellationController
from reel_engine.services.pipeline import ImageProcessingPipeline, Pipeline, VideoGenerationPipeline
from reel_engine.services.providers import HttpProviderAdapter
from reel_engine.services.reconciler import StatusReconciler
from reel_engine.services.submission import JobSubmissionService
from reel_engine.services.worker import PipelineWorker
from reel_engine.stores.interfaces import JobRecordStore, ProgressCache, SubjectDirectory, WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    queue: WorkQueue
    cache: ProgressCache
    records: JobRecordStore
    subjects: SubjectDirectory
    submission: JobSubmissionService
    reconciler: StatusReconciler
    cancellation: CancellationController
    bulk: BulkFanOutController
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)


def build_services(
    settings: Settings,
    queue: WorkQueue,
    cache: ProgressCache,
    records: JobRecordStore,
    subjects: SubjectDirectory,
) -> Services:
    """Assemble the orchestration services around already-built stores."""
    timeout = settings.STORE_TIMEOUT_SECONDS
    submission = JobSubmissionService(queue, cache, records, subjects, store_timeout=timeout)
    reconciler = StatusReconciler(queue, cache, records, store_timeout=timeout)
    return Services(
        settings=settings,
        queue=queue,
        cache=cache,
        records=records,
        subjects=subjects,
        submission=submission,
        reconciler=reconciler,
        cancellation=CancellationController(queue, cache, records, store_timeout=timeout),
        bulk=BulkFanOutController(submission, reconciler, stagger_interval_ms=settings.STAGGER_INTERVAL_MS),
    )


async def create_services(settings: Settings) -> Services:
    """Create stores for the configured backend and wire the services."""
    if settings.STORE_BACKEND == "memory":
        from reel_engine.stores.memory import (
            MemoryJobRecordStore,
            MemoryProgressCache,
            MemorySubjectDirectory,
            MemoryWorkQueue,
        )

        logger.warning("Using in-memory stores: state is lost on restart and not shared between processes")
        return build_services(
            settings,
            MemoryWorkQueue(
                retry_backoff_ms=settings.RETRY_BACKOFF_MS, lease_ms=settings.QUEUE_LEASE_SECONDS * 1000,
            ),
            MemoryProgressCache(),
            MemoryJobRecordStore(),
            MemorySubjectDirectory(),
        )

    if settings.STORE_BACKEND != "redis":
        raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND}")

    from reel_engine.core.database import close_db, create_engine, create_session_maker, init_db
    from reel_engine.core.redis import connect_redis
    from reel_engine.stores.redis_progress import RedisProgressCache
    from reel_engine.stores.redis_queue import RedisWorkQueue
    from reel_engine.stores.sql_records import SqlJobRecordStore, SqlSubjectDirectory

    db_engine = create_engine(settings.DATABASE_URL)
    await init_db(db_engine)
    session_maker = create_session_maker(db_engine)
    redis = await connect_redis(settings.REDIS_URL, settings.STORE_TIMEOUT_SECONDS)

    services = build_services(
        settings,
        RedisWorkQueue(
            redis,
            prefix=settings.QUEUE_PREFIX,
            retry_backoff_ms=settings.RETRY_BACKOFF_MS,
            lease_ms=settings.QUEUE_LEASE_SECONDS * 1000,
        ),
        RedisProgressCache(redis, prefix=settings.QUEUE_PREFIX, ttl_seconds=settings.PROGRESS_TTL_SECONDS),
        SqlJobRecordStore(session_maker),
        SqlSubjectDirectory(session_maker),
    )

    async def close_stores() -> None:
        await redis.aclose()
        await close_db(db_engine)

    services.closers.append(close_stores)
    return services


async def close_services(services: Services) -> None:
    for close in reversed(services.closers):
        try:
            await close()
        except Exception as e:
            logger.error("Error during shutdown: %s", e)
    services.closers.clear()


def build_pipelines(settings: Settings, services: Optional[Services] = None) -> List[Pipeline]:
    """HTTP-backed pipelines for every job kind. Adapter clients are closed with ``services``."""

    def adapter(name: str, url: str) -> HttpProviderAdapter:
        provider = HttpProviderAdapter(
            name, url, api_key=settings.PROVIDER_API_KEY, timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
        if services is not None:
            services.closers.append(provider.close)
        return provider

    polling = dict(poll_interval=settings.PROVIDER_POLL_INTERVAL_SECONDS, max_polls=settings.PROVIDER_MAX_POLLS)
    return [
        VideoGenerationPipeline(
            scenes=adapter("scenes", settings.SCENE_PROVIDER_URL),
            clips=adapter("clips", settings.CLIP_PROVIDER_URL),
            music=adapter("music", settings.MUSIC_PROVIDER_URL),
            assembly=adapter("assembly", settings.ASSEMBLY_PROVIDER_URL),
            **polling,
        ),
        ImageProcessingPipeline(processor=adapter("image", settings.IMAGE_PROVIDER_URL), **polling),
    ]


def build_worker(services: Services, pipelines: List[Pipeline], worker_id: int = 0) -> PipelineWorker:
    return PipelineWorker(
        services.queue,
        services.cache,
        services.records,
        pipelines,
        store_timeout=services.settings.STORE_TIMEOUT_SECONDS,
        idle_sleep=services.settings.WORKER_IDLE_SLEEP_SECONDS,
        heartbeat_interval=services.settings.QUEUE_LEASE_SECONDS / 3,
        failed_retention_ms=services.settings.FAILED_RETENTION_SECONDS * 1000,
        clean_interval=services.settings.CLEAN_INTERVAL_SECONDS,
        worker_id=worker_id,
    )
