"""Redis-backed progress cache."""

import json
import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from reel_engine.stores.interfaces import ProgressSnapshot

logger = logging.getLogger(__name__)


class RedisProgressCache:
    """Progress snapshots stored as JSON strings with a TTL."""

    def __init__(self, redis: Redis, prefix: str = "reel", ttl_seconds: int = 3600):
        self._redis = redis
        self._prefix = prefix
        self._ttl = ttl_seconds

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}:progress:{job_id}"

    async def get(self, job_id: str) -> Optional[ProgressSnapshot]:
        raw = await self._redis.get(self._key(job_id))
        if raw is None:
            return None
        try:
            return ProgressSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable progress snapshot for %s: %s", job_id, e)
            return None

    async def put(self, snapshot: ProgressSnapshot) -> None:
        await self._redis.setex(self._key(snapshot.job_id), self._ttl, json.dumps(snapshot.to_dict()))

    async def seed(self, snapshot: ProgressSnapshot) -> bool:
        """Write the snapshot only if none exists yet (SET NX)."""
        written = await self._redis.set(
            self._key(snapshot.job_id), json.dumps(snapshot.to_dict()), nx=True, ex=self._ttl
        )
        return bool(written)

    async def merge(self, job_id: str, artifacts: Optional[Dict[str, Any]] = None, **changes: Any) -> ProgressSnapshot:
        # Single writer per job (the worker holding it), so read-modify-write is enough.
        current = await self.get(job_id) or ProgressSnapshot(job_id=job_id)
        snapshot = current.updated(artifacts=artifacts, **changes)
        await self.put(snapshot)
        return snapshot

    async def delete(self, job_id: str) -> bool:
        return bool(await self._redis.delete(self._key(job_id)))
