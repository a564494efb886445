"""Redis client factory shared by the work queue and the progress cache."""

import logging

from redis.asyncio import Redis, from_url

logger = logging.getLogger(__name__)


async def connect_redis(url: str, timeout: float = 5.0) -> Redis:
    """Create a client and check the server answers before handing it out."""
    client = from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=timeout,
        socket_timeout=timeout,
    )
    await client.ping()
    logger.info("Connected to Redis at %s", url.rsplit("@", 1)[-1])
    return client
