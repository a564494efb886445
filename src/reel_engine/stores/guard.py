"""Bounded-latency store calls."""

import asyncio
import logging
from typing import Awaitable, TypeVar

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from reel_engine.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_ERRORS = (RedisError, SQLAlchemyError, OSError)


async def call_store(awaitable: Awaitable[T], store: str, timeout: float) -> T:
    """Await a store operation with a timeout.

    Timeouts and driver errors are surfaced as StoreUnavailableError instead
    of hanging or leaking driver exceptions to the caller.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("%s call timed out after %.1fs", store, timeout)
        raise StoreUnavailableError(store, f"timed out after {timeout}s") from e
    except STORE_ERRORS as e:
        logger.error("%s call failed: %s", store, e)
        raise StoreUnavailableError(store, str(e)) from e
