"""Optional Redis connection for the installation-token cache.

When ``REDIS_URL`` is empty the app runs without Redis and every
``GitHubClient`` fetches a fresh installation token.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as aioredis

from app.config import Settings

logger = logging.getLogger(__name__)

_redis: Any = None


async def init_redis(settings: Settings) -> None:
    """Connect to Redis if configured.  Called during FastAPI lifespan startup."""
    global _redis  # noqa: PLW0603
    if not settings.redis_url:
        logger.info("REDIS_URL not set — installation tokens will not be cached")
        return
    _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    global _redis  # noqa: PLW0603
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis connection closed")


def get_redis() -> Any:
    """FastAPI dependency: the shared Redis client, or None."""
    return _redis
