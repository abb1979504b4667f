"""
Shared Redis connection for cross-tab sync and persisted preferences.

The client is built from settings on first use, so importing the planning
modules never opens a connection.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from planit.app.core.config import Settings, settings

logger = logging.getLogger("planit.redis")

redis_client: Optional[redis.Redis] = None


def build_redis(config: Optional[Settings] = None) -> redis.Redis:
    config = config or settings
    return redis.from_url(
        config.redis_url,
        decode_responses=config.redis_decode_responses,
    )


async def get_redis() -> redis.Redis:
    """Process-wide client; tests replace `redis_client` directly."""
    global redis_client
    if redis_client is None:
        redis_client = build_redis()
    return redis_client


async def ping_redis(client=None) -> bool:
    """
    Check that Redis answers.

    Args:
        client: Client to probe, the shared one when omitted

    Returns:
        True if the server replied to PING, False otherwise
    """
    try:
        client = client if client is not None else await get_redis()
        return bool(await client.ping())
    except (RedisError, OSError) as exc:
        logger.warning("Redis ping failed", extra={"error": str(exc)})
        return False
