"""
Shared Redis connection - worker heartbeats and alert cooldowns.
Redis is advisory here: callers must degrade gracefully when it is down.
"""
import logging

logger = logging.getLogger(__name__)

KEY_PREFIX = "bookon:relay"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from bookon_relay.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_key(*parts: str) -> str:
    """Build a namespaced Redis key."""
    return ":".join((KEY_PREFIX, *parts))


async def close_redis() -> None:
    """Close the shared client on shutdown."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
    _redis_client = None
