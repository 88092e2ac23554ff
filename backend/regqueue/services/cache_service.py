"""
Redis caching service for queue settings.

CACHING STRATEGY
================

What we cache:
  - Queue settings rows, JSON-serialized, keyed "queue:settings:{resource_id}"

Why:
  - The admission controller reads settings on every registration page load
  - Settings are written rarely (an administrator toggling the queue)

What we never cache:
  - Occupancy or positions. Those are always counted from the entry table,
    because a stale count admits too many sessions.

Invalidation strategy:
  - update_settings deletes the key once the new values are flushed
  - A short TTL (SETTINGS_CACHE_TTL, seconds) bounds staleness across
    processes that did not see the delete

Redis is advisory: any Redis failure is logged and treated as a miss.
"""

import json
from typing import Optional

import redis.asyncio as redis
from regqueue.core.config import get_settings
from regqueue.core.logging import get_logger
from regqueue.core.metrics import record_cache_operation, redis_connection_errors
from regqueue.schemas.queue import QueueSettingsData

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            redis_connection_errors.inc()
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def _make_settings_key(resource_id: str) -> str:
    return f"queue:settings:{resource_id}"


async def get_cached_settings(resource_id: str) -> Optional[QueueSettingsData]:
    client = await get_redis()
    if not client:
        return None

    key = _make_settings_key(resource_id)
    try:
        data = await client.get(key)
        if data:
            record_cache_operation("get", result="hit")
            return QueueSettingsData.model_validate(json.loads(data))
        record_cache_operation("get", result="miss")
    except Exception as e:
        redis_connection_errors.inc()
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_settings(data: QueueSettingsData) -> None:
    client = await get_redis()
    if not client:
        return

    key = _make_settings_key(data.resource_id)
    try:
        await client.setex(key, settings.SETTINGS_CACHE_TTL, data.model_dump_json())
        record_cache_operation("set", result="stored")
    except Exception as e:
        redis_connection_errors.inc()
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_settings(resource_id: str) -> None:
    client = await get_redis()
    if not client:
        return

    key = _make_settings_key(resource_id)
    try:
        await client.delete(key)
        logger.debug("cache_invalidated", key=key)
    except Exception as e:
        redis_connection_errors.inc()
        logger.error("cache_invalidation_error", key=key, error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}
