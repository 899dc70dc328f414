"""Redis-backed JSON cache for analytics overviews.

Caching is best-effort: when Redis is disabled or unreachable every lookup
misses and every store is skipped.
"""

import asyncio
import hashlib
import json
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from crm.core.config import settings

# Global Redis client (initialized on first use)
_redis_client: Optional[redis.Redis] = None
_redis_checked: bool = False


async def get_redis_client() -> Optional[redis.Redis]:
    """Connected client, or ``None`` once Redis has proven unreachable."""

    global _redis_client, _redis_checked

    if not settings.REDIS_ENABLED:
        return None
    if _redis_checked:
        return _redis_client

    _redis_checked = True
    client = redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_connect_timeout=0.5,
        socket_timeout=0.5,
    )
    try:
        await asyncio.wait_for(client.ping(), timeout=0.5)
    except (RedisError, OSError, asyncio.TimeoutError):
        logger.warning("redis_unavailable")
        await client.aclose()
        return None
    _redis_client = client
    logger.info("redis_connected")
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client, _redis_checked
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _redis_checked = False


def generate_cache_key(prefix: str, **kwargs) -> str:
    """Generate a cache key from prefix and keyword arguments."""
    key_str = f"{prefix}:{json.dumps(sorted(kwargs.items()), sort_keys=True, default=str)}"
    # Hash long keys to keep them short
    if len(key_str) > 200:
        key_str = f"{prefix}:{hashlib.sha256(key_str.encode()).hexdigest()}"
    return key_str


async def get_cache(key: str) -> Optional[Any]:
    client = await get_redis_client()
    if client is None:
        return None
    try:
        value = await asyncio.wait_for(client.get(key), timeout=0.1)
    except (RedisError, asyncio.TimeoutError):
        logger.bind(key=key).debug("cache_get_failed")
        return None
    return json.loads(value) if value else None


async def set_cache(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    client = await get_redis_client()
    if client is None:
        return False
    try:
        await client.setex(key, ttl or settings.ANALYTICS_CACHE_TTL_SEC, json.dumps(value, default=str))
    except RedisError:
        logger.bind(key=key).debug("cache_set_failed")
        return False
    return True


async def clear_cache_pattern(pattern: str) -> int:
    """Delete every key matching ``pattern``; used when the underlying data changes."""

    client = await get_redis_client()
    if client is None:
        return 0
    try:
        keys = [key async for key in client.scan_iter(match=pattern)]
        return int(await client.delete(*keys)) if keys else 0
    except RedisError:
        logger.bind(pattern=pattern).debug("cache_clear_failed")
        return 0
