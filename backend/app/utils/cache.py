"""Redis caching utilities.

Dashboard statistics are expensive aggregate queries; they are cached for
a short TTL and invalidated whenever a sale, payment, restock or expense
changes the underlying numbers. Redis failures never fail a request: the
wrapped function runs uncached instead.
"""

import functools
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Callable, Optional

import redis.asyncio as redis
from app.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(*args, **kwargs) -> str:
    """Deterministic hash of call arguments."""
    if not args and not kwargs:
        return "default"

    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True)
    return hashlib.md5(key_data.encode()).hexdigest()


def _cacheable_kwargs(kwargs: dict) -> dict:
    # Only simple values take part in the key; injected sessions etc. don't.
    out = {}
    for k, v in kwargs.items():
        if k.startswith("_"):
            continue
        if isinstance(v, (int, str, bool, float, type(None))):
            out[k] = v
        elif isinstance(v, (date, datetime)):
            out[k] = v.isoformat()
    return out


def cached(ttl: int = 300, prefix: str = "cache"):
    """Cache an async function's JSON-serializable result in Redis.

    Keys: {prefix}:{function_name}:{kwargs_hash}

    Example:
        @cached(ttl=60, prefix="stats")
        async def dashboard(db: AsyncSession) -> dict:
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not settings.cache_enabled:
                return await func(*args, **kwargs)

            key = f"{prefix}:{func.__name__}:{cache_key(**_cacheable_kwargs(kwargs))}"

            try:
                redis_client = await get_redis()
                cached_value = await redis_client.get(key)
                if cached_value:
                    logger.debug(f"Cache HIT: {key}")
                    return json.loads(cached_value)
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return await func(*args, **kwargs)

            logger.debug(f"Cache MISS: {key}")
            result = await func(*args, **kwargs)

            serialized = result.model_dump(mode="json") if hasattr(result, "model_dump") else result
            try:
                await redis_client.setex(key, ttl, json.dumps(serialized))
            except redis.RedisError as e:
                logger.warning(f"Failed to store cache key {key}: {e}")

            return result

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Delete cache keys matching a pattern, e.g. "stats:*"."""
    if not settings.cache_enabled:
        return
    try:
        redis_client = await get_redis()
        keys = []
        async for key in redis_client.scan_iter(match=pattern):
            keys.append(key)

        if keys:
            await redis_client.delete(*keys)
            logger.info(f"Invalidated {len(keys)} cache keys matching {pattern}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate cache: {e}")
