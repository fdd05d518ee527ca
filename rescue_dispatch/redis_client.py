import asyncio
import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from rescue_dispatch.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None

# Anything the fast cache can raise; callers catch these and fall back.
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

DRIVERS_GEO_KEY = "drivers:geo"


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


def driver_location_key(driver_id: str) -> str:
    return f"driver:{driver_id}:loc"


def journey_key(rescue_id: str) -> str:
    return f"journey:{rescue_id}"


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

async def geo_add_driver(redis: aioredis.Redis, driver_id: str, lat: float, lng: float) -> None:
    """Add / update driver position in the geospatial index."""
    await redis.geoadd(DRIVERS_GEO_KEY, [lng, lat, driver_id])


async def geo_remove_drivers(redis: aioredis.Redis, *driver_ids: str) -> None:
    if driver_ids:
        await redis.zrem(DRIVERS_GEO_KEY, *driver_ids)


async def geo_index_exists(redis: aioredis.Redis) -> bool:
    return bool(await redis.exists(DRIVERS_GEO_KEY))


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    lat: float,
    lng: float,
    radius_km: float,
    count: int = 20,
) -> list[tuple[str, float, float, float]]:
    """
    Return up to `count` (driver_id, distance_km, lat, lng) tuples nearest
    to the given coordinates, closest first.
    """
    results = await redis.geosearch(
        DRIVERS_GEO_KEY,
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
        withdist=True,
        withcoord=True,
    )
    nearby = []
    for member, distance, coords in results:
        member_lng, member_lat = coords
        nearby.append((str(member), float(distance), float(member_lat), float(member_lng)))
    return nearby


# ---------------------------------------------------------------------------
# Key/value + list helpers
# ---------------------------------------------------------------------------

async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)


async def cache_delete(redis: aioredis.Redis, key: str) -> None:
    await redis.delete(key)


async def cache_set_json(redis: aioredis.Redis, key: str, value: dict[str, Any], ttl: int) -> None:
    await redis.setex(key, ttl, json.dumps(value, default=str))


async def cache_get_json(redis: aioredis.Redis, key: str) -> dict[str, Any] | None:
    raw = await redis.get(key)
    if not raw:
        return None
    return json.loads(raw)


async def cache_get_many_json(redis: aioredis.Redis, keys: list[str]) -> list[dict[str, Any] | None]:
    """MGET + decode; one entry per key, None where the key is missing."""
    if not keys:
        return []
    raws = await redis.mget(keys)
    return [json.loads(raw) if raw else None for raw in raws]


async def timeline_append(
    redis: aioredis.Redis, key: str, value: dict[str, Any], at: float, retention_seconds: int
) -> None:
    """
    ZADD a JSON entry scored by `at` (epoch seconds), then trim everything
    older than the retention window so the set stays bounded.
    """
    await redis.zadd(key, {json.dumps(value, default=str): at})
    await redis.zremrangebyscore(key, "-inf", f"({at - retention_seconds}")
    await redis.expire(key, retention_seconds)


async def timeline_range(redis: aioredis.Redis, key: str, since: float) -> list[dict[str, Any]]:
    raw_items = await redis.zrangebyscore(key, since, "+inf")
    return [json.loads(item) for item in raw_items]
