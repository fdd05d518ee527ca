import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from rescue_dispatch.redis_client import CACHE_ERRORS

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL = 86400  # 24 hours


def idempotency_cache_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def check_idempotency(request: Request, redis: aioredis.Redis, scope: str) -> Optional[Response]:
    """
    Returns the cached Response if the Idempotency-Key was already used for
    this scope, otherwise None (proceed normally). A cache outage means no
    replay, not an error; rescue creation also dedupes on the durable key.
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    try:
        cached = await redis.get(idempotency_cache_key(scope, key))
    except CACHE_ERRORS as exc:
        logger.warning("Idempotency lookup failed for %s: %s", key, exc)
        return None

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(
    redis: aioredis.Redis, scope: str, key: str, status_code: int, body: dict
) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    try:
        await redis.setex(
            idempotency_cache_key(scope, key),
            IDEMPOTENCY_TTL,
            json.dumps({"status_code": status_code, "body": body}, default=str),
        )
    except CACHE_ERRORS as exc:
        logger.warning("Idempotency store failed for %s: %s", key, exc)
