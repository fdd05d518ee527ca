"""
Job scheduler port.

Jobs are JSON envelopes pushed onto Redis sorted sets `jobs:{queue}`, scored
by priority then enqueue time (lower runs first). The external scheduler that
consumes them owns retries, driven by the policy carried in the envelope.
Enqueueing never raises: a failed publish is logged and reported as None so
a rescue operation is not undone by queue trouble.
"""
import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.redis_client import CACHE_ERRORS

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    RESCUE_MATCHED = "rescue-matched"
    DRIVER_ASSIGNED = "driver-assigned"
    SURGE_RECOMPUTE = "surge-recompute"
    CHARGE_CUSTOMER = "charge-customer"
    PAYOUT_DUE = "payout-due"
    STALE_LOCATION_SWEEP = "stale-location-sweep"
    NOTIFICATION = "notification"


class RetryPolicy(BaseModel):
    attempts: int = 3
    backoff: str = "exponential"  # exponential | fixed
    delay_ms: int = 2000


# queue name, default priority, default retry policy
JOB_ROUTES: dict[JobType, tuple[str, int, RetryPolicy]] = {
    JobType.RESCUE_MATCHED: ("rescues", 5, RetryPolicy(attempts=3, delay_ms=1000)),
    JobType.DRIVER_ASSIGNED: ("rescues", 5, RetryPolicy(attempts=3, delay_ms=1000)),
    JobType.SURGE_RECOMPUTE: ("rescues", 20, RetryPolicy(attempts=2, backoff="fixed", delay_ms=5000)),
    JobType.STALE_LOCATION_SWEEP: ("rescues", 20, RetryPolicy(attempts=2, backoff="fixed", delay_ms=5000)),
    JobType.CHARGE_CUSTOMER: ("payments", 5, RetryPolicy(attempts=5, delay_ms=3000)),
    JobType.PAYOUT_DUE: ("payments", 10, RetryPolicy(attempts=5, delay_ms=3000)),
    JobType.NOTIFICATION: ("notifications", 10, RetryPolicy(attempts=3, delay_ms=2000)),
}


def queue_key(queue: str) -> str:
    return f"jobs:{queue}"


def job_score(priority: int, enqueued_ms: int) -> float:
    return priority * 10**13 + enqueued_ms


class JobScheduler:
    def __init__(self, redis: aioredis.Redis, settings: Optional[Settings] = None):
        self.redis = redis
        self.settings = settings or get_settings()

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        priority: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Optional[str]:
        queue, default_priority, default_policy = JOB_ROUTES[job_type]
        priority = default_priority if priority is None else priority
        policy = retry_policy or default_policy
        enqueued_ms = int(time.time() * 1000)
        job_id = str(uuid.uuid4())
        envelope = {
            "id": job_id,
            "type": job_type.value,
            "payload": payload,
            "priority": priority,
            "retry": policy.model_dump(),
            "attempt": 0,
            "enqueued_at_ms": enqueued_ms,
        }
        try:
            await asyncio.wait_for(
                self.redis.zadd(
                    queue_key(queue),
                    {json.dumps(envelope, default=str): job_score(priority, enqueued_ms)},
                ),
                timeout=self.settings.job_enqueue_timeout_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.error("Failed to enqueue %s job on %s: %s", job_type.value, queue, exc)
            return None
        logger.info("Job added id=%s type=%s queue=%s priority=%d", job_id, job_type.value, queue, priority)
        return job_id
