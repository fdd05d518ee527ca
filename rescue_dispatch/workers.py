"""
Job reactions.

`JobDispatcher.handle` maps a job type to the engine entry point that reacts
to it. The external scheduler pushes each job at the internal HTTP endpoint
and owns retries with backoff; a failing handler just raises.
"""
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.errors import ValidationError
from rescue_dispatch.services.geospatial_index import GeospatialIndex
from rescue_dispatch.services.jobs import JobScheduler, JobType
from rescue_dispatch.services.payments import PaymentGateway, PaymentService
from rescue_dispatch.services.surge import SurgeLookup

logger = logging.getLogger(__name__)


class JobDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        settings: Optional[Settings] = None,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.db = db
        self.redis = redis
        self.settings = settings or get_settings()
        self.gateway = gateway

    async def handle(self, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            kind = JobType(job_type)
        except ValueError:
            raise ValidationError(f"Unknown job type {job_type}", {"type": job_type}) from None

        logger.info("Processing job type=%s", kind.value)
        if kind == JobType.CHARGE_CUSTOMER:
            return await self._charge_customer(payload)
        if kind == JobType.PAYOUT_DUE:
            return self._payout_due(payload)
        if kind == JobType.SURGE_RECOMPUTE:
            return await self._surge_recompute(payload)
        if kind == JobType.STALE_LOCATION_SWEEP:
            return await self._stale_sweep(payload)
        # rescue-matched / driver-assigned / notification are consumed by
        # delivery workers outside the engine; acknowledging is enough here.
        logger.info("Job %s acknowledged payload_keys=%s", kind.value, sorted(payload))
        return {"type": kind.value, "acknowledged": True}

    async def _charge_customer(self, payload: dict[str, Any]) -> dict[str, Any]:
        payment_id = payload.get("payment_id")
        if not payment_id:
            raise ValidationError("payment_id is required", {"payment_id": "missing"})
        service = PaymentService(
            self.db,
            gateway=self.gateway or PaymentGateway(self.settings),
            scheduler=JobScheduler(self.redis, self.settings),
            settings=self.settings,
        )
        payment = await service.process_charge(payment_id, payload.get("payment_method"))
        return {"payment_id": payment.id, "status": payment.status}

    def _payout_due(self, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info(
            "Driver payout due driver=%s amount=%s payment=%s",
            payload.get("driver_id"), payload.get("amount"), payload.get("payment_id"),
        )
        return {"payment_id": payload.get("payment_id"), "status": "payout_recorded"}

    async def _surge_recompute(self, payload: dict[str, Any]) -> dict[str, Any]:
        surge = SurgeLookup(self.db, self.redis, self.settings)
        if "lat" in payload and "lng" in payload:
            multiplier = await surge.recompute_cell(float(payload["lat"]), float(payload["lng"]))
            return {"cells": 1, "multiplier": multiplier}
        cells = await surge.recompute_active_cells()
        return {"cells": len(cells), "multipliers": cells}

    async def _stale_sweep(self, payload: dict[str, Any]) -> dict[str, Any]:
        index = GeospatialIndex(self.db, self.redis, self.settings)
        count = await index.mark_stale_offline(payload.get("threshold_minutes"))
        return {"marked_offline": count}
