"""
Internal router — entry points for the external scheduler.

POST /internal/sweeps/stale-locations, POST /internal/surge/recompute,
POST /internal/jobs. Admin / system tokens only.
"""
from fastapi import APIRouter, Depends

from rescue_dispatch.dependencies import get_dispatcher
from rescue_dispatch.middleware.auth import require_roles
from rescue_dispatch.schemas.schemas import JobRequest, StaleSweepRequest
from rescue_dispatch.services.jobs import JobType
from rescue_dispatch.workers import JobDispatcher

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    dependencies=[Depends(require_roles("admin", "system"))],
)


@router.post("/sweeps/stale-locations")
async def sweep_stale_locations(
    payload: StaleSweepRequest,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.handle(
        JobType.STALE_LOCATION_SWEEP.value,
        payload.model_dump(exclude_none=True),
    )


@router.post("/surge/recompute")
async def recompute_surge(dispatcher: JobDispatcher = Depends(get_dispatcher)):
    return await dispatcher.handle(JobType.SURGE_RECOMPUTE.value, {})


@router.post("/jobs")
async def run_job(payload: JobRequest, dispatcher: JobDispatcher = Depends(get_dispatcher)):
    return await dispatcher.handle(payload.type, payload.payload)
