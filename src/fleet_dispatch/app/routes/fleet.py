"""Fleet status, performance and fleet event routes.

Both feeds are cached; responses say whether the payload is live, cached
or a stale fallback.  Job status changes and vehicle telemetry are written
through the cache facade so dependent entries are invalidated.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from fleet_dispatch.app.dependencies import get_cache_integration
from fleet_dispatch.domain.schemas import (
    JobStatusUpdate,
    PositionReport,
    VehiclePosition,
    VehicleStatusUpdate,
)
from fleet_dispatch.services.cache_integration import CacheIntegration, FeedResult
from fleet_dispatch.services.fleet_repository import UnknownTimeframeError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/fleet", tags=["fleet"])


def _feed_response(result: FeedResult) -> dict:
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error or "Feed unavailable")
    return {
        "data": result.data.model_dump(mode="json"),
        "degraded": result.degraded,
        "from_cache": result.from_cache,
    }


@router.get("/status")
async def fleet_status(feeds: CacheIntegration = Depends(get_cache_integration)):
    return _feed_response(await feeds.get_fleet_status())


@router.get("/metrics")
async def performance_metrics(
    timeframe: str = Query("week"),
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Jobs taken/completed, revenue and utilisation over day, week or month."""
    try:
        result = await feeds.get_performance_metrics(timeframe)
    except UnknownTimeframeError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _feed_response(result)


# ---------------------------------------------------------------------------
# Job and vehicle events
# ---------------------------------------------------------------------------

@router.post("/jobs/{job_id}/status")
async def update_job_status(
    job_id: str,
    body: JobStatusUpdate,
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Move a job along its lifecycle (completed, cancelled, ...)."""
    try:
        invalidated = await feeds.update_job_status(job_id, body.status)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    logger.info("Job %s marked %s", job_id, body.status.value)
    return {"job_id": job_id, "status": body.status.value, "invalidated": invalidated}


@router.post("/vehicles/{vehicle_id}/status")
async def update_vehicle_status(
    vehicle_id: str,
    body: VehicleStatusUpdate,
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    try:
        invalidated = await feeds.update_vehicle_status(vehicle_id, body.status)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"vehicle_id": vehicle_id, "status": body.status.value, "invalidated": invalidated}


@router.post("/vehicles/{vehicle_id}/position")
async def report_position(
    vehicle_id: str,
    body: PositionReport,
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Telemetry ingest: store the fix and drop position-derived cache entries."""
    position = VehiclePosition(vehicle_id=vehicle_id, **body.model_dump())
    try:
        invalidated = await feeds.record_vehicle_position(position)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"vehicle_id": vehicle_id, "invalidated": invalidated}
