"""Matching API routes.

Ranked job/vehicle recommendations for dispatchers, and the accept event
that turns a recommendation into an assignment.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fleet_dispatch.app.dependencies import get_cache_integration
from fleet_dispatch.domain.enums import VehicleType
from fleet_dispatch.domain.schemas import AcceptMatchRequest, MatchResult
from fleet_dispatch.services.cache_integration import CacheIntegration
from fleet_dispatch.services.matching_engine import MatchingValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/matching", tags=["matching"])


@router.get("/best", response_model=MatchResult)
async def best_matches(
    limit: int = Query(5),
    max_distance_km: Optional[float] = Query(None),
    min_profit: Optional[float] = Query(None, ge=0, le=100),
    urgency_only: bool = Query(False),
    vehicle_type: Optional[VehicleType] = Query(None),
    exclude_high_risk: bool = Query(False),
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Best job/vehicle pairings across the open pool."""
    filters = {
        "max_distance_km": max_distance_km,
        "min_profit": min_profit,
        "urgency_only": urgency_only,
        "vehicle_type": vehicle_type,
        "exclude_high_risk": exclude_high_risk,
    }
    try:
        return await feeds.find_best_matches(
            limit, {k: v for k, v in filters.items() if v is not None},
        )
    except MatchingValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/vehicle/{vehicle_id}", response_model=MatchResult)
async def matches_for_vehicle(
    vehicle_id: str,
    limit: int = Query(5),
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Best jobs for one vehicle within the search radius."""
    try:
        return await feeds.find_matches_for_vehicle(vehicle_id, limit)
    except MatchingValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/urgent", response_model=MatchResult)
async def urgent_matches(feeds: CacheIntegration = Depends(get_cache_integration)):
    """High-urgency jobs only, wider radius."""
    return await feeds.find_urgent_matches()


@router.post("/accept")
async def accept_match(
    body: AcceptMatchRequest,
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Record an accepted pairing and invalidate dependent cache entries."""
    try:
        await feeds.accept_match(body.job_id, body.vehicle_id, body.score)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return {"status": "accepted", "job_id": body.job_id, "vehicle_id": body.vehicle_id}
