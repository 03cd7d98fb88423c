"""Cache administration routes."""

import logging

from fastapi import APIRouter, Depends

from fleet_dispatch.app.dependencies import get_cache_integration
from fleet_dispatch.domain.schemas import CacheStats, InvalidateRequest
from fleet_dispatch.services.cache_integration import CacheIntegration

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats", response_model=CacheStats)
async def cache_stats(feeds: CacheIntegration = Depends(get_cache_integration)):
    return feeds.check_health()


@router.post("/invalidate")
async def invalidate(
    body: InvalidateRequest,
    feeds: CacheIntegration = Depends(get_cache_integration),
):
    """Drop cache entries affected by a job, vehicle or assignment change."""
    removed = feeds.invalidate(body.kind)
    return {"kind": body.kind.value, "removed": removed}


@router.post("/warm")
async def warm(feeds: CacheIntegration = Depends(get_cache_integration)):
    warmed = await feeds.warm()
    return {"warmed": warmed}
