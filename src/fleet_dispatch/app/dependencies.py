"""Object graph for one application instance, plus FastAPI dependencies."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fleet_dispatch.app.config import Settings
from fleet_dispatch.infra.database import build_engine, build_session_factory
from fleet_dispatch.services.cache_integration import CacheIntegration
from fleet_dispatch.services.cache_store import CacheStore
from fleet_dispatch.services.cargo_analyzer import CargoAnalyzer
from fleet_dispatch.services.fleet_repository import FleetRepository
from fleet_dispatch.services.gps_client import GpsTelemetryClient
from fleet_dispatch.services.matching_engine import MatchingEngine
from fleet_dispatch.services.rate_config import rates_from_settings
from fleet_dispatch.services.scoring import ScoringSystem


@dataclass
class Services:
    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: CacheStore
    repository: FleetRepository
    scorer: ScoringSystem
    feeds: CacheIntegration
    matching: MatchingEngine
    gps_client: Optional[GpsTelemetryClient] = None


def build_services(
    settings: Settings,
    db_engine: Optional[AsyncEngine] = None,
) -> Services:
    """Wire repositories, cache, scorer and engine from *settings*."""
    db_engine = db_engine or build_engine(settings.database_url)
    session_factory = build_session_factory(db_engine)

    store = CacheStore()
    repository = FleetRepository(session_factory, settings)
    scorer = ScoringSystem(
        weights=settings.scoring_weights,
        rates=rates_from_settings(settings),
        analyzer=CargoAnalyzer(),
    )

    gps_client = None
    if settings.gps_api_url:
        gps_client = GpsTelemetryClient(
            settings.gps_api_url,
            api_key=settings.gps_api_key,
            timeout=settings.upstream_timeout_seconds,
        )

    feeds = CacheIntegration(store, repository, settings, scorer, gps_client=gps_client)
    matching = MatchingEngine(feeds, scorer, settings)
    feeds.bind_engine(matching)

    return Services(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        store=store,
        repository=repository,
        scorer=scorer,
        feeds=feeds,
        matching=matching,
        gps_client=gps_client,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_cache_integration(request: Request) -> CacheIntegration:
    return get_services(request).feeds


def get_matching_engine(request: Request) -> MatchingEngine:
    return get_services(request).matching
