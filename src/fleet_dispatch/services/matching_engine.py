"""Matching Engine - ranks (job, vehicle) pairings across the open pool.

Pipeline for one search:
    1. Validate the caller's limit and filters.
    2. Load open jobs, matchable vehicles and the rate snapshot in parallel
       through the cache facade.
    3. Resolve one route estimate per job and pre-score each job on its own
       merits; weak non-urgent jobs are dropped before any pair is scored.
    4. Hard filters per pair: capacity, then pickup distance.
    5. Score survivors on a bounded thread pool; a pair that raises is
       logged and skipped.
    6. Soft filters, acceptance threshold, stable ranking, truncate.

Feed failures never raise here: the result carries ``degraded=True`` and the
feed errors instead.  ``MatchingValidationError`` is the only exception a
caller sees.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from fleet_dispatch.app.config import Settings
from fleet_dispatch.domain.enums import (
    MATCHABLE_JOB_STATUSES,
    MATCHABLE_VEHICLE_STATUSES,
    RiskTier,
    Urgency,
)
from fleet_dispatch.domain.schemas import (
    CargoJob,
    JobAnalysis,
    MatchCandidate,
    MatchFilters,
    MatchResult,
    RateConfig,
    RouteEstimate,
    Vehicle,
)
from fleet_dispatch.services.cargo_analyzer import CargoAnalyzer
from fleet_dispatch.services.scoring import ScoringSystem, pickup_distance_km, ranking_key

if TYPE_CHECKING:
    from fleet_dispatch.services.cache_integration import CacheIntegration

logger = logging.getLogger(__name__)

URGENT_MATCH_LIMIT = 10

FiltersInput = Union[MatchFilters, Mapping[str, Any], None]


class MatchingValidationError(ValueError):
    """Caller supplied an invalid limit or filter set."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchingEngine:
    """Finds and ranks the best job/vehicle pairings."""

    def __init__(
        self,
        feeds: "CacheIntegration",
        scorer: ScoringSystem,
        settings: Settings,
        analyzer: Optional[CargoAnalyzer] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.feeds = feeds
        self.scorer = scorer
        self.settings = settings
        self.analyzer = analyzer or scorer.analyzer
        self._clock = clock

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------

    def validate_limit(self, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise MatchingValidationError(f"limit must be an integer (got {limit!r})")
        if limit < 1:
            raise MatchingValidationError(f"limit must be at least 1 (got {limit})")
        if limit > self.settings.max_match_limit:
            raise MatchingValidationError(
                f"limit must be at most {self.settings.max_match_limit} (got {limit})"
            )

    @staticmethod
    def coerce_filters(filters: FiltersInput) -> MatchFilters:
        if filters is None:
            return MatchFilters()
        if isinstance(filters, MatchFilters):
            return filters
        try:
            return MatchFilters.model_validate(dict(filters))
        except ValidationError as exc:
            raise MatchingValidationError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def find_best_matches(
        self,
        limit: int = 5,
        filters: FiltersInput = None,
    ) -> MatchResult:
        self.validate_limit(limit)
        filters = self.coerce_filters(filters)
        urgency = Urgency.HIGH if filters.urgency_only else None

        jobs_res, vehicles_res = await asyncio.gather(
            self.feeds.get_available_jobs(urgency),
            self.feeds.get_available_vehicles(),
        )
        vehicles = vehicles_res.data or []
        if filters.vehicle_type is not None:
            vehicles = [v for v in vehicles if v.vehicle_type == filters.vehicle_type]

        max_distance = filters.max_distance_km or self.settings.default_max_distance_km
        return await self._run(
            jobs=jobs_res.data or [],
            vehicles=vehicles,
            limit=limit,
            filters=filters,
            max_distance_km=max_distance,
            pre_score=True,
            feed_results=[jobs_res, vehicles_res],
        )

    async def find_matches_for_vehicle(self, vehicle_id: str, limit: int = 5) -> MatchResult:
        self.validate_limit(limit)

        jobs_res, vehicles_res = await asyncio.gather(
            self.feeds.get_available_jobs(),
            self.feeds.get_available_vehicles(),
        )
        vehicle = next((v for v in vehicles_res.data or [] if v.id == vehicle_id), None)
        if vehicle is None:
            logger.info("Vehicle %s unknown or not matchable", vehicle_id)
            return self._empty_result([jobs_res, vehicles_res])

        return await self._run(
            jobs=jobs_res.data or [],
            vehicles=[vehicle],
            limit=limit,
            filters=MatchFilters(),
            max_distance_km=self.settings.vehicle_search_radius_km,
            pre_score=False,
            feed_results=[jobs_res, vehicles_res],
        )

    async def find_urgent_matches(self) -> MatchResult:
        filters = MatchFilters(
            urgency_only=True,
            max_distance_km=self.settings.vehicle_search_radius_km,
            exclude_high_risk=False,
        )
        return await self.find_best_matches(URGENT_MATCH_LIMIT, filters)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @staticmethod
    def _empty_result(feed_results: list) -> MatchResult:
        return MatchResult(
            matches=[],
            degraded=any(r.degraded for r in feed_results),
            errors=[r.error for r in feed_results if r.error],
        )

    async def _run(
        self,
        *,
        jobs: list[CargoJob],
        vehicles: list[Vehicle],
        limit: int,
        filters: MatchFilters,
        max_distance_km: float,
        pre_score: bool,
        feed_results: list,
    ) -> MatchResult:
        now = self._clock()

        jobs = [j for j in jobs if j.status in MATCHABLE_JOB_STATUSES]
        vehicles = [v for v in vehicles if v.status in MATCHABLE_VEHICLE_STATUSES]
        if not jobs or not vehicles:
            return self._empty_result(feed_results)

        rates_res = await self.feeds.get_rate_config()
        feed_results = feed_results + [rates_res]
        rates: RateConfig = rates_res.data or self.scorer.rates

        route_results = await asyncio.gather(
            *(self.feeds.get_route_estimate(j.origin, j.destination) for j in jobs)
        )
        routes: dict[str, Optional[RouteEstimate]] = {}
        for job, res in zip(jobs, route_results):
            routes[job.id] = res.data
            if res.degraded:
                feed_results.append(res)

        # Job-level pre-score
        analyses: dict[str, JobAnalysis] = {}
        viable_jobs = []
        for job in jobs:
            analysis = self.analyzer.analyze(job, route=routes[job.id], rates=rates, now=now)
            analyses[job.id] = analysis
            if (
                pre_score
                and analysis.total_score < self.settings.pre_score_skip_threshold
                and job.urgency != Urgency.HIGH
            ):
                logger.debug(
                    "Job %s skipped by pre-score (%.1f)", job.id, analysis.total_score,
                )
                continue
            viable_jobs.append(job)

        # Hard filters
        pairs = []
        for job in viable_jobs:
            for vehicle in vehicles:
                if vehicle.capacity_kg < job.weight_kg:
                    continue
                if pickup_distance_km(job, vehicle) > max_distance_km:
                    continue
                pairs.append((job, vehicle))

        candidates = await self._score_pairs(pairs, routes, analyses, rates, now)

        # Soft filters and acceptance threshold
        accepted = []
        for c in candidates:
            if filters.min_profit is not None and c.profit_score < filters.min_profit:
                continue
            if filters.exclude_high_risk and c.risk_tier == RiskTier.HIGH:
                continue
            if c.total_score <= self.settings.min_acceptable_score:
                continue
            accepted.append(c)

        accepted.sort(key=ranking_key)

        degraded = any(r.degraded for r in feed_results)
        errors = [r.error for r in feed_results if r.error]
        logger.info(
            "Matching: %d jobs, %d vehicles, %d pairs scored, %d accepted%s",
            len(jobs), len(vehicles), len(pairs), len(accepted),
            " (degraded)" if degraded else "",
        )
        return MatchResult(
            matches=accepted[:limit],
            degraded=degraded,
            errors=errors,
            considered_pairs=len(pairs),
            generated_at=now,
        )

    async def _score_pairs(
        self,
        pairs: list[tuple[CargoJob, Vehicle]],
        routes: Mapping[str, Optional[RouteEstimate]],
        analyses: Mapping[str, JobAnalysis],
        rates: RateConfig,
        now: datetime,
    ) -> list[MatchCandidate]:
        semaphore = asyncio.Semaphore(self.settings.scoring_workers)
        score = (
            self.feeds.get_scored_match
            if self.settings.cache_scoring_results
            else self.scorer.score
        )

        async def _one(job: CargoJob, vehicle: Vehicle) -> Optional[MatchCandidate]:
            async with semaphore:
                try:
                    return await asyncio.to_thread(
                        score,
                        job,
                        vehicle,
                        route=routes.get(job.id),
                        rates=rates,
                        now=now,
                        analysis=analyses.get(job.id),
                    )
                except Exception as exc:
                    logger.warning(
                        "Scoring failed for job %s / vehicle %s, skipping: %s",
                        job.id, vehicle.id, exc,
                    )
                    return None

        results = await asyncio.gather(*(_one(job, vehicle) for job, vehicle in pairs))
        return [c for c in results if c is not None]
