"""Read-through cache facade over the dispatch data sources.

Every accessor returns a ``FeedResult`` instead of raising.  On a miss the
upstream call runs under ``upstream_timeout_seconds``; when it fails the
facade serves the last good value for the key (``degraded=True``) or an
empty value with ``ok=False``.  Concurrent misses on one key share a single
upstream call.

Domain events (job changed, vehicle moved, assignment accepted) invalidate
the dependent keys through ``invalidate``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

from fleet_dispatch.app.config import Settings
from fleet_dispatch.domain.enums import InvalidationKind, JobStatus, Urgency, VehicleStatus
from fleet_dispatch.domain.schemas import (
    CacheStats,
    CargoJob,
    FleetStatusSummary,
    JobAnalysis,
    Location,
    MatchCandidate,
    MatchResult,
    RateConfig,
    RouteEstimate,
    Vehicle,
    VehiclePosition,
)
from fleet_dispatch.services import geo
from fleet_dispatch.services.cache_store import CacheStore, canonical_key
from fleet_dispatch.services.fleet_repository import (
    TIMEFRAMES,
    FleetRepository,
    UnknownTimeframeError,
)
from fleet_dispatch.services.gps_client import GpsTelemetryClient
from fleet_dispatch.services.rate_config import rates_from_settings
from fleet_dispatch.services.scoring import ScoringSystem

if TYPE_CHECKING:
    from fleet_dispatch.services.matching_engine import FiltersInput, MatchingEngine

logger = logging.getLogger(__name__)

_MISSING = object()

# Key prefixes
JOBS = "available_jobs"
VEHICLES = "available_vehicles"
POSITIONS = "vehicle_positions"
FLEET_STATUS = "fleet_status"
METRICS = "performance_metrics"
RATES = "system_config_rates"
DISTANCE = "distance_calculations"
MATCHING = "matching_results"
SCORING = "scoring_results"
# Last good copy of a feed key lives under STALE + key
STALE = "stale_"

INVALIDATION_SCOPES: dict[InvalidationKind, tuple[str, ...]] = {
    InvalidationKind.JOB: (JOBS, MATCHING, SCORING),
    InvalidationKind.VEHICLE: (POSITIONS, VEHICLES, FLEET_STATUS, MATCHING, SCORING),
    InvalidationKind.ASSIGNMENT: (FLEET_STATUS, VEHICLES, JOBS, MATCHING, SCORING),
}


@dataclass
class FeedResult:
    """Outcome of one facade read.

    Attributes:
        ok: False only when nothing usable could be served.
        data: The payload (possibly stale or empty).
        error: Upstream failure description, if any.
        degraded: True when ``data`` is a fallback rather than fresh.
        from_cache: True when served from a live cache entry.
        latency_ms: Upstream call time; 0 for cache hits.
    """

    ok: bool
    data: Any = None
    error: Optional[str] = None
    degraded: bool = False
    from_cache: bool = False
    latency_ms: int = 0

    @classmethod
    def success(cls, data: Any, from_cache: bool = False, latency_ms: int = 0) -> "FeedResult":
        return cls(ok=True, data=data, from_cache=from_cache, latency_ms=latency_ms)

    @classmethod
    def stale(cls, data: Any, error: str) -> "FeedResult":
        return cls(ok=True, data=data, error=error, degraded=True)

    @classmethod
    def failure(cls, error: str, empty: Any = None) -> "FeedResult":
        return cls(ok=False, data=empty, error=error, degraded=True)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def overlay_positions(
    vehicles: Iterable[Vehicle],
    positions: Iterable[VehiclePosition],
) -> list[Vehicle]:
    """Replace each vehicle's stored coordinates with a newer telemetry fix."""
    latest = {p.vehicle_id: p for p in positions}
    merged = []
    for vehicle in vehicles:
        fix = latest.get(vehicle.id)
        if fix is not None:
            recorded_at = _as_utc(fix.recorded_at)
            stored_at = _as_utc(vehicle.position_at)
            if stored_at is None or recorded_at >= stored_at:
                vehicle = vehicle.model_copy(
                    update={"lat": fix.lat, "lon": fix.lon, "position_at": recorded_at}
                )
        merged.append(vehicle)
    return merged


class CacheIntegration:
    """Cached accessors for jobs, vehicles, positions, routes, rates and matches."""

    def __init__(
        self,
        store: CacheStore,
        repository: FleetRepository,
        settings: Settings,
        scorer: ScoringSystem,
        gps_client: Optional[GpsTelemetryClient] = None,
        route_oracle: Optional[geo.HaversineRouteOracle] = None,
    ) -> None:
        self.store = store
        self.repository = repository
        self.settings = settings
        self.scorer = scorer
        self.gps_client = gps_client
        self.route_oracle = route_oracle or geo.HaversineRouteOracle(rates_from_settings(settings))
        self.engine: Optional["MatchingEngine"] = None
        self._ttl = settings.cache_ttl
        # Only keys with a load in flight have an entry
        self._locks: dict[str, _KeyLock] = {}

    def bind_engine(self, engine: "MatchingEngine") -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Read-through core
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize loads of one key; the lock is dropped when the last user leaves."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    async def _read_through(
        self,
        key: str,
        ttl: float,
        loader: Callable[[], Awaitable[Any]],
        empty: Any = None,
    ) -> FeedResult:
        cached = self.store.get(key, _MISSING)
        if cached is not _MISSING:
            return FeedResult.success(cached, from_cache=True)

        async with self._key_lock(key):
            # Another waiter may have filled the key while we queued
            cached = self.store.get(key, _MISSING)
            if cached is not _MISSING:
                return FeedResult.success(cached, from_cache=True)

            start = time.monotonic()
            try:
                value = await asyncio.wait_for(
                    loader(), timeout=self.settings.upstream_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = f"{key}: upstream timed out after {self.settings.upstream_timeout_seconds}s"
                logger.warning("Feed %s timed out after %ss", key, self.settings.upstream_timeout_seconds)
            except Exception as exc:
                error = f"{key}: {exc}"
                logger.warning("Feed %s failed: %s", key, exc)
            else:
                latency_ms = int((time.monotonic() - start) * 1000)
                self.store.set(key, value, ttl)
                self.store.set(STALE + key, value, self._ttl.last_good)
                return FeedResult.success(value, latency_ms=latency_ms)

        last_good = self.store.peek(STALE + key, _MISSING)
        if last_good is not _MISSING:
            logger.info("Serving last good value for %s", key)
            return FeedResult.stale(last_good, error)
        return FeedResult.failure(error, empty)

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    async def get_available_jobs(self, urgency: Optional[Urgency] = None) -> FeedResult:
        key = canonical_key(JOBS, {"urgency": urgency})
        return await self._read_through(
            key,
            self._ttl.available_jobs,
            lambda: self.repository.fetch_available_jobs(urgency),
            empty=[],
        )

    async def get_vehicle_positions(
        self,
        vehicle_ids: Optional[Iterable[str]] = None,
    ) -> FeedResult:
        ids = sorted(vehicle_ids) if vehicle_ids is not None else None
        key = canonical_key(POSITIONS, {"ids": ids})
        source = self.gps_client or self.repository
        return await self._read_through(
            key,
            self._ttl.vehicle_positions,
            lambda: source.fetch_vehicle_positions(ids),
            empty=[],
        )

    async def get_available_vehicles(self) -> FeedResult:
        """Matchable vehicles with the latest known positions overlaid."""
        vehicles, positions = await asyncio.gather(
            self._read_through(
                VEHICLES,
                self._ttl.available_vehicles,
                self.repository.fetch_vehicles,
                empty=[],
            ),
            self.get_vehicle_positions(),
        )
        merged = overlay_positions(vehicles.data or [], positions.data or [])
        errors = [r.error for r in (vehicles, positions) if r.error]
        return FeedResult(
            ok=vehicles.ok,
            data=merged,
            error="; ".join(errors) or None,
            degraded=vehicles.degraded or positions.degraded,
            from_cache=vehicles.from_cache and positions.from_cache,
        )

    async def get_fleet_status(self) -> FeedResult:
        source = self.gps_client or self.repository
        return await self._read_through(
            FLEET_STATUS,
            self._ttl.fleet_status,
            source.fetch_fleet_status,
            empty=FleetStatusSummary(),
        )

    async def get_performance_metrics(self, timeframe: str = "week") -> FeedResult:
        if timeframe not in TIMEFRAMES:
            raise UnknownTimeframeError(
                f"Unknown timeframe {timeframe!r}; expected one of {sorted(TIMEFRAMES)}"
            )
        key = canonical_key(METRICS, {"timeframe": timeframe})
        return await self._read_through(
            key,
            self._ttl.performance_metrics,
            lambda: self.repository.fetch_performance_metrics(timeframe),
        )

    async def get_rate_config(self) -> FeedResult:
        return await self._read_through(
            RATES,
            self._ttl.system_config,
            self.repository.fetch_rate_config,
            empty=rates_from_settings(self.settings),
        )

    async def get_route_estimate(self, origin: Location, destination: Location) -> FeedResult:
        key = f"{DISTANCE}_{geo.route_cache_key(origin, destination)}"
        return await self._read_through(
            key,
            self._ttl.distance_calculations,
            lambda: self.route_oracle.estimate(origin, destination),
        )

    def get_scored_match(
        self,
        job: CargoJob,
        vehicle: Vehicle,
        *,
        route: Optional[RouteEstimate] = None,
        rates: Optional[RateConfig] = None,
        now: Optional[datetime] = None,
        analysis: Optional[JobAnalysis] = None,
    ) -> MatchCandidate:
        """Score one pair, reusing a cached result. Safe to call from worker threads.

        The key carries the vehicle's fix rounded to ~100 m so a vehicle that
        moves is re-scored from its new position.
        """
        where = f"{vehicle.lat:.3f},{vehicle.lon:.3f}" if vehicle.has_coords else "nofix"
        key = f"{SCORING}_{job.id}_{vehicle.id}_{where}"
        cached = self.store.get(key)
        if cached is not None:
            return cached
        candidate = self.scorer.score(
            job, vehicle, route=route, rates=rates, now=now, analysis=analysis,
        )
        self.store.set(key, candidate, self._ttl.scoring_results)
        return candidate

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _require_engine(self) -> "MatchingEngine":
        if self.engine is None:
            raise RuntimeError("CacheIntegration has no matching engine bound")
        return self.engine

    async def _cached_matches(
        self,
        key: str,
        compute: Callable[[], Awaitable[MatchResult]],
    ) -> MatchResult:
        cached = self.store.get(key)
        if cached is not None:
            return cached

        async with self._key_lock(key):
            cached = self.store.get(key)
            if cached is not None:
                return cached
            result = await compute()
            if result.degraded:
                logger.info("Not caching degraded match result %s", key)
            else:
                self.store.set(key, result, self._ttl.matching_results)
            return result

    async def find_best_matches(
        self,
        limit: int = 5,
        filters: "FiltersInput" = None,
    ) -> MatchResult:
        engine = self._require_engine()
        engine.validate_limit(limit)
        filters = engine.coerce_filters(filters)
        key = canonical_key(MATCHING, {"limit": limit, **filters.model_dump(exclude_defaults=True)})
        return await self._cached_matches(key, lambda: engine.find_best_matches(limit, filters))

    async def find_urgent_matches(self) -> MatchResult:
        engine = self._require_engine()
        key = canonical_key(MATCHING, {"urgent": True})
        return await self._cached_matches(key, engine.find_urgent_matches)

    async def find_matches_for_vehicle(self, vehicle_id: str, limit: int = 5) -> MatchResult:
        engine = self._require_engine()
        engine.validate_limit(limit)
        key = canonical_key(MATCHING, {"vehicle": vehicle_id, "limit": limit})
        return await self._cached_matches(
            key, lambda: engine.find_matches_for_vehicle(vehicle_id, limit),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def invalidate(self, kind: InvalidationKind) -> int:
        kind = InvalidationKind(kind)
        removed = self.store.delete_many(INVALIDATION_SCOPES[kind])
        logger.info("Cache invalidated for %s event: %d entries removed", kind.value, removed)
        return removed

    async def accept_match(
        self,
        job_id: str,
        vehicle_id: str,
        score: Optional[float] = None,
    ) -> None:
        await self.repository.record_assignment(job_id, vehicle_id, score)
        self.invalidate(InvalidationKind.ASSIGNMENT)

    async def update_job_status(self, job_id: str, status: JobStatus) -> int:
        """Persist a job status change and drop everything derived from the job list."""
        status = JobStatus(status)
        await self.repository.update_job_status(job_id, status)
        removed = self.invalidate(InvalidationKind.JOB)
        if status == JobStatus.COMPLETED:
            removed += self.store.delete_prefix(METRICS)
        return removed

    async def update_vehicle_status(self, vehicle_id: str, status: VehicleStatus) -> int:
        await self.repository.update_vehicle_status(vehicle_id, VehicleStatus(status))
        return self.invalidate(InvalidationKind.VEHICLE)

    async def record_vehicle_position(self, position: VehiclePosition) -> int:
        """Store a telemetry fix pushed by a vehicle."""
        await self.repository.update_vehicle_position(position)
        return self.invalidate(InvalidationKind.VEHICLE)

    # ------------------------------------------------------------------
    # Warm-up & health
    # ------------------------------------------------------------------

    async def preload(self) -> None:
        """Warm every feed in parallel, then the default match list."""
        results = await asyncio.gather(
            self.get_available_jobs(),
            self.get_available_vehicles(),
            self.get_fleet_status(),
            self.get_rate_config(),
            self.get_performance_metrics("week"),
        )
        failed = [r.error for r in results if not r.ok]
        if failed:
            logger.warning("Cache preload incomplete: %s", "; ".join(failed))
        else:
            logger.info("Cache preloaded (%d feeds)", len(results))

        if self.engine is not None:
            await self.find_best_matches(10)

    async def warm(self) -> int:
        """Refresh the hot feeds and the matching combinations most callers ask for.

        Returns the number of entries refreshed without degradation.
        """
        self.store.delete_many((JOBS, POSITIONS, FLEET_STATUS, METRICS, MATCHING))
        feeds = await asyncio.gather(
            self.get_available_jobs(),
            self.get_vehicle_positions(),
            self.get_fleet_status(),
            self.get_performance_metrics("week"),
        )
        matches = await asyncio.gather(
            self.find_best_matches(5),
            self.find_urgent_matches(),
        )
        refreshed = [r.ok and not r.degraded for r in feeds]
        refreshed += [not r.degraded for r in matches]
        warmed = sum(refreshed)
        logger.info("Cache warmed %d of %d entries", warmed, len(refreshed))
        return warmed

    def check_health(self) -> CacheStats:
        stats = self.store.stats()
        lookups = stats.hits + stats.misses
        if (
            lookups >= self.settings.cache_min_lookups_for_alert
            and stats.hit_rate < self.settings.cache_min_hit_rate_pct
        ):
            logger.warning(
                "Cache hit rate low: %.1f%% over %d lookups", stats.hit_rate, lookups,
            )
        if stats.approx_bytes > self.settings.cache_max_bytes:
            logger.warning(
                "Cache size high: ~%.1f MB", stats.approx_bytes / (1024 * 1024),
            )
        return stats

    async def run_monitor(self, interval_seconds: float) -> None:
        """Check cache health forever."""
        logger.info("Cache monitor started (interval=%ss)", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.check_health()
            except Exception as exc:
                logger.error("Cache monitor error: %s", exc)
