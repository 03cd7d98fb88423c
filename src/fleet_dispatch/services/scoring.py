"""Deterministic job-vehicle match scorer.

Pure-function module: NO database access, NO network.

Computes a composite match score from five weighted dimensions:
    - Proximity   (25%)  pickup distance bands
    - Profit      (35%)  margin after fuel, driver time and wear
    - Urgency     (20%)  hours to deadline
    - Efficiency  (15%)  consumption, load utilisation, availability
    - Risk         (5%)  inverted: route length, cargo class, load, status

Weights come from ``ScoringWeights`` and are configurable.  For a fixed
(job, vehicle, route, rates, now) the result is always identical, so the
scorer can run on worker threads and its results can be cached.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

from fleet_dispatch.app.config import ScoringWeights
from fleet_dispatch.domain.enums import RiskTier, RouteMethod, Urgency, VehicleStatus
from fleet_dispatch.domain.schemas import (
    CargoJob,
    JobAnalysis,
    MatchCandidate,
    RateConfig,
    RouteEstimate,
    Vehicle,
)
from fleet_dispatch.services import costs, geo
from fleet_dispatch.services.cargo_analyzer import (
    HIGH_RISK_CATEGORIES,
    CargoAnalyzer,
    hours_until,
    job_deadline,
    urgency_score_for_hours,
)

logger = logging.getLogger(__name__)

LONG_ROUTE_KM = 800
LONG_PICKUP_KM = 80
NEAR_CAPACITY_RATIO = 0.9


# ── Ordering ─────────────────────────────────────────────────────────────────

def ranking_key(candidate: MatchCandidate) -> tuple:
    """Best first; ties go to the older job, then job id, then vehicle id."""
    created = candidate.job.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (-candidate.total_score, created, candidate.job.id, candidate.vehicle.id)


# ── Dimension scores ─────────────────────────────────────────────────────────

def proximity_score(pickup_km: float) -> float:
    """≤10 km → 100, ≤50 → 80, ≤100 → 60, ≤200 → 40, else 20."""
    if pickup_km <= 10:
        return 100.0
    if pickup_km <= 50:
        return 80.0
    if pickup_km <= 100:
        return 60.0
    if pickup_km <= 200:
        return 40.0
    return 20.0


def profit_score(margin_pct: float) -> float:
    if margin_pct >= 50:
        return 100.0
    if margin_pct >= 30:
        return 80.0
    if margin_pct >= 20:
        return 60.0
    if margin_pct >= 10:
        return 40.0
    return 0.0


def _utilization_pct(job: CargoJob, vehicle: Vehicle) -> float:
    return job.weight_kg / vehicle.capacity_kg * 100


def efficiency_score(job: CargoJob, vehicle: Vehicle, pickup_km: float) -> float:
    score = 100.0

    consumption = vehicle.fuel_consumption_l_per_100km
    if consumption > 10:
        score -= 20
    elif consumption < 6:
        score += 10

    if pickup_km > 100:
        score -= 25
    elif pickup_km < 20:
        score += 15

    utilization = _utilization_pct(job, vehicle)
    if utilization > 90:
        score += 15
    elif utilization > 70:
        score += 10
    elif utilization < 30:
        score -= 15

    if vehicle.status == VehicleStatus.IDLE:
        score += 10
    elif vehicle.status == VehicleStatus.MAINTENANCE:
        score -= 30
    elif vehicle.status == VehicleStatus.ASSIGNED:
        score -= 10

    return max(0.0, min(100.0, score))


def risk_score(job: CargoJob, vehicle: Vehicle, route_km: float) -> float:
    score = 0.0

    if route_km > 1000:
        score += 25
    elif route_km > 500:
        score += 15
    elif route_km > 200:
        score += 5

    if job.cargo_category in HIGH_RISK_CATEGORIES:
        score += 20

    if job.weight_kg / vehicle.capacity_kg > NEAR_CAPACITY_RATIO:
        score += 15

    if job.urgency == Urgency.HIGH:
        score += 10

    if vehicle.status == VehicleStatus.MAINTENANCE:
        score += 30
    elif vehicle.status == VehicleStatus.ASSIGNED:
        score += 10

    return min(100.0, score)


def capacity_compatibility(job: CargoJob, vehicle: Vehicle) -> float:
    utilization = _utilization_pct(job, vehicle)
    if utilization > 100:
        return 0.0
    if utilization > 90:
        return 100.0
    if utilization > 70:
        return 90.0
    if utilization > 50:
        return 80.0
    if utilization > 30:
        return 60.0
    return 40.0


def time_compatibility(deadline_hours: float, pickup_minutes: float) -> float:
    buffer = deadline_hours - pickup_minutes / 60
    if buffer < 12:
        return 30.0
    if buffer < 24:
        return 60.0
    if buffer < 48:
        return 80.0
    return 100.0


def risk_tier(risk_factors: list[str], warnings: list[str]) -> RiskTier:
    if len(risk_factors) >= 3 or len(warnings) >= 3:
        return RiskTier.HIGH
    if len(risk_factors) >= 2 or len(warnings) >= 2:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def recommendation_text(total: float) -> str:
    if total > 85:
        return "Excellent match - highly recommended"
    if total > 75:
        return "Good match - recommended"
    if total > 65:
        return "Acceptable match - consider carefully"
    return "Poor match - not recommended"


def pickup_distance_km(job: CargoJob, vehicle: Vehicle) -> float:
    """Vehicle position to pickup; falls back to the vehicle's home city."""
    if vehicle.has_coords and job.origin.has_coords:
        return geo.haversine_km(vehicle.lat, vehicle.lon, job.origin.lat, job.origin.lon)
    return geo.estimate_distance_by_cities(
        vehicle.city, job.origin.city, vehicle.country, job.origin.country,
    )


# ── Scorer ───────────────────────────────────────────────────────────────────

class ScoringSystem:
    """Scores (job, vehicle) pairs. Stateless apart from its configuration."""

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        rates: Optional[RateConfig] = None,
        analyzer: Optional[CargoAnalyzer] = None,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self.rates = rates or RateConfig()
        self.analyzer = analyzer or CargoAnalyzer()

    def score(
        self,
        job: CargoJob,
        vehicle: Vehicle,
        *,
        route: Optional[RouteEstimate] = None,
        rates: Optional[RateConfig] = None,
        now: Optional[datetime] = None,
        analysis: Optional[JobAnalysis] = None,
    ) -> MatchCandidate:
        rates = rates or self.rates
        now = now or datetime.now(timezone.utc)

        if route is None:
            distance, method = geo.route_distance_km(job.origin, job.destination)
            route = RouteEstimate(distance_km=distance, duration_min=0.0, method=method)
        route_km = route.distance_km
        if route.method == RouteMethod.ORACLE:
            duration_hours = route.duration_min / 60
        else:
            duration_hours = geo.estimate_duration_hours(route_km, job.is_international, rates)

        if analysis is None:
            analysis = self.analyzer.analyze(job, route=route, rates=rates, now=now)

        pickup_km = pickup_distance_km(job, vehicle)
        pickup_minutes = geo.travel_minutes_to_pickup(pickup_km, rates)

        breakdown = costs.cost_breakdown(
            route_km, duration_hours, vehicle.fuel_consumption_l_per_100km, rates,
        )
        revenue = costs.calculate_revenue(job, route_km)
        profit = revenue - breakdown.total_cost
        margin = costs.profit_margin_pct(revenue, breakdown.total_cost)

        deadline_hours = hours_until(job_deadline(job), now)

        prox = proximity_score(pickup_km)
        prof = profit_score(margin)
        urg = urgency_score_for_hours(deadline_hours)
        eff = efficiency_score(job, vehicle, pickup_km)
        risk = risk_score(job, vehicle, route_km)

        w = self.weights
        total = (
            w.proximity * prox
            + w.profit * prof
            + w.urgency * urg
            + w.efficiency * eff
            + w.risk * (100 - risk)
        )
        total = round(total, 1)

        cap_compat = capacity_compatibility(job, vehicle)
        time_compat = time_compatibility(deadline_hours, pickup_minutes)

        risk_factors: list[str] = []
        if margin < rates.profit_margin_min_pct:
            risk_factors.append("Low profit margin")
        if job.urgency == Urgency.HIGH:
            risk_factors.append("Urgent deadline")
        if job.weight_kg > vehicle.capacity_kg * NEAR_CAPACITY_RATIO:
            risk_factors.append("Near capacity limit")
        if job.cargo_category == "Hazardous":
            risk_factors.append("Hazardous materials")
        if route_km > LONG_ROUTE_KM:
            risk_factors.append("Long distance transport")
        if vehicle.status != VehicleStatus.IDLE:
            risk_factors.append("Vehicle not immediately available")
        if analysis.risk_score > 70:
            risk_factors.append("High-risk cargo")
        if pickup_km > LONG_PICKUP_KM:
            risk_factors.append("Long distance to pickup")
        if analysis.difficulty_score > 60:
            risk_factors.append("Complex cargo requirements")

        warnings: list[str] = []
        if time_compat < 50:
            warnings.append("Tight delivery schedule")
        if prof < 40:
            warnings.append("Low profit margin")
        if analysis.difficulty_score > 70:
            warnings.append("Special handling required")

        advantages: list[str] = []
        if pickup_km < 20:
            advantages.append("Vehicle very close to pickup")
        if prof > 80:
            advantages.append("High profit potential")
        if vehicle.status == VehicleStatus.IDLE:
            advantages.append("Vehicle immediately available")
        if cap_compat > 90:
            advantages.append("Perfect capacity match")

        recommendations: list[str] = []
        if prox > 80:
            recommendations.append("Excellent proximity - minimal deadhead distance")
        if prof > 80:
            recommendations.append("High profitability - excellent financial opportunity")
        if urg > 75 and prof > 60:
            recommendations.append("Urgent and profitable - prioritize this match")
        if prox < 40:
            recommendations.append("Consider fuel costs for long pickup distance")
        if prof < 40:
            recommendations.append("Low profitability - negotiate better rate or decline")

        return MatchCandidate(
            job=job,
            vehicle=vehicle,
            proximity_score=prox,
            profit_score=prof,
            urgency_score=urg,
            efficiency_score=eff,
            risk_score=risk,
            total_score=total,
            pickup_distance_km=round(pickup_km, 1),
            route_distance_km=round(route_km, 1),
            duration_hours=round(duration_hours, 2),
            costs=breakdown,
            revenue=round(revenue, 2),
            profit=round(profit, 2),
            profit_margin_pct=round(margin, 1),
            capacity_compatibility=cap_compat,
            time_compatibility=time_compat,
            risk_factors=risk_factors,
            warnings=warnings,
            advantages=advantages,
            recommendations=recommendations,
            risk_tier=risk_tier(risk_factors, warnings),
            recommendation=recommendation_text(total),
        )

    def score_many(
        self,
        jobs: Iterable[CargoJob],
        vehicles: Iterable[Vehicle],
        *,
        routes: Optional[Mapping[str, RouteEstimate]] = None,
        rates: Optional[RateConfig] = None,
        now: Optional[datetime] = None,
    ) -> list[MatchCandidate]:
        """Score every capacity-feasible pair, best first.

        A pair that fails to score is logged and left out.
        """
        now = now or datetime.now(timezone.utc)
        vehicles = list(vehicles)
        routes = routes or {}
        results: list[MatchCandidate] = []

        for job in jobs:
            route = routes.get(job.id)
            for vehicle in vehicles:
                if vehicle.capacity_kg < job.weight_kg:
                    continue
                try:
                    results.append(
                        self.score(job, vehicle, route=route, rates=rates, now=now)
                    )
                except Exception as exc:
                    logger.warning(
                        "Scoring failed for job %s / vehicle %s: %s", job.id, vehicle.id, exc,
                    )

        results.sort(key=ranking_key)
        return results
