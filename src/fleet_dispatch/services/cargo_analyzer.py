"""Vehicle-independent job analysis used for pre-scoring.

Pure-function module: no database, no network.  The matching engine runs
``CargoAnalyzer.analyze`` once per job and skips jobs whose total score is
too low before any (job, vehicle) pair is scored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fleet_dispatch.domain.enums import PriceType, Urgency
from fleet_dispatch.domain.schemas import CargoJob, JobAnalysis, RateConfig, RouteEstimate
from fleet_dispatch.services import costs, geo

# ── Difficulty tables ────────────────────────────────────────────────────────

CATEGORY_DIFFICULTY = {
    "Hazardous": 25,
    "Refrigerated": 20,
    "Fragile": 15,
    "Electronics": 10,
    "Food": 8,
    "General": 0,
}
UNKNOWN_CATEGORY_DIFFICULTY = 5

SPECIAL_REQUIREMENT_KEYWORDS = ("hydraulic", "crane", "temperature", "special")
SPECIAL_REQUIREMENT_POINTS = 7

HIGH_RISK_CATEGORIES = frozenset({"Hazardous", "Fragile", "Electronics"})

# Flat-fleet consumption assumed when no vehicle is known yet
ANALYSIS_CONSUMPTION_L_PER_100KM = 35.0

# Profit that maps to a full 100 in the total score
PROFIT_NORMALIZER = 1000.0


def hours_until(moment: datetime, now: datetime) -> float:
    """Hours from ``now`` to ``moment``, floored at 0.  Naive datetimes are UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(0.0, (moment - now).total_seconds() / 3600)


def urgency_score_for_hours(hours: float) -> float:
    """<24h → 100, <48h → 75, <72h → 50, else 25."""
    if hours < 24:
        return 100.0
    if hours < 48:
        return 75.0
    if hours < 72:
        return 50.0
    return 25.0


def job_deadline(job: CargoJob) -> datetime:
    return job.deadline or job.delivery_at


class CargoAnalyzer:
    """Scores a job on its own merits: urgency, difficulty, profit, risk."""

    def analyze(
        self,
        job: CargoJob,
        route: Optional[RouteEstimate] = None,
        rates: Optional[RateConfig] = None,
        now: Optional[datetime] = None,
    ) -> JobAnalysis:
        rates = rates or RateConfig()
        now = now or datetime.now(timezone.utc)

        if route is not None:
            distance = route.distance_km
        else:
            distance, _ = geo.route_distance_km(job.origin, job.destination)

        hours_left = hours_until(job_deadline(job), now)
        urgency = urgency_score_for_hours(hours_left)
        duration = geo.estimate_duration_hours(distance, job.is_international, rates)
        difficulty = self.difficulty(job)
        profit = self.estimate_profit(job, distance, duration, rates)
        risk = self.risk(job, distance, hours_left)

        normalized_profit = min(100.0, profit / PROFIT_NORMALIZER * 100)
        total = (
            urgency * 0.25
            + normalized_profit * 0.35
            + (100 - difficulty) * 0.20
            + (100 - risk) * 0.20
        )

        return JobAnalysis(
            job_id=job.id,
            urgency_score=urgency,
            distance_km=round(distance, 1),
            duration_hours=round(duration, 2),
            difficulty_score=difficulty,
            profit_estimate=round(profit, 2),
            risk_score=risk,
            total_score=round(total, 1),
        )

    def analyze_many(
        self,
        jobs: list[CargoJob],
        rates: Optional[RateConfig] = None,
        now: Optional[datetime] = None,
    ) -> list[JobAnalysis]:
        """Analyze a batch, best first."""
        analyses = [self.analyze(job, rates=rates, now=now) for job in jobs]
        analyses.sort(key=lambda a: a.total_score, reverse=True)
        return analyses

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @staticmethod
    def difficulty(job: CargoJob) -> float:
        score = 0.0

        if job.weight_kg > 20000:
            score += 30
        elif job.weight_kg > 10000:
            score += 20
        elif job.weight_kg > 5000:
            score += 10

        score += CATEGORY_DIFFICULTY.get(job.cargo_category, UNKNOWN_CATEGORY_DIFFICULTY)

        special = [
            req for req in job.requirements
            if any(word in req.lower() for word in SPECIAL_REQUIREMENT_KEYWORDS)
        ]
        score += len(special) * SPECIAL_REQUIREMENT_POINTS

        if job.volume_m3:
            if job.volume_m3 > 80:
                score += 15
            elif job.volume_m3 > 50:
                score += 10
            elif job.volume_m3 > 20:
                score += 5

        if job.is_international:
            score += 10

        return min(100.0, score)

    @staticmethod
    def estimate_profit(
        job: CargoJob, distance_km: float, duration_hours: float, rates: RateConfig,
    ) -> float:
        fuel = costs.fuel_cost(distance_km, ANALYSIS_CONSUMPTION_L_PER_100KM, rates)
        driver = costs.driver_cost(duration_hours, rates)
        revenue = costs.calculate_revenue(job, distance_km)
        return max(0.0, revenue - fuel - driver)

    @staticmethod
    def risk(job: CargoJob, distance_km: float, hours_left: float) -> float:
        score = 0.0

        if distance_km > 1000:
            score += 20
        elif distance_km > 500:
            score += 10
        elif distance_km > 200:
            score += 5

        if job.urgency == Urgency.HIGH:
            score += 15
        elif job.urgency == Urgency.MEDIUM:
            score += 5

        if job.cargo_category in HIGH_RISK_CATEGORIES:
            score += 20

        if job.price_type == PriceType.NEGOTIABLE:
            score += 10

        if job.is_international:
            score += 15

        if hours_left < 12:
            score += 25
        elif hours_left < 24:
            score += 15

        return min(100.0, score)
