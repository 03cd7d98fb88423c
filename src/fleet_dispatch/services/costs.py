"""Operating cost and revenue primitives shared by the analyzer and scorer."""

from __future__ import annotations

from fleet_dispatch.domain.enums import PriceType
from fleet_dispatch.domain.schemas import CargoJob, CostBreakdown, RateConfig


def fuel_cost(distance_km: float, consumption_l_per_100km: float, rates: RateConfig) -> float:
    return (distance_km / 100) * consumption_l_per_100km * rates.fuel_price_per_liter


def driver_cost(duration_hours: float, rates: RateConfig) -> float:
    return duration_hours * rates.driver_cost_per_hour


def wear_cost(distance_km: float, rates: RateConfig) -> float:
    return distance_km * rates.wear_cost_per_km


def cost_breakdown(
    distance_km: float,
    duration_hours: float,
    consumption_l_per_100km: float,
    rates: RateConfig,
) -> CostBreakdown:
    """Fuel + driver time + wear for one route, rounded to cents."""
    fuel = fuel_cost(distance_km, consumption_l_per_100km, rates)
    driver = driver_cost(duration_hours, rates)
    wear = wear_cost(distance_km, rates)
    total = fuel + driver + wear
    per_km = total / distance_km if distance_km > 0 else 0.0

    return CostBreakdown(
        fuel_cost=round(fuel, 2),
        driver_cost=round(driver, 2),
        wear_cost=round(wear, 2),
        total_cost=round(total, 2),
        cost_per_km=round(per_km, 2),
    )


def calculate_revenue(job: CargoJob, route_distance_km: float) -> float:
    """Flat (and negotiable) prices are the revenue; per-km prices scale with distance."""
    if job.price_type == PriceType.PER_KM:
        return job.price * route_distance_km
    return job.price


def profit_margin_pct(revenue: float, total_cost: float) -> float:
    """Profit as a percentage of revenue; 0 when there is no revenue."""
    if revenue <= 0:
        return 0.0
    return (revenue - total_cost) / revenue * 100
