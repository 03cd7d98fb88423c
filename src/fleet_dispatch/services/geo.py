"""Geographic primitives: great-circle distance, city-pair fallback, durations.

Pure functions, no state.  The only stateful piece is
``HaversineRouteOracle``, the default distance/duration oracle, which is
async so that a remote routing service can be dropped in its place.
"""

from __future__ import annotations

import math
from typing import Optional

from fleet_dispatch.domain.enums import RouteMethod
from fleet_dispatch.domain.schemas import Location, RateConfig, RouteEstimate

EARTH_RADIUS_KM = 6371.0

# Fallbacks when no coordinates are known
SAME_COUNTRY_DISTANCE_KM = 150.0
CROSS_BORDER_DISTANCE_KM = 600.0

# Common European lanes, looked up in either direction
CITY_DISTANCES_KM: dict[tuple[str, str], float] = {
    ("bucharest", "berlin"): 1100,
    ("bucharest", "vienna"): 650,
    ("bucharest", "budapest"): 450,
    ("bucharest", "warsaw"): 850,
    ("bucharest", "cluj"): 450,
    ("berlin", "paris"): 880,
    ("berlin", "amsterdam"): 580,
    ("berlin", "prague"): 350,
    ("berlin", "vienna"): 530,
    ("paris", "madrid"): 1050,
    ("paris", "rome"): 1100,
    ("paris", "london"): 460,
    ("paris", "brussels"): 300,
    ("warsaw", "berlin"): 520,
    ("warsaw", "prague"): 680,
    ("warsaw", "vienna"): 600,
    ("warsaw", "kiev"): 760,
    ("cluj", "vienna"): 680,
    ("ploiesti", "brasov"): 120,
}

CITY_ROUTE_MAX_KM = 50.0
CITY_BLEND = 0.3  # share of city driving on a domestic intercity route

# Deadhead (vehicle -> pickup) speed bands
PICKUP_CITY_MAX_KM = 30.0
PICKUP_HIGHWAY_MIN_KM = 100.0
PICKUP_CITY_BLEND = 0.4


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in kilometres between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def estimate_distance_by_cities(
    from_city: Optional[str],
    to_city: Optional[str],
    from_country: Optional[str],
    to_country: Optional[str],
) -> float:
    """Coarse distance for places without coordinates.

    Known lanes come from ``CITY_DISTANCES_KM``; otherwise 150 km inside one
    country and 600 km across a border.  A missing country is treated as
    domestic.
    """
    a, b = _norm(from_city), _norm(to_city)
    known = CITY_DISTANCES_KM.get((a, b)) or CITY_DISTANCES_KM.get((b, a))
    if known:
        return float(known)

    ca, cb = _norm(from_country), _norm(to_country)
    if ca and cb and ca != cb:
        return CROSS_BORDER_DISTANCE_KM
    return SAME_COUNTRY_DISTANCE_KM


def route_distance_km(origin: Location, destination: Location) -> tuple[float, RouteMethod]:
    """Distance between two locations, falling back to the city-pair heuristic."""
    if origin.has_coords and destination.has_coords:
        return (
            haversine_km(origin.lat, origin.lon, destination.lat, destination.lon),
            RouteMethod.HAVERSINE,
        )
    return (
        estimate_distance_by_cities(
            origin.city, destination.city, origin.country, destination.country,
        ),
        RouteMethod.CITY_PAIR,
    )


def average_route_speed(distance_km: float, international: bool, rates: RateConfig) -> float:
    """Average speed for a loaded route.

    * Under 50 km   → city speed
    * International → highway speed
    * Otherwise     → 30 % city / 70 % highway blend
    """
    if distance_km < CITY_ROUTE_MAX_KM:
        return rates.average_speed_city_kmh
    if international:
        return rates.average_speed_highway_kmh
    return (
        rates.average_speed_city_kmh * CITY_BLEND
        + rates.average_speed_highway_kmh * (1 - CITY_BLEND)
    )


def estimate_duration_hours(distance_km: float, international: bool, rates: RateConfig) -> float:
    """Driving time plus the fixed loading/unloading allowance."""
    speed = average_route_speed(distance_km, international, rates)
    driving = distance_km / speed if speed > 0 else 0.0
    return driving + rates.loading_hours


def travel_minutes_to_pickup(distance_km: float, rates: RateConfig) -> float:
    """Deadhead time from the vehicle's position to the pickup point."""
    if distance_km < PICKUP_CITY_MAX_KM:
        speed = rates.average_speed_city_kmh
    elif distance_km > PICKUP_HIGHWAY_MIN_KM:
        speed = rates.average_speed_highway_kmh
    else:
        speed = (
            rates.average_speed_city_kmh * PICKUP_CITY_BLEND
            + rates.average_speed_highway_kmh * (1 - PICKUP_CITY_BLEND)
        )
    if speed <= 0:
        return 0.0
    return distance_km / speed * 60


def route_cache_key(origin: Location, destination: Location) -> str:
    """Stable key for a (origin, destination) pair, coordinates rounded to ~100 m."""

    def _point(loc: Location) -> str:
        if loc.has_coords:
            return f"{loc.lat:.3f},{loc.lon:.3f}"
        return f"{_norm(loc.city)}@{_norm(loc.country)}"

    return f"{_point(origin)}>{_point(destination)}"


class HaversineRouteOracle:
    """Default distance/duration oracle: straight-line distance plus the speed model."""

    def __init__(self, rates: Optional[RateConfig] = None) -> None:
        self._rates = rates or RateConfig()

    async def estimate(self, origin: Location, destination: Location) -> RouteEstimate:
        distance, method = route_distance_km(origin, destination)
        international = _norm(origin.country) != _norm(destination.country)
        hours = estimate_duration_hours(distance, international, self._rates)
        return RouteEstimate(
            distance_km=round(distance, 1),
            duration_min=round(hours * 60, 1),
            method=method,
        )
