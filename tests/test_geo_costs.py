"""Unit tests for the distance, duration and cost primitives."""

import pytest

from fleet_dispatch.domain.enums import RouteMethod
from fleet_dispatch.domain.schemas import Location, RateConfig
from fleet_dispatch.services import costs, geo

from conftest import BRASOV, BUCHAREST, build_job

RATES = RateConfig()


# ---------------------------------------------------------------------------
# Distances
# ---------------------------------------------------------------------------

class TestHaversine:

    def test_zero_distance(self):
        assert geo.haversine_km(*BUCHAREST, *BUCHAREST) == 0.0

    def test_one_degree_of_latitude(self):
        assert geo.haversine_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.05)

    def test_symmetric(self):
        assert geo.haversine_km(*BUCHAREST, *BRASOV) == pytest.approx(
            geo.haversine_km(*BRASOV, *BUCHAREST)
        )

    def test_bucharest_brasov(self):
        assert geo.haversine_km(*BUCHAREST, *BRASOV) == pytest.approx(140, abs=10)


class TestCityPairFallback:

    def test_known_pair(self):
        assert geo.estimate_distance_by_cities("Bucharest", "Berlin", "RO", "DE") == 1100

    def test_known_pair_reverse_direction(self):
        assert geo.estimate_distance_by_cities("Berlin", "Bucharest", "DE", "RO") == 1100

    def test_case_insensitive(self):
        assert geo.estimate_distance_by_cities("PARIS", "london", "FR", "GB") == 460

    def test_unknown_domestic(self):
        assert geo.estimate_distance_by_cities("Iasi", "Constanta", "RO", "RO") == 150

    def test_unknown_cross_border(self):
        assert geo.estimate_distance_by_cities("Iasi", "Sofia", "RO", "BG") == 600

    def test_missing_cities_never_raises(self):
        assert geo.estimate_distance_by_cities(None, None, None, None) == 150


class TestRouteDistance:

    def test_uses_haversine_with_all_coordinates(self):
        origin = Location(city="Bucharest", country="RO", lat=BUCHAREST[0], lon=BUCHAREST[1])
        dest = Location(city="Brasov", country="RO", lat=BRASOV[0], lon=BRASOV[1])
        distance, method = geo.route_distance_km(origin, dest)
        assert method == RouteMethod.HAVERSINE
        assert distance == pytest.approx(geo.haversine_km(*BUCHAREST, *BRASOV))

    def test_falls_back_when_a_coordinate_is_missing(self):
        origin = Location(city="Bucharest", country="RO", lat=BUCHAREST[0])
        dest = Location(city="Berlin", country="DE")
        distance, method = geo.route_distance_km(origin, dest)
        assert method == RouteMethod.CITY_PAIR
        assert distance == 1100


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

class TestDurations:

    def test_short_route_uses_city_speed(self):
        assert geo.estimate_duration_hours(30, False, RATES) == pytest.approx(30 / 30 + 2)

    def test_international_uses_highway_speed(self):
        assert geo.estimate_duration_hours(800, True, RATES) == pytest.approx(800 / 80 + 2)

    def test_domestic_uses_mixed_speed(self):
        # 0.3 * 30 + 0.7 * 80 = 65 km/h
        assert geo.estimate_duration_hours(400, False, RATES) == pytest.approx(400 / 65 + 2)

    def test_loading_hours_come_from_rates(self):
        rates = RateConfig(loading_hours=0.5)
        assert geo.estimate_duration_hours(30, False, rates) == pytest.approx(1.5)

    @pytest.mark.parametrize(
        "distance, speed",
        [(10, 30), (150, 80), (60, 0.4 * 30 + 0.6 * 80)],
    )
    def test_pickup_speed_bands(self, distance, speed):
        assert geo.travel_minutes_to_pickup(distance, RATES) == pytest.approx(distance / speed * 60)


class TestHaversineRouteOracle:

    @pytest.mark.asyncio
    async def test_estimate_includes_loading_time(self):
        oracle = geo.HaversineRouteOracle(RATES)
        origin = Location(city="Bucharest", country="RO", lat=BUCHAREST[0], lon=BUCHAREST[1])
        dest = Location(city="Brasov", country="RO", lat=BRASOV[0], lon=BRASOV[1])

        estimate = await oracle.estimate(origin, dest)

        hours = geo.estimate_duration_hours(estimate.distance_km, False, RATES)
        assert estimate.method == RouteMethod.HAVERSINE
        assert estimate.duration_min == pytest.approx(hours * 60, abs=0.2)


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------

class TestCosts:

    def test_fuel_cost(self):
        # 400 km at 8 L/100km and EUR 1.50/L
        assert costs.fuel_cost(400, 8.0, RATES) == pytest.approx(48.0)

    def test_breakdown_totals(self):
        breakdown = costs.cost_breakdown(400, 8.0, 8.0, RATES)
        assert breakdown.fuel_cost == 48.0
        assert breakdown.driver_cost == 200.0
        assert breakdown.wear_cost == 60.0
        assert breakdown.total_cost == 308.0
        assert breakdown.cost_per_km == 0.77

    def test_zero_distance_has_zero_cost_per_km(self):
        breakdown = costs.cost_breakdown(0, 2.0, 8.0, RATES)
        assert breakdown.cost_per_km == 0.0
        assert breakdown.total_cost == 50.0

    def test_flat_revenue_ignores_distance(self):
        job = build_job(price=800, price_type="flat")
        assert costs.calculate_revenue(job, 400) == 800

    def test_negotiable_revenue_is_the_price(self):
        job = build_job(price=800, price_type="negotiable")
        assert costs.calculate_revenue(job, 400) == 800

    def test_per_km_revenue_scales(self):
        job = build_job(price=1.2, price_type="per_km")
        assert costs.calculate_revenue(job, 400) == pytest.approx(480)

    def test_margin_with_no_revenue(self):
        assert costs.profit_margin_pct(0, 100) == 0.0
