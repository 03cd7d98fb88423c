"""Tests for the matching pipeline: filters, ranking, validation, degradation.

The engine runs against a real CacheIntegration over FakeRepository so the
feed plumbing is exercised too; the clock is pinned to NOW.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from fleet_dispatch.domain.enums import RiskTier, VehicleType
from fleet_dispatch.domain.schemas import MatchFilters
from fleet_dispatch.services.cache_integration import STALE, CacheIntegration
from fleet_dispatch.services.cache_store import CacheStore
from fleet_dispatch.services.matching_engine import MatchingEngine, MatchingValidationError
from fleet_dispatch.services.scoring import ScoringSystem, ranking_key

from conftest import BUCHAREST, CLUJ, NOW, FakeRepository, build_job, build_vehicle


def _engine(repo, settings, scorer=None):
    scorer = scorer or ScoringSystem()
    feeds = CacheIntegration(CacheStore(), repo, settings, scorer)
    engine = MatchingEngine(feeds, scorer, settings, clock=lambda: NOW)
    feeds.bind_engine(engine)
    return engine


class BrokenVehicleScorer(ScoringSystem):
    """Raises for one vehicle id, scores everything else normally."""

    def __init__(self, broken_id: str) -> None:
        super().__init__()
        self.broken_id = broken_id

    def score(self, job, vehicle, **kwargs):
        if vehicle.id == self.broken_id:
            raise RuntimeError(f"telemetry glitch on {vehicle.id}")
        return super().score(job, vehicle, **kwargs)


# ---------------------------------------------------------------------------
# Hard filters
# ---------------------------------------------------------------------------

class TestHardFilters:

    @pytest.mark.asyncio
    async def test_overweight_job_never_matches(self, settings):
        repo = FakeRepository(
            jobs=[build_job(id="heavy", weight_kg=5000)],
            vehicles=[build_vehicle(id="van", capacity_kg=3500)],
        )
        engine = _engine(repo, settings)

        result = await engine.find_matches_for_vehicle("van")

        assert result.matches == []
        assert result.considered_pairs == 0

    @pytest.mark.asyncio
    async def test_overweight_job_excluded_from_best(self, settings):
        repo = FakeRepository(
            jobs=[build_job(id="heavy", weight_kg=5000), build_job(id="ok", weight_kg=3000)],
            vehicles=[build_vehicle(capacity_kg=3500)],
        )
        result = await _engine(repo, settings).find_best_matches()

        assert [m.job_id for m in result.matches] == ["ok"]

    @pytest.mark.asyncio
    async def test_far_vehicle_outside_default_radius(self, settings):
        repo = FakeRepository(jobs=[build_job()], vehicles=[build_vehicle(position=CLUJ, city="Cluj")])
        engine = _engine(repo, settings)

        result = await engine.find_best_matches()
        assert result.considered_pairs == 0

        wider = await engine.find_best_matches(5, {"max_distance_km": 500})
        assert wider.considered_pairs == 1

    @pytest.mark.asyncio
    async def test_unmatchable_statuses_ignored(self, settings):
        repo = FakeRepository(
            jobs=[build_job(id="taken", status="taken")],
            vehicles=[build_vehicle()],
        )
        result = await _engine(repo, settings).find_best_matches()
        assert result.matches == []


# ---------------------------------------------------------------------------
# Pre-score
# ---------------------------------------------------------------------------

class TestPreScore:

    @staticmethod
    def _weak_job():
        # heavy, awkward, unpaid and in no hurry: analysis total ~25
        return build_job(
            id="weak",
            weight_kg=6000,
            price=0,
            price_type="negotiable",
            urgency="low",
            hours_to_deadline=200,
            cargo_category="Hazardous",
            volume_m3=90,
            requirements=["crane", "hydraulic lift", "temperature", "special permit"],
        )

    @pytest.mark.asyncio
    async def test_weak_non_urgent_job_skipped_before_pairing(self, settings):
        repo = FakeRepository(
            jobs=[self._weak_job()],
            vehicles=[build_vehicle(capacity_kg=10000, vehicle_type="TRUCK")],
        )
        result = await _engine(repo, settings).find_best_matches()
        assert result.considered_pairs == 0

    @pytest.mark.asyncio
    async def test_vehicle_search_does_not_pre_score(self, settings):
        repo = FakeRepository(
            jobs=[self._weak_job()],
            vehicles=[build_vehicle(capacity_kg=10000, vehicle_type="TRUCK")],
        )
        result = await _engine(repo, settings).find_matches_for_vehicle("veh-1")
        assert result.considered_pairs == 1


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

class TestRanking:

    @pytest.fixture
    def repo(self):
        jobs = [
            build_job(id=f"job-{i}", price=price, created_at=NOW - timedelta(minutes=i))
            for i, price in enumerate([250, 900, 300, 650, 180, 800, 420])
        ]
        vehicles = [
            build_vehicle(id="near"),
            build_vehicle(id="center", position=BUCHAREST),
        ]
        return FakeRepository(jobs=jobs, vehicles=vehicles)

    @pytest.mark.asyncio
    async def test_best_first_and_truncated(self, repo, settings):
        result = await _engine(repo, settings).find_best_matches(limit=5)

        totals = [m.total_score for m in result.matches]
        assert len(result.matches) == 5
        assert totals == sorted(totals, reverse=True)
        assert result.considered_pairs == 14
        assert result.generated_at == NOW

    @pytest.mark.asyncio
    async def test_limit_returns_prefix_of_full_ranking(self, repo, settings):
        engine = _engine(repo, settings)
        top = await engine.find_best_matches(limit=3)
        everything = await engine.find_best_matches(limit=100)

        keys = [ranking_key(m) for m in everything.matches]
        assert keys == sorted(keys)
        assert [(m.job_id, m.vehicle_id) for m in top.matches] == [
            (m.job_id, m.vehicle_id) for m in everything.matches[:3]
        ]

    @pytest.mark.asyncio
    async def test_equal_scores_prefer_older_job(self, settings):
        repo = FakeRepository(
            jobs=[
                build_job(id="a-new", created_at=NOW - timedelta(minutes=5)),
                build_job(id="z-old", created_at=NOW - timedelta(hours=3)),
            ],
            vehicles=[build_vehicle()],
        )
        result = await _engine(repo, settings).find_best_matches()

        first, second = result.matches
        assert first.total_score == second.total_score
        assert [first.job_id, second.job_id] == ["z-old", "a-new"]

    @pytest.mark.asyncio
    async def test_below_acceptance_threshold_dropped(self, settings):
        # unpaid and relaxed: profit 0, urgency 25 -> total well under 60
        repo = FakeRepository(
            jobs=[build_job(price=0, urgency="medium", hours_to_deadline=100)],
            vehicles=[build_vehicle()],
        )
        result = await _engine(repo, settings).find_best_matches()
        assert result.considered_pairs == 1
        assert result.matches == []


# ---------------------------------------------------------------------------
# Soft filters
# ---------------------------------------------------------------------------

class TestSoftFilters:

    @pytest.mark.asyncio
    async def test_vehicle_type_filter(self, settings):
        repo = FakeRepository(
            jobs=[build_job()],
            vehicles=[
                build_vehicle(id="van", vehicle_type="VAN"),
                build_vehicle(id="truck", vehicle_type="TRUCK"),
            ],
        )
        result = await _engine(repo, settings).find_best_matches(5, {"vehicle_type": "TRUCK"})
        assert [m.vehicle_id for m in result.matches] == ["truck"]

    @pytest.mark.asyncio
    async def test_min_profit_filter(self, settings):
        # ~142 km route: EUR 800 clears a 50% margin (score 100), EUR 250 only 30% (80)
        repo = FakeRepository(
            jobs=[build_job(id="rich", price=800), build_job(id="thin", price=250)],
            vehicles=[build_vehicle()],
        )
        engine = _engine(repo, settings)

        everything = await engine.find_best_matches(5)
        filtered = await engine.find_best_matches(5, MatchFilters(min_profit=90))

        assert {m.job_id: m.profit_score for m in everything.matches} == {"rich": 100, "thin": 80}
        assert filtered.considered_pairs == 2
        assert [m.job_id for m in filtered.matches] == ["rich"]

    def test_min_profit_is_a_sub_score(self):
        with pytest.raises(ValidationError):
            MatchFilters(min_profit=500)

    @pytest.mark.asyncio
    async def test_exclude_high_risk(self, settings):
        # Urgent, hazardous and near capacity: three risk factors
        risky = build_job(cargo_category="Hazardous", weight_kg=3400, urgency="high")
        repo = FakeRepository(jobs=[risky], vehicles=[build_vehicle(capacity_kg=3500)])
        engine = _engine(repo, settings)

        kept = await engine.find_best_matches(5)
        dropped = await engine.find_best_matches(5, {"exclude_high_risk": True})

        assert [m.risk_tier for m in kept.matches] == [RiskTier.HIGH]
        assert kept.matches[0].total_score > settings.min_acceptable_score
        assert dropped.considered_pairs == 1
        assert dropped.matches == []

    @pytest.mark.asyncio
    async def test_urgency_only(self, settings):
        repo = FakeRepository(
            jobs=[build_job(id="rush", urgency="high"), build_job(id="calm", urgency="medium")],
            vehicles=[build_vehicle()],
        )
        result = await _engine(repo, settings).find_best_matches(5, {"urgency_only": True})
        assert [m.job_id for m in result.matches] == ["rush"]

    @pytest.mark.asyncio
    async def test_urgent_matches(self, settings):
        repo = FakeRepository(
            jobs=[build_job(id="rush", urgency="high"), build_job(id="calm", urgency="low")],
            vehicles=[build_vehicle(vehicle_type=VehicleType.SEMI)],
        )
        result = await _engine(repo, settings).find_urgent_matches()
        assert {m.job_id for m in result.matches} == {"rush"}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -3, 101, True, "5"])
    async def test_bad_limit(self, settings, limit):
        engine = _engine(FakeRepository(), settings)
        with pytest.raises(MatchingValidationError):
            await engine.find_best_matches(limit)

    @pytest.mark.asyncio
    async def test_unknown_filter_key(self, settings):
        engine = _engine(FakeRepository(), settings)
        with pytest.raises(MatchingValidationError):
            await engine.find_best_matches(5, {"colour": "red"})

    @pytest.mark.asyncio
    async def test_negative_distance(self, settings):
        engine = _engine(FakeRepository(), settings)
        with pytest.raises(MatchingValidationError):
            await engine.find_best_matches(5, {"max_distance_km": -5})

    @pytest.mark.asyncio
    async def test_validation_happens_before_any_feed_read(self, settings):
        repo = FakeRepository()
        engine = _engine(repo, settings)
        with pytest.raises(MatchingValidationError):
            await engine.find_matches_for_vehicle("veh-1", limit=0)
        assert repo.calls == {}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    @pytest.mark.asyncio
    async def test_failing_pair_is_skipped(self, settings):
        repo = FakeRepository(
            jobs=[build_job()],
            vehicles=[build_vehicle(id="good"), build_vehicle(id="glitchy")],
        )
        engine = _engine(repo, settings, scorer=BrokenVehicleScorer("glitchy"))

        result = await engine.find_best_matches()

        assert [m.vehicle_id for m in result.matches] == ["good"]
        assert result.considered_pairs == 2

    @pytest.mark.asyncio
    async def test_feed_outage_degrades_instead_of_raising(self, settings):
        repo = FakeRepository(jobs=[build_job()], vehicles=[build_vehicle()])
        repo.fail = RuntimeError("database unavailable")

        result = await _engine(repo, settings).find_best_matches()

        assert result.matches == []
        assert result.degraded is True
        assert any("database unavailable" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_stale_feeds_still_produce_matches(self, settings):
        repo = FakeRepository(jobs=[build_job()], vehicles=[build_vehicle()])
        engine = _engine(repo, settings)
        await engine.find_best_matches()

        for key in engine.feeds.store.keys():
            if not key.startswith(STALE):
                engine.feeds.store.delete(key)
        repo.fail = RuntimeError("replica lag")
        result = await engine.find_best_matches()

        assert result.degraded is True
        assert [m.job_id for m in result.matches] == ["job-1"]

    @pytest.mark.asyncio
    async def test_unknown_vehicle_gives_empty_result(self, settings):
        repo = FakeRepository(jobs=[build_job()], vehicles=[build_vehicle()])
        result = await _engine(repo, settings).find_matches_for_vehicle("ghost")
        assert result.matches == []
        assert result.degraded is False
