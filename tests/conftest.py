"""Shared test infrastructure for the fleet dispatch test suite.

Provides:
- NOW and a few reference coordinates (Bucharest area)
- make_job / make_vehicle: factories for pydantic domain snapshots
- settings: Settings isolated from any local .env
- session_factory: async SQLite in-memory database with all tables created
- FakeRepository: in-memory stand-in for FleetRepository with failure hooks
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from fleet_dispatch.infra.database import Base
import fleet_dispatch.domain.models  # noqa: F401

from fleet_dispatch.app.config import Settings
from fleet_dispatch.domain.enums import MATCHABLE_VEHICLE_STATUSES
from fleet_dispatch.domain.schemas import (
    CargoJob,
    FleetStatusSummary,
    Location,
    PerformanceMetrics,
    RateConfig,
    Vehicle,
    VehiclePosition,
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

BUCHAREST = (44.4268, 26.1025)
PLOIESTI = (44.9365, 26.0129)
BRASOV = (45.6579, 25.6012)
CLUJ = (46.7712, 23.6236)

# ~8 km due north of central Bucharest
NEAR_BUCHAREST = (44.4988, 26.1025)


def _loc(city: str, point: Optional[tuple], country: str = "RO") -> Location:
    if point is None:
        return Location(city=city, country=country)
    return Location(city=city, country=country, lat=point[0], lon=point[1])


def build_job(
    *,
    id: str = "job-1",
    origin: Optional[tuple] = BUCHAREST,
    destination: Optional[tuple] = BRASOV,
    origin_city: str = "Bucharest",
    destination_city: str = "Brasov",
    origin_country: str = "RO",
    destination_country: str = "RO",
    weight_kg: float = 3000,
    price: float = 800,
    price_type: str = "flat",
    hours_to_deadline: float = 10,
    urgency: str = "high",
    cargo_category: str = "General",
    volume_m3: Optional[float] = None,
    requirements: Optional[list] = None,
    status: str = "new",
    created_at: Optional[datetime] = None,
) -> CargoJob:
    return CargoJob(
        id=id,
        origin=_loc(origin_city, origin, origin_country),
        destination=_loc(destination_city, destination, destination_country),
        weight_kg=weight_kg,
        volume_m3=volume_m3,
        cargo_category=cargo_category,
        price=price,
        price_type=price_type,
        loading_at=NOW + timedelta(hours=1),
        delivery_at=NOW + timedelta(hours=hours_to_deadline),
        deadline=NOW + timedelta(hours=hours_to_deadline),
        urgency=urgency,
        requirements=requirements or [],
        status=status,
        created_at=created_at or NOW - timedelta(hours=1),
    )


def build_vehicle(
    *,
    id: str = "veh-1",
    position: Optional[tuple] = NEAR_BUCHAREST,
    city: Optional[str] = "Bucharest",
    country: Optional[str] = "RO",
    capacity_kg: float = 3500,
    fuel_consumption: float = 8.0,
    status: str = "idle",
    vehicle_type: Optional[str] = "VAN",
) -> Vehicle:
    return Vehicle(
        id=id,
        name=f"Truck {id}",
        vehicle_type=vehicle_type,
        lat=position[0] if position else None,
        lon=position[1] if position else None,
        position_at=NOW - timedelta(minutes=2) if position else None,
        city=city,
        country=country,
        capacity_kg=capacity_kg,
        fuel_consumption_l_per_100km=fuel_consumption,
        status=status,
    )


@pytest.fixture
def make_job():
    return build_job


@pytest.fixture
def make_vehicle():
    return build_vehicle


@pytest.fixture
def settings():
    """Settings with defaults only; no .env, no GPS provider, short timeouts."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        gps_api_url="",
        upstream_timeout_seconds=0.2,
        preload_on_startup=False,
        debug=False,
    )


# ---------------------------------------------------------------------------
# Database fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory():
    """Async SQLite in-memory database shared by every session of one test.

    StaticPool keeps a single connection so all sessions see the same
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------

class FakeRepository:
    """FleetRepository stand-in.

    Set ``fail`` to an exception to make every read raise it, or ``delay``
    to make reads slower than the upstream timeout.  ``calls`` counts reads
    per method.
    """

    def __init__(
        self,
        jobs: Optional[list] = None,
        vehicles: Optional[list] = None,
        positions: Optional[list] = None,
        rates: Optional[RateConfig] = None,
    ) -> None:
        self.jobs = list(jobs or [])
        self.vehicles = list(vehicles or [])
        self.positions = list(positions or [])
        self.rates = rates or RateConfig()
        self.fail: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls: dict[str, int] = {}
        self.assignments: list[tuple] = []

    async def _tick(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail

    async def fetch_available_jobs(self, urgency=None) -> list[CargoJob]:
        await self._tick("jobs")
        return [
            j for j in self.jobs
            if j.status == "new" and (urgency is None or j.urgency == urgency)
        ]

    async def fetch_vehicles(self, statuses=None) -> list[Vehicle]:
        await self._tick("vehicles")
        wanted = statuses or MATCHABLE_VEHICLE_STATUSES
        return [v for v in self.vehicles if v.status in wanted]

    async def fetch_vehicle_positions(self, vehicle_ids=None) -> list[VehiclePosition]:
        await self._tick("positions")
        if vehicle_ids is None:
            return list(self.positions)
        return [p for p in self.positions if p.vehicle_id in set(vehicle_ids)]

    async def fetch_fleet_status(self) -> FleetStatusSummary:
        await self._tick("fleet_status")
        return FleetStatusSummary(total_vehicles=len(self.vehicles), generated_at=NOW)

    async def fetch_performance_metrics(self, timeframe: str = "week") -> PerformanceMetrics:
        await self._tick("metrics")
        return PerformanceMetrics(timeframe=timeframe, calculated_at=NOW)

    async def fetch_rate_config(self) -> RateConfig:
        await self._tick("rates")
        return self.rates

    async def record_assignment(self, job_id, vehicle_id, score=None):
        known_jobs = {j.id for j in self.jobs}
        known_vehicles = {v.id for v in self.vehicles}
        if job_id not in known_jobs:
            raise LookupError(f"Job {job_id} not found")
        if vehicle_id not in known_vehicles:
            raise LookupError(f"Vehicle {vehicle_id} not found")
        self.assignments.append((job_id, vehicle_id, score))

    def _job_index(self, job_id: str) -> int:
        for i, job in enumerate(self.jobs):
            if job.id == job_id:
                return i
        raise LookupError(f"Job {job_id} not found")

    def _vehicle_index(self, vehicle_id: str) -> int:
        for i, vehicle in enumerate(self.vehicles):
            if vehicle.id == vehicle_id:
                return i
        raise LookupError(f"Vehicle {vehicle_id} not found")

    async def update_job_status(self, job_id, status) -> None:
        i = self._job_index(job_id)
        self.jobs[i] = self.jobs[i].model_copy(update={"status": status})

    async def update_vehicle_status(self, vehicle_id, status) -> None:
        i = self._vehicle_index(vehicle_id)
        self.vehicles[i] = self.vehicles[i].model_copy(update={"status": status})

    async def update_vehicle_position(self, position: VehiclePosition) -> None:
        i = self._vehicle_index(position.vehicle_id)
        self.vehicles[i] = self.vehicles[i].model_copy(
            update={"lat": position.lat, "lon": position.lon, "position_at": position.recorded_at}
        )


@pytest.fixture
def fake_repository():
    return FakeRepository()
