"""SQLAlchemy-backed source for jobs, vehicles, positions, fleet stats and rates.

Every public method opens its own short-lived session so the repository is
safe to call concurrently from the cache facade.  ORM rows are converted to
pydantic snapshots before they leave this module.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_dispatch.app.config import Settings
from fleet_dispatch.domain.enums import (
    MATCHABLE_VEHICLE_STATUSES,
    JobStatus,
    Urgency,
    VehicleStatus,
)
from fleet_dispatch.domain.models import AssignmentRecord, CargoJobRecord, VehicleRecord
from fleet_dispatch.domain.schemas import (
    CargoJob,
    FleetStatusSummary,
    Location,
    PerformanceMetrics,
    RateConfig,
    Vehicle,
    VehiclePosition,
)
from fleet_dispatch.services.rate_config import load_rate_config

logger = logging.getLogger(__name__)

# A vehicle counts as online when its last fix is at most this old
ONLINE_WINDOW = timedelta(minutes=10)

TIMEFRAMES = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


class UnknownTimeframeError(ValueError):
    pass


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def job_from_record(row: CargoJobRecord) -> CargoJob:
    return CargoJob(
        id=row.id,
        origin=Location(
            city=row.origin_city,
            country=row.origin_country,
            lat=row.origin_lat,
            lon=row.origin_lon,
        ),
        destination=Location(
            city=row.destination_city,
            country=row.destination_country,
            lat=row.destination_lat,
            lon=row.destination_lon,
        ),
        weight_kg=row.weight_kg,
        volume_m3=row.volume_m3,
        cargo_category=row.cargo_category or "General",
        price=row.price,
        price_type=row.price_type,
        loading_at=_aware(row.loading_at),
        delivery_at=_aware(row.delivery_at),
        deadline=_aware(row.deadline),
        urgency=row.urgency,
        requirements=list(row.requirements or []),
        status=row.status,
        created_at=_aware(row.created_at),
    )


def vehicle_from_record(row: VehicleRecord) -> Vehicle:
    return Vehicle(
        id=row.id,
        name=row.name or "",
        vehicle_type=row.vehicle_type,
        lat=row.lat,
        lon=row.lon,
        position_at=_aware(row.position_at),
        city=row.city,
        country=row.country,
        capacity_kg=row.capacity_kg,
        fuel_consumption_l_per_100km=row.fuel_consumption_l_per_100km,
        status=row.status,
    )


class FleetRepository:
    """Read/write access to the dispatch tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_available_jobs(self, urgency: Optional[Urgency] = None) -> list[CargoJob]:
        stmt = select(CargoJobRecord).where(CargoJobRecord.status == JobStatus.NEW.value)
        if urgency is not None:
            stmt = stmt.where(CargoJobRecord.urgency == Urgency(urgency).value)
        stmt = stmt.order_by(CargoJobRecord.created_at, CargoJobRecord.id)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [job_from_record(row) for row in result.scalars().all()]

    async def fetch_vehicles(
        self,
        statuses: Optional[Iterable[VehicleStatus]] = None,
    ) -> list[Vehicle]:
        wanted = statuses if statuses is not None else MATCHABLE_VEHICLE_STATUSES
        stmt = (
            select(VehicleRecord)
            .where(VehicleRecord.status.in_([VehicleStatus(s).value for s in wanted]))
            .order_by(VehicleRecord.id)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [vehicle_from_record(row) for row in result.scalars().all()]

    async def fetch_vehicle(self, vehicle_id: str) -> Optional[Vehicle]:
        async with self._session_factory() as db:
            row = await db.get(VehicleRecord, vehicle_id)
            return vehicle_from_record(row) if row is not None else None

    async def fetch_vehicle_positions(
        self,
        vehicle_ids: Optional[Iterable[str]] = None,
    ) -> list[VehiclePosition]:
        stmt = select(VehicleRecord).where(
            VehicleRecord.lat.isnot(None),
            VehicleRecord.lon.isnot(None),
        )
        if vehicle_ids is not None:
            stmt = stmt.where(VehicleRecord.id.in_(list(vehicle_ids)))

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            positions = []
            for row in result.scalars().all():
                fix = {"vehicle_id": row.id, "lat": row.lat, "lon": row.lon, "speed_kmh": row.speed_kmh}
                if row.position_at is not None:
                    fix["recorded_at"] = _aware(row.position_at)
                positions.append(VehiclePosition(**fix))
            return positions

    async def fetch_fleet_status(self) -> FleetStatusSummary:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(select(VehicleRecord))
            vehicles = result.scalars().all()

        counts = {status: 0 for status in VehicleStatus}
        online = 0
        speeds = []
        for row in vehicles:
            try:
                counts[VehicleStatus(row.status)] += 1
            except ValueError:
                logger.warning("Vehicle %s has unknown status %r", row.id, row.status)
            position_at = _aware(row.position_at)
            if position_at is not None and now - position_at <= ONLINE_WINDOW:
                online += 1
                if row.speed_kmh is not None:
                    speeds.append(row.speed_kmh)

        return FleetStatusSummary(
            total_vehicles=len(vehicles),
            idle=counts[VehicleStatus.IDLE],
            assigned=counts[VehicleStatus.ASSIGNED],
            en_route=counts[VehicleStatus.EN_ROUTE],
            maintenance=counts[VehicleStatus.MAINTENANCE],
            online=online,
            average_speed_kmh=round(sum(speeds) / len(speeds), 1) if speeds else 0.0,
            generated_at=now,
        )

    async def fetch_performance_metrics(self, timeframe: str = "week") -> PerformanceMetrics:
        window = TIMEFRAMES.get(timeframe)
        if window is None:
            raise UnknownTimeframeError(
                f"Unknown timeframe {timeframe!r}; expected one of {sorted(TIMEFRAMES)}"
            )
        now = datetime.now(timezone.utc)
        since = now - window

        async with self._session_factory() as db:
            taken = await db.execute(
                select(
                    func.count(AssignmentRecord.id),
                    func.coalesce(func.sum(CargoJobRecord.price), 0.0),
                    func.avg(AssignmentRecord.match_score),
                )
                .join(CargoJobRecord, CargoJobRecord.id == AssignmentRecord.job_id)
                .where(AssignmentRecord.accepted_at >= since)
            )
            jobs_taken, revenue, avg_score = taken.one()

            completed = await db.execute(
                select(func.count(CargoJobRecord.id)).where(
                    CargoJobRecord.status == JobStatus.COMPLETED.value,
                    CargoJobRecord.updated_at >= since,
                )
            )
            jobs_completed = completed.scalar_one()

            fleet = await db.execute(
                select(VehicleRecord.status, func.count(VehicleRecord.id)).group_by(
                    VehicleRecord.status
                )
            )
            by_status = dict(fleet.all())

        total = sum(by_status.values())
        busy = by_status.get(VehicleStatus.ASSIGNED.value, 0) + by_status.get(
            VehicleStatus.EN_ROUTE.value, 0
        )
        utilization = busy / total * 100 if total else 0.0

        return PerformanceMetrics(
            timeframe=timeframe,
            jobs_taken=jobs_taken,
            jobs_completed=jobs_completed,
            revenue=round(float(revenue), 2),
            average_match_score=round(avg_score, 1) if avg_score is not None else None,
            utilization_rate_pct=round(utilization, 1),
            calculated_at=now,
        )

    async def fetch_rate_config(self) -> RateConfig:
        async with self._session_factory() as db:
            return await load_rate_config(db, self._settings)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_assignment(
        self,
        job_id: str,
        vehicle_id: str,
        score: Optional[float] = None,
    ) -> AssignmentRecord:
        """Persist an accepted pairing and flip job/vehicle status.

        Raises ``LookupError`` for unknown ids and ``ValueError`` when the job
        is no longer open or the vehicle cannot take work.
        """
        async with self._session_factory() as db:
            job = await db.get(CargoJobRecord, job_id)
            if job is None:
                raise LookupError(f"Job {job_id} not found")
            vehicle = await db.get(VehicleRecord, vehicle_id)
            if vehicle is None:
                raise LookupError(f"Vehicle {vehicle_id} not found")
            if job.status != JobStatus.NEW.value:
                raise ValueError(f"Job {job_id} is {job.status}, not open")
            if vehicle.status not in {s.value for s in MATCHABLE_VEHICLE_STATUSES}:
                raise ValueError(f"Vehicle {vehicle_id} is {vehicle.status}")
            if vehicle.capacity_kg < job.weight_kg:
                raise ValueError(
                    f"Job {job_id} weighs {job.weight_kg}kg, vehicle capacity is {vehicle.capacity_kg}kg"
                )

            assignment = AssignmentRecord(job_id=job_id, vehicle_id=vehicle_id, match_score=score)
            db.add(assignment)
            job.status = JobStatus.TAKEN.value
            vehicle.status = VehicleStatus.ASSIGNED.value
            await db.commit()
            await db.refresh(assignment)

        logger.info(
            "Assignment recorded: job=%s vehicle=%s score=%s", job_id, vehicle_id, score,
        )
        return assignment

    async def update_job_status(self, job_id: str, status: JobStatus) -> None:
        async with self._session_factory() as db:
            job = await db.get(CargoJobRecord, job_id)
            if job is None:
                raise LookupError(f"Job {job_id} not found")
            job.status = JobStatus(status).value
            # completion time feeds the jobs_completed metric
            job.updated_at = datetime.now(timezone.utc)
            await db.commit()

    async def update_vehicle_status(self, vehicle_id: str, status: VehicleStatus) -> None:
        async with self._session_factory() as db:
            vehicle = await db.get(VehicleRecord, vehicle_id)
            if vehicle is None:
                raise LookupError(f"Vehicle {vehicle_id} not found")
            vehicle.status = VehicleStatus(status).value
            await db.commit()

    async def update_vehicle_position(self, position: VehiclePosition) -> None:
        async with self._session_factory() as db:
            vehicle = await db.get(VehicleRecord, position.vehicle_id)
            if vehicle is None:
                raise LookupError(f"Vehicle {position.vehicle_id} not found")
            vehicle.lat = position.lat
            vehicle.lon = position.lon
            vehicle.speed_kmh = position.speed_kmh
            vehicle.position_at = position.recorded_at
            await db.commit()
