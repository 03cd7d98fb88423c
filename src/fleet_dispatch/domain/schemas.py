"""Pydantic v2 schemas for domain entities and API request/response validation."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from fleet_dispatch.domain.enums import (
    InvalidationKind,
    JobStatus,
    PriceType,
    RiskTier,
    RouteMethod,
    Urgency,
    VehicleStatus,
    VehicleType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Jobs & vehicles
# ---------------------------------------------------------------------------


class Location(BaseModel):
    """A named place with optional coordinates."""

    model_config = ConfigDict(frozen=True)

    city: str
    country: str
    lat: float | None = None
    lon: float | None = None

    @property
    def has_coords(self) -> bool:
        return self.lat is not None and self.lon is not None


class CargoJob(BaseModel):
    """A transport request posted on the marketplace."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    origin: Location
    destination: Location
    weight_kg: float = Field(ge=0)
    volume_m3: float | None = None
    cargo_category: str = "General"
    price: float = Field(ge=0)
    price_type: PriceType = PriceType.FLAT
    loading_at: datetime
    delivery_at: datetime
    deadline: datetime | None = None
    urgency: Urgency = Urgency.MEDIUM
    requirements: list[str] = []
    status: JobStatus = JobStatus.NEW
    created_at: datetime

    @property
    def is_international(self) -> bool:
        return self.origin.country.strip().upper() != self.destination.country.strip().upper()


class Vehicle(BaseModel):
    """A fleet asset that can be assigned to jobs."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    vehicle_type: VehicleType | None = None
    lat: float | None = None
    lon: float | None = None
    position_at: datetime | None = None
    city: str | None = None
    country: str | None = None
    capacity_kg: float = Field(gt=0)
    fuel_consumption_l_per_100km: float = 8.0
    status: VehicleStatus = VehicleStatus.IDLE

    @property
    def has_coords(self) -> bool:
        return self.lat is not None and self.lon is not None


class VehiclePosition(BaseModel):
    """A single telemetry fix."""

    vehicle_id: str
    lat: float
    lon: float
    speed_kmh: float | None = None
    heading: float | None = None
    recorded_at: datetime = Field(default_factory=_utcnow)


class FleetStatusSummary(BaseModel):
    """Aggregate fleet state for dashboards."""

    total_vehicles: int = 0
    idle: int = 0
    assigned: int = 0
    en_route: int = 0
    maintenance: int = 0
    online: int = 0
    average_speed_kmh: float = 0.0
    generated_at: datetime = Field(default_factory=_utcnow)


class PerformanceMetrics(BaseModel):
    """Analytics-grade fleet performance over a timeframe."""

    timeframe: str
    jobs_taken: int = 0
    jobs_completed: int = 0
    revenue: float = 0.0
    average_match_score: float | None = None
    utilization_rate_pct: float = 0.0
    calculated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Pricing & routing
# ---------------------------------------------------------------------------


class RateConfig(BaseModel):
    """Snapshot of the pricing/speed constants used by cost calculation."""

    model_config = ConfigDict(frozen=True)

    fuel_price_per_liter: float = 1.50
    driver_cost_per_hour: float = 25.00
    wear_cost_per_km: float = 0.15
    average_speed_city_kmh: float = 30.0
    average_speed_highway_kmh: float = 80.0
    loading_hours: float = 2.0
    profit_margin_min_pct: float = 15.0


class RouteEstimate(BaseModel):
    """Distance and duration between two places."""

    model_config = ConfigDict(frozen=True)

    distance_km: float
    duration_min: float
    method: RouteMethod = RouteMethod.HAVERSINE


class CostBreakdown(BaseModel):
    """Operating cost of running one job with one vehicle."""

    fuel_cost: float
    driver_cost: float
    wear_cost: float
    total_cost: float
    cost_per_km: float


class JobAnalysis(BaseModel):
    """Vehicle-independent analysis of a job, used for pre-scoring."""

    job_id: str
    urgency_score: float
    distance_km: float
    duration_hours: float
    difficulty_score: float
    profit_estimate: float
    risk_score: float
    total_score: float


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class MatchCandidate(BaseModel):
    """One scored (job, vehicle) pairing."""

    job: CargoJob
    vehicle: Vehicle

    proximity_score: float
    profit_score: float
    urgency_score: float
    efficiency_score: float
    risk_score: float
    total_score: float

    pickup_distance_km: float
    route_distance_km: float
    duration_hours: float
    costs: CostBreakdown
    revenue: float
    profit: float
    profit_margin_pct: float

    capacity_compatibility: float
    time_compatibility: float
    risk_factors: list[str] = []
    warnings: list[str] = []
    advantages: list[str] = []
    recommendations: list[str] = []
    risk_tier: RiskTier = RiskTier.LOW
    recommendation: str = ""

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def vehicle_id(self) -> str:
        return self.vehicle.id


class MatchFilters(BaseModel):
    """Caller-supplied search constraints. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_distance_km: float | None = Field(default=None, gt=0)
    # Floor on the 0-100 profitability sub-score
    min_profit: float | None = Field(default=None, ge=0, le=100)
    urgency_only: bool = False
    vehicle_type: VehicleType | None = None
    exclude_high_risk: bool = False


class MatchResult(BaseModel):
    """Ranked matches plus feed health for one search."""

    matches: list[MatchCandidate] = []
    degraded: bool = False
    errors: list[str] = []
    considered_pairs: int = 0
    generated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheStats(BaseModel):
    """Observability snapshot of the cache store."""

    entry_count: int
    expired_count: int
    approx_bytes: int
    hits: int
    misses: int
    hit_rate: float
    by_prefix: dict[str, int] = {}


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class AcceptMatchRequest(BaseModel):
    """Dispatcher accepted a recommended pairing."""

    job_id: str
    vehicle_id: str
    score: float | None = None


class InvalidateRequest(BaseModel):
    """Explicit cache invalidation for a domain event."""

    kind: InvalidationKind


class JobStatusUpdate(BaseModel):
    status: JobStatus


class VehicleStatusUpdate(BaseModel):
    status: VehicleStatus


class PositionReport(BaseModel):
    """Telemetry fix pushed by a vehicle's tracker."""

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    speed_kmh: float | None = Field(default=None, ge=0)
    heading: float | None = None
    recorded_at: datetime = Field(default_factory=_utcnow)
