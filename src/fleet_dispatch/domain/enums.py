"""Domain enumerations for the fleet dispatch service.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle of a cargo job on the marketplace."""

    NEW = "new"
    TAKEN = "taken"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Urgency(str, Enum):
    """Urgency tier declared by the job poster."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PriceType(str, Enum):
    """How a job's price is expressed."""

    FLAT = "flat"
    PER_KM = "per_km"
    NEGOTIABLE = "negotiable"


class VehicleStatus(str, Enum):
    """Operating status of a fleet vehicle."""

    IDLE = "idle"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    MAINTENANCE = "maintenance"


class VehicleType(str, Enum):
    """Vehicle body class."""

    VAN = "VAN"
    TRUCK = "TRUCK"
    SEMI = "SEMI"


class RiskTier(str, Enum):
    """Coarse risk classification of a scored match."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RouteMethod(str, Enum):
    """How a route distance was obtained."""

    HAVERSINE = "haversine"
    CITY_PAIR = "city_pair"
    ORACLE = "oracle"


class InvalidationKind(str, Enum):
    """Domain events that invalidate cached feeds."""

    JOB = "job"
    VEHICLE = "vehicle"
    ASSIGNMENT = "assignment"


# Statuses eligible for matching
MATCHABLE_JOB_STATUSES = frozenset({JobStatus.NEW})
MATCHABLE_VEHICLE_STATUSES = frozenset({VehicleStatus.IDLE, VehicleStatus.ASSIGNED})
