"""SQLAlchemy ORM models backing the job, vehicle and config feeds.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    JSON,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from fleet_dispatch.infra.database import Base


# ---------------------------------------------------------------------------
# Marketplace
# ---------------------------------------------------------------------------


class CargoJobRecord(Base):
    """A cargo offer synced from the marketplace."""

    __tablename__ = "cargo_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    origin_city = Column(String(120), nullable=False)
    origin_country = Column(String(2), nullable=False)
    origin_lat = Column(Float, nullable=True)
    origin_lon = Column(Float, nullable=True)
    destination_city = Column(String(120), nullable=False)
    destination_country = Column(String(2), nullable=False)
    destination_lat = Column(Float, nullable=True)
    destination_lon = Column(Float, nullable=True)
    weight_kg = Column(Float, nullable=False)
    volume_m3 = Column(Float, nullable=True)
    cargo_category = Column(String(50), nullable=False, default="General")
    price = Column(Float, nullable=False)
    price_type = Column(String(20), nullable=False, default="flat")  # flat, per_km, negotiable
    loading_at = Column(DateTime(timezone=True), nullable=False)
    delivery_at = Column(DateTime(timezone=True), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=True)
    urgency = Column(String(10), nullable=False, default="medium", index=True)
    requirements = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="new", index=True)
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    assignments = relationship("AssignmentRecord", back_populates="job")


# ---------------------------------------------------------------------------
# Fleet
# ---------------------------------------------------------------------------


class VehicleRecord(Base):
    """A fleet vehicle with its last known position."""

    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(120), nullable=False, default="")
    vehicle_type = Column(String(10), nullable=True)  # VAN, TRUCK, SEMI
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)
    position_at = Column(DateTime(timezone=True), nullable=True)
    speed_kmh = Column(Float, nullable=True)
    city = Column(String(120), nullable=True)
    country = Column(String(2), nullable=True)
    capacity_kg = Column(Float, nullable=False, default=3500)
    fuel_consumption_l_per_100km = Column(Float, nullable=False, default=8.0)
    status = Column(String(20), nullable=False, default="idle", index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    assignments = relationship("AssignmentRecord", back_populates="vehicle")


class AssignmentRecord(Base):
    """An accepted job-to-vehicle pairing."""

    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), ForeignKey("cargo_jobs.id"), nullable=False, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    match_score = Column(Float, nullable=True)
    accepted_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    job = relationship("CargoJobRecord", back_populates="assignments")
    vehicle = relationship("VehicleRecord", back_populates="assignments")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class SystemConfig(Base):
    """Key/value runtime configuration (pricing, speeds)."""

    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
