"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class ScoringWeights(BaseModel):
    """Blend weights for the five match sub-scores. Must sum to 1."""

    proximity: float = 0.25
    profit: float = 0.35
    urgency: float = 0.20
    efficiency: float = 0.15
    risk: float = 0.05

    @model_validator(mode="after")
    def _check_sum(self) -> "ScoringWeights":
        total = self.proximity + self.profit + self.urgency + self.efficiency + self.risk
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.4f})")
        return self


class CacheTTLPolicy(BaseModel):
    """Per-feed time-to-live, in seconds. Every TTL must be positive."""

    vehicle_positions: float = Field(default=30, gt=0)
    available_jobs: float = Field(default=120, gt=0)
    available_vehicles: float = Field(default=45, gt=0)
    distance_calculations: float = Field(default=300, gt=0)
    matching_results: float = Field(default=60, gt=0)
    scoring_results: float = Field(default=90, gt=0)
    fleet_status: float = Field(default=45, gt=0)
    performance_metrics: float = Field(default=600, gt=0)
    system_config: float = Field(default=3600, gt=0)
    # Last good copies served while a feed is down
    last_good: float = Field(default=3600, gt=0)


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./fleet_dispatch.db"

    # GPS / telemetry provider (positions come from the database when unset)
    gps_api_url: str = ""
    gps_api_key: str = ""
    upstream_timeout_seconds: float = 5.0

    # Pricing defaults (overridden by the system_config table)
    fuel_price_per_liter: float = 1.50
    driver_cost_per_hour: float = 25.00
    wear_cost_per_km: float = 0.15
    average_speed_city_kmh: float = 30.0
    average_speed_highway_kmh: float = 80.0
    loading_hours: float = 2.0
    profit_margin_min_pct: float = 15.0

    # Matching policy
    scoring_weights: ScoringWeights = ScoringWeights()
    pre_score_skip_threshold: float = 30.0
    min_acceptable_score: float = 60.0
    default_max_distance_km: float = 100.0
    vehicle_search_radius_km: float = 150.0
    max_match_limit: int = 100
    scoring_workers: int = 8
    cache_scoring_results: bool = True

    # Cache
    cache_ttl: CacheTTLPolicy = CacheTTLPolicy()
    cache_sweep_interval_seconds: float = 5 * 60
    cache_stats_interval_seconds: float = 15 * 60
    cache_monitor_interval_seconds: float = 5 * 60
    cache_min_hit_rate_pct: float = 70.0
    cache_min_lookups_for_alert: int = 50
    cache_max_bytes: int = 50 * 1024 * 1024
    preload_on_startup: bool = True

    # General
    debug: bool = True

    model_config = {
        "env_file": str(_ENV_FILE),
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
