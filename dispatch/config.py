"""Configuration management for the dispatch engine."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage Configuration
    store_backend: Literal["redis", "memory"] = Field(
        default="redis", description="Backing store for drivers, orders and assignments"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_workers: int = Field(default=4, description="Number of API workers")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Offer Settings
    offer_timeout_seconds: int = Field(
        default=60, gt=0, description="Seconds a driver has to answer an offer"
    )
    max_offers_per_assignment: int = Field(
        default=10, ge=1, description="Offers made before an assignment fails"
    )
    require_decline_reason: bool = Field(
        default=True, description="Reject declines that carry no reason"
    )
    sweep_interval_seconds: float = Field(
        default=5.0, gt=0, description="Period of the deadline and anomaly sweep"
    )

    # Driver Search Settings
    max_driver_distance_km: float = Field(
        default=10.0, gt=0, description="Cutoff for drivers without working zones"
    )

    # ETA Settings
    default_minutes_per_km: float = Field(
        default=2.0, gt=0, description="Linear travel-time factor"
    )
    vehicle_minutes_per_km: dict[str, float] = Field(
        default_factory=lambda: {"car": 2.0, "motorcycle": 1.8, "bicycle": 3.0},
        description="Travel-time factor per vehicle type",
    )
    stop_service_minutes: float = Field(
        default=0.0, ge=0, description="Dwell time added at every route stop"
    )

    # Tracking Settings
    stall_window_seconds: int = Field(
        default=300, gt=0, description="No-movement window before a stall is flagged"
    )
    stall_min_movement_km: float = Field(
        default=0.05, ge=0, description="Smallest displacement counted as movement"
    )
    off_route_threshold_km: float = Field(
        default=1.0, gt=0, description="Deviation from the planned path that is off-route"
    )
    missed_window_grace_minutes: float = Field(
        default=10.0, ge=0, description="Grace period past the ETA"
    )
    approach_radius_km: float = Field(
        default=0.5, gt=0, description="Distance to drop-off that triggers an approach notice"
    )

    # Batch Settings
    batch_max_orders: int = Field(default=5, ge=2, description="Max orders in one run")
    batch_pickup_radius_km: float = Field(
        default=1.0, gt=0, description="Max pickup spread within a batch"
    )

    # Notification Settings
    notification_timeout_seconds: float = Field(
        default=2.0, gt=0, description="Upper bound on a single notifier call"
    )
    notify_in_background: bool = Field(
        default=True, description="Deliver notifications as background tasks"
    )

    # Reporting Settings
    report_default_days: int = Field(default=30, ge=1, description="Default report window")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    def minutes_per_km_for(self, vehicle_type: str | None) -> float:
        """Travel-time factor for a vehicle type, falling back to the default."""
        if vehicle_type is None:
            return self.default_minutes_per_km
        return self.vehicle_minutes_per_km.get(vehicle_type, self.default_minutes_per_km)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
