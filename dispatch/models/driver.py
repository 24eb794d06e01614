"""Driver and working zone models."""

from datetime import datetime, time
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from dispatch.models.geo import Location
from dispatch.utils.clock import utcnow


class DriverStatus(str, Enum):
    """Driver account states."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class VehicleType(str, Enum):
    """Vehicle types a driver can operate."""

    CAR = "car"
    MOTORCYCLE = "motorcycle"
    BICYCLE = "bicycle"


class WorkingZone(BaseModel):
    """Circular region in which a driver accepts work."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    center: Location
    radius_km: float = Field(gt=0)
    is_active: bool = True
    priority_level: int = Field(default=0, ge=0)
    start_time: time | None = None
    end_time: time | None = None

    def is_operating(self, at: datetime) -> bool:
        """Check the optional operating-hours window (may wrap midnight)."""
        if not self.is_active:
            return False
        if self.start_time is None or self.end_time is None:
            return True

        now = at.time().replace(tzinfo=None)
        if self.start_time <= self.end_time:
            return self.start_time <= now <= self.end_time
        return now >= self.start_time or now <= self.end_time


class Driver(BaseModel):
    """Delivery driver profile."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    status: DriverStatus = DriverStatus.ACTIVE
    is_online: bool = False
    is_available: bool = False
    current_location: Location | None = None
    last_location_update: datetime | None = None
    vehicle_type: VehicleType = VehicleType.CAR
    rating: float = Field(default=5.0, ge=0, le=5)
    working_zones: list[WorkingZone] = Field(default_factory=list)

    # Offer marker and accepted work
    offered_key: UUID | None = None
    active_assignment_ids: list[UUID] = Field(default_factory=list)
    available_since: datetime | None = None

    # Cumulative stats
    total_deliveries: int = 0
    completed_deliveries: int = 0
    cancelled_deliveries: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_dispatchable(self) -> bool:
        """Check if driver can receive a new offer."""
        return (
            self.status == DriverStatus.ACTIVE
            and self.is_online
            and self.is_available
            and self.offered_key is None
        )

    def active_zones(self, at: datetime) -> list[WorkingZone]:
        return [zone for zone in self.working_zones if zone.is_operating(at)]
