"""Location history and live progress models."""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from dispatch.models.assignment import AssignmentStatus, DeliveryException
from dispatch.models.geo import Location
from dispatch.utils.clock import utcnow


class TrackingEvent(BaseModel):
    """Append-only location ping tied to an assignment."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    assignment_id: UUID
    driver_id: UUID | None = None
    location: Location
    recorded_at: datetime
    received_at: datetime = Field(default_factory=utcnow)


class TrackingProgress(BaseModel):
    """Result of ingesting a location ping."""

    assignment_id: UUID
    status: AssignmentStatus
    percent_complete: float
    distance_remaining_km: float | None = None
    minutes_remaining: float | None = None
    estimated_arrival_at: datetime | None = None
    deviation_km: float | None = None
    out_of_order: bool = False
    exceptions_raised: list[DeliveryException] = Field(default_factory=list)
