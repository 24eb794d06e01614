"""Route planning models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from dispatch.models.geo import Location
from dispatch.utils.clock import utcnow


class StopType(str, Enum):
    """Role of a stop within a run."""

    PICKUP = "pickup"
    DELIVERY = "delivery"
    WAYPOINT = "waypoint"


class Waypoint(BaseModel):
    """A point the driver has to visit."""

    location: Location
    type: StopType = StopType.WAYPOINT
    order_id: UUID | None = None
    label: str | None = None


class RouteConstraints(BaseModel):
    """Optional knobs for route sequencing and timing."""

    preserve_order: bool = False
    traffic_multiplier: float = Field(default=1.0, gt=0)
    minutes_per_km: float | None = Field(default=None, gt=0)


class RouteStop(BaseModel):
    """A waypoint placed in visiting order with running totals."""

    waypoint: Waypoint
    input_index: int
    leg_distance_km: float
    cumulative_distance_km: float
    cumulative_minutes: float


class RoutePlan(BaseModel):
    """Ordered stops with cumulative distance and time."""

    origin: Location
    stops: list[RouteStop] = Field(default_factory=list)
    total_distance_km: float = 0.0
    total_minutes: float = 0.0
    minutes_per_km: float
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def ordered_waypoints(self) -> list[Waypoint]:
        return [stop.waypoint for stop in self.stops]

    def path(self) -> list[Location]:
        """Polyline the driver is expected to follow."""
        return [self.origin] + [stop.waypoint.location for stop in self.stops]

    def stop_index(self, order_id: UUID, stop_type: StopType) -> int | None:
        """Position of an order's pickup or delivery within the run."""
        for index, stop in enumerate(self.stops):
            if stop.waypoint.order_id == order_id and stop.waypoint.type == stop_type:
                return index
        return None
