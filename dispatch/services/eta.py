"""Arrival-time estimates."""

from datetime import datetime, timedelta

from dispatch.errors import DispatchValidationError
from dispatch.models.assignment import Assignment, AssignmentStatus
from dispatch.models.driver import Driver, VehicleType
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.outcomes import ETAResult
from dispatch.models.route import RoutePlan, StopType
from dispatch.services.base import BaseService
from dispatch.utils.geo import haversine_km, path_length_km

_PICKED_UP = frozenset(
    {
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.EN_ROUTE_TO_DELIVERY,
        AssignmentStatus.DELIVERED,
    }
)


class ETACalculator(BaseService):
    """Linear travel-time model: minutes = km * factor (* traffic)."""

    def __init__(self, **kwargs):
        super().__init__("eta_calculator", **kwargs)

    def factor_for(self, vehicle_type: VehicleType | None) -> float:
        return self.settings.minutes_per_km_for(vehicle_type.value if vehicle_type else None)

    def estimate(
        self,
        distance_km: float,
        minutes_per_km: float | None = None,
        vehicle_type: VehicleType | None = None,
        traffic_multiplier: float = 1.0,
        stops: int = 0,
        start: datetime | None = None,
    ) -> ETAResult:
        """Minutes and arrival time for a known distance."""
        if distance_km < 0:
            raise DispatchValidationError(
                "Distance cannot be negative", context={"distance_km": distance_km}
            )
        if traffic_multiplier <= 0:
            raise DispatchValidationError(
                "Traffic multiplier must be positive",
                context={"traffic_multiplier": traffic_multiplier},
            )

        factor = minutes_per_km or self.factor_for(vehicle_type)
        minutes = distance_km * factor * traffic_multiplier + stops * self.settings.stop_service_minutes
        start = start or self.clock.now()

        return ETAResult(
            available=True,
            minutes=minutes,
            arrival_at=start + timedelta(minutes=minutes),
            distance_km=distance_km,
        )

    def estimate_plan(self, plan: RoutePlan, start: datetime | None = None) -> ETAResult:
        """Arrival at the last stop of a planned route."""
        start = start or self.clock.now()
        return ETAResult(
            available=True,
            minutes=plan.total_minutes,
            arrival_at=start + timedelta(minutes=plan.total_minutes),
            distance_km=plan.total_distance_km,
        )

    def remaining_path(
        self,
        assignment: Assignment,
        order: Order,
        position: Location,
    ) -> list[Location] | None:
        """Points still to visit from position up to the order's drop-off."""
        if order.delivery_location is None:
            return None

        picked_up = assignment.status in _PICKED_UP
        route = assignment.route

        if route is None:
            points = [position]
            if not picked_up:
                if order.pickup_location is None:
                    return None
                points.append(order.pickup_location)
            points.append(order.delivery_location)
            return points

        delivery_index = route.stop_index(order.id, StopType.DELIVERY)
        if delivery_index is None:
            return [position, order.delivery_location]

        # Stop i is the end of path segment i
        next_stop = min(assignment.progress.segment_index, delivery_index)
        if picked_up:
            pickup_index = route.stop_index(order.id, StopType.PICKUP)
            if pickup_index is not None:
                next_stop = max(next_stop, pickup_index + 1)

        return [position] + [
            stop.waypoint.location for stop in route.stops[next_stop : delivery_index + 1]
        ]

    def customer_eta(
        self,
        assignment: Assignment,
        order: Order,
        driver: Driver | None,
    ) -> ETAResult:
        """Remaining time until the driver reaches this order's drop-off."""
        if assignment.status == AssignmentStatus.DELIVERED:
            return ETAResult.unavailable("order already delivered")
        if assignment.is_terminal:
            return ETAResult.unavailable(f"assignment is {assignment.status.value}")
        if driver is None:
            return ETAResult.unavailable("no driver assigned")
        if order.delivery_location is None:
            return ETAResult.unavailable("delivery coordinates missing")

        position = assignment.progress.last_location or driver.current_location
        if position is None:
            return ETAResult.unavailable("driver location unknown")

        points = self.remaining_path(assignment, order, position)
        if points is None:
            return ETAResult.unavailable("pickup coordinates missing")

        factor = assignment.route.minutes_per_km if assignment.route else self.factor_for(
            driver.vehicle_type
        )
        return self.estimate(
            path_length_km(points),
            minutes_per_km=factor,
            stops=len(points) - 1,
        )

    def leg(self, origin: Location | None, destination: Location | None, **kwargs) -> ETAResult:
        """Estimate a single leg, tolerating missing endpoints."""
        if origin is None or destination is None:
            return ETAResult.unavailable("coordinates missing")
        return self.estimate(haversine_km(origin, destination), **kwargs)
