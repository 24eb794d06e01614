"""Stop sequencing for single and batched runs.

Nearest-neighbour is greedy: it is fast and deterministic but not globally
optimal, and pathological layouts can produce crossing paths. Ties go to the
stop that appears first in the input.
"""

from typing import Sequence
from uuid import UUID

from dispatch.errors import DispatchValidationError
from dispatch.models.driver import VehicleType
from dispatch.models.geo import Location
from dispatch.models.route import RouteConstraints, RoutePlan, RouteStop, StopType, Waypoint
from dispatch.services.base import BaseService
from dispatch.utils.geo import haversine_km


class RouteOptimizer(BaseService):
    """Orders waypoints into a short tour with running distance and time."""

    def __init__(self, **kwargs):
        super().__init__("route_optimizer", **kwargs)

    def optimize(
        self,
        waypoints: Sequence[Waypoint],
        constraints: RouteConstraints | None = None,
        origin: Location | None = None,
        vehicle_type: VehicleType | None = None,
    ) -> RoutePlan:
        """Sequence at least two waypoints.

        Without an explicit origin the run starts at the first pickup (or the
        first waypoint when none is typed), which is also the first stop.
        """
        if len(waypoints) < 2:
            raise DispatchValidationError(
                "Route optimization needs at least two waypoints",
                context={"waypoints": len(waypoints)},
            )
        return self.plan(waypoints, origin=origin, constraints=constraints, vehicle_type=vehicle_type)

    def plan(
        self,
        waypoints: Sequence[Waypoint],
        origin: Location | None = None,
        constraints: RouteConstraints | None = None,
        vehicle_type: VehicleType | None = None,
    ) -> RoutePlan:
        """Sequence one or more waypoints from origin."""
        if not waypoints:
            raise DispatchValidationError("A route needs at least one waypoint")

        constraints = constraints or RouteConstraints()
        minutes_per_km = constraints.minutes_per_km or self.settings.minutes_per_km_for(
            vehicle_type.value if vehicle_type else None
        )
        minutes_per_km *= constraints.traffic_multiplier

        if origin is None:
            # Fresh runs start at the first pickup; untyped input starts at the first point
            anchor = 0
            if not constraints.preserve_order:
                anchor = next(
                    (i for i, w in enumerate(waypoints) if w.type == StopType.PICKUP), 0
                )
            origin = waypoints[anchor].location
            fixed_first = [anchor]
        else:
            fixed_first = []

        if constraints.preserve_order:
            order = list(range(len(waypoints)))
        else:
            order = fixed_first + self._nearest_neighbour(origin, waypoints, skip=set(fixed_first))

        stops = []
        current = origin
        cumulative_km = 0.0
        for position, index in enumerate(order):
            waypoint = waypoints[index]
            leg = haversine_km(current, waypoint.location)
            cumulative_km += leg
            stops.append(
                RouteStop(
                    waypoint=waypoint,
                    input_index=index,
                    leg_distance_km=leg,
                    cumulative_distance_km=cumulative_km,
                    cumulative_minutes=cumulative_km * minutes_per_km
                    + (position + 1) * self.settings.stop_service_minutes,
                )
            )
            current = waypoint.location

        plan = RoutePlan(
            origin=origin,
            stops=stops,
            total_distance_km=cumulative_km,
            total_minutes=stops[-1].cumulative_minutes,
            minutes_per_km=minutes_per_km,
            created_at=self.clock.now(),
        )

        self.logger.logger.debug(
            "route_planned",
            stops=len(stops),
            total_distance_km=round(plan.total_distance_km, 3),
            total_minutes=round(plan.total_minutes, 1),
        )
        return plan

    def _nearest_neighbour(
        self,
        origin: Location,
        waypoints: Sequence[Waypoint],
        skip: set[int],
    ) -> list[int]:
        # Deliveries wait until the pickup of the same order has been visited
        pending_pickups: dict[UUID, int] = {}
        for index, waypoint in enumerate(waypoints):
            if index in skip:
                continue
            if waypoint.type == StopType.PICKUP and waypoint.order_id is not None:
                pending_pickups[waypoint.order_id] = pending_pickups.get(waypoint.order_id, 0) + 1

        remaining = [index for index in range(len(waypoints)) if index not in skip]
        order: list[int] = []
        current = origin

        while remaining:
            best_index = None
            best_distance = 0.0
            for index in remaining:
                waypoint = waypoints[index]
                if (
                    waypoint.type == StopType.DELIVERY
                    and pending_pickups.get(waypoint.order_id, 0) > 0
                ):
                    continue
                distance = haversine_km(current, waypoint.location)
                if best_index is None or distance < best_distance:
                    best_index = index
                    best_distance = distance

            chosen = waypoints[best_index]
            if chosen.type == StopType.PICKUP and chosen.order_id is not None:
                pending_pickups[chosen.order_id] -= 1
            order.append(best_index)
            remaining.remove(best_index)
            current = chosen.location

        return order
