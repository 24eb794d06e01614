"""Grouping of nearby orders into one driver run."""

from uuid import UUID

from dispatch.errors import DispatchValidationError, DuplicateAssignmentError, OrderNotFoundError
from dispatch.models.assignment import Assignment, Batch, CandidateFilters
from dispatch.models.order import Order
from dispatch.models.route import StopType
from dispatch.services.base import BaseService
from dispatch.services.coordinator import build_waypoints
from dispatch.services.route_optimizer import RouteOptimizer
from dispatch.state.stores import AssignmentStore, OrderStore
from dispatch.utils.geo import haversine_km


class BatchPlanner(BaseService):
    """Builds a batch and its member assignments, ready to be offered.

    All pickups must lie within batch_pickup_radius_km of the first order's
    pickup, and every order needs both pickup and drop-off coordinates.
    """

    def __init__(
        self,
        orders: OrderStore,
        assignments: AssignmentStore,
        optimizer: RouteOptimizer,
        **kwargs,
    ):
        super().__init__("batch_planner", **kwargs)
        self.orders = orders
        self.assignments = assignments
        self.optimizer = optimizer

    async def plan(self, order_ids: list[UUID]) -> tuple[Batch, list[Assignment]]:
        unique_ids = list(dict.fromkeys(order_ids))
        if len(unique_ids) < 2:
            raise DispatchValidationError(
                "Batching requires at least two distinct orders",
                context={"orders": len(unique_ids)},
            )
        if len(unique_ids) > self.settings.batch_max_orders:
            raise DispatchValidationError(
                f"A batch holds at most {self.settings.batch_max_orders} orders",
                context={"orders": len(unique_ids)},
            )

        orders = await self.orders.get_many(unique_ids)
        found = {order.id for order in orders}
        missing = [order_id for order_id in unique_ids if order_id not in found]
        if missing:
            raise OrderNotFoundError(
                f"Order {missing[0]} not found", context={"order_id": missing[0]}
            )

        self._check_compatible(orders)

        for order in orders:
            existing = await self.assignments.get_active_for_order(order.id)
            if existing is not None:
                raise DuplicateAssignmentError(
                    f"Order {order.id} already has an active assignment",
                    context={"order_id": order.id, "assignment_id": existing.id},
                )

        vehicle_type = next(
            (order.required_vehicle_type for order in orders if order.required_vehicle_type),
            None,
        )
        route = self.optimizer.plan(
            build_waypoints(orders),
            origin=orders[0].pickup_location,
            vehicle_type=vehicle_type,
        )

        now = self.clock.now()
        batch = Batch(order_ids=[order.id for order in orders], route=route, created_at=now)
        filters = CandidateFilters(vehicle_type=vehicle_type, zone_id=orders[0].zone_id)

        members = [
            Assignment(
                order_id=order.id,
                batch_id=batch.id,
                candidate_filters=filters.model_copy(deep=True),
                route=route,
                route_position=route.stop_index(order.id, StopType.DELIVERY),
                created_at=now,
                updated_at=now,
            )
            for order in orders
        ]

        self.logger.logger.info(
            "batch_planned",
            batch_id=str(batch.id),
            orders=len(orders),
            total_distance_km=round(route.total_distance_km, 3),
        )
        return batch, members

    def _check_compatible(self, orders: list[Order]) -> None:
        for order in orders:
            if order.pickup_location is None or order.delivery_location is None:
                raise DispatchValidationError(
                    "Batched orders need pickup and delivery coordinates",
                    context={"order_id": order.id},
                )

        vehicle_types = {o.required_vehicle_type for o in orders if o.required_vehicle_type}
        if len(vehicle_types) > 1:
            raise DispatchValidationError(
                "Batched orders require different vehicle types",
                context={"vehicle_types": ",".join(sorted(v.value for v in vehicle_types))},
            )

        anchor = orders[0].pickup_location
        for order in orders[1:]:
            spread = haversine_km(anchor, order.pickup_location)
            if spread > self.settings.batch_pickup_radius_km:
                raise DispatchValidationError(
                    "Pickups are too far apart to batch",
                    context={
                        "order_id": order.id,
                        "distance_km": round(spread, 3),
                        "limit_km": self.settings.batch_pickup_radius_km,
                    },
                )
