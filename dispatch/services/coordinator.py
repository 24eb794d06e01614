"""Assignment state machine driver: offers, responses, re-offers, terminal moves."""

from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Hashable
from uuid import UUID

from dispatch.errors import (
    AssignmentNotFoundError,
    ConflictError,
    DispatchError,
    DispatchValidationError,
    DuplicateAssignmentError,
    OrderNotFoundError,
)
from dispatch.models.assignment import (
    IN_PROGRESS_STATUSES,
    Assignment,
    AssignmentStatus,
    Batch,
    CandidateFilters,
    Offer,
    OfferDecision,
    OfferOutcome,
    Progress,
)
from dispatch.models.driver import Driver
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.outcomes import (
    AssignmentOutcome,
    AssignmentOutcomeStatus,
    BatchOutcome,
    DriverCandidate,
    RespondOutcome,
    RespondResult,
)
from dispatch.models.route import RoutePlan, StopType, Waypoint
from dispatch.services.base import BaseService
from dispatch.services.driver_directory import DriverDirectory
from dispatch.services.route_optimizer import RouteOptimizer
from dispatch.state.locks import KeyedLocks
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore
from dispatch.state.workflow import apply_transition

DRIVER_PROGRESS_STATUSES = frozenset(
    {
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.EN_ROUTE_TO_DELIVERY,
        AssignmentStatus.DELIVERED,
    }
)


def build_waypoints(orders: list[Order]) -> list[Waypoint]:
    """Pickup and drop-off stops for every order that has coordinates."""
    waypoints = []
    for order in orders:
        if order.pickup_location is not None:
            waypoints.append(
                Waypoint(
                    location=order.pickup_location,
                    type=StopType.PICKUP,
                    order_id=order.id,
                    label=order.pickup_address,
                )
            )
        if order.delivery_location is not None:
            waypoints.append(
                Waypoint(
                    location=order.delivery_location,
                    type=StopType.DELIVERY,
                    order_id=order.id,
                    label=order.delivery_address,
                )
            )
    return waypoints


class AssignmentCoordinator(BaseService):
    """Moves orders from "needs a driver" to a terminal state.

    Every mutation of an assignment happens under the assignment's lock key
    (shared by all members of a batch) and is persisted through the store's
    version check. Offers reserve the driver's "currently offered" marker so
    two assignments can never hold the same driver at once.
    """

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        assignments: AssignmentStore,
        directory: DriverDirectory,
        optimizer: RouteOptimizer,
        locks: KeyedLocks | None = None,
        **kwargs,
    ):
        super().__init__("assignment_coordinator", **kwargs)
        self.orders = orders
        self.drivers = drivers
        self.assignments = assignments
        self.directory = directory
        self.optimizer = optimizer
        self.locks = locks or KeyedLocks()

    # Offering

    async def assign(
        self,
        order_id: UUID,
        filters: CandidateFilters | None = None,
    ) -> AssignmentOutcome:
        """Offer an order to the best available driver.

        Returns NO_DRIVERS_AVAILABLE without creating anything when no driver
        qualifies. Raises DuplicateAssignmentError if the order already has an
        active assignment.
        """
        order = await self._require_order(order_id)
        if order.pickup_location is None:
            raise DispatchValidationError(
                "Order has no pickup coordinates", context={"order_id": order.id}
            )

        filters = self._filters_for(order, filters)

        async with self.locks.hold(("order", order.id)):
            existing = await self.assignments.get_active_for_order(order.id)
            if existing is not None:
                raise DuplicateAssignmentError(
                    f"Order {order.id} already has an active assignment",
                    context={"order_id": order.id, "assignment_id": existing.id},
                )

            now = self.clock.now()
            assignment = Assignment(
                order_id=order.id,
                candidate_filters=filters,
                created_at=now,
                updated_at=now,
            )

            candidate = await self._reserve_candidate(
                assignment.lock_key, order.pickup_location, filters
            )
            if candidate is None:
                self.logger.logger.info("no_drivers_available", order_id=str(order.id))
                return AssignmentOutcome(
                    status=AssignmentOutcomeStatus.NO_DRIVERS_AVAILABLE,
                    message="No drivers available for this order",
                )

            self._record_offer([assignment], candidate, now)
            try:
                await self.assignments.create(assignment)
            except DispatchError:
                await self.drivers.release_offer(candidate.driver.id, assignment.lock_key)
                raise

        await self._notify_offer([assignment], candidate)

        return AssignmentOutcome(
            status=AssignmentOutcomeStatus.ASSIGNED,
            assignment=assignment,
            driver_id=candidate.driver.id,
            distance_km=candidate.distance_km,
            message=f"Offered to driver {candidate.driver.name}",
        )

    async def offer_batch(self, batch: Batch, members: list[Assignment]) -> BatchOutcome:
        """Offer a planned batch to one driver and persist it.

        Nothing is stored when no driver qualifies.
        """
        if batch.route is None or not batch.route.stops:
            raise DispatchValidationError("Batch has no route", context={"batch_id": batch.id})

        filters = members[0].candidate_filters
        point = batch.route.stops[0].waypoint.location

        order_keys = sorted(("order", order_id) for order_id in batch.order_ids)
        async with self._hold_all(order_keys):
            for member in members:
                existing = await self.assignments.get_active_for_order(member.order_id)
                if existing is not None:
                    raise DuplicateAssignmentError(
                        f"Order {member.order_id} already has an active assignment",
                        context={"order_id": member.order_id, "assignment_id": existing.id},
                    )

            candidate = await self._reserve_candidate(batch.id, point, filters)
            if candidate is None:
                return BatchOutcome(
                    status=AssignmentOutcomeStatus.NO_DRIVERS_AVAILABLE,
                    message="No drivers available for this batch",
                )

            now = self.clock.now()
            self._record_offer(members, candidate, now)
            batch.assignment_ids = [member.id for member in members]

            created: list[Assignment] = []
            try:
                for member in members:
                    await self.assignments.create(member)
                    created.append(member)
            except DispatchError:
                for member in created:
                    apply_transition(member, AssignmentStatus.FAILED, now, "batch creation failed")
                    await self.assignments.save(member)
                await self.drivers.release_offer(candidate.driver.id, batch.id)
                raise

            await self.assignments.save_batch(batch)

        await self._notify_offer(members, candidate)

        return BatchOutcome(
            status=AssignmentOutcomeStatus.ASSIGNED,
            batch=batch,
            assignments=members,
            message=f"Batch of {len(members)} offered to driver {candidate.driver.name}",
        )

    # Responses

    async def respond(
        self,
        assignment_id: UUID,
        driver_id: UUID,
        decision: OfferDecision,
        reason: str | None = None,
    ) -> RespondResult:
        """Apply a driver's answer to the offer they hold.

        Answers for an offer that is no longer current come back as STALE and
        change nothing, however often they are repeated.
        """
        if (
            decision == OfferDecision.DECLINE
            and self.settings.require_decline_reason
            and not (reason and reason.strip())
        ):
            raise DispatchValidationError(
                "A reason is required when declining an offer",
                context={"assignment_id": assignment_id},
            )

        assignment = await self._require(assignment_id)

        async with self.locks.hold(assignment.lock_key):
            group, primary = await self._load_group(assignment_id)
            now = self.clock.now()

            stale_reason = self._stale_reason(primary, driver_id, now)
            if stale_reason is not None:
                self.logger.logger.info(
                    "stale_response",
                    assignment_id=str(assignment_id),
                    driver_id=str(driver_id),
                    reason=stale_reason,
                )
                return RespondResult(
                    outcome=RespondOutcome.STALE, assignment=primary, message=stale_reason
                )

            if decision == OfferDecision.ACCEPT:
                return await self._accept(group, primary, driver_id, now)

            return await self._decline(
                group, primary, driver_id, reason, now, AssignmentStatus.DECLINED
            )

    async def sweep_expired_offers(self, now: datetime | None = None) -> list[RespondResult]:
        """Treat every offer past its deadline as declined with reason "timeout"."""
        now = now or self.clock.now()
        results = []
        seen: set[UUID] = set()

        for assignment in await self.assignments.list_by_status([AssignmentStatus.OFFERED]):
            if assignment.lock_key in seen:
                continue
            if assignment.response_deadline is None or now <= assignment.response_deadline:
                continue
            seen.add(assignment.lock_key)

            try:
                async with self.locks.hold(assignment.lock_key):
                    group, primary = await self._load_group(assignment.id)
                    deadline = primary.response_deadline
                    if primary.status != AssignmentStatus.OFFERED or deadline is None or now <= deadline:
                        continue
                    results.append(
                        await self._decline(
                            group,
                            primary,
                            primary.driver_id,
                            "timeout",
                            now,
                            AssignmentStatus.TIMED_OUT,
                        )
                    )
            except DispatchError as e:
                self.logger.log_error(str(e), assignment_id=str(assignment.id), operation="sweep")

        if results:
            self.logger.logger.info("offers_expired", count=len(results))
        return results

    # Terminal and progress moves

    async def cancel(self, assignment_id: UUID, reason: str) -> Assignment:
        """Cancel from any non-terminal state and notify both parties."""
        return await self._terminate(
            assignment_id, AssignmentStatus.CANCELLED, reason, "assignment_cancelled"
        )

    async def fail(self, assignment_id: UUID, reason: str) -> Assignment:
        """Operator-triggered failure from any non-terminal state."""
        return await self._terminate(
            assignment_id, AssignmentStatus.FAILED, reason, "assignment_failed"
        )

    async def update_status(
        self,
        assignment_id: UUID,
        driver_id: UUID,
        status: AssignmentStatus,
    ) -> Assignment:
        """Driver-reported progress: pickup, drop-off and the legs between."""
        if status not in DRIVER_PROGRESS_STATUSES:
            raise DispatchValidationError(
                f"Drivers cannot set status {status.value}",
                context={"assignment_id": assignment_id, "status": status.value},
            )

        assignment = await self._require(assignment_id)

        async with self.locks.hold(assignment.lock_key):
            assignment = await self._require(assignment_id)
            if assignment.driver_id != driver_id:
                raise ConflictError(
                    f"Driver {driver_id} does not hold assignment {assignment_id}",
                    error_code="DRIVER_MISMATCH",
                    context={"assignment_id": assignment_id, "driver_id": driver_id},
                )

            now = self.clock.now()
            previous = assignment.status
            apply_transition(assignment, status, now)
            await self.assignments.save(assignment)

            if status == AssignmentStatus.DELIVERED:
                await self.drivers.finish_assignment(driver_id, assignment.id, True, now)

        self.logger.log_transition(
            str(assignment.id), previous.value, status.value, driver_id=str(driver_id)
        )

        order = await self.orders.get(assignment.order_id)
        if order is not None:
            await self.notify(
                "customer",
                order.customer_id,
                f"delivery_{status.value}",
                {
                    "order_id": str(order.id),
                    "assignment_id": str(assignment.id),
                    "status": status.value,
                    "estimated_delivery_at": _iso(assignment.estimated_delivery_at),
                },
            )

        return assignment

    # Internals

    async def _accept(
        self,
        group: list[Assignment],
        primary: Assignment,
        driver_id: UUID,
        now: datetime,
    ) -> RespondResult:
        key = primary.lock_key
        committed = await self.drivers.commit_offer(driver_id, key, [m.id for m in group])
        if not committed:
            return RespondResult(
                outcome=RespondOutcome.STALE,
                assignment=primary,
                message="Offer is no longer held by this driver",
            )

        driver = await self.drivers.get(driver_id)
        orders = await self.orders.get_many([member.order_id for member in group])
        route = self._plan_route(driver, orders)

        for member in group:
            previous = member.status
            offer = member.current_offer
            if offer is not None:
                offer.outcome = OfferOutcome.ACCEPTED
                offer.responded_at = now

            apply_transition(member, AssignmentStatus.ACCEPTED, now)
            self._attach_route(member, route, now)
            await self.assignments.save(member)
            self.logger.log_transition(
                str(member.id), previous.value, member.status.value, driver_id=str(driver_id)
            )

        if primary.batch_id is not None:
            batch = await self.assignments.get_batch(primary.batch_id)
            if batch is not None:
                batch.driver_id = driver_id
                batch.route = route
                await self.assignments.save_batch(batch)

        orders_by_id = {order.id: order for order in orders}
        for member in group:
            order = orders_by_id.get(member.order_id)
            if order is None:
                continue
            await self.notify(
                "customer",
                order.customer_id,
                "driver_assigned",
                {
                    "order_id": str(order.id),
                    "assignment_id": str(member.id),
                    "driver_id": str(driver_id),
                    "driver_name": driver.name if driver else None,
                    "estimated_delivery_at": _iso(member.estimated_delivery_at),
                },
            )

        return RespondResult(
            outcome=RespondOutcome.ACCEPTED, assignment=primary, message="Offer accepted"
        )

    async def _decline(
        self,
        group: list[Assignment],
        primary: Assignment,
        driver_id: UUID,
        reason: str | None,
        now: datetime,
        status: AssignmentStatus,
    ) -> RespondResult:
        outcome = (
            OfferOutcome.TIMED_OUT if status == AssignmentStatus.TIMED_OUT else OfferOutcome.DECLINED
        )
        for member in group:
            offer = member.current_offer
            if offer is not None:
                offer.outcome = outcome
                offer.responded_at = now
                offer.reason = reason
            apply_transition(member, status, now, reason)

        self.logger.log_transition(
            str(primary.id),
            AssignmentStatus.OFFERED.value,
            status.value,
            driver_id=str(driver_id),
            reason=reason,
        )
        await self.drivers.release_offer(driver_id, primary.lock_key)

        return await self._reoffer(group, primary, now)

    async def _reoffer(
        self,
        group: list[Assignment],
        primary: Assignment,
        now: datetime,
    ) -> RespondResult:
        candidate = None
        if len(primary.offers) < self.settings.max_offers_per_assignment:
            excluded = set(primary.candidate_filters.exclude_driver_ids)
            for member in group:
                excluded |= member.offered_driver_ids
            filters = primary.candidate_filters.model_copy(update={"exclude_driver_ids": excluded})

            point = await self._search_point(primary)
            if point is not None:
                candidate = await self._reserve_candidate(primary.lock_key, point, filters)

        if candidate is None:
            reason = "candidates exhausted"
            previous = primary.status
            for member in group:
                apply_transition(member, AssignmentStatus.FAILED, now, reason)
                member.driver_id = None
                await self.assignments.save(member)

            self.logger.log_transition(
                str(primary.id),
                previous.value,
                AssignmentStatus.FAILED.value,
                offers=len(primary.offers),
            )
            await self._notify_customers(group, "assignment_failed", {"reason": reason})

            return RespondResult(
                outcome=RespondOutcome.FAILED,
                assignment=primary,
                message="No further drivers available",
            )

        self._record_offer(group, candidate, now)
        for member in group:
            await self.assignments.save(member)

        await self._notify_offer(group, candidate)

        return RespondResult(
            outcome=RespondOutcome.REOFFERED,
            assignment=primary,
            message=f"Re-offered to driver {candidate.driver.name}",
        )

    async def _terminate(
        self,
        assignment_id: UUID,
        status: AssignmentStatus,
        reason: str,
        event: str,
    ) -> Assignment:
        assignment = await self._require(assignment_id)

        async with self.locks.hold(assignment.lock_key):
            assignment = await self._require(assignment_id)
            now = self.clock.now()
            previous = assignment.status
            driver_id = assignment.driver_id

            offer = assignment.current_offer
            if offer is not None:
                offer.outcome = OfferOutcome.WITHDRAWN
                offer.responded_at = now

            apply_transition(assignment, status, now, reason)
            await self.assignments.save(assignment)

            if driver_id is not None:
                if previous == AssignmentStatus.OFFERED:
                    await self._release_if_unused(assignment, driver_id)
                elif previous in IN_PROGRESS_STATUSES:
                    await self.drivers.finish_assignment(driver_id, assignment.id, False, now)

        self.logger.log_transition(str(assignment.id), previous.value, status.value, reason=reason)

        payload = {"assignment_id": str(assignment.id), "reason": reason}
        order = await self.orders.get(assignment.order_id)
        if order is not None:
            await self.notify("customer", order.customer_id, event, {"order_id": str(order.id), **payload})
        if driver_id is not None:
            await self.notify("driver", driver_id, event, payload)

        return assignment

    async def _release_if_unused(self, assignment: Assignment, driver_id: UUID) -> None:
        # Batch siblings may still be offered under the same marker
        if assignment.batch_id is not None:
            siblings = await self.assignments.list_by_batch(assignment.batch_id)
            if any(s.status == AssignmentStatus.OFFERED for s in siblings if s.id != assignment.id):
                return
        await self.drivers.release_offer(driver_id, assignment.lock_key)

    async def _reserve_candidate(
        self,
        key: UUID,
        point: Location,
        filters: CandidateFilters,
    ) -> DriverCandidate | None:
        for candidate in await self.directory.find_candidates(point, filters):
            if await self.drivers.reserve_offer(candidate.driver.id, key):
                return candidate
        return None

    def _record_offer(
        self,
        group: list[Assignment],
        candidate: DriverCandidate,
        now: datetime,
    ) -> None:
        deadline = now + timedelta(seconds=self.settings.offer_timeout_seconds)
        for member in group:
            member.offers.append(
                Offer(
                    driver_id=candidate.driver.id,
                    offered_at=now,
                    deadline=deadline,
                    distance_km=candidate.distance_km,
                )
            )
            member.driver_id = candidate.driver.id
            member.offered_at = now
            member.response_deadline = deadline
            apply_transition(member, AssignmentStatus.OFFERED, now)

        primary = group[0]
        self.logger.log_offer(
            str(primary.id),
            str(candidate.driver.id),
            attempt=len(primary.offers),
            distance_km=candidate.distance_km,
            batch_id=str(primary.batch_id) if primary.batch_id else None,
        )

    def _plan_route(self, driver: Driver | None, orders: list[Order]) -> RoutePlan | None:
        waypoints = build_waypoints(orders)
        if not waypoints:
            return None
        origin = driver.current_location if driver else None
        vehicle_type = driver.vehicle_type if driver else None
        return self.optimizer.plan(waypoints, origin=origin, vehicle_type=vehicle_type)

    def _attach_route(self, assignment: Assignment, route: RoutePlan | None, now: datetime) -> None:
        assignment.route = route
        assignment.progress = Progress()
        if route is None:
            assignment.route_position = None
            assignment.estimated_delivery_at = None
            return

        position = route.stop_index(assignment.order_id, StopType.DELIVERY)
        assignment.route_position = position
        if position is None:
            assignment.estimated_delivery_at = None
            return

        stop = route.stops[position]
        assignment.progress.distance_remaining_km = stop.cumulative_distance_km
        assignment.estimated_delivery_at = now + timedelta(minutes=stop.cumulative_minutes)

    async def _search_point(self, assignment: Assignment) -> Location | None:
        if assignment.route is not None:
            for stop in assignment.route.stops:
                if stop.waypoint.type == StopType.PICKUP:
                    return stop.waypoint.location
        order = await self.orders.get(assignment.order_id)
        return order.pickup_location if order else None

    def _stale_reason(self, assignment: Assignment, driver_id: UUID, now: datetime) -> str | None:
        if assignment.status != AssignmentStatus.OFFERED:
            return f"Assignment is {assignment.status.value}, not offered"
        if assignment.driver_id != driver_id:
            return "Offer belongs to a different driver"
        if assignment.response_deadline is not None and now > assignment.response_deadline:
            return "Offer deadline has passed"
        return None

    async def _load_group(self, assignment_id: UUID) -> tuple[list[Assignment], Assignment]:
        """Fresh copies of the assignment and its live batch siblings."""
        primary = await self._require(assignment_id)
        if primary.batch_id is None:
            return [primary], primary

        members = await self.assignments.list_by_batch(primary.batch_id)
        group = [m for m in members if m.id == primary.id or not m.is_terminal]
        primary = next(m for m in group if m.id == primary.id)
        return group, primary

    async def _notify_offer(self, group: list[Assignment], candidate: DriverCandidate) -> None:
        primary = group[0]
        await self.notify(
            "driver",
            candidate.driver.id,
            "order_offered",
            {
                "assignment_ids": [str(member.id) for member in group],
                "order_ids": [str(member.order_id) for member in group],
                "batch_id": str(primary.batch_id) if primary.batch_id else None,
                "distance_km": round(candidate.distance_km, 3),
                "response_deadline": _iso(primary.response_deadline),
            },
        )

    async def _notify_customers(self, group: list[Assignment], event: str, payload: dict) -> None:
        orders = await self.orders.get_many([member.order_id for member in group])
        for order in orders:
            await self.notify("customer", order.customer_id, event, {"order_id": str(order.id), **payload})

    async def _require(self, assignment_id: UUID) -> Assignment:
        assignment = await self.assignments.get(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(
                f"Assignment {assignment_id} not found",
                context={"assignment_id": assignment_id},
            )
        return assignment

    async def _require_order(self, order_id: UUID) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", context={"order_id": order_id})
        return order

    @staticmethod
    def _filters_for(order: Order, filters: CandidateFilters | None) -> CandidateFilters:
        filters = filters.model_copy(deep=True) if filters else CandidateFilters()
        if filters.vehicle_type is None:
            filters.vehicle_type = order.required_vehicle_type
        if filters.zone_id is None:
            filters.zone_id = order.zone_id
        return filters

    @asynccontextmanager
    async def _hold_all(self, keys: list[Hashable]) -> AsyncGenerator[None, None]:
        """Hold several keyed locks, acquired in the given order."""
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self.locks.hold(key))
            yield


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
