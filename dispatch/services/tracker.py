"""Live delivery tracking and anomaly detection."""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from dispatch.errors import AssignmentNotFoundError, DispatchError, TrackingRejectedError
from dispatch.models.assignment import (
    DELAY_EXCEPTION_TYPES,
    IN_PROGRESS_STATUSES,
    MOVING_STATUSES,
    Assignment,
    AssignmentStatus,
    DeliveryException,
    ExceptionSeverity,
    ExceptionSource,
    ExceptionType,
)
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.tracking import TrackingEvent, TrackingProgress
from dispatch.services.base import BaseService
from dispatch.services.eta import ETACalculator
from dispatch.state.locks import KeyedLocks
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore, TrackingStore
from dispatch.utils.geo import haversine_km, match_to_path, path_length_km

AUTOMATIC_SEVERITY = {
    ExceptionType.STALLED: ExceptionSeverity.MEDIUM,
    ExceptionType.OFF_ROUTE: ExceptionSeverity.MEDIUM,
    ExceptionType.MISSED_WINDOW: ExceptionSeverity.HIGH,
}


class DeliveryTracker(BaseService):
    """Ingests location pings for in-progress assignments.

    Anomalies (stalled, off_route, missed_window) are attached to the
    assignment as DeliveryException records. They are raised once per
    occurrence: a flag stays set while the condition holds and clears when
    it ends. The state machine is never moved from here.
    """

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        assignments: AssignmentStore,
        tracking: TrackingStore,
        eta: ETACalculator,
        locks: KeyedLocks | None = None,
        **kwargs,
    ):
        super().__init__("delivery_tracker", **kwargs)
        self.orders = orders
        self.drivers = drivers
        self.assignments = assignments
        self.tracking = tracking
        self.eta = eta
        self.locks = locks or KeyedLocks()

    async def ingest(
        self,
        assignment_id: UUID,
        location: Location,
        recorded_at: datetime | None = None,
    ) -> TrackingProgress:
        """Record a ping and recompute progress.

        Pings older than the latest one are stored but do not move progress.
        """
        assignment = await self._require(assignment_id)
        approaching = False

        async with self.locks.hold(assignment.lock_key):
            assignment = await self._require(assignment_id)
            if not assignment.is_in_progress:
                raise TrackingRejectedError(
                    f"Assignment {assignment_id} is {assignment.status.value}, not in progress",
                    context={"assignment_id": assignment_id, "status": assignment.status.value},
                )

            now = self.clock.now()
            recorded_at = recorded_at or now
            await self.tracking.append(
                TrackingEvent(
                    assignment_id=assignment.id,
                    driver_id=assignment.driver_id,
                    location=location,
                    recorded_at=recorded_at,
                    received_at=now,
                )
            )

            progress = assignment.progress
            if progress.last_update_at is not None and recorded_at < progress.last_update_at:
                self.logger.logger.info(
                    "tracking_out_of_order",
                    assignment_id=str(assignment.id),
                    recorded_at=recorded_at.isoformat(),
                    last_update_at=progress.last_update_at.isoformat(),
                )
                return self._progress_result(assignment, out_of_order=True)

            order = await self.orders.get(assignment.order_id)
            raised: list[DeliveryException] = []

            progress.ping_count += 1
            progress.last_location = location
            progress.last_update_at = recorded_at

            moved = (
                progress.last_moved_location is None
                or haversine_km(progress.last_moved_location, location)
                >= self.settings.stall_min_movement_km
            )
            if moved:
                progress.last_moved_location = location
                progress.last_moved_at = recorded_at
                progress.stalled = False

            deviation = self._update_route_progress(assignment, location, recorded_at, raised)
            raised.extend(self._detect_time_anomalies(assignment, recorded_at))

            minutes_remaining = None
            arrival_at = None
            if order is not None:
                points = self.eta.remaining_path(assignment, order, location)
                if points is not None:
                    remaining_km = path_length_km(points)
                    factor = (
                        assignment.route.minutes_per_km
                        if assignment.route
                        else self.settings.default_minutes_per_km
                    )
                    minutes_remaining = remaining_km * factor
                    arrival_at = recorded_at + timedelta(minutes=minutes_remaining)
                    if assignment.route is None:
                        progress.distance_remaining_km = remaining_km

                approaching = self._check_approach(assignment, order, location)

            await self.assignments.save(assignment)
            if assignment.driver_id is not None:
                await self.drivers.update_location(assignment.driver_id, location, recorded_at)

        await self._announce(assignment, order, raised)
        if order is not None:
            await self.notify(
                "customer",
                order.customer_id,
                "driver_location_updated",
                {
                    "order_id": str(order.id),
                    "assignment_id": str(assignment.id),
                    "driver_id": str(assignment.driver_id),
                    "lat": location.lat,
                    "lng": location.lng,
                    "percent_complete": round(assignment.progress.percent_complete, 1),
                    "estimated_arrival_at": arrival_at.isoformat() if arrival_at else None,
                },
            )
        if approaching:
            await self.notify(
                "customer",
                order.customer_id,
                "driver_approaching",
                {
                    "order_id": str(order.id),
                    "assignment_id": str(assignment.id),
                    "estimated_arrival_at": arrival_at.isoformat() if arrival_at else None,
                },
            )

        return self._progress_result(
            assignment,
            deviation_km=deviation,
            minutes_remaining=minutes_remaining,
            arrival_at=arrival_at,
            raised=raised,
        )

    async def handle_exception(
        self,
        assignment_id: UUID,
        exception_type: ExceptionType,
        details: dict[str, Any] | None = None,
        severity: ExceptionSeverity | None = None,
        source: ExceptionSource = ExceptionSource.OPERATOR,
    ) -> DeliveryException:
        """Attach an explicit exception record, whatever the assignment's state."""
        assignment = await self._require(assignment_id)

        async with self.locks.hold(assignment.lock_key):
            assignment = await self._require(assignment_id)
            exception = self._record(
                assignment,
                exception_type,
                self.clock.now(),
                details or {},
                severity=severity or AUTOMATIC_SEVERITY.get(exception_type, ExceptionSeverity.MEDIUM),
                source=source,
            )
            await self.assignments.save(assignment)

        order = await self.orders.get(assignment.order_id)
        await self._announce(assignment, order, [exception])
        return exception

    async def sweep(self, now: datetime | None = None) -> list[DeliveryException]:
        """Flag stalled and missed-window deliveries that stopped pinging."""
        now = now or self.clock.now()
        raised_all: list[DeliveryException] = []

        for assignment in await self.assignments.list_by_status(IN_PROGRESS_STATUSES):
            try:
                async with self.locks.hold(assignment.lock_key):
                    assignment = await self._require(assignment.id)
                    if not assignment.is_in_progress:
                        continue
                    raised = self._detect_time_anomalies(assignment, now)
                    if not raised:
                        continue
                    await self.assignments.save(assignment)

                order = await self.orders.get(assignment.order_id)
                await self._announce(assignment, order, raised)
                raised_all.extend(raised)

            except DispatchError as e:
                self.logger.log_error(str(e), assignment_id=str(assignment.id), operation="sweep")

        return raised_all

    async def history(self, assignment_id: UUID) -> list[TrackingEvent]:
        await self._require(assignment_id)
        return await self.tracking.list_for_assignment(assignment_id)

    async def driver_history(
        self,
        driver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        return await self.tracking.list_for_driver(driver_id, start, end)

    def _update_route_progress(
        self,
        assignment: Assignment,
        location: Location,
        at: datetime,
        raised: list[DeliveryException],
    ) -> float | None:
        route = assignment.route
        if route is None or not route.stops:
            return None

        progress = assignment.progress
        match = match_to_path(location, route.path(), progress.segment_index)

        if match.offset_km > self.settings.off_route_threshold_km:
            if not progress.off_route:
                progress.off_route = True
                raised.append(
                    self._record(
                        assignment,
                        ExceptionType.OFF_ROUTE,
                        at,
                        {
                            "deviation_km": round(match.offset_km, 3),
                            "threshold_km": self.settings.off_route_threshold_km,
                            "lat": location.lat,
                            "lng": location.lng,
                        },
                    )
                )
            return match.offset_km

        progress.off_route = False

        # Progress of a batch member is measured up to its own drop-off
        if assignment.route_position is not None:
            target_km = route.stops[assignment.route_position].cumulative_distance_km
        else:
            target_km = route.total_distance_km

        if target_km <= 0:
            percent = 100.0
        else:
            percent = max(0.0, min(100.0, match.along_km / target_km * 100))

        progress.percent_complete = max(progress.percent_complete, percent)
        progress.segment_index = max(progress.segment_index, match.segment_index)
        progress.distance_remaining_km = max(0.0, target_km - match.along_km)
        return match.offset_km

    def _detect_time_anomalies(self, assignment: Assignment, now: datetime) -> list[DeliveryException]:
        raised = []
        progress = assignment.progress

        if assignment.status in MOVING_STATUSES and not progress.stalled:
            # Only time spent in the current moving status counts towards a stall
            entered = next(
                (
                    change.at
                    for change in reversed(assignment.status_history)
                    if change.to_status == assignment.status
                ),
                None,
            )
            candidates = [t for t in (progress.last_moved_at, entered) if t is not None]
            reference = max(candidates) if candidates else assignment.accepted_at or assignment.updated_at
            idle = (now - reference).total_seconds()
            if idle > self.settings.stall_window_seconds:
                progress.stalled = True
                raised.append(
                    self._record(
                        assignment,
                        ExceptionType.STALLED,
                        now,
                        {"idle_seconds": round(idle), "window_seconds": self.settings.stall_window_seconds},
                    )
                )

        deadline = assignment.estimated_delivery_at
        if deadline is not None and not progress.missed_window:
            grace = timedelta(minutes=self.settings.missed_window_grace_minutes)
            if now > deadline + grace:
                progress.missed_window = True
                raised.append(
                    self._record(
                        assignment,
                        ExceptionType.MISSED_WINDOW,
                        now,
                        {
                            "estimated_delivery_at": deadline.isoformat(),
                            "minutes_late": round((now - deadline).total_seconds() / 60, 1),
                        },
                    )
                )

        return raised

    def _check_approach(self, assignment: Assignment, order: Order, location: Location) -> bool:
        if (
            assignment.status != AssignmentStatus.EN_ROUTE_TO_DELIVERY
            or assignment.progress.approach_notified
            or order.delivery_location is None
        ):
            return False
        if haversine_km(location, order.delivery_location) > self.settings.approach_radius_km:
            return False
        assignment.progress.approach_notified = True
        return True

    def _record(
        self,
        assignment: Assignment,
        exception_type: ExceptionType,
        at: datetime,
        details: dict[str, Any],
        severity: ExceptionSeverity | None = None,
        source: ExceptionSource = ExceptionSource.SYSTEM,
    ) -> DeliveryException:
        exception = DeliveryException(
            type=exception_type,
            source=source,
            severity=severity or AUTOMATIC_SEVERITY.get(exception_type, ExceptionSeverity.MEDIUM),
            detected_at=at,
            details=details,
        )
        assignment.exceptions.append(exception)
        self.logger.log_anomaly(
            str(assignment.id),
            exception_type.value,
            severity=exception.severity.value,
            source=source.value,
            status=assignment.status.value,
        )
        return exception

    async def _announce(
        self,
        assignment: Assignment,
        order: Order | None,
        exceptions: list[DeliveryException],
    ) -> None:
        if order is None:
            return
        for exception in exceptions:
            if exception.type not in DELAY_EXCEPTION_TYPES:
                continue
            await self.notify(
                "customer",
                order.customer_id,
                "delivery_delayed",
                {
                    "order_id": str(order.id),
                    "assignment_id": str(assignment.id),
                    "reason": exception.type.value,
                },
            )

    def _progress_result(
        self,
        assignment: Assignment,
        out_of_order: bool = False,
        deviation_km: float | None = None,
        minutes_remaining: float | None = None,
        arrival_at: datetime | None = None,
        raised: list[DeliveryException] | None = None,
    ) -> TrackingProgress:
        return TrackingProgress(
            assignment_id=assignment.id,
            status=assignment.status,
            percent_complete=assignment.progress.percent_complete,
            distance_remaining_km=assignment.progress.distance_remaining_km,
            minutes_remaining=minutes_remaining,
            estimated_arrival_at=arrival_at,
            deviation_km=deviation_km,
            out_of_order=out_of_order,
            exceptions_raised=raised or [],
        )

    async def _require(self, assignment_id: UUID) -> Assignment:
        assignment = await self.assignments.get(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(
                f"Assignment {assignment_id} not found",
                context={"assignment_id": assignment_id},
            )
        return assignment
