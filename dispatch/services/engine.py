"""Dispatch engine facade.

Wires the stores, locks and components together and exposes the operation
set used by the HTTP layer, the scripts and the background sweeper. Every
operation is timed by the OperationTracer.
"""

import asyncio
from datetime import datetime
from typing import Any
from uuid import UUID

from dispatch.config import Settings, get_settings
from dispatch.errors import AssignmentNotFoundError, OrderNotFoundError
from dispatch.models.assignment import (
    Assignment,
    AssignmentStatus,
    CandidateFilters,
    DeliveryException,
    ExceptionSeverity,
    ExceptionType,
    OfferDecision,
)
from dispatch.models.driver import Driver, DriverStatus
from dispatch.models.geo import Location
from dispatch.models.outcomes import (
    AssignmentOutcome,
    BatchOutcome,
    DriverCandidate,
    ETAResult,
    RespondResult,
)
from dispatch.models.report import DeliveryReport, ReportFilters
from dispatch.models.route import RouteConstraints, RoutePlan, Waypoint
from dispatch.models.tracking import TrackingEvent, TrackingProgress
from dispatch.services.batch_planner import BatchPlanner
from dispatch.services.coordinator import AssignmentCoordinator
from dispatch.services.driver_directory import DriverDirectory
from dispatch.services.eta import ETACalculator
from dispatch.services.notifier import LoggingNotifier, Notifier, NotificationTasks
from dispatch.services.reporting import ReportingAggregator
from dispatch.services.route_optimizer import RouteOptimizer
from dispatch.services.tracker import DeliveryTracker
from dispatch.state.locks import KeyedLocks
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore, TrackingStore
from dispatch.utils.clock import Clock, SystemClock
from dispatch.utils.geo import make_location
from dispatch.utils.logging import get_logger
from dispatch.utils.tracing import OperationTracer

logger = get_logger(__name__)


class DispatchEngine:
    """Entry point for every dispatch operation."""

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        assignments: AssignmentStore,
        tracking: TrackingStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()

        self.orders = orders
        self.drivers = drivers
        self.assignments = assignments
        self.tracking = tracking

        self.locks = KeyedLocks()
        self.tracer = OperationTracer()
        self.notifications = NotificationTasks()

        common = {
            "settings": self.settings,
            "clock": self.clock,
            "notifier": self.notifier,
            "notifications": self.notifications,
        }
        self.directory = DriverDirectory(drivers, **common)
        self.optimizer = RouteOptimizer(**common)
        self.eta = ETACalculator(**common)
        self.coordinator = AssignmentCoordinator(
            orders, drivers, assignments, self.directory, self.optimizer, self.locks, **common
        )
        self.tracker = DeliveryTracker(
            orders, drivers, assignments, tracking, self.eta, self.locks, **common
        )
        self.batch_planner = BatchPlanner(orders, assignments, self.optimizer, **common)
        self.reporting = ReportingAggregator(assignments, tracking, **common)

    # Drivers

    async def find_drivers(
        self,
        lat: float,
        lng: float,
        filters: CandidateFilters | None = None,
    ) -> list[DriverCandidate]:
        with self.tracer.trace_operation("find_drivers"):
            return await self.directory.find_candidates(make_location(lat, lng), filters)

    async def get_driver(self, driver_id: UUID) -> Driver:
        return await self.directory.get_driver(driver_id)

    async def update_driver_status(
        self,
        driver_id: UUID,
        is_online: bool | None = None,
        is_available: bool | None = None,
        status: DriverStatus | None = None,
        location: Location | None = None,
    ) -> Driver:
        with self.tracer.trace_operation("update_driver_status", driver_id=driver_id):
            return await self.directory.update_driver_status(
                driver_id,
                is_online=is_online,
                is_available=is_available,
                status=status,
                location=location,
            )

    # Assignments

    async def assign_order(
        self,
        order_id: UUID,
        filters: CandidateFilters | None = None,
    ) -> AssignmentOutcome:
        with self.tracer.trace_operation("assign_order", order_id=order_id):
            return await self.coordinator.assign(order_id, filters)

    async def respond_to_offer(
        self,
        assignment_id: UUID,
        driver_id: UUID,
        decision: OfferDecision,
        reason: str | None = None,
    ) -> RespondResult:
        with self.tracer.trace_operation("respond_to_offer", assignment_id=assignment_id):
            return await self.coordinator.respond(assignment_id, driver_id, decision, reason)

    async def get_assignment(self, assignment_id: UUID) -> Assignment:
        assignment = await self.assignments.get(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(
                f"Assignment {assignment_id} not found",
                context={"assignment_id": assignment_id},
            )
        return assignment

    async def update_delivery_status(
        self,
        assignment_id: UUID,
        driver_id: UUID,
        status: AssignmentStatus,
    ) -> Assignment:
        with self.tracer.trace_operation("update_delivery_status", assignment_id=assignment_id):
            return await self.coordinator.update_status(assignment_id, driver_id, status)

    async def cancel_assignment(self, assignment_id: UUID, reason: str) -> Assignment:
        with self.tracer.trace_operation("cancel_assignment", assignment_id=assignment_id):
            return await self.coordinator.cancel(assignment_id, reason)

    async def fail_assignment(self, assignment_id: UUID, reason: str) -> Assignment:
        with self.tracer.trace_operation("fail_assignment", assignment_id=assignment_id):
            return await self.coordinator.fail(assignment_id, reason)

    async def batch_orders(self, order_ids: list[UUID]) -> BatchOutcome:
        with self.tracer.trace_operation("batch_orders", orders=len(order_ids)):
            batch, members = await self.batch_planner.plan(order_ids)
            return await self.coordinator.offer_batch(batch, members)

    # Routes and ETAs

    def optimize_route(
        self,
        waypoints: list[Waypoint],
        constraints: RouteConstraints | None = None,
        origin: Location | None = None,
    ) -> RoutePlan:
        with self.tracer.trace_operation("optimize_route", waypoints=len(waypoints)):
            return self.optimizer.optimize(waypoints, constraints, origin=origin)

    def estimate_route_eta(
        self,
        waypoints: list[Waypoint],
        constraints: RouteConstraints | None = None,
        origin: Location | None = None,
    ) -> tuple[RoutePlan, ETAResult]:
        """Ad-hoc ETA: sequence the stops, then time the whole run."""
        with self.tracer.trace_operation("estimate_route_eta", waypoints=len(waypoints)):
            if origin is not None:
                plan = self.optimizer.plan(waypoints, origin=origin, constraints=constraints)
            else:
                plan = self.optimizer.optimize(waypoints, constraints)
            return plan, self.eta.estimate_plan(plan)

    async def estimate_eta(self, assignment_id: UUID) -> ETAResult:
        with self.tracer.trace_operation("estimate_eta", assignment_id=assignment_id):
            assignment = await self.get_assignment(assignment_id)
            return await self._customer_eta(assignment)

    async def customer_eta(self, order_id: UUID) -> ETAResult:
        with self.tracer.trace_operation("customer_eta", order_id=order_id):
            if await self.orders.get(order_id) is None:
                raise OrderNotFoundError(
                    f"Order {order_id} not found", context={"order_id": order_id}
                )
            assignment = await self.assignments.get_active_for_order(order_id)
            if assignment is None:
                return ETAResult.unavailable("order has no active assignment")
            return await self._customer_eta(assignment)

    async def _customer_eta(self, assignment: Assignment) -> ETAResult:
        order = await self.orders.get(assignment.order_id)
        if order is None:
            return ETAResult.unavailable("order not found")
        driver = await self.drivers.get(assignment.driver_id) if assignment.driver_id else None
        return self.eta.customer_eta(assignment, order, driver)

    # Tracking

    async def ingest_location(
        self,
        assignment_id: UUID,
        lat: float,
        lng: float,
        timestamp: datetime | None = None,
    ) -> TrackingProgress:
        location = make_location(lat, lng)
        with self.tracer.trace_operation("ingest_location", assignment_id=assignment_id):
            return await self.tracker.ingest(assignment_id, location, timestamp)

    async def report_exception(
        self,
        assignment_id: UUID,
        exception_type: ExceptionType,
        details: dict[str, Any] | None = None,
        severity: ExceptionSeverity | None = None,
    ) -> DeliveryException:
        with self.tracer.trace_operation("report_exception", assignment_id=assignment_id):
            return await self.tracker.handle_exception(
                assignment_id, exception_type, details, severity
            )

    async def tracking_history(self, assignment_id: UUID) -> list[TrackingEvent]:
        return await self.tracker.history(assignment_id)

    async def driver_tracking_history(
        self,
        driver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        return await self.tracker.driver_history(driver_id, start, end)

    # Reporting and maintenance

    async def generate_report(self, filters: ReportFilters | None = None) -> DeliveryReport:
        with self.tracer.trace_operation("generate_report"):
            return await self.reporting.generate(filters)

    async def run_maintenance(self, now: datetime | None = None) -> dict[str, int]:
        """One pass of the offer-deadline sweep and the anomaly sweep."""
        with self.tracer.trace_operation("run_maintenance"):
            now = now or self.clock.now()
            expired = await self.coordinator.sweep_expired_offers(now)
            anomalies = await self.tracker.sweep(now)
            return {"expired_offers": len(expired), "anomalies": len(anomalies)}

    async def run_sweeper(self, stop: asyncio.Event) -> None:
        """Run maintenance every sweep_interval_seconds until stop is set."""
        interval = self.settings.sweep_interval_seconds
        logger.info("sweeper_started", interval_seconds=interval)

        while not stop.is_set():
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("sweeper_iteration_failed", error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("sweeper_stopped")

    async def status_counts(self) -> dict[str, int]:
        """Live assignment counts by status."""
        assignments = await self.assignments.list_by_status(list(AssignmentStatus))
        counts = {status.value: 0 for status in AssignmentStatus}
        for assignment in assignments:
            counts[assignment.status.value] += 1
        return counts

    async def metrics(self) -> dict[str, Any]:
        return {
            "operations": self.tracer.get_summary(),
            "assignments_by_status": await self.status_counts(),
            "held_locks": len(self.locks),
            "pending_notifications": len(self.notifications),
        }

    async def drain_notifications(self) -> None:
        """Wait for background notification deliveries to finish."""
        await self.notifications.drain()
