"""In-process store backend.

Records are copied on the way in and out so callers never share mutable
state with the store, matching the behaviour of a real database.
"""

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from dispatch.errors import (
    ConcurrentModificationError,
    DriverNotFoundError,
    DuplicateAssignmentError,
)
from dispatch.models.assignment import Assignment, AssignmentStatus, Batch
from dispatch.models.driver import Driver, DriverStatus, VehicleType
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.tracking import TrackingEvent
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore, TrackingStore


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._orders: dict[UUID, Order] = {}

    async def get(self, order_id: UUID) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_many(self, order_ids: Iterable[UUID]) -> list[Order]:
        return [
            self._orders[order_id].model_copy(deep=True)
            for order_id in order_ids
            if order_id in self._orders
        ]

    async def save(self, order: Order) -> None:
        self._orders[order.id] = order.model_copy(deep=True)


class InMemoryDriverStore(DriverStore):
    def __init__(self) -> None:
        self._drivers: dict[UUID, Driver] = {}

    async def get(self, driver_id: UUID) -> Driver | None:
        driver = self._drivers.get(driver_id)
        return driver.model_copy(deep=True) if driver else None

    async def save(self, driver: Driver) -> None:
        self._drivers[driver.id] = driver.model_copy(deep=True)

    async def list_all(self) -> list[Driver]:
        return [driver.model_copy(deep=True) for driver in self._drivers.values()]

    async def list_available(
        self,
        vehicle_type: VehicleType | None = None,
        zone_id: UUID | None = None,
    ) -> list[Driver]:
        drivers = []
        for driver in self._drivers.values():
            if not driver.is_dispatchable:
                continue
            if vehicle_type is not None and driver.vehicle_type != vehicle_type:
                continue
            if zone_id is not None and not any(z.id == zone_id for z in driver.working_zones):
                continue
            drivers.append(driver.model_copy(deep=True))
        return drivers

    async def update_status(self, driver_id: UUID, **fields: Any) -> Driver:
        driver = self._require(driver_id)
        self._drivers[driver_id] = Driver.model_validate({**driver.model_dump(), **fields})
        return self._drivers[driver_id].model_copy(deep=True)

    async def update_location(self, driver_id: UUID, location: Location, at: datetime) -> None:
        driver = self._require(driver_id)
        driver.current_location = location
        driver.last_location_update = at

    async def reserve_offer(self, driver_id: UUID, key: UUID) -> bool:
        driver = self._drivers.get(driver_id)
        if driver is None or not driver.is_dispatchable:
            return False
        driver.offered_key = key
        return True

    async def release_offer(self, driver_id: UUID, key: UUID) -> None:
        driver = self._drivers.get(driver_id)
        if driver is not None and driver.offered_key == key:
            driver.offered_key = None

    async def commit_offer(
        self, driver_id: UUID, key: UUID, assignment_ids: list[UUID]
    ) -> bool:
        driver = self._drivers.get(driver_id)
        if driver is None or driver.offered_key != key:
            return False
        driver.offered_key = None
        driver.is_available = False
        driver.available_since = None
        for assignment_id in assignment_ids:
            if assignment_id not in driver.active_assignment_ids:
                driver.active_assignment_ids.append(assignment_id)
        return True

    async def finish_assignment(
        self, driver_id: UUID, assignment_id: UUID, delivered: bool, at: datetime
    ) -> None:
        driver = self._drivers.get(driver_id)
        if driver is None or assignment_id not in driver.active_assignment_ids:
            return
        driver.active_assignment_ids.remove(assignment_id)
        driver.total_deliveries += 1
        if delivered:
            driver.completed_deliveries += 1
        else:
            driver.cancelled_deliveries += 1
        if not driver.active_assignment_ids and driver.status == DriverStatus.ACTIVE:
            driver.is_available = True
            driver.available_since = at

    def _require(self, driver_id: UUID) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise DriverNotFoundError(
                f"Driver {driver_id} not found", context={"driver_id": driver_id}
            )
        return driver


class InMemoryAssignmentStore(AssignmentStore):
    def __init__(self) -> None:
        self._assignments: dict[UUID, Assignment] = {}
        self._batches: dict[UUID, Batch] = {}

    async def create(self, assignment: Assignment) -> None:
        existing = await self.get_active_for_order(assignment.order_id)
        if existing is not None:
            raise DuplicateAssignmentError(
                f"Order {assignment.order_id} already has an active assignment",
                context={"order_id": assignment.order_id, "assignment_id": existing.id},
            )
        assignment.version += 1
        self._assignments[assignment.id] = assignment.model_copy(deep=True)

    async def get(self, assignment_id: UUID) -> Assignment | None:
        assignment = self._assignments.get(assignment_id)
        return assignment.model_copy(deep=True) if assignment else None

    async def save(self, assignment: Assignment) -> None:
        stored = self._assignments.get(assignment.id)
        if stored is None or stored.version != assignment.version:
            raise ConcurrentModificationError(
                f"Assignment {assignment.id} was modified concurrently",
                context={
                    "assignment_id": assignment.id,
                    "expected_version": assignment.version,
                    "stored_version": stored.version if stored else None,
                },
            )
        assignment.version += 1
        self._assignments[assignment.id] = assignment.model_copy(deep=True)

    async def get_active_for_order(self, order_id: UUID) -> Assignment | None:
        for assignment in self._assignments.values():
            if assignment.order_id == order_id and not assignment.is_terminal:
                return assignment.model_copy(deep=True)
        return None

    async def list_by_batch(self, batch_id: UUID) -> list[Assignment]:
        return [
            assignment.model_copy(deep=True)
            for assignment in self._assignments.values()
            if assignment.batch_id == batch_id
        ]

    async def list_by_status(self, statuses: Iterable[AssignmentStatus]) -> list[Assignment]:
        wanted = set(statuses)
        return [
            assignment.model_copy(deep=True)
            for assignment in self._assignments.values()
            if assignment.status in wanted
        ]

    async def list(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        driver_id: UUID | None = None,
        status: AssignmentStatus | None = None,
    ) -> list[Assignment]:
        results = []
        for assignment in self._assignments.values():
            if start is not None and assignment.created_at < start:
                continue
            if end is not None and assignment.created_at > end:
                continue
            if driver_id is not None and assignment.driver_id != driver_id:
                continue
            if status is not None and assignment.status != status:
                continue
            results.append(assignment.model_copy(deep=True))
        results.sort(key=lambda a: a.created_at)
        return results

    async def save_batch(self, batch: Batch) -> None:
        self._batches[batch.id] = batch.model_copy(deep=True)

    async def get_batch(self, batch_id: UUID) -> Batch | None:
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch else None


class InMemoryTrackingStore(TrackingStore):
    def __init__(self) -> None:
        self._events: list[TrackingEvent] = []

    async def append(self, event: TrackingEvent) -> None:
        self._events.append(event)

    async def list_for_assignment(self, assignment_id: UUID) -> list[TrackingEvent]:
        return [event for event in self._events if event.assignment_id == assignment_id]

    async def list_for_driver(
        self,
        driver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        events = [
            event
            for event in self._events
            if event.driver_id == driver_id
            and (start is None or event.recorded_at >= start)
            and (end is None or event.recorded_at <= end)
        ]
        return sorted(events, key=lambda e: e.recorded_at, reverse=True)
