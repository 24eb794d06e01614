"""Redis store backend.

Key layout:
    order:{id}                   order JSON
    driver:{id}                  driver JSON, index set "drivers"
    driver_offer:{driver_id}     offer marker (SET NX), value = offer key
    assignment:{id}              assignment JSON with version
    order_active:{order_id}      id of the order's non-terminal assignment
    assignments:created          sorted set scored by created_at
    assignments:status:{status}  set of ids per status
    batch:{id} / batch_members:{id}
    tracking:{assignment_id}     list of event JSON
    tracking_driver:{driver_id}  sorted set of event JSON scored by recorded_at
"""

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from redis.asyncio.client import Pipeline

from dispatch.errors import (
    ConcurrentModificationError,
    DriverNotFoundError,
    DuplicateAssignmentError,
)
from dispatch.models.assignment import TERMINAL_STATUSES, Assignment, AssignmentStatus, Batch
from dispatch.models.driver import Driver, DriverStatus, VehicleType
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.tracking import TrackingEvent
from dispatch.state.manager import StateManager
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore, TrackingStore


class RedisOrderStore(OrderStore):
    def __init__(self, state: StateManager):
        self.state = state

    async def get(self, order_id: UUID) -> Order | None:
        data = await self.state.get(f"order:{order_id}")
        return Order(**data) if data else None

    async def get_many(self, order_ids: Iterable[UUID]) -> list[Order]:
        values = await self.state.mget([f"order:{order_id}" for order_id in order_ids])
        return [Order(**data) for data in values if data]

    async def save(self, order: Order) -> None:
        await self.state.set(f"order:{order.id}", order.model_dump(mode="json"))


class RedisDriverStore(DriverStore):
    def __init__(self, state: StateManager):
        self.state = state

    def _key(self, driver_id: UUID) -> str:
        return f"driver:{driver_id}"

    def _offer_key(self, driver_id: UUID) -> str:
        return f"driver_offer:{driver_id}"

    async def _hydrate(self, data: dict[str, Any] | None) -> Driver | None:
        if not data:
            return None
        driver = Driver(**data)
        marker = await self.state.get(self._offer_key(driver.id))
        driver.offered_key = UUID(marker) if marker else None
        return driver

    async def get(self, driver_id: UUID) -> Driver | None:
        return await self._hydrate(await self.state.get(self._key(driver_id)))

    async def save(self, driver: Driver) -> None:
        data = driver.model_dump(mode="json", exclude={"offered_key"})
        await self.state.set(self._key(driver.id), data)
        await self.state.sadd("drivers", str(driver.id))

    async def list_all(self) -> list[Driver]:
        ids = sorted(await self.state.smembers("drivers"))
        values = await self.state.mget([f"driver:{driver_id}" for driver_id in ids])
        drivers = []
        for data in values:
            driver = await self._hydrate(data)
            if driver is not None:
                drivers.append(driver)
        return drivers

    async def list_available(
        self,
        vehicle_type: VehicleType | None = None,
        zone_id: UUID | None = None,
    ) -> list[Driver]:
        drivers = []
        for driver in await self.list_all():
            if not driver.is_dispatchable:
                continue
            if vehicle_type is not None and driver.vehicle_type != vehicle_type:
                continue
            if zone_id is not None and not any(z.id == zone_id for z in driver.working_zones):
                continue
            drivers.append(driver)
        return drivers

    async def _mutate(self, driver_id: UUID, apply, **options: Any) -> dict[str, Any] | None:
        def mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise DriverNotFoundError(
                    f"Driver {driver_id} not found", context={"driver_id": driver_id}
                )
            driver = Driver(**current)
            apply(driver)
            return driver.model_dump(mode="json", exclude={"offered_key"})

        return await self.state.update_json(self._key(driver_id), mutate, **options)

    async def update_status(self, driver_id: UUID, **fields: Any) -> Driver:
        def mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise DriverNotFoundError(
                    f"Driver {driver_id} not found", context={"driver_id": driver_id}
                )
            driver = Driver.model_validate({**current, **fields})
            return driver.model_dump(mode="json", exclude={"offered_key"})

        data = await self.state.update_json(self._key(driver_id), mutate)
        return await self._hydrate(data)

    async def update_location(self, driver_id: UUID, location: Location, at: datetime) -> None:
        def apply(driver: Driver) -> None:
            driver.current_location = location
            driver.last_location_update = at

        await self._mutate(driver_id, apply)

    async def reserve_offer(self, driver_id: UUID, key: UUID) -> bool:
        driver = await self.get(driver_id)
        if driver is None or not driver.is_dispatchable:
            return False
        # The marker is only written while the stored driver is still free
        return await self.state.set_if_absent_while(
            self._offer_key(driver_id),
            str(key),
            self._key(driver_id),
            ["is_online", "is_available"],
        )

    async def release_offer(self, driver_id: UUID, key: UUID) -> None:
        await self.state.compare_and_delete(self._offer_key(driver_id), str(key))

    async def commit_offer(
        self, driver_id: UUID, key: UUID, assignment_ids: list[UUID]
    ) -> bool:
        offer_key = self._offer_key(driver_id)

        def apply(driver: Driver) -> None:
            driver.is_available = False
            driver.available_since = None
            for assignment_id in assignment_ids:
                if assignment_id not in driver.active_assignment_ids:
                    driver.active_assignment_ids.append(assignment_id)

        # Driver write and marker release land in one MULTI, guarded by the marker
        data = await self._mutate(
            driver_id,
            apply,
            on_commit=lambda pipe, old, new: pipe.delete(offer_key),
            expect={offer_key: str(key)},
        )
        return data is not None

    async def finish_assignment(
        self, driver_id: UUID, assignment_id: UUID, delivered: bool, at: datetime
    ) -> None:
        def apply(driver: Driver) -> None:
            if assignment_id not in driver.active_assignment_ids:
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

        await self._mutate(driver_id, apply)


class RedisAssignmentStore(AssignmentStore):
    def __init__(self, state: StateManager):
        self.state = state

    def _key(self, assignment_id: UUID) -> str:
        return f"assignment:{assignment_id}"

    async def create(self, assignment: Assignment) -> None:
        claimed = await self.state.set_if_absent(
            f"order_active:{assignment.order_id}", str(assignment.id)
        )
        if not claimed:
            existing = await self.state.get(f"order_active:{assignment.order_id}")
            raise DuplicateAssignmentError(
                f"Order {assignment.order_id} already has an active assignment",
                context={"order_id": assignment.order_id, "assignment_id": existing},
            )

        assignment.version += 1
        await self.state.set(self._key(assignment.id), assignment.model_dump(mode="json"))
        await self.state.zadd(
            "assignments:created", {str(assignment.id): assignment.created_at.timestamp()}
        )
        await self.state.sadd(f"assignments:status:{assignment.status.value}", str(assignment.id))
        if assignment.batch_id is not None:
            await self.state.sadd(f"batch_members:{assignment.batch_id}", str(assignment.id))

    async def get(self, assignment_id: UUID) -> Assignment | None:
        data = await self.state.get(self._key(assignment_id))
        return Assignment(**data) if data else None

    async def save(self, assignment: Assignment) -> None:
        expected_version = assignment.version

        def mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None or current.get("version") != expected_version:
                raise ConcurrentModificationError(
                    f"Assignment {assignment.id} was modified concurrently",
                    context={
                        "assignment_id": assignment.id,
                        "expected_version": expected_version,
                        "stored_version": current.get("version") if current else None,
                    },
                )
            data = assignment.model_dump(mode="json")
            data["version"] = expected_version + 1
            return data

        def on_commit(pipe: Pipeline, old: dict[str, Any], new: dict[str, Any]) -> None:
            if old["status"] != new["status"]:
                pipe.srem(f"assignments:status:{old['status']}", str(assignment.id))
                pipe.sadd(f"assignments:status:{new['status']}", str(assignment.id))
            if AssignmentStatus(new["status"]) in TERMINAL_STATUSES:
                pipe.eval(
                    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
                    "return redis.call('DEL', KEYS[1]) end return 0",
                    1,
                    f"order_active:{assignment.order_id}",
                    str(assignment.id),
                )

        await self.state.update_json(self._key(assignment.id), mutate, on_commit)
        assignment.version = expected_version + 1

    async def _load_many(self, ids: Iterable[str]) -> list[Assignment]:
        values = await self.state.mget([f"assignment:{assignment_id}" for assignment_id in ids])
        return [Assignment(**data) for data in values if data]

    async def get_active_for_order(self, order_id: UUID) -> Assignment | None:
        assignment_id = await self.state.get(f"order_active:{order_id}")
        if not assignment_id:
            return None
        assignment = await self.get(UUID(assignment_id))
        if assignment is None or assignment.is_terminal:
            return None
        return assignment

    async def list_by_batch(self, batch_id: UUID) -> list[Assignment]:
        ids = sorted(await self.state.smembers(f"batch_members:{batch_id}"))
        return await self._load_many(ids)

    async def list_by_status(self, statuses: Iterable[AssignmentStatus]) -> list[Assignment]:
        ids: set[str] = set()
        for status in statuses:
            ids |= await self.state.smembers(f"assignments:status:{status.value}")
        return await self._load_many(sorted(ids))

    async def list(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        driver_id: UUID | None = None,
        status: AssignmentStatus | None = None,
    ) -> list[Assignment]:
        ids = await self.state.zrangebyscore(
            "assignments:created",
            start.timestamp() if start else "-inf",
            end.timestamp() if end else "+inf",
        )
        return [
            assignment
            for assignment in await self._load_many(ids)
            if (driver_id is None or assignment.driver_id == driver_id)
            and (status is None or assignment.status == status)
        ]

    async def save_batch(self, batch: Batch) -> None:
        await self.state.set(f"batch:{batch.id}", batch.model_dump(mode="json"))

    async def get_batch(self, batch_id: UUID) -> Batch | None:
        data = await self.state.get(f"batch:{batch_id}")
        return Batch(**data) if data else None


class RedisTrackingStore(TrackingStore):
    def __init__(self, state: StateManager):
        self.state = state

    async def append(self, event: TrackingEvent) -> None:
        data = event.model_dump(mode="json")
        await self.state.rpush(f"tracking:{event.assignment_id}", data)
        if event.driver_id is not None:
            await self.state.zadd(
                f"tracking_driver:{event.driver_id}",
                {event.model_dump_json(): event.recorded_at.timestamp()},
            )

    async def list_for_assignment(self, assignment_id: UUID) -> list[TrackingEvent]:
        return [TrackingEvent(**data) for data in await self.state.lrange(f"tracking:{assignment_id}")]

    async def list_for_driver(
        self,
        driver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        members = await self.state.zrangebyscore(
            f"tracking_driver:{driver_id}",
            start.timestamp() if start else "-inf",
            end.timestamp() if end else "+inf",
        )
        events = [TrackingEvent.model_validate_json(member) for member in members]
        return list(reversed(events))
