"""Storage interfaces consumed by the engine.

Persistence is owned elsewhere; dispatch talks to these contracts so that the
Redis backend and the in-memory backend are interchangeable.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from dispatch.models.assignment import Assignment, AssignmentStatus, Batch
from dispatch.models.driver import Driver, VehicleType
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.tracking import TrackingEvent


class OrderStore(ABC):
    """Read access to orders."""

    @abstractmethod
    async def get(self, order_id: UUID) -> Order | None:
        """Fetch one order."""

    @abstractmethod
    async def get_many(self, order_ids: Iterable[UUID]) -> list[Order]:
        """Fetch several orders, skipping unknown ids, in request order."""

    @abstractmethod
    async def save(self, order: Order) -> None:
        """Insert or replace an order."""


class DriverStore(ABC):
    """Driver records plus the "currently offered" marker."""

    @abstractmethod
    async def get(self, driver_id: UUID) -> Driver | None:
        """Fetch one driver."""

    @abstractmethod
    async def save(self, driver: Driver) -> None:
        """Insert or replace a driver."""

    @abstractmethod
    async def list_all(self) -> list[Driver]:
        """Every known driver."""

    @abstractmethod
    async def list_available(
        self,
        vehicle_type: VehicleType | None = None,
        zone_id: UUID | None = None,
    ) -> list[Driver]:
        """Active, online, available drivers without an outstanding offer."""

    @abstractmethod
    async def update_status(self, driver_id: UUID, **fields: Any) -> Driver:
        """Apply field updates; raises DriverNotFoundError."""

    @abstractmethod
    async def update_location(self, driver_id: UUID, location: Location, at: datetime) -> None:
        """Record the driver's last known position."""

    @abstractmethod
    async def reserve_offer(self, driver_id: UUID, key: UUID) -> bool:
        """Atomically mark the driver as offered for key.

        Returns False when the driver already holds another offer or is no
        longer dispatchable.
        """

    @abstractmethod
    async def release_offer(self, driver_id: UUID, key: UUID) -> None:
        """Clear the offer marker if it still belongs to key."""

    @abstractmethod
    async def commit_offer(
        self, driver_id: UUID, key: UUID, assignment_ids: list[UUID]
    ) -> bool:
        """Turn a held offer into accepted work.

        Returns False when the marker no longer belongs to key.
        """

    @abstractmethod
    async def finish_assignment(
        self, driver_id: UUID, assignment_id: UUID, delivered: bool, at: datetime
    ) -> None:
        """Drop accepted work, bump stats and restore availability when idle."""


class AssignmentStore(ABC):
    """Assignments and batches with optimistic version checks."""

    @abstractmethod
    async def create(self, assignment: Assignment) -> None:
        """Insert a new assignment.

        Raises DuplicateAssignmentError if the order already has an active one.
        """

    @abstractmethod
    async def get(self, assignment_id: UUID) -> Assignment | None:
        """Fetch one assignment."""

    @abstractmethod
    async def save(self, assignment: Assignment) -> None:
        """Persist changes if the stored version matches, then bump the version.

        Raises ConcurrentModificationError on a version mismatch.
        """

    @abstractmethod
    async def get_active_for_order(self, order_id: UUID) -> Assignment | None:
        """The order's non-terminal assignment, if any."""

    @abstractmethod
    async def list_by_batch(self, batch_id: UUID) -> list[Assignment]:
        """Members of a batch."""

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[AssignmentStatus]) -> list[Assignment]:
        """Assignments currently in any of the given statuses."""

    @abstractmethod
    async def list(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        driver_id: UUID | None = None,
        status: AssignmentStatus | None = None,
    ) -> list[Assignment]:
        """Assignments created within [start, end], optionally filtered."""

    @abstractmethod
    async def save_batch(self, batch: Batch) -> None:
        """Insert or replace a batch."""

    @abstractmethod
    async def get_batch(self, batch_id: UUID) -> Batch | None:
        """Fetch one batch."""


class TrackingStore(ABC):
    """Append-only location history."""

    @abstractmethod
    async def append(self, event: TrackingEvent) -> None:
        """Store a new event."""

    @abstractmethod
    async def list_for_assignment(self, assignment_id: UUID) -> list[TrackingEvent]:
        """Events for one assignment in arrival order."""

    @abstractmethod
    async def list_for_driver(
        self,
        driver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrackingEvent]:
        """Events reported by a driver, newest first."""
