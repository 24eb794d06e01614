"""Result types returned by engine operations.

Business outcomes (no driver, exhausted candidates, stale responses, missing
coordinates) are expressed here rather than raised.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel

from dispatch.models.assignment import Assignment, Batch
from dispatch.models.driver import Driver


class DriverCandidate(BaseModel):
    """A driver eligible for a point, with ranking inputs."""

    driver: Driver
    distance_km: float
    zone_id: UUID | None = None
    zone_priority: int | None = None


class AssignmentOutcomeStatus(str, Enum):
    ASSIGNED = "assigned"
    NO_DRIVERS_AVAILABLE = "no_drivers_available"


class AssignmentOutcome(BaseModel):
    """Result of asking for a driver for one order."""

    status: AssignmentOutcomeStatus
    assignment: Assignment | None = None
    driver_id: UUID | None = None
    distance_km: float | None = None
    message: str


class RespondOutcome(str, Enum):
    ACCEPTED = "accepted"
    REOFFERED = "reoffered"
    FAILED = "failed"
    STALE = "stale"


class RespondResult(BaseModel):
    """Result of a driver's answer to an offer."""

    outcome: RespondOutcome
    assignment: Assignment
    message: str

    @property
    def is_stale(self) -> bool:
        return self.outcome == RespondOutcome.STALE


class BatchOutcome(BaseModel):
    """Result of grouping orders into one run."""

    status: AssignmentOutcomeStatus
    batch: Batch | None = None
    assignments: list[Assignment] = []
    message: str


class ETAResult(BaseModel):
    """Predicted arrival, or an explicit 'unavailable'."""

    available: bool
    minutes: float | None = None
    arrival_at: datetime | None = None
    distance_km: float | None = None
    reason: str | None = None

    @classmethod
    def unavailable(cls, reason: str) -> "ETAResult":
        return cls(available=False, reason=reason)
