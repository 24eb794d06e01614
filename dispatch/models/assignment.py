"""Assignment, offer, batch and delivery exception models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from dispatch.models.driver import VehicleType
from dispatch.models.geo import Location
from dispatch.models.route import RoutePlan
from dispatch.utils.clock import utcnow


class AssignmentStatus(str, Enum):
    """Assignment lifecycle states."""

    PENDING = "pending"
    OFFERED = "offered"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    ACCEPTED = "accepted"
    EN_ROUTE_TO_PICKUP = "en_route_to_pickup"
    PICKED_UP = "picked_up"
    EN_ROUTE_TO_DELIVERY = "en_route_to_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {AssignmentStatus.DELIVERED, AssignmentStatus.FAILED, AssignmentStatus.CANCELLED}
)

IN_PROGRESS_STATUSES = frozenset(
    {
        AssignmentStatus.ACCEPTED,
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.EN_ROUTE_TO_DELIVERY,
    }
)

MOVING_STATUSES = frozenset(
    {AssignmentStatus.EN_ROUTE_TO_PICKUP, AssignmentStatus.EN_ROUTE_TO_DELIVERY}
)


class OfferDecision(str, Enum):
    """Driver answer to an offer."""

    ACCEPT = "accept"
    DECLINE = "decline"


class OfferOutcome(str, Enum):
    """How an individual offer ended."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    WITHDRAWN = "withdrawn"


class Offer(BaseModel):
    """One driver's chance to take the assignment."""

    driver_id: UUID
    offered_at: datetime
    deadline: datetime
    distance_km: float | None = None
    outcome: OfferOutcome = OfferOutcome.PENDING
    responded_at: datetime | None = None
    reason: str | None = None


class StatusChange(BaseModel):
    """Entry in the assignment's status history."""

    from_status: AssignmentStatus
    to_status: AssignmentStatus
    at: datetime
    reason: str | None = None


class CandidateFilters(BaseModel):
    """Restrictions applied when searching for drivers."""

    vehicle_type: VehicleType | None = None
    zone_id: UUID | None = None
    max_distance_km: float | None = Field(default=None, gt=0)
    exclude_driver_ids: set[UUID] = Field(default_factory=set)


class ExceptionType(str, Enum):
    """Kinds of delivery anomalies."""

    # Detected automatically
    STALLED = "stalled"
    OFF_ROUTE = "off_route"
    MISSED_WINDOW = "missed_window"

    # Reported by drivers or operators
    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    ADDRESS_NOT_FOUND = "address_not_found"
    ORDER_QUALITY_ISSUE = "order_quality_issue"
    DELIVERY_DELAY = "delivery_delay"
    TRAFFIC_DELAY = "traffic_delay"
    VEHICLE_BREAKDOWN = "vehicle_breakdown"
    WEATHER_DELAY = "weather_delay"
    SECURITY_ISSUE = "security_issue"
    FAILED_HANDOFF = "failed_handoff"


DELAY_EXCEPTION_TYPES = frozenset(
    {
        ExceptionType.DELIVERY_DELAY,
        ExceptionType.TRAFFIC_DELAY,
        ExceptionType.WEATHER_DELAY,
        ExceptionType.VEHICLE_BREAKDOWN,
        ExceptionType.MISSED_WINDOW,
    }
)


class ExceptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExceptionSource(str, Enum):
    SYSTEM = "system"
    OPERATOR = "operator"


class DeliveryException(BaseModel):
    """Anomaly attached to an assignment for operator attention."""

    id: UUID = Field(default_factory=uuid4)
    type: ExceptionType
    source: ExceptionSource = ExceptionSource.SYSTEM
    severity: ExceptionSeverity = ExceptionSeverity.MEDIUM
    detected_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class Progress(BaseModel):
    """Live position and completion of an in-progress assignment."""

    last_location: Location | None = None
    last_update_at: datetime | None = None
    percent_complete: float = Field(default=0.0, ge=0, le=100)
    segment_index: int = 0
    distance_remaining_km: float | None = None
    last_moved_at: datetime | None = None
    last_moved_location: Location | None = None
    ping_count: int = 0

    # Open anomaly flags, cleared when the condition ends
    off_route: bool = False
    stalled: bool = False
    missed_window: bool = False
    approach_notified: bool = False


class Assignment(BaseModel):
    """Link between one order and its candidate or accepted driver."""

    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    driver_id: UUID | None = None
    batch_id: UUID | None = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    version: int = 0

    # Offers
    candidate_filters: CandidateFilters = Field(default_factory=CandidateFilters)
    offered_at: datetime | None = None
    response_deadline: datetime | None = None
    offers: list[Offer] = Field(default_factory=list)

    # Plan and progress
    route: RoutePlan | None = None
    route_position: int | None = None
    progress: Progress = Field(default_factory=Progress)
    estimated_delivery_at: datetime | None = None
    exceptions: list[DeliveryException] = Field(default_factory=list)

    # Timing
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    accepted_at: datetime | None = None
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None

    failure_reason: str | None = None
    cancellation_reason: str | None = None
    status_history: list[StatusChange] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    @property
    def lock_key(self) -> UUID:
        """Key serializing transitions; batch members share one."""
        return self.batch_id or self.id

    @property
    def offered_driver_ids(self) -> set[UUID]:
        return {offer.driver_id for offer in self.offers}

    @property
    def current_offer(self) -> Offer | None:
        if self.offers and self.offers[-1].outcome == OfferOutcome.PENDING:
            return self.offers[-1]
        return None

    @property
    def finished_at(self) -> datetime | None:
        return self.delivered_at or self.cancelled_at or self.failed_at


class Batch(BaseModel):
    """Several assignments sharing one driver run."""

    id: UUID = Field(default_factory=uuid4)
    order_ids: list[UUID]
    assignment_ids: list[UUID] = Field(default_factory=list)
    driver_id: UUID | None = None
    route: RoutePlan | None = None
    created_at: datetime = Field(default_factory=utcnow)
