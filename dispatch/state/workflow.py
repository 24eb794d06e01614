"""Assignment state machine."""

from datetime import datetime

from dispatch.errors import InvalidTransitionError
from dispatch.models.assignment import Assignment, AssignmentStatus, StatusChange


class AssignmentTransitions:
    """Valid assignment state transitions."""

    TRANSITIONS = {
        AssignmentStatus.PENDING: [
            AssignmentStatus.OFFERED,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.OFFERED: [
            AssignmentStatus.ACCEPTED,
            AssignmentStatus.DECLINED,
            AssignmentStatus.TIMED_OUT,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.DECLINED: [
            AssignmentStatus.OFFERED,  # Re-offer to the next candidate
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.TIMED_OUT: [
            AssignmentStatus.OFFERED,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.ACCEPTED: [
            AssignmentStatus.EN_ROUTE_TO_PICKUP,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.EN_ROUTE_TO_PICKUP: [
            AssignmentStatus.PICKED_UP,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.PICKED_UP: [
            AssignmentStatus.EN_ROUTE_TO_DELIVERY,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.EN_ROUTE_TO_DELIVERY: [
            AssignmentStatus.DELIVERED,
            AssignmentStatus.FAILED,
            AssignmentStatus.CANCELLED,
        ],
        AssignmentStatus.DELIVERED: [],
        AssignmentStatus.FAILED: [],
        AssignmentStatus.CANCELLED: [],
    }

    @classmethod
    def can_transition(cls, from_state: AssignmentStatus, to_state: AssignmentStatus) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, [])


def apply_transition(
    assignment: Assignment,
    to_status: AssignmentStatus,
    at: datetime,
    reason: str | None = None,
) -> StatusChange:
    """Move an assignment to a new status or raise InvalidTransitionError."""
    from_status = assignment.status
    if not AssignmentTransitions.can_transition(from_status, to_status):
        raise InvalidTransitionError(
            f"Cannot move assignment from {from_status.value} to {to_status.value}",
            context={"assignment_id": assignment.id},
        )

    change = StatusChange(from_status=from_status, to_status=to_status, at=at, reason=reason)
    assignment.status = to_status
    assignment.status_history.append(change)
    assignment.updated_at = at

    if to_status == AssignmentStatus.ACCEPTED:
        assignment.accepted_at = at
    elif to_status == AssignmentStatus.PICKED_UP:
        assignment.picked_up_at = at
    elif to_status == AssignmentStatus.DELIVERED:
        assignment.delivered_at = at
    elif to_status == AssignmentStatus.CANCELLED:
        assignment.cancelled_at = at
        assignment.cancellation_reason = reason
    elif to_status == AssignmentStatus.FAILED:
        assignment.failed_at = at
        assignment.failure_reason = reason

    return change
