"""Tests for the assignment state machine."""

from uuid import uuid4

import pytest

from conftest import START
from dispatch.errors import InvalidTransitionError
from dispatch.models.assignment import Assignment, AssignmentStatus
from dispatch.state.workflow import AssignmentTransitions, apply_transition


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (AssignmentStatus.PENDING, AssignmentStatus.OFFERED),
        (AssignmentStatus.OFFERED, AssignmentStatus.DECLINED),
        (AssignmentStatus.DECLINED, AssignmentStatus.OFFERED),
        (AssignmentStatus.TIMED_OUT, AssignmentStatus.FAILED),
        (AssignmentStatus.PICKED_UP, AssignmentStatus.EN_ROUTE_TO_DELIVERY),
        (AssignmentStatus.EN_ROUTE_TO_DELIVERY, AssignmentStatus.DELIVERED),
        (AssignmentStatus.ACCEPTED, AssignmentStatus.CANCELLED),
    ],
)
def test_valid_transitions(from_state: AssignmentStatus, to_state: AssignmentStatus) -> None:
    assert AssignmentTransitions.can_transition(from_state, to_state)


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED),
        (AssignmentStatus.ACCEPTED, AssignmentStatus.DELIVERED),
        (AssignmentStatus.OFFERED, AssignmentStatus.PICKED_UP),
        (AssignmentStatus.DELIVERED, AssignmentStatus.CANCELLED),
        (AssignmentStatus.CANCELLED, AssignmentStatus.OFFERED),
        (AssignmentStatus.FAILED, AssignmentStatus.OFFERED),
    ],
)
def test_invalid_transitions(from_state: AssignmentStatus, to_state: AssignmentStatus) -> None:
    assert not AssignmentTransitions.can_transition(from_state, to_state)


def test_terminal_states_have_no_exits() -> None:
    for status in (AssignmentStatus.DELIVERED, AssignmentStatus.FAILED, AssignmentStatus.CANCELLED):
        assert AssignmentTransitions.TRANSITIONS[status] == []


def test_apply_transition_records_history_and_timestamps() -> None:
    assignment = Assignment(order_id=uuid4())

    apply_transition(assignment, AssignmentStatus.OFFERED, START)
    apply_transition(assignment, AssignmentStatus.CANCELLED, START, "customer changed mind")

    assert assignment.status == AssignmentStatus.CANCELLED
    assert assignment.cancelled_at == START
    assert assignment.cancellation_reason == "customer changed mind"
    assert [change.to_status for change in assignment.status_history] == [
        AssignmentStatus.OFFERED,
        AssignmentStatus.CANCELLED,
    ]
    assert assignment.is_terminal


def test_apply_transition_rejects_and_leaves_state_alone() -> None:
    assignment = Assignment(order_id=uuid4())

    with pytest.raises(InvalidTransitionError):
        apply_transition(assignment, AssignmentStatus.DELIVERED, START)

    assert assignment.status == AssignmentStatus.PENDING
    assert assignment.status_history == []
