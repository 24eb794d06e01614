"""Tests for location ingestion and anomaly detection."""

from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import DROP_OFF, NEAR, PICKUP
from dispatch.errors import AssignmentNotFoundError, DispatchValidationError
from dispatch.models.assignment import (
    AssignmentStatus,
    ExceptionSeverity,
    ExceptionSource,
    ExceptionType,
    OfferDecision,
)
from dispatch.models.geo import Location


async def _accepted(engine, order, driver):
    outcome = await engine.assign_order(order.id)
    await engine.respond_to_offer(outcome.assignment.id, driver.id, OfferDecision.ACCEPT)
    return await engine.get_assignment(outcome.assignment.id)


async def _advance_to(engine, assignment, driver, *statuses):
    for status in statuses:
        assignment = await engine.update_delivery_status(assignment.id, driver.id, status)
    return assignment


@pytest.mark.asyncio
async def test_off_route_ping_raises_exception_only(engine, order, near_driver) -> None:
    """A point ~5 km off the planned path is flagged but status stays put."""
    assignment = await _accepted(engine, order, near_driver)

    progress = await engine.ingest_location(assignment.id, 24.7613, 46.6749)

    assert progress.status == AssignmentStatus.ACCEPTED
    assert progress.deviation_km == pytest.approx(5.0, abs=0.1)
    assert [e.type for e in progress.exceptions_raised] == [ExceptionType.OFF_ROUTE]

    stored = await engine.get_assignment(assignment.id)
    assert stored.status == AssignmentStatus.ACCEPTED
    assert stored.progress.off_route

    # Still off route: no second record
    again = await engine.ingest_location(assignment.id, 24.7620, 46.6749)
    assert again.exceptions_raised == []

    # Back on the path clears the flag
    await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)
    stored = await engine.get_assignment(assignment.id)
    assert not stored.progress.off_route
    assert len(stored.exceptions) == 1


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)

    at_pickup = await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)
    assert 0 < at_pickup.percent_complete < 100

    # Jitter back towards the start, still on the planned path
    jitter = await engine.ingest_location(assignment.id, 24.7140, 46.6749)
    assert jitter.percent_complete == at_pickup.percent_complete

    arrived = await engine.ingest_location(assignment.id, DROP_OFF.lat, DROP_OFF.lng)
    assert arrived.percent_complete == pytest.approx(100.0)
    assert arrived.distance_remaining_km == pytest.approx(0.0, abs=1e-6)


@pytest.mark.asyncio
async def test_out_of_order_ping_is_stored_but_ignored(engine, order, near_driver, clock) -> None:
    assignment = await _accepted(engine, order, near_driver)
    now = clock.now()

    await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng, now)
    late = await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng, now - timedelta(seconds=30))

    assert late.out_of_order
    stored = await engine.get_assignment(assignment.id)
    assert stored.progress.last_location == PICKUP
    assert stored.progress.ping_count == 1
    assert len(await engine.tracking_history(assignment.id)) == 2


@pytest.mark.asyncio
async def test_ping_updates_driver_position(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)

    await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)

    driver = await engine.get_driver(near_driver.id)
    assert driver.current_location == PICKUP
    history = await engine.driver_tracking_history(near_driver.id)
    assert [event.location for event in history] == [PICKUP]


@pytest.mark.asyncio
async def test_stalled_driver_flagged_once(engine, order, near_driver, clock, settings) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.EN_ROUTE_TO_PICKUP)
    await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng)

    clock.advance(seconds=settings.stall_window_seconds + 1)
    first = await engine.tracker.sweep()
    second = await engine.tracker.sweep()

    assert [e.type for e in first] == [ExceptionType.STALLED]
    assert first[0].severity == ExceptionSeverity.MEDIUM
    assert second == []

    # Moving again clears the flag without touching the status
    progress = await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)
    stored = await engine.get_assignment(assignment.id)
    assert not stored.progress.stalled
    assert progress.status == AssignmentStatus.EN_ROUTE_TO_PICKUP


@pytest.mark.asyncio
async def test_missed_window_notifies_customer(engine, order, near_driver, clock, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)
    late_by = assignment.estimated_delivery_at - clock.now() + timedelta(minutes=11)
    clock.advance(seconds=late_by.total_seconds())

    raised = await engine.tracker.sweep()

    assert [e.type for e in raised] == [ExceptionType.MISSED_WINDOW]
    assert raised[0].severity == ExceptionSeverity.HIGH
    assert "delivery_delayed" in notifier.events("customer", order.customer_id)
    stored = await engine.get_assignment(assignment.id)
    assert stored.status == AssignmentStatus.ACCEPTED


@pytest.mark.asyncio
async def test_approach_notification_sent_once(engine, order, near_driver, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await _advance_to(
        engine,
        assignment,
        near_driver,
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.EN_ROUTE_TO_DELIVERY,
    )

    await engine.ingest_location(assignment.id, 24.7010, 46.6890)
    await engine.ingest_location(assignment.id, 24.7005, 46.6895)

    assert notifier.events("customer", order.customer_id).count("driver_approaching") == 1


@pytest.mark.asyncio
async def test_remaining_time_shrinks_after_pickup(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)

    before = await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng)
    await _advance_to(
        engine,
        assignment,
        near_driver,
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
    )
    after = await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)

    assert after.minutes_remaining < before.minutes_remaining
    assert after.estimated_arrival_at is not None


@pytest.mark.asyncio
async def test_operator_exception_recorded_on_finished_assignment(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await engine.cancel_assignment(assignment.id, "customer request")

    exception = await engine.report_exception(
        assignment.id, ExceptionType.CUSTOMER_UNAVAILABLE, {"note": "no answer at door"}
    )

    assert exception.source == ExceptionSource.OPERATOR
    assert exception.severity == ExceptionSeverity.MEDIUM
    stored = await engine.get_assignment(assignment.id)
    assert stored.exceptions[-1].id == exception.id
    assert stored.status == AssignmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_unknown_assignment(engine) -> None:
    with pytest.raises(AssignmentNotFoundError):
        await engine.ingest_location(uuid4(), 0, 0)


@pytest.mark.asyncio
async def test_invalid_coordinates_rejected_before_lookup(engine) -> None:
    with pytest.raises(DispatchValidationError):
        await engine.ingest_location(uuid4(), 95.0, 0)


def test_location_model_bounds() -> None:
    with pytest.raises(ValueError):
        Location(lat=100, lng=0)


@pytest.mark.asyncio
async def test_wait_at_pickup_does_not_count_towards_stall(engine, order, near_driver, clock) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.EN_ROUTE_TO_PICKUP)
    await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)

    clock.advance(minutes=4)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.PICKED_UP)
    clock.advance(minutes=4)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.EN_ROUTE_TO_DELIVERY)
    clock.advance(seconds=10)

    progress = await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)

    assert progress.exceptions_raised == []
    assert not (await engine.get_assignment(assignment.id)).progress.stalled


@pytest.mark.asyncio
async def test_stall_measured_from_start_of_current_leg(engine, order, near_driver, clock, settings) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await _advance_to(
        engine,
        assignment,
        near_driver,
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
    )
    clock.advance(seconds=settings.stall_window_seconds + 60)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.EN_ROUTE_TO_DELIVERY)

    assert await engine.tracker.sweep() == []

    clock.advance(seconds=settings.stall_window_seconds + 1)
    assert [e.type for e in await engine.tracker.sweep()] == [ExceptionType.STALLED]


@pytest.mark.asyncio
async def test_every_ping_pushes_position_to_customer(engine, order, near_driver, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)
    await _advance_to(engine, assignment, near_driver, AssignmentStatus.EN_ROUTE_TO_PICKUP)

    await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng)
    progress = await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng)

    updates = [
        payload
        for kind, recipient, event, payload in notifier.sent
        if kind == "customer"
        and recipient == str(order.customer_id)
        and event == "driver_location_updated"
    ]
    assert len(updates) == 2
    assert (updates[-1]["lat"], updates[-1]["lng"]) == (PICKUP.lat, PICKUP.lng)
    assert updates[-1]["driver_id"] == str(near_driver.id)
    assert updates[-1]["percent_complete"] == round(progress.percent_complete, 1)
    assert updates[-1]["estimated_arrival_at"] == progress.estimated_arrival_at.isoformat()


@pytest.mark.asyncio
async def test_out_of_order_ping_is_not_pushed(engine, order, near_driver, clock, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)
    now = clock.now()
    await engine.ingest_location(assignment.id, PICKUP.lat, PICKUP.lng, now)

    await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng, now - timedelta(seconds=30))

    assert notifier.events("customer", order.customer_id).count("driver_location_updated") == 1
