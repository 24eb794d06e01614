"""Tests for offering, responses, re-offers and terminal moves."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import BlockingNotifier, FailingNotifier, NEAR, new_engine
from dispatch.errors import (
    ConflictError,
    DispatchValidationError,
    DuplicateAssignmentError,
    InvalidTransitionError,
    OrderNotFoundError,
    TrackingRejectedError,
)
from dispatch.models.assignment import AssignmentStatus, OfferDecision, OfferOutcome
from dispatch.models.outcomes import AssignmentOutcomeStatus, RespondOutcome


async def _accepted(engine, order, driver):
    outcome = await engine.assign_order(order.id)
    result = await engine.respond_to_offer(outcome.assignment.id, driver.id, OfferDecision.ACCEPT)
    assert result.outcome == RespondOutcome.ACCEPTED
    return result.assignment


@pytest.mark.asyncio
async def test_assign_then_accept(engine, make_driver, order, notifier) -> None:
    """Single nearby driver gets the offer and accepts it."""
    driver = await make_driver("D", NEAR)

    outcome = await engine.assign_order(order.id)

    assert outcome.status == AssignmentOutcomeStatus.ASSIGNED
    assert outcome.driver_id == driver.id
    assert outcome.assignment.status == AssignmentStatus.OFFERED
    assert "order_offered" in notifier.events("driver", driver.id)

    result = await engine.respond_to_offer(outcome.assignment.id, driver.id, OfferDecision.ACCEPT)

    assert result.outcome == RespondOutcome.ACCEPTED
    assignment = await engine.get_assignment(outcome.assignment.id)
    assert assignment.status == AssignmentStatus.ACCEPTED
    assert assignment.route is not None
    assert assignment.estimated_delivery_at is not None
    assert assignment.offers[-1].outcome == OfferOutcome.ACCEPTED
    assert "driver_assigned" in notifier.events("customer", order.customer_id)

    busy = await engine.get_driver(driver.id)
    assert not busy.is_available
    assert busy.offered_key is None
    assert busy.active_assignment_ids == [assignment.id]


@pytest.mark.asyncio
async def test_offer_carries_deadline(engine, order, near_driver, clock, settings) -> None:
    outcome = await engine.assign_order(order.id)

    expected = clock.now() + timedelta(seconds=settings.offer_timeout_seconds)
    assert outcome.assignment.response_deadline == expected
    assert outcome.assignment.offers[0].deadline == expected
    assert (await engine.get_driver(near_driver.id)).offered_key == outcome.assignment.id


@pytest.mark.asyncio
async def test_decline_reoffers_same_assignment(engine, order, near_driver, far_driver) -> None:
    """Nearest driver declines; the same record moves on to the next one."""
    outcome = await engine.assign_order(order.id)
    assert outcome.driver_id == near_driver.id

    result = await engine.respond_to_offer(
        outcome.assignment.id, near_driver.id, OfferDecision.DECLINE, "too_far"
    )

    assert result.outcome == RespondOutcome.REOFFERED
    assert result.assignment.id == outcome.assignment.id
    assert result.assignment.driver_id == far_driver.id
    assert result.assignment.status == AssignmentStatus.OFFERED
    assert [offer.outcome for offer in result.assignment.offers] == [
        OfferOutcome.DECLINED,
        OfferOutcome.PENDING,
    ]
    assert result.assignment.offers[0].reason == "too_far"
    assert (await engine.get_driver(near_driver.id)).offered_key is None

    report = await engine.generate_report()
    assert report.total_assignments == 1


@pytest.mark.asyncio
async def test_no_drivers_creates_nothing(engine, order) -> None:
    outcome = await engine.assign_order(order.id)

    assert outcome.status == AssignmentOutcomeStatus.NO_DRIVERS_AVAILABLE
    assert outcome.assignment is None
    assert await engine.assignments.get_active_for_order(order.id) is None


@pytest.mark.asyncio
async def test_declined_driver_is_never_reoffered(engine, order, near_driver, far_driver, notifier) -> None:
    outcome = await engine.assign_order(order.id)
    await engine.respond_to_offer(outcome.assignment.id, near_driver.id, OfferDecision.DECLINE, "busy")

    result = await engine.respond_to_offer(
        outcome.assignment.id, far_driver.id, OfferDecision.DECLINE, "break"
    )

    assert result.outcome == RespondOutcome.FAILED
    assert result.assignment.status == AssignmentStatus.FAILED
    assert result.assignment.failure_reason == "candidates exhausted"
    assert result.assignment.driver_id is None
    assert {offer.driver_id for offer in result.assignment.offers} == {near_driver.id, far_driver.id}
    assert "assignment_failed" in notifier.events("customer", order.customer_id)

    for driver in (near_driver, far_driver):
        assert (await engine.get_driver(driver.id)).is_dispatchable


@pytest.mark.asyncio
async def test_offer_cap_fails_assignment(settings, clock, notifier, order, near_driver, far_driver) -> None:
    settings.max_offers_per_assignment = 1
    engine = new_engine(settings, clock, notifier)
    await engine.orders.save(order)
    await engine.drivers.save(near_driver)
    await engine.drivers.save(far_driver)

    outcome = await engine.assign_order(order.id)
    result = await engine.respond_to_offer(
        outcome.assignment.id, near_driver.id, OfferDecision.DECLINE, "busy"
    )

    assert result.outcome == RespondOutcome.FAILED
    assert len(result.assignment.offers) == 1


@pytest.mark.asyncio
async def test_repeated_response_is_stale_and_harmless(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)
    before = await engine.get_assignment(assignment.id)

    for decision in (OfferDecision.ACCEPT, OfferDecision.DECLINE):
        result = await engine.respond_to_offer(assignment.id, near_driver.id, decision, "again")
        assert result.outcome == RespondOutcome.STALE

    after = await engine.get_assignment(assignment.id)
    assert after.version == before.version
    assert after.status == AssignmentStatus.ACCEPTED


@pytest.mark.asyncio
async def test_response_from_other_driver_is_stale(engine, order, near_driver, far_driver) -> None:
    outcome = await engine.assign_order(order.id)

    result = await engine.respond_to_offer(outcome.assignment.id, far_driver.id, OfferDecision.ACCEPT)

    assert result.outcome == RespondOutcome.STALE
    assert (await engine.get_assignment(outcome.assignment.id)).driver_id == near_driver.id


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(engine, order, near_driver) -> None:
    outcome = await engine.assign_order(order.id)

    results = await asyncio.gather(
        *(
            engine.respond_to_offer(outcome.assignment.id, near_driver.id, OfferDecision.ACCEPT)
            for _ in range(3)
        )
    )

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["accepted", "stale", "stale"]


@pytest.mark.asyncio
async def test_concurrent_assignments_never_share_a_driver(engine, make_order, near_driver) -> None:
    first, second = await make_order(), await make_order()

    outcomes = await asyncio.gather(engine.assign_order(first.id), engine.assign_order(second.id))

    statuses = sorted(outcome.status.value for outcome in outcomes)
    assert statuses == ["assigned", "no_drivers_available"]


@pytest.mark.asyncio
async def test_expired_offer_moves_on(engine, order, near_driver, far_driver, clock, settings) -> None:
    outcome = await engine.assign_order(order.id)
    clock.advance(seconds=settings.offer_timeout_seconds + 1)

    late = await engine.respond_to_offer(outcome.assignment.id, near_driver.id, OfferDecision.ACCEPT)
    assert late.outcome == RespondOutcome.STALE

    counts = await engine.run_maintenance()

    assert counts["expired_offers"] == 1
    assignment = await engine.get_assignment(outcome.assignment.id)
    assert assignment.status == AssignmentStatus.OFFERED
    assert assignment.driver_id == far_driver.id
    assert assignment.offers[0].outcome == OfferOutcome.TIMED_OUT
    assert assignment.offers[0].reason == "timeout"
    assert AssignmentStatus.TIMED_OUT in [c.to_status for c in assignment.status_history]


@pytest.mark.asyncio
async def test_sweep_ignores_live_offers(engine, order, near_driver, clock) -> None:
    await engine.assign_order(order.id)
    clock.advance(seconds=30)

    assert await engine.coordinator.sweep_expired_offers() == []


@pytest.mark.asyncio
async def test_decline_requires_reason(engine, order, near_driver) -> None:
    outcome = await engine.assign_order(order.id)

    with pytest.raises(DispatchValidationError):
        await engine.respond_to_offer(outcome.assignment.id, near_driver.id, OfferDecision.DECLINE, " ")


@pytest.mark.asyncio
async def test_duplicate_assignment_rejected(engine, order, near_driver, far_driver) -> None:
    await engine.assign_order(order.id)

    with pytest.raises(DuplicateAssignmentError):
        await engine.assign_order(order.id)


@pytest.mark.asyncio
async def test_order_errors(engine, make_order, near_driver) -> None:
    with pytest.raises(OrderNotFoundError):
        await engine.assign_order(uuid4())

    no_pickup = await make_order(pickup=None)
    with pytest.raises(DispatchValidationError):
        await engine.assign_order(no_pickup.id)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_block(settings, clock, order, near_driver) -> None:
    engine = new_engine(settings, clock, FailingNotifier())
    await engine.orders.save(order)
    await engine.drivers.save(near_driver)

    outcome = await engine.assign_order(order.id)
    result = await engine.respond_to_offer(outcome.assignment.id, near_driver.id, OfferDecision.ACCEPT)

    assert outcome.status == AssignmentOutcomeStatus.ASSIGNED
    assert result.outcome == RespondOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_notifications_run_without_holding_up_the_caller(
    settings, clock, order, near_driver
) -> None:
    settings.notify_in_background = True
    notifier = BlockingNotifier()
    engine = new_engine(settings, clock, notifier)
    await engine.orders.save(order)
    await engine.drivers.save(near_driver)

    outcome = await asyncio.wait_for(engine.assign_order(order.id), timeout=1)

    assert outcome.status == AssignmentOutcomeStatus.ASSIGNED
    assert notifier.sent == []
    assert (await engine.metrics())["pending_notifications"] == 1

    notifier.release.set()
    await engine.drain_notifications()

    assert notifier.sent == ["order_offered"]
    assert len(engine.notifications) == 0


@pytest.mark.asyncio
async def test_full_delivery_lifecycle(engine, order, near_driver, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)

    for status in (
        AssignmentStatus.EN_ROUTE_TO_PICKUP,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.EN_ROUTE_TO_DELIVERY,
        AssignmentStatus.DELIVERED,
    ):
        assignment = await engine.update_delivery_status(assignment.id, near_driver.id, status)

    assert assignment.status == AssignmentStatus.DELIVERED
    assert assignment.picked_up_at is not None
    assert assignment.delivered_at is not None
    assert "delivery_delivered" in notifier.events("customer", order.customer_id)

    driver = await engine.get_driver(near_driver.id)
    assert driver.is_available
    assert driver.completed_deliveries == 1
    assert driver.active_assignment_ids == []


@pytest.mark.asyncio
async def test_status_updates_are_checked(engine, order, near_driver, far_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)

    with pytest.raises(InvalidTransitionError):
        await engine.update_delivery_status(assignment.id, near_driver.id, AssignmentStatus.DELIVERED)

    with pytest.raises(ConflictError) as exc_info:
        await engine.update_delivery_status(
            assignment.id, far_driver.id, AssignmentStatus.EN_ROUTE_TO_PICKUP
        )
    assert exc_info.value.error_code == "DRIVER_MISMATCH"

    with pytest.raises(DispatchValidationError):
        await engine.update_delivery_status(assignment.id, near_driver.id, AssignmentStatus.CANCELLED)


@pytest.mark.asyncio
async def test_cancel_in_progress_frees_driver(engine, order, near_driver, notifier) -> None:
    assignment = await _accepted(engine, order, near_driver)

    cancelled = await engine.cancel_assignment(assignment.id, "customer request")

    assert cancelled.status == AssignmentStatus.CANCELLED
    assert cancelled.cancellation_reason == "customer request"
    assert "assignment_cancelled" in notifier.events("customer", order.customer_id)
    assert "assignment_cancelled" in notifier.events("driver", near_driver.id)

    driver = await engine.get_driver(near_driver.id)
    assert driver.is_available
    assert driver.cancelled_deliveries == 1

    with pytest.raises(TrackingRejectedError):
        await engine.ingest_location(assignment.id, NEAR.lat, NEAR.lng)
    with pytest.raises(InvalidTransitionError):
        await engine.cancel_assignment(assignment.id, "again")


@pytest.mark.asyncio
async def test_cancel_while_offered_releases_marker(engine, order, near_driver) -> None:
    outcome = await engine.assign_order(order.id)

    await engine.cancel_assignment(outcome.assignment.id, "duplicate order")

    assignment = await engine.get_assignment(outcome.assignment.id)
    assert assignment.offers[-1].outcome == OfferOutcome.WITHDRAWN
    assert (await engine.get_driver(near_driver.id)).is_dispatchable
    assert await engine.assignments.get_active_for_order(order.id) is None


@pytest.mark.asyncio
async def test_operator_fail(engine, order, near_driver) -> None:
    assignment = await _accepted(engine, order, near_driver)

    failed = await engine.fail_assignment(assignment.id, "vehicle breakdown")

    assert failed.status == AssignmentStatus.FAILED
    assert failed.failure_reason == "vehicle breakdown"
    assert (await engine.get_driver(near_driver.id)).is_available
