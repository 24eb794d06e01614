"""Tests for delivery KPIs."""

from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import NEAR, PICKUP
from dispatch.errors import DispatchValidationError
from dispatch.models.assignment import AssignmentStatus, ExceptionType, OfferDecision
from dispatch.models.report import ReportFilters


@pytest_asyncio.fixture
async def history(engine, make_order, near_driver, far_driver, clock):
    """One on-time delivery by the near driver, one cancelled offer to the far one."""
    delivered_order = await make_order()
    cancelled_order = await make_order()

    delivered = (await engine.assign_order(delivered_order.id)).assignment
    cancelled = (await engine.assign_order(cancelled_order.id)).assignment
    await engine.respond_to_offer(delivered.id, near_driver.id, OfferDecision.ACCEPT)
    await engine.cancel_assignment(cancelled.id, "customer request")

    await engine.update_delivery_status(delivered.id, near_driver.id, AssignmentStatus.EN_ROUTE_TO_PICKUP)
    await engine.ingest_location(delivered.id, NEAR.lat, NEAR.lng)
    await engine.ingest_location(delivered.id, PICKUP.lat, PICKUP.lng)
    await engine.update_delivery_status(delivered.id, near_driver.id, AssignmentStatus.PICKED_UP)
    await engine.update_delivery_status(
        delivered.id, near_driver.id, AssignmentStatus.EN_ROUTE_TO_DELIVERY
    )
    await engine.report_exception(delivered.id, ExceptionType.TRAFFIC_DELAY)

    clock.advance(minutes=10)
    await engine.update_delivery_status(delivered.id, near_driver.id, AssignmentStatus.DELIVERED)
    return delivered, cancelled


@pytest.mark.asyncio
async def test_report_totals(engine, history) -> None:
    report = await engine.generate_report()

    assert report.total_assignments == 2
    assert report.completed_deliveries == 1
    assert report.cancelled_deliveries == 1
    assert report.failed_deliveries == 0
    assert report.in_progress == 0
    assert report.on_time_rate == 1.0
    assert report.average_delivery_minutes == pytest.approx(10.0)
    assert report.average_assignment_minutes == pytest.approx(5.0)
    assert report.offer_acceptance_rate == 0.5
    assert report.average_offers_per_assignment == 1.0
    assert report.exception_counts == {"traffic_delay": 1}
    assert report.total_tracked_distance_km == pytest.approx(0.5, abs=0.02)


@pytest.mark.asyncio
async def test_report_per_driver(engine, history, near_driver, far_driver) -> None:
    report = await engine.generate_report()

    performance = {p.driver_id: p for p in report.driver_performance}
    assert performance[near_driver.id].completed == 1
    assert performance[near_driver.id].on_time_rate == 1.0
    assert performance[far_driver.id].cancelled == 1
    assert performance[far_driver.id].average_delivery_minutes is None


@pytest.mark.asyncio
async def test_report_filters(engine, history, near_driver, clock) -> None:
    by_driver = await engine.generate_report(ReportFilters(driver_id=near_driver.id))
    by_status = await engine.generate_report(ReportFilters(status=AssignmentStatus.CANCELLED))
    earlier = await engine.generate_report(
        ReportFilters(
            start_date=clock.now() - timedelta(days=10),
            end_date=clock.now() - timedelta(days=5),
        )
    )

    assert by_driver.total_assignments == 1
    assert by_status.total_assignments == 1
    assert by_status.cancelled_deliveries == 1
    assert earlier.total_assignments == 0
    assert earlier.on_time_rate is None


@pytest.mark.asyncio
async def test_report_rejects_inverted_window(engine, clock) -> None:
    with pytest.raises(DispatchValidationError):
        await engine.generate_report(
            ReportFilters(start_date=clock.now(), end_date=clock.now() - timedelta(days=1))
        )


@pytest.mark.asyncio
async def test_report_does_not_modify_records(engine, history) -> None:
    delivered, _ = history
    before = await engine.get_assignment(delivered.id)

    await engine.generate_report()

    assert await engine.get_assignment(delivered.id) == before
