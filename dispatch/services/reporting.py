"""Delivery KPIs computed from stored assignments and tracking events."""

from collections import Counter, defaultdict
from datetime import timedelta
from uuid import UUID

from dispatch.errors import DispatchValidationError
from dispatch.models.assignment import (
    IN_PROGRESS_STATUSES,
    Assignment,
    AssignmentStatus,
    OfferOutcome,
)
from dispatch.models.report import DeliveryReport, DriverPerformance, ReportFilters
from dispatch.services.base import BaseService
from dispatch.state.stores import AssignmentStore, TrackingStore
from dispatch.utils.geo import path_length_km


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _minutes(start, end) -> float | None:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 60


class ReportingAggregator(BaseService):
    """Read-only rollups; never mutates the records it reads."""

    def __init__(self, assignments: AssignmentStore, tracking: TrackingStore, **kwargs):
        super().__init__("reporting", **kwargs)
        self.assignments = assignments
        self.tracking = tracking

    async def generate(self, filters: ReportFilters | None = None) -> DeliveryReport:
        filters = filters or ReportFilters()
        end = filters.end_date or self.clock.now()
        start = filters.start_date or end - timedelta(days=self.settings.report_default_days)
        if end < start:
            raise DispatchValidationError(
                "Report end date is before its start date",
                context={"start_date": start.isoformat(), "end_date": end.isoformat()},
            )

        records = await self.assignments.list(
            start=start, end=end, driver_id=filters.driver_id, status=filters.status
        )
        grace = timedelta(minutes=self.settings.missed_window_grace_minutes)

        delivered = [a for a in records if a.status == AssignmentStatus.DELIVERED]
        judged = [v for a in delivered if (v := self._on_time(a, grace)) is not None]

        offers = [offer for a in records for offer in a.offers]
        answered = [o for o in offers if o.outcome != OfferOutcome.PENDING]
        accepted = [o for o in answered if o.outcome == OfferOutcome.ACCEPTED]

        exception_counts = Counter(e.type.value for a in records for e in a.exceptions)

        tracked_km = 0.0
        for assignment in records:
            events = await self.tracking.list_for_assignment(assignment.id)
            events.sort(key=lambda event: event.recorded_at)
            tracked_km += path_length_km([event.location for event in events])

        report = DeliveryReport(
            start_date=start,
            end_date=end,
            total_assignments=len(records),
            completed_deliveries=len(delivered),
            cancelled_deliveries=sum(1 for a in records if a.status == AssignmentStatus.CANCELLED),
            failed_deliveries=sum(1 for a in records if a.status == AssignmentStatus.FAILED),
            in_progress=sum(1 for a in records if a.status in IN_PROGRESS_STATUSES),
            on_time_rate=sum(judged) / len(judged) if judged else None,
            average_assignment_minutes=_mean(
                [m for a in records if (m := _minutes(a.created_at, a.finished_at)) is not None]
            ),
            average_delivery_minutes=_mean(
                [m for a in delivered if (m := _minutes(a.accepted_at, a.delivered_at)) is not None]
            ),
            offer_acceptance_rate=len(accepted) / len(answered) if answered else None,
            average_offers_per_assignment=len(offers) / len(records) if records else None,
            total_tracked_distance_km=tracked_km,
            exception_counts=dict(exception_counts),
            driver_performance=self._per_driver(records, grace),
        )

        self.logger.logger.info(
            "report_generated",
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            assignments=report.total_assignments,
        )
        return report

    @staticmethod
    def _on_time(assignment: Assignment, grace: timedelta) -> bool | None:
        """None when the assignment has no promise to compare against."""
        if assignment.delivered_at is None or assignment.estimated_delivery_at is None:
            return None
        return assignment.delivered_at <= assignment.estimated_delivery_at + grace

    def _per_driver(self, records: list[Assignment], grace: timedelta) -> list[DriverPerformance]:
        by_driver: dict[UUID, list[Assignment]] = defaultdict(list)
        for assignment in records:
            if assignment.driver_id is not None:
                by_driver[assignment.driver_id].append(assignment)

        performance = []
        for driver_id, items in sorted(by_driver.items(), key=lambda item: str(item[0])):
            delivered = [a for a in items if a.status == AssignmentStatus.DELIVERED]
            judged = [v for a in delivered if (v := self._on_time(a, grace)) is not None]
            performance.append(
                DriverPerformance(
                    driver_id=driver_id,
                    completed=len(delivered),
                    cancelled=sum(1 for a in items if a.status == AssignmentStatus.CANCELLED),
                    failed=sum(1 for a in items if a.status == AssignmentStatus.FAILED),
                    average_delivery_minutes=_mean(
                        [
                            m
                            for a in delivered
                            if (m := _minutes(a.accepted_at, a.delivered_at)) is not None
                        ]
                    ),
                    on_time_rate=sum(judged) / len(judged) if judged else None,
                )
            )
        return performance
