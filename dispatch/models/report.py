"""Delivery report models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from dispatch.models.assignment import AssignmentStatus


class ReportFilters(BaseModel):
    """Selection of assignments for a report."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    driver_id: UUID | None = None
    status: AssignmentStatus | None = None


class DriverPerformance(BaseModel):
    """Per-driver throughput."""

    driver_id: UUID
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    average_delivery_minutes: float | None = None
    on_time_rate: float | None = None


class DeliveryReport(BaseModel):
    """KPIs over a set of assignments."""

    start_date: datetime
    end_date: datetime
    total_assignments: int = 0
    completed_deliveries: int = 0
    cancelled_deliveries: int = 0
    failed_deliveries: int = 0
    in_progress: int = 0
    on_time_rate: float | None = None
    average_assignment_minutes: float | None = None
    average_delivery_minutes: float | None = None
    offer_acceptance_rate: float | None = None
    average_offers_per_assignment: float | None = None
    total_tracked_distance_km: float = 0.0
    exception_counts: dict[str, int] = Field(default_factory=dict)
    driver_performance: list[DriverPerformance] = Field(default_factory=list)
