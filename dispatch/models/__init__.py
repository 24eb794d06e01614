"""Data models for the dispatch engine."""

from dispatch.models.assignment import (
    Assignment,
    AssignmentStatus,
    Batch,
    CandidateFilters,
    DeliveryException,
    ExceptionSeverity,
    ExceptionSource,
    ExceptionType,
    Offer,
    OfferDecision,
    OfferOutcome,
    Progress,
    StatusChange,
)
from dispatch.models.driver import Driver, DriverStatus, VehicleType, WorkingZone
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.models.outcomes import (
    AssignmentOutcome,
    AssignmentOutcomeStatus,
    BatchOutcome,
    DriverCandidate,
    ETAResult,
    RespondOutcome,
    RespondResult,
)
from dispatch.models.report import DeliveryReport, DriverPerformance, ReportFilters
from dispatch.models.route import RouteConstraints, RoutePlan, RouteStop, StopType, Waypoint
from dispatch.models.tracking import TrackingEvent, TrackingProgress

__all__ = [
    # Geo
    "Location",
    # Driver
    "Driver",
    "DriverStatus",
    "VehicleType",
    "WorkingZone",
    # Order
    "Order",
    # Assignment
    "Assignment",
    "AssignmentStatus",
    "Batch",
    "CandidateFilters",
    "DeliveryException",
    "ExceptionSeverity",
    "ExceptionSource",
    "ExceptionType",
    "Offer",
    "OfferDecision",
    "OfferOutcome",
    "Progress",
    "StatusChange",
    # Route
    "RouteConstraints",
    "RoutePlan",
    "RouteStop",
    "StopType",
    "Waypoint",
    # Tracking
    "TrackingEvent",
    "TrackingProgress",
    # Outcomes
    "AssignmentOutcome",
    "AssignmentOutcomeStatus",
    "BatchOutcome",
    "DriverCandidate",
    "ETAResult",
    "RespondOutcome",
    "RespondResult",
    # Reports
    "DeliveryReport",
    "DriverPerformance",
    "ReportFilters",
]
