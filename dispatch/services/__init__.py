"""Dispatch engine components."""

from dispatch.services.base import BaseService
from dispatch.services.batch_planner import BatchPlanner
from dispatch.services.coordinator import AssignmentCoordinator
from dispatch.services.driver_directory import DriverDirectory
from dispatch.services.engine import DispatchEngine
from dispatch.services.eta import ETACalculator
from dispatch.services.notifier import LoggingNotifier, Notifier, WebSocketNotifier
from dispatch.services.reporting import ReportingAggregator
from dispatch.services.route_optimizer import RouteOptimizer
from dispatch.services.tracker import DeliveryTracker

__all__ = [
    "BaseService",
    "DispatchEngine",
    "DriverDirectory",
    "RouteOptimizer",
    "ETACalculator",
    "AssignmentCoordinator",
    "DeliveryTracker",
    "BatchPlanner",
    "ReportingAggregator",
    "Notifier",
    "LoggingNotifier",
    "WebSocketNotifier",
]
