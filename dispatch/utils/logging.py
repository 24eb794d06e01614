"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from dispatch.config import get_settings


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()

    # Configure standard library logging
    log_level = getattr(logging, settings.log_level)

    if settings.log_format == "json":
        # JSON logging for production
        handler = logging.StreamHandler(sys.stdout)
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
        handler.setFormatter(formatter)
    else:
        # Human-readable logging for development
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class DispatchLogger:
    """Specialized logger for dispatch components."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(component)

    def log_transition(
        self,
        assignment_id: str,
        from_status: str,
        to_status: str,
        **kwargs: Any,
    ) -> None:
        """Log an assignment state transition."""
        self.logger.info(
            "assignment_transition",
            component=self.component,
            assignment_id=assignment_id,
            from_status=from_status,
            to_status=to_status,
            **kwargs,
        )

    def log_offer(
        self,
        assignment_id: str,
        driver_id: str,
        attempt: int,
        distance_km: float | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an offer made to a driver."""
        log_data = {
            "component": self.component,
            "assignment_id": assignment_id,
            "driver_id": driver_id,
            "attempt": attempt,
        }

        if distance_km is not None:
            log_data["distance_km"] = round(distance_km, 3)

        log_data.update(kwargs)
        self.logger.info("offer_made", **log_data)

    def log_anomaly(
        self,
        assignment_id: str,
        exception_type: str,
        **kwargs: Any,
    ) -> None:
        """Log a detected or reported delivery anomaly."""
        self.logger.warning(
            "delivery_anomaly",
            component=self.component,
            assignment_id=assignment_id,
            exception_type=exception_type,
            **kwargs,
        )

    def log_notification_failure(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        error: str,
    ) -> None:
        """Log a notifier failure that was swallowed."""
        self.logger.warning(
            "notification_failed",
            component=self.component,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            notification_event=event,
            error=error,
        )

    def log_error(
        self,
        error: str,
        **kwargs: Any,
    ) -> None:
        """Log an error."""
        self.logger.error(
            "dispatch_error",
            component=self.component,
            error=error,
            **kwargs,
        )
