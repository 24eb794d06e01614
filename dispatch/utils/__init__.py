"""Utility modules."""

from dispatch.utils.clock import Clock, SystemClock, utcnow
from dispatch.utils.logging import DispatchLogger, get_logger, setup_logging

__all__ = ["Clock", "DispatchLogger", "SystemClock", "get_logger", "setup_logging", "utcnow"]
