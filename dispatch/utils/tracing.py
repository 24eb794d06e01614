"""Engine operation tracing and metrics."""

import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator

from dispatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TraceEvent:
    """Single timed engine operation."""

    timestamp: datetime
    operation: str
    duration_ms: float
    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationStats:
    """Running counters for one operation name."""

    count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        if not self.count:
            return 0.0
        return self.total_duration_ms / self.count


class OperationTracer:
    """Times engine operations and keeps per-operation counters."""

    def __init__(self, max_events: int = 500):
        self.events: deque[TraceEvent] = deque(maxlen=max_events)
        self.stats: dict[str, OperationStats] = {}
        self.start_time = time.time()

    def add_event(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        **metadata: Any,
    ) -> None:
        """Record a finished operation."""
        event = TraceEvent(
            timestamp=datetime.now(timezone.utc),
            operation=operation,
            duration_ms=duration_ms,
            success=success,
            metadata=metadata,
        )
        self.events.append(event)

        stats = self.stats.setdefault(operation, OperationStats())
        stats.count += 1
        stats.total_duration_ms += duration_ms
        if not success:
            stats.error_count += 1

        # Log the event
        logger.debug(
            "trace_event",
            operation=operation,
            duration_ms=round(duration_ms, 3),
            success=success,
            **{key: str(value) for key, value in metadata.items()},
        )

    @contextmanager
    def trace_operation(self, operation: str, **metadata: Any) -> Generator[None, None, None]:
        """Context manager to trace an operation with timing."""
        start = time.time()
        success = True
        try:
            yield
        except Exception:
            success = False
            raise
        finally:
            duration_ms = (time.time() - start) * 1000
            self.add_event(operation, duration_ms, success=success, **metadata)

    def get_summary(self) -> dict[str, Any]:
        """Get a summary of traced operations."""
        return {
            "uptime_seconds": round(time.time() - self.start_time, 3),
            "total_operations": sum(stats.count for stats in self.stats.values()),
            "operations": {
                name: {
                    "count": stats.count,
                    "error_count": stats.error_count,
                    "avg_duration_ms": round(stats.avg_duration_ms, 3),
                }
                for name, stats in sorted(self.stats.items())
            },
            "recent_events": [
                {
                    "timestamp": event.timestamp.isoformat(),
                    "operation": event.operation,
                    "duration_ms": round(event.duration_ms, 3),
                    "success": event.success,
                }
                for event in list(self.events)[-20:]
            ],
        }
