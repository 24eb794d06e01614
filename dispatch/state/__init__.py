"""State management modules."""

from dispatch.state.locks import KeyedLocks
from dispatch.state.manager import StateManager
from dispatch.state.memory import (
    InMemoryAssignmentStore,
    InMemoryDriverStore,
    InMemoryOrderStore,
    InMemoryTrackingStore,
)
from dispatch.state.redis_store import (
    RedisAssignmentStore,
    RedisDriverStore,
    RedisOrderStore,
    RedisTrackingStore,
)
from dispatch.state.stores import AssignmentStore, DriverStore, OrderStore, TrackingStore
from dispatch.state.workflow import AssignmentTransitions, apply_transition

__all__ = [
    "StateManager",
    "KeyedLocks",
    "AssignmentTransitions",
    "apply_transition",
    # Interfaces
    "OrderStore",
    "DriverStore",
    "AssignmentStore",
    "TrackingStore",
    # Memory backend
    "InMemoryOrderStore",
    "InMemoryDriverStore",
    "InMemoryAssignmentStore",
    "InMemoryTrackingStore",
    # Redis backend
    "RedisOrderStore",
    "RedisDriverStore",
    "RedisAssignmentStore",
    "RedisTrackingStore",
]
