"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dispatch.config import Settings
from dispatch.main import app
from dispatch.models.driver import Driver
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.services.engine import DispatchEngine
from dispatch.services.notifier import Notifier
from dispatch.state.memory import (
    InMemoryAssignmentStore,
    InMemoryDriverStore,
    InMemoryOrderStore,
    InMemoryTrackingStore,
)
from dispatch.utils.clock import Clock

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

# Central Riyadh; roughly 111.2 km per degree of latitude
PICKUP = Location(lat=24.7118, lng=46.6749)
DROP_OFF = Location(lat=24.7000, lng=46.6900)
NEAR = Location(lat=24.7163, lng=46.6749)  # ~0.5 km north of PICKUP
FAR = Location(lat=24.7298, lng=46.6749)  # ~2 km north of PICKUP


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingNotifier(Notifier):
    """Keeps every notification for later assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, dict[str, Any]]] = []

    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        self.sent.append((recipient_type, recipient_id, event, payload))

    def events(self, recipient_type: str | None = None, recipient_id: Any = None) -> list[str]:
        return [
            event
            for kind, recipient, event, _ in self.sent
            if (recipient_type is None or kind == recipient_type)
            and (recipient_id is None or recipient == str(recipient_id))
        ]


class FailingNotifier(Notifier):
    """Push gateway that is always down."""

    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        raise ConnectionError("push gateway unreachable")


class BlockingNotifier(Notifier):
    """Notifier that waits until released, recording what it was given."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.sent: list[str] = []

    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        await self.release.wait()
        self.sent.append(event)


def new_engine(settings: Settings, clock: Clock, notifier: Notifier) -> DispatchEngine:
    """Engine over fresh in-memory stores."""
    return DispatchEngine(
        InMemoryOrderStore(),
        InMemoryDriverStore(),
        InMemoryAssignmentStore(),
        InMemoryTrackingStore(),
        settings=settings,
        clock=clock,
        notifier=notifier,
    )


@pytest.fixture
def settings() -> Settings:
    """Test settings with deterministic timing."""
    return Settings(
        store_backend="memory",
        log_format="text",
        offer_timeout_seconds=60,
        max_offers_per_assignment=10,
        stop_service_minutes=0.0,
        notify_in_background=False,
        default_minutes_per_km=2.0,
        vehicle_minutes_per_km={"car": 2.0, "motorcycle": 1.8, "bicycle": 3.0},
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(settings: Settings, clock: FrozenClock, notifier: RecordingNotifier) -> DispatchEngine:
    """Engine over in-memory stores with a frozen clock."""
    return new_engine(settings, clock, notifier)


@pytest.fixture
def make_driver(
    engine: DispatchEngine, clock: FrozenClock
) -> Callable[..., Awaitable[Driver]]:
    """Factory storing an online, available driver."""

    async def _make(name: str, location: Location | None, **overrides: Any) -> Driver:
        fields: dict[str, Any] = {
            "name": name,
            "is_online": True,
            "is_available": True,
            "current_location": location,
            "available_since": clock.now(),
            "rating": 4.5,
        }
        fields.update(overrides)
        driver = Driver(**fields)
        await engine.drivers.save(driver)
        return driver

    return _make


@pytest.fixture
def make_order(engine: DispatchEngine) -> Callable[..., Awaitable[Order]]:
    """Factory storing an order."""

    async def _make(
        pickup: Location | None = PICKUP,
        drop_off: Location | None = DROP_OFF,
        **overrides: Any,
    ) -> Order:
        order = Order(
            customer_id=uuid4(),
            pickup_location=pickup,
            delivery_location=drop_off,
            **overrides,
        )
        await engine.orders.save(order)
        return order

    return _make


# Sample data fixtures


@pytest_asyncio.fixture
async def order(make_order: Callable[..., Awaitable[Order]]) -> Order:
    """Order picked up in central Riyadh."""
    return await make_order()


@pytest_asyncio.fixture
async def near_driver(make_driver: Callable[..., Awaitable[Driver]]) -> Driver:
    """Driver about 0.5 km from the pickup."""
    return await make_driver("Omar", NEAR)


@pytest_asyncio.fixture
async def far_driver(make_driver: Callable[..., Awaitable[Driver]]) -> Driver:
    """Driver about 2 km from the pickup."""
    return await make_driver("Lina", FAR)


@pytest_asyncio.fixture
async def test_client(engine: DispatchEngine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the test engine."""
    app.state.engine = engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
