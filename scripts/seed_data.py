"""Seed drivers and orders around central Riyadh for local testing."""

import asyncio
from uuid import uuid4

from dispatch.models.driver import Driver, VehicleType, WorkingZone
from dispatch.models.geo import Location
from dispatch.models.order import Order
from dispatch.state.manager import StateManager
from dispatch.state.redis_store import RedisDriverStore, RedisOrderStore
from dispatch.utils.clock import utcnow

CITY_CENTER = Location(lat=24.7136, lng=46.6753)


async def seed_drivers(state_manager: StateManager) -> None:
    """Seed the driver pool, all online and available."""
    print("Seeding drivers...")

    store = RedisDriverStore(state_manager)
    now = utcnow()

    olaya = WorkingZone(
        name="Olaya",
        center=Location(lat=24.6908, lng=46.6850),
        radius_km=4.0,
        priority_level=2,
    )
    downtown = WorkingZone(name="Downtown", center=CITY_CENTER, radius_km=6.0, priority_level=1)

    drivers = [
        Driver(
            name="Omar Haddad",
            current_location=Location(lat=24.7150, lng=46.6760),
            vehicle_type=VehicleType.CAR,
            rating=4.9,
            working_zones=[downtown],
        ),
        Driver(
            name="Lina Saleh",
            current_location=Location(lat=24.7080, lng=46.6800),
            vehicle_type=VehicleType.MOTORCYCLE,
            rating=4.8,
            working_zones=[downtown, olaya],
        ),
        Driver(
            name="Yusuf Karim",
            current_location=Location(lat=24.6950, lng=46.6830),
            vehicle_type=VehicleType.MOTORCYCLE,
            rating=4.7,
            working_zones=[olaya],
        ),
        Driver(
            name="Sara Nasser",
            current_location=Location(lat=24.7200, lng=46.6700),
            vehicle_type=VehicleType.BICYCLE,
            rating=4.6,
        ),
        Driver(
            name="Khalid Mansour",
            current_location=Location(lat=24.7250, lng=46.6650),
            vehicle_type=VehicleType.CAR,
            rating=4.8,
        ),
    ]

    for driver in drivers:
        driver.is_online = True
        driver.is_available = True
        driver.available_since = now
        driver.last_location_update = now
        await store.save(driver)
        print(f"  ✓ Added {driver.name} ({driver.vehicle_type.value}, rating: {driver.rating})")

    print("✓ Drivers seeded successfully\n")


async def seed_orders(state_manager: StateManager) -> None:
    """Seed a few orders ready to be dispatched."""
    print("Seeding orders...")

    store = RedisOrderStore(state_manager)
    restaurant_id = uuid4()
    pickup = Location(lat=24.7118, lng=46.6749)

    orders = [
        Order(
            order_number="R-1001",
            customer_id=uuid4(),
            restaurant_id=restaurant_id,
            pickup_location=pickup,
            pickup_address="King Fahd Rd, Al Olaya",
            delivery_location=Location(lat=24.7000, lng=46.6900),
            delivery_address="Tahlia St, Al Olaya",
        ),
        Order(
            order_number="R-1002",
            customer_id=uuid4(),
            restaurant_id=restaurant_id,
            pickup_location=pickup,
            pickup_address="King Fahd Rd, Al Olaya",
            delivery_location=Location(lat=24.7300, lng=46.6600),
            delivery_address="Prince Sultan Rd, Al Mohammadiyah",
        ),
        Order(
            order_number="R-1003",
            customer_id=uuid4(),
            restaurant_id=uuid4(),
            pickup_location=Location(lat=24.6920, lng=46.6860),
            pickup_address="Olaya St",
            delivery_location=Location(lat=24.6800, lng=46.7000),
            delivery_address="Al Malaz",
            required_vehicle_type=VehicleType.MOTORCYCLE,
        ),
    ]

    for order in orders:
        await store.save(order)
        print(f"  ✓ Added order {order.order_number} ({order.id})")

    print("✓ Orders seeded successfully\n")


async def main() -> None:
    """Run all seed functions."""
    print("\n" + "=" * 50)
    print("  Seeding Dispatch Data")
    print("=" * 50 + "\n")

    state_manager = StateManager()
    await state_manager.connect()

    await seed_drivers(state_manager)
    await seed_orders(state_manager)

    await state_manager.disconnect()

    print("=" * 50)
    print("  ✓ All data seeded successfully!")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
