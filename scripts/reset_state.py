"""Reset all dispatch state in Redis (useful for testing)."""

import asyncio

from dispatch.state.manager import StateManager

KEY_PATTERNS = [
    "order:*",
    "driver:*",
    "drivers",
    "driver_offer:*",
    "assignment:*",
    "assignments:*",
    "order_active:*",
    "batch:*",
    "batch_members:*",
    "tracking:*",
    "tracking_driver:*",
]


async def reset_all_state() -> None:
    """Delete every dispatch key from Redis."""
    print("\n⚠️  WARNING: This will delete ALL dispatch data from Redis!")
    response = input("Are you sure? (yes/no): ")

    if response.lower() != "yes":
        print("Cancelled.")
        return

    print("\nResetting state...")

    state_manager = StateManager()
    await state_manager.connect()

    # SCAN instead of FLUSHDB so other data in the database survives
    deleted = 0
    for pattern in KEY_PATTERNS:
        async for key in state_manager.redis_client.scan_iter(match=pattern):
            await state_manager.delete(key)
            deleted += 1

    await state_manager.disconnect()

    print(f"✓ Removed {deleted} keys from Redis\n")


if __name__ == "__main__":
    asyncio.run(reset_all_state())
