"""Order model as seen by dispatch.

Orders are owned by the ordering system; dispatch only reads them.
"""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from dispatch.models.driver import VehicleType
from dispatch.models.geo import Location
from dispatch.utils.clock import utcnow


class Order(BaseModel):
    """Order details needed for dispatch."""

    id: UUID = Field(default_factory=uuid4)
    order_number: str | None = None
    customer_id: UUID
    restaurant_id: UUID | None = None

    # Locations
    pickup_location: Location | None = None
    delivery_location: Location | None = None
    pickup_address: str | None = None
    delivery_address: str | None = None

    # Dispatch hints
    required_vehicle_type: VehicleType | None = None
    zone_id: UUID | None = None

    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, str] = Field(default_factory=dict)
