"""Driver proximity search."""

from datetime import datetime
from uuid import UUID

from dispatch.errors import DriverNotFoundError
from dispatch.models.assignment import CandidateFilters
from dispatch.models.driver import Driver, DriverStatus
from dispatch.models.geo import Location
from dispatch.models.outcomes import DriverCandidate
from dispatch.services.base import BaseService
from dispatch.state.stores import DriverStore
from dispatch.utils.geo import BoundingBox, bounding_box, haversine_km


class DriverDirectory(BaseService):
    """Answers "which drivers can serve this point right now".

    A driver with active working zones is eligible only when the point lies
    inside one of them (and, when the caller gives a cutoff, within that
    distance). A driver without zones falls back to a global distance rule.

    Ranking: nearest first, then highest rating, then longest idle, then the
    highest zone priority. Driver id settles anything left so the order is
    deterministic.
    """

    def __init__(self, drivers: DriverStore, **kwargs):
        super().__init__("driver_directory", **kwargs)
        self.drivers = drivers

    async def find_candidates(
        self,
        point: Location,
        filters: CandidateFilters | None = None,
    ) -> list[DriverCandidate]:
        filters = filters or CandidateFilters()
        now = self.clock.now()

        fallback_km = filters.max_distance_km or self.settings.max_driver_distance_km
        fallback_box = bounding_box(point, fallback_km)

        available = await self.drivers.list_available(
            vehicle_type=filters.vehicle_type,
            zone_id=filters.zone_id,
        )

        candidates = []
        for driver in available:
            if driver.id in filters.exclude_driver_ids or driver.current_location is None:
                continue

            candidate = self._evaluate(driver, point, filters, fallback_km, fallback_box, now)
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=self._rank)

        self.logger.logger.debug(
            "candidates_found",
            lat=point.lat,
            lng=point.lng,
            scanned=len(available),
            matched=len(candidates),
        )
        return candidates

    async def get_driver(self, driver_id: UUID) -> Driver:
        driver = await self.drivers.get(driver_id)
        if driver is None:
            raise DriverNotFoundError(
                f"Driver {driver_id} not found", context={"driver_id": driver_id}
            )
        return driver

    async def update_driver_status(
        self,
        driver_id: UUID,
        is_online: bool | None = None,
        is_available: bool | None = None,
        status: DriverStatus | None = None,
        location: Location | None = None,
    ) -> Driver:
        """Apply availability, account status and location changes.

        Going offline or being suspended also clears availability. Becoming
        available stamps available_since, which feeds the idle tie-break.
        """
        driver = await self.get_driver(driver_id)
        now = self.clock.now()
        fields: dict = {}

        if is_online is not None:
            fields["is_online"] = is_online
        if status is not None:
            fields["status"] = status
        if is_available is not None:
            fields["is_available"] = is_available

        if fields.get("is_online") is False or fields.get("status") == DriverStatus.SUSPENDED:
            fields["is_available"] = False

        if fields.get("is_available") and not driver.is_available:
            fields["available_since"] = now
        elif fields.get("is_available") is False:
            fields["available_since"] = None

        if location is not None:
            fields["current_location"] = location
            fields["last_location_update"] = now

        updated = await self.drivers.update_status(driver_id, **fields)
        self.logger.logger.info(
            "driver_status_updated",
            driver_id=str(driver_id),
            **{key: str(value) for key, value in fields.items()},
        )
        return updated

    def _evaluate(
        self,
        driver: Driver,
        point: Location,
        filters: CandidateFilters,
        fallback_km: float,
        fallback_box: BoundingBox,
        now: datetime,
    ) -> DriverCandidate | None:
        zones = driver.active_zones(now)
        if filters.zone_id is not None:
            zones = [zone for zone in zones if zone.id == filters.zone_id]

        if not driver.working_zones:
            # Cheap rejection before the precise distance
            if not fallback_box.contains(driver.current_location):
                return None
            distance = haversine_km(driver.current_location, point)
            if distance > fallback_km:
                return None
            return DriverCandidate(driver=driver, distance_km=distance)

        covering = [zone for zone in zones if haversine_km(zone.center, point) <= zone.radius_km]
        if not covering:
            return None

        distance = haversine_km(driver.current_location, point)
        if filters.max_distance_km is not None and distance > filters.max_distance_km:
            return None

        best_zone = max(covering, key=lambda zone: zone.priority_level)
        return DriverCandidate(
            driver=driver,
            distance_km=distance,
            zone_id=best_zone.id,
            zone_priority=best_zone.priority_level,
        )

    @staticmethod
    def _rank(candidate: DriverCandidate) -> tuple:
        driver = candidate.driver
        idle_since = driver.available_since.timestamp() if driver.available_since else float("inf")
        return (
            candidate.distance_km,
            -driver.rating,
            idle_since,
            -(candidate.zone_priority or 0),
            str(driver.id),
        )
