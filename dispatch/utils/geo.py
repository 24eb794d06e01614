"""Great-circle math shared by the directory, optimizer, ETA and tracker.

All functions are pure. Distances are kilometres. Segment projection uses a
local equirectangular approximation, which is accurate at delivery scale
(a few tens of kilometres) but not across the antimeridian.
"""

import math
from dataclasses import dataclass
from typing import Sequence

from dispatch.errors import DispatchValidationError
from dispatch.models.geo import Location

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180


def validate_coordinates(lat: float, lng: float) -> None:
    """Raise a validation error for out-of-range or non-finite coordinates."""
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise DispatchValidationError(
            "Coordinates must be finite numbers",
            context={"lat": lat, "lng": lng},
        )
    if not -90 <= lat <= 90:
        raise DispatchValidationError(
            "Latitude must be between -90 and 90",
            context={"lat": lat},
        )
    if not -180 <= lng <= 180:
        raise DispatchValidationError(
            "Longitude must be between -180 and 180",
            context={"lng": lng},
        )


def make_location(lat: float, lng: float) -> Location:
    """Build a Location, raising DispatchValidationError on bad input."""
    validate_coordinates(lat, lng)
    return Location(lat=lat, lng=lng)


def haversine_km(a: Location, b: Location) -> float:
    """Great-circle distance between two points."""
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(h)))

    return EARTH_RADIUS_KM * c


def path_length_km(points: Sequence[Location]) -> float:
    """Sum of consecutive great-circle distances."""
    return sum(haversine_km(points[i], points[i + 1]) for i in range(len(points) - 1))


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude window used as a cheap pre-filter."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, location: Location) -> bool:
        return (
            self.min_lat <= location.lat <= self.max_lat
            and self.min_lng <= location.lng <= self.max_lng
        )


def bounding_box(center: Location, radius_km: float) -> BoundingBox:
    """Smallest lat/lng window enclosing a circle of radius_km around center."""
    dlat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(center.lat))

    # Near the poles every longitude is within reach
    if cos_lat < 1e-9 or abs(center.lat) + dlat >= 90:
        dlng = 180.0
    else:
        dlng = min(180.0, dlat / cos_lat)

    return BoundingBox(
        min_lat=max(-90.0, center.lat - dlat),
        max_lat=min(90.0, center.lat + dlat),
        min_lng=max(-180.0, center.lng - dlng),
        max_lng=min(180.0, center.lng + dlng),
    )


def project_onto_segment(
    point: Location, start: Location, end: Location
) -> tuple[float, Location]:
    """Closest point of segment start-end to point.

    Returns the fraction along the segment (0..1) and the closest location.
    """
    cos_ref = math.cos(math.radians(point.lat))

    ax = (start.lng - point.lng) * cos_ref
    ay = start.lat - point.lat
    bx = (end.lng - point.lng) * cos_ref
    by = end.lat - point.lat

    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return 0.0, start

    t = -(ax * dx + ay * dy) / length_sq
    t = max(0.0, min(1.0, t))

    closest = Location(
        lat=start.lat + t * (end.lat - start.lat),
        lng=start.lng + t * (end.lng - start.lng),
    )
    return t, closest


@dataclass(frozen=True)
class PathMatch:
    """Where a point sits relative to a polyline."""

    segment_index: int
    along_km: float
    offset_km: float


def match_to_path(
    point: Location,
    path: Sequence[Location],
    start_segment: int = 0,
) -> PathMatch:
    """Project point onto path, searching segments from start_segment onward.

    along_km is the distance travelled along the path up to the projection;
    offset_km is the distance between the point and that projection.
    """
    if not path:
        raise DispatchValidationError("Path must contain at least one point")

    if len(path) == 1:
        return PathMatch(segment_index=0, along_km=0.0, offset_km=haversine_km(point, path[0]))

    cumulative = [0.0]
    for i in range(len(path) - 1):
        cumulative.append(cumulative[-1] + haversine_km(path[i], path[i + 1]))

    start_segment = max(0, min(start_segment, len(path) - 2))
    best: PathMatch | None = None

    for i in range(start_segment, len(path) - 1):
        t, closest = project_onto_segment(point, path[i], path[i + 1])
        offset = haversine_km(point, closest)
        if best is None or offset < best.offset_km:
            segment_km = cumulative[i + 1] - cumulative[i]
            best = PathMatch(
                segment_index=i,
                along_km=cumulative[i] + t * segment_km,
                offset_km=offset,
            )

    return best


def distance_to_path_km(point: Location, path: Sequence[Location]) -> float:
    """Shortest distance from point to any segment of path."""
    return match_to_path(point, path).offset_km
