"""
Route geometry: polyline sampling for Street View previews.

Converts a walking route (ordered list of coordinates) into a bounded,
evenly spaced sequence of sample points, each carrying the compass heading
a Street View camera should face at that point.

Sampling rules:
  - The first coordinate is always emitted as the start point
    (distance 0, no heading).
  - Interior points are emitted every ``sampling_distance`` meters of
    great-circle distance, linearly interpolated in lat/lng space within
    the segment that contains them.  An interior point is only emitted when
    at least one full sampling interval of route remains after it, so a
    route of length L yields max(0, floor(L / d) - 1) interior points.
  - The last coordinate is always emitted as the destination, heading along
    the final segment.

Linear interpolation in degrees is a small-scale approximation; at walking
distances (segments of tens to hundreds of meters) the error is well below
GPS noise.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0

# Absorbs float error when a threshold lands exactly on a segment end.
_DISTANCE_EPSILON_M = 1e-6


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinate:
    """WGS84 point. Immutable value type."""
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: Any) -> "Coordinate":
        """Build from {latitude, longitude}, {lat, lng} or a [lat, lng] pair."""
        if isinstance(data, Coordinate):
            return data
        if isinstance(data, dict):
            lat = data.get("latitude", data.get("lat"))
            lng = data.get("longitude", data.get("lng"))
        elif isinstance(data, (list, tuple)) and len(data) == 2:
            lat, lng = data
        else:
            raise ValueError(f"Unrecognized coordinate: {data!r}")
        if lat is None or lng is None:
            raise ValueError(f"Coordinate missing latitude/longitude: {data!r}")
        try:
            lat, lng = float(lat), float(lng)
        except (TypeError, ValueError):
            raise ValueError(f"Coordinate values must be numbers: {data!r}") from None
        return cls(latitude=lat, longitude=lng)


class PointType(Enum):
    START = "start"
    SAMPLE = "sample"
    DESTINATION = "destination"


@dataclass(frozen=True)
class SampledPoint:
    """One point selected along the route for imagery and analysis."""
    coordinate: Coordinate
    distance_from_start: float
    heading: Optional[int]      # None for the start point
    index: int                  # position in the sampled sequence
    is_key_point: bool          # True only for start / destination
    type: PointType


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlmb = math.radians(b.longitude - a.longitude)

    s = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(s), math.sqrt(1 - s))


def bearing_deg(a: Coordinate, b: Coordinate) -> float:
    """Initial great-circle bearing from a to b, degrees true in [0, 360)."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dlmb = math.radians(b.longitude - a.longitude)

    y = math.sin(dlmb) * math.cos(phi2)
    x = (
        math.cos(phi1) * math.sin(phi2)
        - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    )
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def _heading_int(a: Coordinate, b: Coordinate) -> int:
    # floor(x + 0.5) rather than round() to avoid banker's rounding;
    # 359.6 wraps to 0.
    return int(bearing_deg(a, b) + 0.5) % 360


def interpolate(a: Coordinate, b: Coordinate, fraction: float) -> Coordinate:
    """Linear interpolation in lat/lng space."""
    return Coordinate(
        latitude=a.latitude + (b.latitude - a.latitude) * fraction,
        longitude=a.longitude + (b.longitude - a.longitude) * fraction,
    )


def route_length_m(route: Sequence[Coordinate]) -> float:
    """Total haversine length of a polyline."""
    return sum(haversine_m(route[i], route[i + 1]) for i in range(len(route) - 1))


# =============================================================================
# SAMPLING
# =============================================================================

def sample_route_points(
    route: Sequence[Coordinate],
    sampling_distance: float = 200.0,
) -> List[SampledPoint]:
    """Sample a polyline into start, evenly spaced interior points, destination.

    Args:
        route: Ordered polyline, at least 2 coordinates.
        sampling_distance: Meters between interior samples (> 0).

    Returns:
        SampledPoint list ordered by distance_from_start.

    Raises:
        ValueError: fewer than 2 coordinates or non-positive distance.
    """
    if len(route) < 2:
        raise ValueError("A route needs at least 2 coordinates to sample")
    if sampling_distance <= 0:
        raise ValueError(f"sampling_distance must be positive, got {sampling_distance}")

    total_length = route_length_m(route)
    # Last threshold that still leaves a full interval before the destination.
    last_threshold = total_length - sampling_distance + _DISTANCE_EPSILON_M

    points: List[SampledPoint] = [
        SampledPoint(
            coordinate=route[0],
            distance_from_start=0.0,
            heading=None,
            index=0,
            is_key_point=True,
            type=PointType.START,
        )
    ]

    accumulated = 0.0
    next_threshold = sampling_distance

    for i in range(len(route) - 1):
        seg_start = route[i]
        seg_end = route[i + 1]
        seg_length = haversine_m(seg_start, seg_end)

        while (
            next_threshold <= last_threshold
            and accumulated + seg_length + _DISTANCE_EPSILON_M >= next_threshold
        ):
            fraction = (next_threshold - accumulated) / seg_length if seg_length else 0.0
            fraction = min(1.0, max(0.0, fraction))
            points.append(
                SampledPoint(
                    coordinate=interpolate(seg_start, seg_end, fraction),
                    distance_from_start=next_threshold,
                    heading=_heading_int(seg_start, seg_end),
                    index=len(points),
                    is_key_point=False,
                    type=PointType.SAMPLE,
                )
            )
            next_threshold += sampling_distance

        accumulated += seg_length

    points.append(
        SampledPoint(
            coordinate=route[-1],
            distance_from_start=accumulated,
            heading=_heading_int(route[-2], route[-1]),
            index=len(points),
            is_key_point=True,
            type=PointType.DESTINATION,
        )
    )

    logger.debug(
        "Sampled %d points over %.0fm (every %.0fm)",
        len(points), accumulated, sampling_distance,
    )
    return points


def decimate_points(points: List[SampledPoint], max_points: int) -> List[SampledPoint]:
    """Deterministically thin a sampled sequence down to at most max_points.

    Keeps the first and last points and picks evenly spaced indices in
    between using an integer step of floor((n - 2) / (max_points - 2)).
    """
    n = len(points)
    if n <= max_points:
        return list(points)
    if max_points <= 2:
        return [points[0], points[-1]]

    step = (n - 2) // (max_points - 2)
    limited = [points[0]]
    i = step
    while i < n - 1:
        limited.append(points[i])
        if len(limited) >= max_points - 1:
            break
        i += step
    limited.append(points[-1])
    return limited


def calculate_optimal_heading(route: Sequence[Coordinate], coordinate: Coordinate) -> float:
    """Heading of the route at the vertex nearest to *coordinate*.

    Uses the segment leaving the nearest vertex, or the segment arriving at
    it when the nearest vertex is the last one.  A single-vertex route has
    no direction and returns 0.
    """
    if not route:
        return 0.0

    nearest = min(range(len(route)), key=lambda i: haversine_m(coordinate, route[i]))

    if nearest < len(route) - 1:
        return bearing_deg(route[nearest], route[nearest + 1])
    if nearest > 0:
        return bearing_deg(route[nearest - 1], route[nearest])
    return 0.0
