"""
Street View imagery resolution for route sample points.

For each sampled point this module decides whether Google Street View has
imagery there (free metadata endpoint) and, if so, builds the Static API
URL that the analysis stage will hand to Vision.  No image bytes are
downloaded here.

Caching: resolved descriptors are cached forever under
``streetview_{lat:.6f},{lng:.6f},{heading}``.  Negative results are NOT
cached so a point without coverage today can be retried later.  Cache hits
skip both the metadata call and the rate-limit pause.

Failure policy: a metadata failure (network error, bad JSON) marks the
point unavailable; it never aborts the batch.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

from preview_cache import TTLCache
from preview_config import STREET_VIEW_DELAY_S
from route_geometry import Coordinate, PointType, SampledPoint
from sr_trace import get_trace

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

STREET_VIEW_BASE_URL = "https://maps.googleapis.com/maps/api/streetview"
STREET_VIEW_METADATA_URL = "https://maps.googleapis.com/maps/api/streetview/metadata"

GSV_IMAGE_WIDTH = 600
GSV_IMAGE_HEIGHT = 400
GSV_FOV = 90  # field of view in degrees
GSV_PITCH = 0  # level with horizon

API_TIMEOUT = 10

ProgressCallback = Callable[[int, int], None]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class StreetViewMetadata:
    """Availability answer from the metadata endpoint."""
    available: bool
    status: str = ""
    pano_id: Optional[str] = None
    capture_date: Optional[str] = None   # YYYY-MM
    location: Optional[Coordinate] = None


@dataclass(frozen=True)
class ImageDescriptor:
    """A sample point resolved to (possibly absent) Street View imagery."""
    index: int
    coordinate: Coordinate
    distance_from_start: float
    heading: Optional[int]
    type: PointType
    is_key_point: bool
    available: bool
    url: Optional[str] = None
    pano_id: Optional[str] = None
    capture_date: Optional[str] = None
    actual_location: Optional[Coordinate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "coordinate": self.coordinate.to_dict(),
            "distance_from_start": self.distance_from_start,
            "heading": self.heading,
            "type": self.type.value,
            "is_key_point": self.is_key_point,
            "available": self.available,
            "url": self.url,
            "pano_id": self.pano_id,
            "capture_date": self.capture_date,
            "actual_location": (
                self.actual_location.to_dict() if self.actual_location else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageDescriptor":
        actual = data.get("actual_location")
        return cls(
            index=data["index"],
            coordinate=Coordinate.from_dict(data["coordinate"]),
            distance_from_start=data["distance_from_start"],
            heading=data.get("heading"),
            type=PointType(data["type"]),
            is_key_point=data["is_key_point"],
            available=data["available"],
            url=data.get("url"),
            pano_id=data.get("pano_id"),
            capture_date=data.get("capture_date"),
            actual_location=Coordinate.from_dict(actual) if actual else None,
        )


# =============================================================================
# GSV API CLIENT
# =============================================================================

class StreetViewClient:
    """Client for the Street View metadata endpoint and Static API URLs."""

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.session = requests.Session()
        self.session.trust_env = False

    def metadata(self, coordinate: Coordinate) -> StreetViewMetadata:
        """Check Street View availability at a coordinate.

        Never raises for transport or parse errors; those read as
        unavailable.
        """
        params = {
            "location": f"{coordinate.latitude},{coordinate.longitude}",
            "key": self.api_key,
        }
        try:
            t0 = time.time()
            resp = self.session.get(STREET_VIEW_METADATA_URL, params=params, timeout=API_TIMEOUT)
            elapsed = int((time.time() - t0) * 1000)
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Street View metadata request failed at %s: %s", coordinate, e)
            return StreetViewMetadata(available=False, status="REQUEST_FAILED")

        status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="street_view",
                endpoint="gsv_metadata",
                elapsed_ms=elapsed,
                status_code=resp.status_code,
                provider_status=status,
            )

        if status != "OK":
            return StreetViewMetadata(available=False, status=status)

        location = None
        loc = data.get("location")
        if isinstance(loc, dict) and "lat" in loc and "lng" in loc:
            try:
                location = Coordinate(latitude=loc["lat"], longitude=loc["lng"])
            except (TypeError, ValueError):
                location = None

        return StreetViewMetadata(
            available=True,
            status=status,
            pano_id=data.get("pano_id"),
            capture_date=data.get("date"),
            location=location,
        )

    def image_url(self, coordinate: Coordinate, heading: int = 0) -> str:
        return build_image_url(coordinate, heading, self.api_key)


def build_image_url(coordinate: Coordinate, heading: int, api_key: str) -> str:
    """Deterministic Street View Static API URL. No network call."""
    params = {
        "size": f"{GSV_IMAGE_WIDTH}x{GSV_IMAGE_HEIGHT}",
        "location": f"{coordinate.latitude},{coordinate.longitude}",
        "heading": heading,
        "pitch": GSV_PITCH,
        "fov": GSV_FOV,
        "key": api_key,
    }
    return f"{STREET_VIEW_BASE_URL}?{urlencode(params, safe=',')}"


# =============================================================================
# RESOLVER
# =============================================================================

def point_cache_key(point: SampledPoint) -> str:
    """Cache key: coordinate rounded to 6 decimals plus heading."""
    c = point.coordinate
    return f"{c.latitude:.6f},{c.longitude:.6f},{point.heading}"


class ImageryResolver:
    """Resolves sample points to ImageDescriptors, cache first."""

    def __init__(
        self,
        client: StreetViewClient,
        cache: TTLCache,
        delay_s: float = STREET_VIEW_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.cache = cache
        self.delay_s = delay_s
        self._sleep = sleep

    def resolve(self, point: SampledPoint, position: int) -> ImageDescriptor:
        """Resolve one point; ``position`` becomes the descriptor's index."""
        key = point_cache_key(point)
        cached = self.cache.get(key)
        if cached is not None:
            try:
                return replace(ImageDescriptor.from_dict(cached), index=position)
            except (KeyError, TypeError, ValueError):
                logger.warning("Discarding malformed Street View cache entry %s", key)

        meta = self.client.metadata(point.coordinate)
        if not meta.available:
            logger.info(
                "Street View not available at point %d (%s) status=%s",
                position, point.coordinate, meta.status,
            )
            descriptor = ImageDescriptor(
                index=position,
                coordinate=point.coordinate,
                distance_from_start=point.distance_from_start,
                heading=point.heading,
                type=point.type,
                is_key_point=point.is_key_point,
                available=False,
            )
        else:
            heading = point.heading or 0
            descriptor = ImageDescriptor(
                index=position,
                coordinate=point.coordinate,
                distance_from_start=point.distance_from_start,
                heading=heading,
                type=point.type,
                is_key_point=point.is_key_point,
                available=True,
                url=self.client.image_url(point.coordinate, heading),
                pano_id=meta.pano_id,
                capture_date=meta.capture_date,
                actual_location=meta.location,
            )
            self.cache.put(key, descriptor.to_dict())

        # Rate-limit pause for the network-bound path only
        if self.delay_s > 0:
            self._sleep(self.delay_s)
        return descriptor

    def resolve_all(
        self,
        points: List[SampledPoint],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ImageDescriptor]:
        """Resolve points sequentially, reporting (current, total) after each."""
        total = len(points)
        images = []
        for i, point in enumerate(points):
            images.append(self.resolve(point, i))
            if on_progress:
                on_progress(i + 1, total)
        return images

    def cached_image_count(self) -> int:
        return self.cache.count()

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        logger.info("Cleared %d Street View cache entries", removed)
        return removed
