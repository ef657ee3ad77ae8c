"""Shared fixtures for the SafeRoute preview test suite.

Provides a Flask test client wired to a temporary SQLite cache, an
in-memory store, and a RoutePreviewService whose Street View and Vision
collaborators are mocks (no network in tests).
"""

import atexit
import os
import tempfile
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

# Point the cache DB at a temp file BEFORE importing app/preview_config
# (they read SAFEROUTE_DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["SAFEROUTE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Keys must be present (/api/preview checks them)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-maps-key-for-tests")
os.environ.setdefault("GOOGLE_CLOUD_VISION_API_KEY", "fake-vision-key-for-tests")

# Tests make many requests from the same address
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"
os.environ["RATE_LIMIT_PREVIEW"] = "10000/minute"

# DELETE /api/cache requires this in the X-Admin-Key header
ADMIN_SECRET = "test-admin-secret"
os.environ["CACHE_ADMIN_SECRET"] = ADMIN_SECRET

from app import app  # noqa: E402
from preview_cache import (  # noqa: E402
    ANALYSIS_NAMESPACE,
    PREVIEW_NAMESPACE,
    STREET_VIEW_NAMESPACE,
    MemoryStore,
    TTLCache,
)
from route_preview import RoutePreviewService  # noqa: E402
from safety_scoring import SafetyScorer  # noqa: E402
from street_view import ImageryResolver, StreetViewClient, StreetViewMetadata  # noqa: E402
from vision_client import DominantColor, Label, LocalizedObject, VisionFeatures  # noqa: E402


# A ~1112 m eastbound route along the equator
EQUATOR_ROUTE = [
    {"latitude": 0.0, "longitude": 0.0},
    {"latitude": 0.0, "longitude": 0.01},
]


def bright_street_features():
    """Daytime street: street light, sidewalk, six people, white image."""
    return VisionFeatures(
        labels=[
            Label("Street light", 0.9),
            Label("Sidewalk", 0.85),
            Label("Person", 0.8),
        ],
        objects=[LocalizedObject("Person") for _ in range(6)],
        dominant_colors=[DominantColor(255, 255, 255, 1.0)],
    )


def dark_alley_features():
    """Night alley: black image, darkness and alley labels, nobody around."""
    return VisionFeatures(
        labels=[Label("Darkness", 0.9), Label("Alley", 0.8)],
        objects=[],
        dominant_colors=[DominantColor(0, 0, 0, 1.0)],
    )


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def street_view_client():
    """StreetViewClient mock reporting imagery everywhere."""
    client = MagicMock(spec=StreetViewClient)
    client.metadata.return_value = StreetViewMetadata(
        available=True, status="OK", pano_id="pano-1", capture_date="2023-06",
    )
    client.image_url.side_effect = (
        lambda coord, heading=0: (
            f"https://maps.test/streetview?location={coord.latitude},{coord.longitude}"
            f"&heading={heading}"
        )
    )
    return client


@pytest.fixture()
def extractor():
    """Vision feature extractor mock returning a bright street."""
    return MagicMock(return_value=bright_street_features())


@pytest.fixture()
def make_service(store, street_view_client, extractor):
    """Factory for a RoutePreviewService over the in-memory store."""
    def _make(clock=None, now=None):
        cache_kwargs = {"now": now} if now else {}
        resolver = ImageryResolver(
            street_view_client,
            TTLCache(store, STREET_VIEW_NAMESPACE),
            delay_s=0,
        )
        scorer = SafetyScorer(
            extractor,
            TTLCache(store, ANALYSIS_NAMESPACE),
            batch_delay_s=0,
        )
        preview_cache = TTLCache(
            store, PREVIEW_NAMESPACE, ttl=timedelta(hours=24), **cache_kwargs,
        )
        service_kwargs = {}
        if clock:
            service_kwargs["clock"] = clock
        if now:
            service_kwargs["now"] = now
        return RoutePreviewService(resolver, scorer, preview_cache, **service_kwargs)
    return _make


@pytest.fixture()
def service(make_service):
    return make_service()


@pytest.fixture()
def client(service, monkeypatch):
    """Flask test client backed by the mocked preview service."""
    import app as app_module
    monkeypatch.setattr(app_module, "preview_service", service)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
