"""
Google Cloud Vision client for Street View safety features.

Requests label detection, object localization and image properties for an
image URL and reduces the response to the three feature lists the safety
scorer reads: labels, localized objects and dominant colors.

Errors (HTTP failure, provider error, unparseable body) raise
VisionAPIError.  The scorer is responsible for turning that into a neutral
analysis; this module does not degrade silently.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

import requests

from sr_trace import get_trace

logger = logging.getLogger(__name__)

VISION_API_URL = "https://vision.googleapis.com/v1/images:annotate"

MAX_LABELS = 20
MAX_OBJECTS = 20

API_TIMEOUT = 15


class VisionAPIError(Exception):
    """Raised when the Vision API call fails or returns an error payload."""

    pass


@dataclass(frozen=True)
class Label:
    description: str
    score: float          # confidence 0-1


@dataclass(frozen=True)
class LocalizedObject:
    name: str


@dataclass(frozen=True)
class DominantColor:
    red: float
    green: float
    blue: float
    pixel_fraction: float


@dataclass(frozen=True)
class VisionFeatures:
    """Visual features extracted from one image."""
    labels: List[Label] = field(default_factory=list)
    objects: List[LocalizedObject] = field(default_factory=list)
    dominant_colors: List[DominantColor] = field(default_factory=list)

    @classmethod
    def from_response(cls, result: Dict[str, Any]) -> "VisionFeatures":
        """Build from a single ``responses[i]`` entry of images:annotate."""
        labels = [
            Label(description=l.get("description", ""), score=float(l.get("score", 0.0)))
            for l in result.get("labelAnnotations") or []
        ]
        objects = [
            LocalizedObject(name=o.get("name", ""))
            for o in result.get("localizedObjectAnnotations") or []
        ]
        props = result.get("imagePropertiesAnnotation") or {}
        raw_colors = (props.get("dominantColors") or {}).get("colors") or []
        colors = []
        for c in raw_colors:
            rgb = c.get("color") or {}
            colors.append(DominantColor(
                red=float(rgb.get("red", rgb.get("r", 0)) or 0),
                green=float(rgb.get("green", rgb.get("g", 0)) or 0),
                blue=float(rgb.get("blue", rgb.get("b", 0)) or 0),
                pixel_fraction=float(c.get("pixelFraction", c.get("pixel_fraction", 0.0)) or 0.0),
            ))
        return cls(labels=labels, objects=objects, dominant_colors=colors)


class VisionClient:
    """Thin wrapper around images:annotate."""

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.session = requests.Session()
        self.session.trust_env = False

    def annotate(self, image_url: str) -> VisionFeatures:
        """Extract labels, objects and dominant colors from an image URL.

        Raises:
            VisionAPIError: on transport, HTTP or provider errors.
        """
        body = {
            "requests": [
                {
                    "image": {"source": {"imageUri": image_url}},
                    "features": [
                        {"type": "LABEL_DETECTION", "maxResults": MAX_LABELS},
                        {"type": "OBJECT_LOCALIZATION", "maxResults": MAX_OBJECTS},
                        {"type": "IMAGE_PROPERTIES"},
                    ],
                }
            ]
        }

        t0 = time.time()
        try:
            resp = self.session.post(
                VISION_API_URL,
                params={"key": self.api_key},
                json=body,
                timeout=API_TIMEOUT,
            )
        except requests.RequestException as e:
            raise VisionAPIError(f"Vision request failed: {e}") from e
        elapsed_ms = int((time.time() - t0) * 1000)

        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="vision",
                endpoint="annotate",
                elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
                provider_status="OK" if resp.status_code == 200 else "ERROR",
            )

        if resp.status_code != 200:
            raise VisionAPIError(f"Vision API error: {resp.status_code}")

        try:
            data = resp.json()
            result = data["responses"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise VisionAPIError("Vision API returned an unreadable response") from e

        if result.get("error"):
            raise VisionAPIError(result["error"].get("message", "Vision API error"))

        return VisionFeatures.from_response(result)
