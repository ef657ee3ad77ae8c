"""
Scoring model and runtime configuration for SafeRoute previews.

Owns every numeric constant that affects a route safety score: sub-score
weights, grade bands, keyword vocabularies, the problem-segment threshold,
and the fallback-preview parameters.  Runtime settings (API keys, cache
path, pipeline defaults) are read from the environment at import time.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class SafetyWeights:
    """Contribution of each sub-score to the overall 1-10 score."""
    lighting: float
    sidewalk: float
    crowd_density: float
    isolation: float
    building_type: float

    def total(self) -> float:
        return (
            self.lighting + self.sidewalk + self.crowd_density
            + self.isolation + self.building_type
        )


@dataclass(frozen=True)
class GradeBand:
    """Maps a minimum overall score to a grade label and color token."""
    threshold: float
    grade: str
    color: str


@dataclass(frozen=True)
class KeywordSets:
    """Label vocabularies matched (case-insensitive substring) against
    Vision label descriptions."""
    lighting: Tuple[str, ...]
    sidewalk: Tuple[str, ...]
    people: Tuple[str, ...]
    negative: Tuple[str, ...]
    commercial: Tuple[str, ...]


@dataclass(frozen=True)
class SubScoreValues:
    """Fixed score values used by the rule-based sub-scores."""
    sidewalk_detected: float = 8.0
    sidewalk_missing: float = 3.0
    crowd_high: float = 9.0
    crowd_moderate: float = 6.0
    crowd_low: float = 3.0
    crowd_high_count: int = 5
    crowd_moderate_count: int = 2
    crowd_high_confidence: float = 0.7
    crowd_moderate_confidence: float = 0.4
    isolation_default: float = 7.0
    isolation_flag_below: float = 5.0
    building_neutral: float = 5.0
    brightness_default: float = 5.0
    level_bright: float = 7.0
    level_moderate: float = 4.0


@dataclass(frozen=True)
class FallbackConfig:
    """Parameters of the degraded (no AI scoring) preview path."""
    sampling_distance_m: float = 300.0
    max_points: int = 5
    grade: str = "Unknown - Limited Preview"
    positives: Tuple[str, ...] = ("Street View images available",)
    recommendations: Tuple[str, ...] = (
        "Full AI analysis unavailable - manual review recommended",
    )


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    weights: SafetyWeights
    grade_bands: Tuple[GradeBand, ...]
    keywords: KeywordSets
    values: SubScoreValues
    problem_threshold: float
    max_positives: int
    neutral_score: float
    neutral_grade: str
    neutral_color: str
    fallback: FallbackConfig


# =============================================================================
# Pure helpers
# =============================================================================

def grade_for_score(score: float, bands: Optional[Tuple[GradeBand, ...]] = None) -> Tuple[str, str]:
    """Return (grade, color) for an overall 1-10 score.

    Bands are evaluated highest-threshold first; the first band whose
    threshold <= score wins.  Callers pass the unrounded score, so 7.49
    grades Good even though it displays as 7.5.
    """
    # 9 places drops float noise from weighted sums (5.9999999999 -> 6.0)
    score = round(score, 9)
    for band in bands or SCORING_MODEL.grade_bands:
        if score >= band.threshold:
            return band.grade, band.color
    last = (bands or SCORING_MODEL.grade_bands)[-1]
    return last.grade, last.color


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

SCORING_MODEL = ScoringModel(
    version="1.0.0",

    weights=SafetyWeights(
        lighting=0.30,
        sidewalk=0.20,
        crowd_density=0.25,
        isolation=0.15,
        building_type=0.10,
    ),

    grade_bands=(
        GradeBand(7.5, "Excellent", "#4CAF50"),
        GradeBand(6.0, "Good", "#8BC34A"),
        GradeBand(4.5, "Moderate", "#FFC107"),
        GradeBand(3.0, "Fair", "#FF9800"),
        GradeBand(float("-inf"), "Poor", "#FF5252"),
    ),

    keywords=KeywordSets(
        lighting=(
            "street light", "lamp post", "light", "illuminated",
            "bright", "daylight", "well lit",
        ),
        sidewalk=("sidewalk", "footpath", "pavement", "walkway", "pedestrian zone"),
        people=("person", "people", "pedestrian", "crowd", "group"),
        negative=(
            "dark", "darkness", "forest", "wilderness", "isolated",
            "abandoned", "overgrown", "dense vegetation", "alley", "tunnel",
        ),
        commercial=(
            "store", "shop", "commercial", "business", "restaurant",
            "cafe", "retail",
        ),
    ),

    values=SubScoreValues(),

    problem_threshold=4.0,
    max_positives=5,

    neutral_score=5.0,
    neutral_grade="Unknown",
    neutral_color="#9E9E9E",

    fallback=FallbackConfig(),
)

# Validate weights at import time (ValueError, not assert, so validation is
# never stripped by python -O).
if abs(SCORING_MODEL.weights.total() - 1.0) >= 0.001:
    raise ValueError(
        f"Safety weights sum to {SCORING_MODEL.weights.total()}, expected 1.0"
    )


# =============================================================================
# Runtime settings (environment)
# =============================================================================

GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY", "")
GOOGLE_CLOUD_VISION_API_KEY = os.environ.get("GOOGLE_CLOUD_VISION_API_KEY", "")

DB_PATH = os.environ.get("SAFEROUTE_DB_PATH", "saferoute.db")

DEFAULT_TIMEOUT_MS = int(os.environ.get("PREVIEW_TIMEOUT_MS", "30000"))
DEFAULT_MAX_POINTS = int(os.environ.get("PREVIEW_MAX_POINTS", "10"))
DEFAULT_SAMPLING_DISTANCE_M = float(
    os.environ.get("PREVIEW_SAMPLING_DISTANCE_M", "200")
)

# Accepted ranges for caller-supplied options on the HTTP API. The timeout
# ceiling stays under the gunicorn worker timeout.
SAMPLING_DISTANCE_RANGE_M = (10.0, 5000.0)
MAX_POINTS_RANGE = (2, 50)
TIMEOUT_MS_RANGE = (1000, 60000)

# Shared secret for DELETE /api/cache. Unset means the endpoint is closed.
CACHE_ADMIN_SECRET = os.environ.get("CACHE_ADMIN_SECRET", "")

# Preview cache lifetime, measured from the preview's generated_at.
PREVIEW_TTL_SECONDS = 24 * 60 * 60

# Floor for the per-image analysis budget (seconds).
MIN_ANALYSIS_BUDGET_S = 3.0

# Pause after each network-bound resolution / analysis (seconds).
STREET_VIEW_DELAY_S = 0.1
VISION_BATCH_DELAY_S = 0.5
