"""
Safety scoring for a single Street View image.

Turns the visual features Vision extracts from one image (labels, localized
objects, dominant colors) into five sub-scores on a 1-10 scale, a weighted
overall score with a letter grade, and a short list of positives, concerns
and tips.

Sub-scores:
  - Lighting: perceived brightness of the dominant colors
    (0.299R + 0.587G + 0.114B, pixel-fraction weighted, scaled to 0-10)
    averaged with 10 x the mean confidence of lighting labels.
  - Sidewalk: 8 when a sidewalk-like label is present, otherwise 3.
  - Crowd density: person/pedestrian objects plus crowd labels;
    high (9), moderate (6) or low (3).
  - Isolation: 10 - 10 x confidence of negative-context labels (floor 1);
    7 when no negative label is present.
  - Building type: 5 + 5 x confidence of commercial labels (cap 10);
    neutral 5 otherwise.

Overall = weighted sum (weights in preview_config.SCORING_MODEL), rounded to
one decimal for display.  The grade is read from the unrounded weighted sum.

Scores are cached by image URL forever.  Any failure of the upstream
feature extraction is converted to an AnalysisError carrying a neutral
score; nothing raised by the extractor escapes SafetyScorer.analyze().
"""

import hashlib
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from preview_cache import TTLCache
from preview_config import SCORING_MODEL, VISION_BATCH_DELAY_S, grade_for_score
from vision_client import DominantColor, Label, LocalizedObject, VisionFeatures

logger = logging.getLogger(__name__)

_KEYWORDS = SCORING_MODEL.keywords
_VALUES = SCORING_MODEL.values

LEVEL_BRIGHT = "bright"
LEVEL_MODERATE = "moderate"
LEVEL_POOR = "poor"

DENSITY_HIGH = "high"
DENSITY_MODERATE = "moderate"
DENSITY_LOW = "low"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class LabelMatch:
    """A Vision label that matched one of the keyword vocabularies."""
    label: str
    confidence: float


@dataclass(frozen=True)
class LightingScore:
    score: float
    level: str                 # "bright" / "moderate" / "poor"
    brightness: int            # average perceived brightness, 0-255
    confidence: float          # mean confidence of lighting labels
    features: List[LabelMatch] = field(default_factory=list)


@dataclass(frozen=True)
class SidewalkScore:
    score: float
    detected: bool
    confidence: float
    features: List[LabelMatch] = field(default_factory=list)


@dataclass(frozen=True)
class CrowdDensityScore:
    score: float
    density: str               # "high" / "moderate" / "low"
    person_count: int
    confidence: float
    indicators: List[LabelMatch] = field(default_factory=list)


@dataclass(frozen=True)
class IsolationScore:
    score: float
    isolated: bool
    concerns: List[LabelMatch] = field(default_factory=list)


@dataclass(frozen=True)
class BuildingTypeScore:
    score: float
    commercial: bool
    features: List[LabelMatch] = field(default_factory=list)


@dataclass(frozen=True)
class ScoreBreakdown:
    """The five sub-scores side by side."""
    lighting: float
    sidewalk: float
    crowd_density: float
    isolation: float
    building_type: float


@dataclass(frozen=True)
class SafetyScore:
    overall: float
    grade: str
    color: str
    breakdown: Optional[ScoreBreakdown] = None


@dataclass(frozen=True)
class Recommendations:
    positives: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)
    tips: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SafetyAnalysis:
    """Complete analysis of one image."""
    lighting: LightingScore
    sidewalk: SidewalkScore
    crowd_density: CrowdDensityScore
    isolation: IsolationScore
    building_type: BuildingTypeScore
    safety_score: SafetyScore
    recommendations: Recommendations
    raw_data: Dict[str, Any] = field(default_factory=dict)

    error = None  # uniform access with AnalysisError

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AnalysisError:
    """Stand-in for an image that could not be analyzed."""
    error: str
    safety_score: SafetyScore

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AnalysisResult = Union[SafetyAnalysis, AnalysisError]


def neutral_error(message: str) -> AnalysisError:
    """AnalysisError with the neutral fallback score (5 / Unknown / gray)."""
    return AnalysisError(
        error=message,
        safety_score=SafetyScore(
            overall=SCORING_MODEL.neutral_score,
            grade=SCORING_MODEL.neutral_grade,
            color=SCORING_MODEL.neutral_color,
        ),
    )


# =============================================================================
# DESERIALIZATION
# =============================================================================

def _matches(items: Optional[Sequence[Dict[str, Any]]]) -> List[LabelMatch]:
    return [LabelMatch(**m) for m in items or []]


def _safety_score_from_dict(data: Dict[str, Any]) -> SafetyScore:
    breakdown = data.get("breakdown")
    return SafetyScore(
        overall=data["overall"],
        grade=data["grade"],
        color=data["color"],
        breakdown=ScoreBreakdown(**breakdown) if breakdown else None,
    )


def analysis_from_dict(data: Dict[str, Any]) -> AnalysisResult:
    """Rebuild a SafetyAnalysis or AnalysisError from its to_dict() form."""
    if data.get("error"):
        return AnalysisError(
            error=data["error"],
            safety_score=_safety_score_from_dict(data["safety_score"]),
        )

    lighting = dict(data["lighting"], features=_matches(data["lighting"].get("features")))
    sidewalk = dict(data["sidewalk"], features=_matches(data["sidewalk"].get("features")))
    crowd = dict(
        data["crowd_density"],
        indicators=_matches(data["crowd_density"].get("indicators")),
    )
    isolation = dict(data["isolation"], concerns=_matches(data["isolation"].get("concerns")))
    building = dict(
        data["building_type"],
        features=_matches(data["building_type"].get("features")),
    )
    return SafetyAnalysis(
        lighting=LightingScore(**lighting),
        sidewalk=SidewalkScore(**sidewalk),
        crowd_density=CrowdDensityScore(**crowd),
        isolation=IsolationScore(**isolation),
        building_type=BuildingTypeScore(**building),
        safety_score=_safety_score_from_dict(data["safety_score"]),
        recommendations=Recommendations(**data["recommendations"]),
        raw_data=data.get("raw_data") or {},
    )


# =============================================================================
# SCORING HELPERS
# =============================================================================

def _round1(x: float) -> float:
    # floor(x + 0.5) rather than round() to avoid banker's rounding at .x5
    return math.floor(x * 10 + 0.5) / 10


def match_labels(labels: Sequence[Label], keywords: Sequence[str]) -> Tuple[List[LabelMatch], float]:
    """Labels whose description contains any keyword, and their mean confidence.

    Matching is a case-insensitive substring test.  Mean confidence is 0
    when nothing matched.
    """
    matches = []
    for label in labels:
        description = label.description.lower()
        if any(k.lower() in description for k in keywords):
            matches.append(LabelMatch(label=label.description, confidence=label.score))
    confidence = sum(m.confidence for m in matches) / (len(matches) or 1)
    return matches, confidence


def analyze_brightness(colors: Sequence[DominantColor]) -> Tuple[float, str, int]:
    """Brightness score (0-10), level, and average perceived brightness (0-255).

    With no color data the image reads as moderately lit (score 5).
    """
    if not colors:
        return _VALUES.brightness_default, LEVEL_MODERATE, 0

    total_brightness = 0.0
    total_fraction = 0.0
    for c in colors:
        perceived = 0.299 * c.red + 0.587 * c.green + 0.114 * c.blue
        total_brightness += perceived * c.pixel_fraction
        total_fraction += c.pixel_fraction

    avg = total_brightness / (total_fraction or 1)
    score = _round1(avg / 255 * 10)

    if score >= _VALUES.level_bright:
        level = LEVEL_BRIGHT
    elif score >= _VALUES.level_moderate:
        level = LEVEL_MODERATE
    else:
        level = LEVEL_POOR

    return score, level, int(avg + 0.5)


def score_lighting(features: VisionFeatures) -> LightingScore:
    brightness_score, level, avg_brightness = analyze_brightness(features.dominant_colors)
    matches, confidence = match_labels(features.labels, _KEYWORDS.lighting)
    score = min(10.0, (brightness_score + confidence * 10) / 2)
    return LightingScore(
        score=_round1(score),
        level=level,
        brightness=avg_brightness,
        confidence=confidence,
        features=matches,
    )


def score_sidewalk(features: VisionFeatures) -> SidewalkScore:
    matches, confidence = match_labels(features.labels, _KEYWORDS.sidewalk)
    detected = bool(matches)
    return SidewalkScore(
        score=_VALUES.sidewalk_detected if detected else _VALUES.sidewalk_missing,
        detected=detected,
        confidence=confidence,
        features=matches,
    )


def score_crowd_density(features: VisionFeatures) -> CrowdDensityScore:
    person_count = sum(
        1 for o in features.objects
        if "person" in o.name.lower() or "pedestrian" in o.name.lower()
    )
    matches, confidence = match_labels(features.labels, _KEYWORDS.people)

    if person_count >= _VALUES.crowd_high_count or confidence > _VALUES.crowd_high_confidence:
        density, score = DENSITY_HIGH, _VALUES.crowd_high
    elif person_count >= _VALUES.crowd_moderate_count or confidence > _VALUES.crowd_moderate_confidence:
        density, score = DENSITY_MODERATE, _VALUES.crowd_moderate
    else:
        density, score = DENSITY_LOW, _VALUES.crowd_low

    return CrowdDensityScore(
        score=score,
        density=density,
        person_count=person_count,
        confidence=confidence,
        indicators=matches,
    )


def score_isolation(features: VisionFeatures) -> IsolationScore:
    """Absence of negative context scores 7, a mild positive, not neutral."""
    matches, confidence = match_labels(features.labels, _KEYWORDS.negative)
    if matches:
        score = max(1.0, 10 - confidence * 10)
    else:
        score = _VALUES.isolation_default
    return IsolationScore(
        score=_round1(score),
        isolated=score < _VALUES.isolation_flag_below,
        concerns=matches,
    )


def score_building_type(features: VisionFeatures) -> BuildingTypeScore:
    matches, confidence = match_labels(features.labels, _KEYWORDS.commercial)
    if matches:
        score = min(10.0, 5 + confidence * 5)
    else:
        score = _VALUES.building_neutral
    return BuildingTypeScore(
        score=_round1(score),
        commercial=bool(matches),
        features=matches,
    )


def compute_safety_score(breakdown: ScoreBreakdown) -> SafetyScore:
    """Weighted overall score and grade from the five sub-scores."""
    w = SCORING_MODEL.weights
    weighted = (
        breakdown.lighting * w.lighting
        + breakdown.sidewalk * w.sidewalk
        + breakdown.crowd_density * w.crowd_density
        + breakdown.isolation * w.isolation
        + breakdown.building_type * w.building_type
    )
    overall = _round1(weighted)
    grade, color = grade_for_score(weighted)
    return SafetyScore(overall=overall, grade=grade, color=color, breakdown=breakdown)


def generate_recommendations(
    lighting: LightingScore,
    sidewalk: SidewalkScore,
    crowd: CrowdDensityScore,
    isolation: IsolationScore,
    building: BuildingTypeScore,
) -> Recommendations:
    """Rule-based positives / concerns / tips, in rule order."""
    positives: List[str] = []
    concerns: List[str] = []
    tips: List[str] = []

    if lighting.score >= 7:
        positives.append("Well-lit area with good visibility")
    elif lighting.score < 4:
        concerns.append("Poor lighting conditions")
        tips.append("Consider using this route during daylight hours")

    if sidewalk.detected:
        positives.append("Sidewalk available for pedestrians")
    else:
        concerns.append("No clear sidewalk detected")
        tips.append("Walk facing traffic if using roadway")

    if crowd.density == DENSITY_HIGH:
        positives.append("High foot traffic - well-populated area")
    elif crowd.density == DENSITY_LOW:
        concerns.append("Low pedestrian activity")
        tips.append("Stay alert and avoid distractions")

    if isolation.isolated:
        concerns.append("Isolated or secluded area")
        tips.append("Consider walking with a companion")

    if building.commercial:
        positives.append("Commercial area with businesses nearby")

    return Recommendations(positives=positives, concerns=concerns, tips=tips)


def _raw_data(features: VisionFeatures) -> Dict[str, Any]:
    return {
        "labels": [asdict(l) for l in features.labels[:10]],
        "objects": [asdict(o) for o in features.objects[:5]],
        "dominant_colors": [asdict(c) for c in features.dominant_colors[:3]],
    }


def analyze_features(features: VisionFeatures) -> SafetyAnalysis:
    """Score one image's visual features. Pure; no I/O."""
    lighting = score_lighting(features)
    sidewalk = score_sidewalk(features)
    crowd = score_crowd_density(features)
    isolation = score_isolation(features)
    building = score_building_type(features)

    breakdown = ScoreBreakdown(
        lighting=lighting.score,
        sidewalk=sidewalk.score,
        crowd_density=crowd.score,
        isolation=isolation.score,
        building_type=building.score,
    )

    return SafetyAnalysis(
        lighting=lighting,
        sidewalk=sidewalk,
        crowd_density=crowd,
        isolation=isolation,
        building_type=building,
        safety_score=compute_safety_score(breakdown),
        recommendations=generate_recommendations(lighting, sidewalk, crowd, isolation, building),
        raw_data=_raw_data(features),
    )


# =============================================================================
# SCORER (cache + failure boundary)
# =============================================================================

FeatureExtractor = Callable[[str], VisionFeatures]


def analysis_cache_key(image_url: str) -> str:
    """Deterministic cache key for an image URL."""
    return hashlib.sha256(image_url.encode()).hexdigest()


class SafetyScorer:
    """Scores images by URL, caching successful analyses indefinitely.

    ``extractor`` is any callable url -> VisionFeatures (normally
    VisionClient.annotate).
    """

    def __init__(
        self,
        extractor: FeatureExtractor,
        cache: TTLCache,
        batch_delay_s: float = VISION_BATCH_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.extractor = extractor
        self.cache = cache
        self.batch_delay_s = batch_delay_s
        self._sleep = sleep

    def cached(self, image_url: str) -> Optional[SafetyAnalysis]:
        data = self.cache.get(analysis_cache_key(image_url))
        if data is None:
            return None
        try:
            result = analysis_from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed analysis cache entry for %s", image_url)
            return None
        return result if isinstance(result, SafetyAnalysis) else None

    def analyze(self, image_url: str) -> AnalysisResult:
        """Analyze one image. Never raises; failures become AnalysisError."""
        hit = self.cached(image_url)
        if hit is not None:
            return hit

        try:
            features = self.extractor(image_url)
            analysis = analyze_features(features)
        except Exception as e:
            logger.warning("Image analysis failed: %s", e, exc_info=True)
            return neutral_error(str(e) or type(e).__name__)

        self.cache.put(analysis_cache_key(image_url), analysis.to_dict())
        return analysis

    def analyze_batch(
        self,
        image_urls: Sequence[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[AnalysisResult]:
        """Analyze images one after another with a pause between uncached calls."""
        results = []
        total = len(image_urls)
        for i, url in enumerate(image_urls):
            was_cached = self.cached(url) is not None
            results.append(self.analyze(url))
            if on_progress:
                on_progress(i + 1, total)
            if not was_cached and self.batch_delay_s > 0 and i < total - 1:
                self._sleep(self.batch_delay_s)
        return results

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        logger.info("Cleared %d cached analyses", removed)
        return removed
