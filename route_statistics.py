"""
Route-level aggregation of per-image safety analyses.

Combines every analyzed sample point of one preview into a single
RouteStatistics: mean overall and sub-scores, the re-derived grade, concerns
annotated with where they occur, up to five distinct positives, the distinct
tips, and the points that scored below the problem threshold.

Errored analyses (AnalysisError) are skipped entirely: they do not enter the
averages, do not contribute text, and never appear as problem segments.
Entries are processed in route order (sample index), so the result does not
depend on the order the caller passes them in.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from preview_config import SCORING_MODEL, grade_for_score
from safety_scoring import AnalysisResult, SafetyAnalysis, ScoreBreakdown
from street_view import ImageDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteConcern:
    concern: str
    location: str      # "{meters}m from start"
    index: int


@dataclass(frozen=True)
class ProblemSegment:
    index: int
    distance: int
    score: float
    main_issues: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RouteStatistics:
    overall_safety_score: float
    grade: str
    color: str
    breakdown: Optional[ScoreBreakdown] = None
    concerns: List[RouteConcern] = field(default_factory=list)
    positives: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    problem_segments: List[ProblemSegment] = field(default_factory=list)
    segment_count: int = 0
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteStatistics":
        breakdown = data.get("breakdown")
        return cls(
            overall_safety_score=data["overall_safety_score"],
            grade=data["grade"],
            color=data["color"],
            breakdown=ScoreBreakdown(**breakdown) if breakdown else None,
            concerns=[RouteConcern(**c) for c in data.get("concerns") or []],
            positives=list(data.get("positives") or []),
            recommendations=list(data.get("recommendations") or []),
            problem_segments=[ProblemSegment(**p) for p in data.get("problem_segments") or []],
            segment_count=data.get("segment_count", 0),
            note=data.get("note"),
        )


def _round1(x: float) -> float:
    return math.floor(x * 10 + 0.5) / 10


def _location(distance_from_start: float) -> str:
    return f"{int(distance_from_start + 0.5)}m from start"


def _unique(items: Sequence[str]) -> List[str]:
    """Order-preserving de-duplication."""
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def neutral_statistics(note: Optional[str] = None) -> RouteStatistics:
    """Statistics for a route with nothing usable to average."""
    n = SCORING_MODEL.neutral_score
    return RouteStatistics(
        overall_safety_score=n,
        grade=SCORING_MODEL.neutral_grade,
        color=SCORING_MODEL.neutral_color,
        breakdown=ScoreBreakdown(
            lighting=n, sidewalk=n, crowd_density=n, isolation=n, building_type=n,
        ),
        note=note,
    )


def calculate_route_statistics(
    entries: Sequence[Tuple[ImageDescriptor, AnalysisResult]],
) -> RouteStatistics:
    """Aggregate (image, analysis) pairs for one route into RouteStatistics."""
    ordered = sorted(entries, key=lambda e: (e[0].index, e[0].distance_from_start))
    valid = [(img, a) for img, a in ordered if isinstance(a, SafetyAnalysis)]

    skipped = len(ordered) - len(valid)
    if skipped:
        logger.info("Route statistics: skipping %d errored analyses", skipped)

    if not valid:
        return neutral_statistics()

    count = len(valid)

    def _mean(values) -> float:
        # fsum is exact, so the mean is independent of input order
        return math.fsum(values) / count

    avg_overall = _mean(a.safety_score.overall for _, a in valid)
    breakdown = ScoreBreakdown(
        lighting=_round1(_mean(a.lighting.score for _, a in valid)),
        sidewalk=_round1(_mean(a.sidewalk.score for _, a in valid)),
        crowd_density=_round1(_mean(a.crowd_density.score for _, a in valid)),
        isolation=_round1(_mean(a.isolation.score for _, a in valid)),
        building_type=_round1(_mean(a.building_type.score for _, a in valid)),
    )
    overall = _round1(avg_overall)
    grade, color = grade_for_score(avg_overall)

    concerns: List[RouteConcern] = []
    positives: List[str] = []
    tips: List[str] = []
    problem_segments: List[ProblemSegment] = []

    for img, analysis in valid:
        recs = analysis.recommendations
        for concern in recs.concerns:
            concerns.append(RouteConcern(
                concern=concern,
                location=_location(img.distance_from_start),
                index=img.index,
            ))
        positives.extend(recs.positives)
        tips.extend(recs.tips)

        if analysis.safety_score.overall < SCORING_MODEL.problem_threshold:
            problem_segments.append(ProblemSegment(
                index=img.index,
                distance=int(img.distance_from_start + 0.5),
                score=analysis.safety_score.overall,
                main_issues=list(recs.concerns),
            ))

    return RouteStatistics(
        overall_safety_score=overall,
        grade=grade,
        color=color,
        breakdown=breakdown,
        concerns=concerns,
        positives=_unique(positives)[:SCORING_MODEL.max_positives],
        recommendations=_unique(tips),
        problem_segments=problem_segments,
        segment_count=count,
    )
