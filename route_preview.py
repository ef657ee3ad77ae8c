"""
Route safety preview orchestration.

Drives one preview request end to end:

    sampling -> fetching -> analyzing -> finalizing -> done
                     (any stage may exit to failed)

  1. Cache check by rounded start/end coordinates; a live hit (< 24 h old,
     measured from generated_at) is returned without any other work.
  2. Sample the route and decimate to max_points.
  3. Resolve Street View imagery for every point, the whole batch raced
     against the remaining wall-clock budget.  Running out of time here is
     fatal (PreviewTimeoutError): no partial fetch results.
  4. Keep only points with imagery; none left is fatal (NoImageryError).
  5. Score each image sequentially, each against its own budget of
     max(3 s, remaining / images_left), recomputed per image.  A failed or
     timed-out analysis degrades to a neutral AnalysisError and the loop
     continues; crossing the global deadline stops the loop early and keeps
     what was analyzed.
  6. Aggregate into RouteStatistics.
  7. Assemble, cache and return the RoutePreview.

When the full pipeline fails, callers can ask for a fallback preview:
coarser sampling, at most five points, imagery only, neutral statistics.

Collaborators (imagery resolver, safety scorer, preview cache) are passed to
RoutePreviewService explicitly; build_default_service() wires the production
ones from environment settings.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from preview_cache import (
    ANALYSIS_NAMESPACE,
    PREVIEW_NAMESPACE,
    STREET_VIEW_NAMESPACE,
    KeyValueStore,
    SQLiteStore,
    TTLCache,
)
from preview_config import (
    DEFAULT_MAX_POINTS,
    DEFAULT_SAMPLING_DISTANCE_M,
    DEFAULT_TIMEOUT_MS,
    GOOGLE_CLOUD_VISION_API_KEY,
    GOOGLE_MAPS_API_KEY,
    MIN_ANALYSIS_BUDGET_S,
    PREVIEW_TTL_SECONDS,
    SCORING_MODEL,
)
from route_geometry import Coordinate, decimate_points, sample_route_points
from route_statistics import RouteStatistics, calculate_route_statistics, neutral_statistics
from safety_scoring import AnalysisResult, SafetyScorer, analysis_from_dict, neutral_error
from sr_trace import get_trace, set_trace
from street_view import ImageDescriptor, ImageryResolver, StreetViewClient
from vision_client import VisionClient

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class PreviewError(Exception):
    """A failure that ends preview generation for the whole route."""

    pass


class PreviewTimeoutError(PreviewError):
    """The imagery fetch stage did not finish within the time budget."""

    pass


class NoImageryError(PreviewError):
    """None of the sampled points has Street View imagery."""

    pass


class _BatchAbandoned(Exception):
    """Stops a fetch batch whose result nobody is waiting for."""

    pass


# =============================================================================
# DATA CLASSES
# =============================================================================

class PipelineStage(Enum):
    SAMPLING = "sampling"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification delivered to on_progress callbacks."""
    stage: str
    progress: float               # 0-1 within the stage
    current: Optional[int] = None
    total: Optional[int] = None


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class PreviewPoint:
    """A resolved sample point and its analysis (None when not analyzed)."""
    image: ImageDescriptor
    analysis: Optional[AnalysisResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.image.to_dict()
        data["analysis"] = self.analysis.to_dict() if self.analysis is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreviewPoint":
        analysis = data.get("analysis")
        return cls(
            image=ImageDescriptor.from_dict(data),
            analysis=analysis_from_dict(analysis) if analysis else None,
        )


@dataclass(frozen=True)
class PreviewMetadata:
    generated_at: datetime
    total_points: int
    analyzed_points: int
    sampling_distance: float
    generation_time_ms: int
    fallback_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "total_points": self.total_points,
            "analyzed_points": self.analyzed_points,
            "sampling_distance": self.sampling_distance,
            "generation_time_ms": self.generation_time_ms,
            "fallback_mode": self.fallback_mode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreviewMetadata":
        generated_at = datetime.fromisoformat(data["generated_at"])
        if generated_at.tzinfo is None:
            generated_at = generated_at.replace(tzinfo=timezone.utc)
        return cls(
            generated_at=generated_at,
            total_points=data["total_points"],
            analyzed_points=data["analyzed_points"],
            sampling_distance=data["sampling_distance"],
            generation_time_ms=data["generation_time_ms"],
            fallback_mode=data.get("fallback_mode", False),
        )


@dataclass(frozen=True)
class RoutePreview:
    route_coordinates: List[Coordinate]
    sampled_points: List[PreviewPoint]
    statistics: RouteStatistics
    metadata: PreviewMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_coordinates": [c.to_dict() for c in self.route_coordinates],
            "sampled_points": [p.to_dict() for p in self.sampled_points],
            "statistics": self.statistics.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutePreview":
        return cls(
            route_coordinates=[Coordinate.from_dict(c) for c in data["route_coordinates"]],
            sampled_points=[PreviewPoint.from_dict(p) for p in data["sampled_points"]],
            statistics=RouteStatistics.from_dict(data["statistics"]),
            metadata=PreviewMetadata.from_dict(data["metadata"]),
        )


# =============================================================================
# HELPERS
# =============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_route(coordinates: Sequence[Any]) -> List[Coordinate]:
    """Validate and convert caller input into a Coordinate list."""
    if not coordinates or len(coordinates) < 2:
        raise ValueError("A route needs at least 2 coordinates")
    return [Coordinate.from_dict(c) for c in coordinates]


def route_cache_key(route: Sequence[Coordinate]) -> str:
    """Key from start/end coordinates rounded to 4 decimals (~11 m)."""
    start, end = route[0], route[-1]
    return (
        f"{start.latitude:.4f}_{start.longitude:.4f}_"
        f"{end.latitude:.4f}_{end.longitude:.4f}"
    )


def _run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run fn in a worker thread and wait at most timeout_s for it.

    Raises concurrent.futures.TimeoutError when the budget runs out.  The
    worker is not interrupted; its eventual result is discarded.  The
    caller's trace context is carried into the worker.
    """
    parent_trace = get_trace()

    def _call():
        set_trace(parent_trace)
        return fn()

    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(_call)
        return future.result(timeout=max(0.0, timeout_s))
    finally:
        pool.shutdown(wait=False)


def is_valid_preview(preview: Union["RoutePreview", Dict[str, Any], None]) -> bool:
    """True iff the preview has at least one point, statistics and metadata."""
    if preview is None:
        return False
    if isinstance(preview, dict):
        return bool(
            preview.get("sampled_points")
            and preview.get("statistics")
            and preview.get("metadata")
        )
    return bool(
        preview.sampled_points
        and preview.statistics is not None
        and preview.metadata is not None
    )


def preview_summary(preview: Optional[RoutePreview]) -> Optional[Dict[str, Any]]:
    """Compact headline numbers for list views."""
    if not is_valid_preview(preview):
        return None
    stats = preview.statistics
    return {
        "safety_score": stats.overall_safety_score,
        "grade": stats.grade,
        "color": stats.color,
        "concern_count": len(stats.concerns),
        "positive_count": len(stats.positives),
        "problem_segment_count": len(stats.problem_segments),
        "analyzed_points": preview.metadata.analyzed_points,
        "generated_at": preview.metadata.generated_at.isoformat(),
        "fallback_mode": preview.metadata.fallback_mode,
    }


# =============================================================================
# SINGLE RUN (state machine)
# =============================================================================

class _PreviewRun:
    """State for one generate_preview() call."""

    def __init__(
        self,
        service: "RoutePreviewService",
        route: List[Coordinate],
        sampling_distance: float,
        max_points: int,
        timeout_ms: int,
        on_progress: Optional[ProgressCallback],
    ):
        self.service = service
        self.route = route
        self.sampling_distance = sampling_distance
        self.max_points = max_points
        self.timeout_s = timeout_ms / 1000.0
        self.on_progress = on_progress
        self.state = PipelineStage.SAMPLING
        self.started = service.clock()

    def _elapsed(self) -> float:
        return self.service.clock() - self.started

    def _remaining(self) -> float:
        return self.timeout_s - self._elapsed()

    def _emit(self, stage: PipelineStage, progress: float,
              current: Optional[int] = None, total: Optional[int] = None):
        if self.on_progress:
            self.on_progress(ProgressEvent(stage.value, progress, current, total))

    def _enter(self, stage: PipelineStage):
        logger.debug("Preview stage %s -> %s", self.state.value, stage.value)
        self.state = stage

    def run(self) -> RoutePreview:
        trace = get_trace()
        try:
            preview = self._run(trace)
        except Exception:
            self._enter(PipelineStage.FAILED)
            raise
        self._enter(PipelineStage.DONE)
        return preview

    def _stage(self, trace, stage: PipelineStage):
        self._enter(stage)
        if trace:
            return trace.stage(stage.value)
        return _NullStage()

    def _run(self, trace) -> RoutePreview:
        # 1. Sampling
        with self._stage(trace, PipelineStage.SAMPLING):
            self._emit(PipelineStage.SAMPLING, 0.0)
            sampled = sample_route_points(self.route, self.sampling_distance)
            points = decimate_points(sampled, self.max_points)

        # 2. Fetching (hard timeout)
        with self._stage(trace, PipelineStage.FETCHING):
            images = self._fetch(points)
            available = [img for img in images if img.available]
            if not available:
                raise NoImageryError("No Street View imagery available for this route")

        # 3. Analyzing (soft per-image timeouts)
        with self._stage(trace, PipelineStage.ANALYZING):
            entries = self._analyze(available)

        # 4. Finalizing
        with self._stage(trace, PipelineStage.FINALIZING):
            self._emit(PipelineStage.FINALIZING, 1.0)
            statistics = calculate_route_statistics(entries)

        preview = RoutePreview(
            route_coordinates=list(self.route),
            sampled_points=[PreviewPoint(image=img, analysis=a) for img, a in entries],
            statistics=statistics,
            metadata=PreviewMetadata(
                generated_at=self.service.now(),
                total_points=len(points),
                analyzed_points=len(entries),
                sampling_distance=self.sampling_distance,
                generation_time_ms=int(self._elapsed() * 1000),
            ),
        )
        self.service.cache_preview(preview)
        logger.info(
            "Route preview: score=%.1f grade=%s points=%d/%d (%dms)",
            statistics.overall_safety_score, statistics.grade,
            len(entries), len(points), preview.metadata.generation_time_ms,
        )
        return preview

    def _fetch(self, points) -> List[ImageDescriptor]:
        self._emit(PipelineStage.FETCHING, 0.0)
        abandoned = [False]

        def _progress(current: int, total: int):
            if abandoned[0]:
                raise _BatchAbandoned()
            self._emit(PipelineStage.FETCHING, current / total, current, total)

        try:
            return _run_with_timeout(
                lambda: self.service.resolver.resolve_all(points, _progress),
                self._remaining(),
            )
        except FutureTimeoutError:
            abandoned[0] = True
            raise PreviewTimeoutError(
                f"Timeout fetching images after {self.timeout_s * 1000:.0f}ms"
            )

    def _analyze(self, images: List[ImageDescriptor]) -> List[Tuple[ImageDescriptor, AnalysisResult]]:
        self._emit(PipelineStage.ANALYZING, 0.0)
        results: List[Tuple[ImageDescriptor, AnalysisResult]] = []
        total = len(images)

        for i, image in enumerate(images):
            self._emit(PipelineStage.ANALYZING, i / total, i + 1, total)

            budget = max(MIN_ANALYSIS_BUDGET_S, self._remaining() / (total - i))
            try:
                analysis = _run_with_timeout(
                    lambda url=image.url: self.service.scorer.analyze(url),
                    budget,
                )
            except FutureTimeoutError:
                logger.warning("Analysis of image %d timed out after %.1fs", i, budget)
                analysis = neutral_error("Analysis timeout")
            except Exception as e:
                logger.warning("Failed to analyze image %d: %s", i, e, exc_info=True)
                analysis = neutral_error(str(e) or type(e).__name__)
            results.append((image, analysis))

            if self._elapsed() > self.timeout_s:
                logger.warning(
                    "Preview generation timeout reached after %d/%d images", i + 1, total,
                )
                break

        return results


class _NullStage:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


# =============================================================================
# SERVICE
# =============================================================================

class RoutePreviewService:
    """Generates, caches and invalidates route safety previews."""

    def __init__(
        self,
        resolver: ImageryResolver,
        scorer: SafetyScorer,
        preview_cache: TTLCache,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.resolver = resolver
        self.scorer = scorer
        self.preview_cache = preview_cache
        self.clock = clock
        self.now = now

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cached_preview(self, coordinates: Sequence[Any]) -> Optional[RoutePreview]:
        """Live cached preview for the route's endpoints, or None."""
        try:
            route = coerce_route(coordinates)
        except ValueError:
            return None
        data = self.preview_cache.get(route_cache_key(route))
        if data is None:
            return None
        try:
            preview = RoutePreview.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed cached preview", exc_info=True)
            return None
        # Age always counts from generated_at, whatever the store recorded.
        age = self.now() - preview.metadata.generated_at
        if age >= timedelta(seconds=PREVIEW_TTL_SECONDS):
            return None
        return preview

    def cache_preview(self, preview: RoutePreview) -> None:
        self.preview_cache.put(
            route_cache_key(preview.route_coordinates),
            preview.to_dict(),
            created_at=preview.metadata.generated_at,
        )

    def clear_all_caches(self) -> Dict[str, int]:
        """Empty the preview, Street View and analysis namespaces together."""
        counts = {
            "previews": self.preview_cache.clear(),
            "street_view": self.resolver.clear_cache(),
            "analyses": self.scorer.clear_cache(),
        }
        logger.info(
            "Cleared caches: %d previews, %d street view, %d analyses",
            counts["previews"], counts["street_view"], counts["analyses"],
        )
        return counts

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_preview(
        self,
        coordinates: Sequence[Any],
        sampling_distance: float = DEFAULT_SAMPLING_DISTANCE_M,
        max_points: int = DEFAULT_MAX_POINTS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        on_progress: Optional[ProgressCallback] = None,
        use_cache: bool = True,
    ) -> RoutePreview:
        """Full preview with per-image safety analysis.

        Raises:
            ValueError: invalid coordinates or options.
            PreviewTimeoutError: imagery fetch exceeded the budget.
            NoImageryError: no sample point has imagery.
        """
        route = coerce_route(coordinates)
        if max_points < 2:
            raise ValueError(f"max_points must be at least 2, got {max_points}")
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

        if use_cache:
            cached = self.get_cached_preview(route)
            if cached is not None:
                trace = get_trace()
                if trace:
                    trace.cache_hit = True
                logger.info("Route preview cache hit for %s", route_cache_key(route))
                return cached

        run = _PreviewRun(self, route, sampling_distance, max_points, timeout_ms, on_progress)
        return run.run()

    def generate_fallback_preview(self, coordinates: Sequence[Any]) -> RoutePreview:
        """Imagery-only preview with neutral statistics. No safety scoring.

        Not cached: the next request should try the full pipeline again.
        """
        fallback = SCORING_MODEL.fallback
        route = coerce_route(coordinates)
        started = self.clock()

        sampled = sample_route_points(route, fallback.sampling_distance_m)
        limited = sampled[:fallback.max_points]
        images = self.resolver.resolve_all(limited)
        available = [img for img in images if img.available]

        base = neutral_statistics(note="AI safety analysis skipped")
        statistics = RouteStatistics(
            overall_safety_score=base.overall_safety_score,
            grade=fallback.grade,
            color=base.color,
            breakdown=base.breakdown,
            positives=list(fallback.positives),
            recommendations=list(fallback.recommendations),
            note=base.note,
        )

        logger.info("Fallback preview: %d/%d points with imagery", len(available), len(limited))
        return RoutePreview(
            route_coordinates=route,
            sampled_points=[PreviewPoint(image=img) for img in available],
            statistics=statistics,
            metadata=PreviewMetadata(
                generated_at=self.now(),
                total_points=len(limited),
                analyzed_points=len(available),
                sampling_distance=fallback.sampling_distance_m,
                generation_time_ms=int((self.clock() - started) * 1000),
                fallback_mode=True,
            ),
        )

    def get_or_generate_preview(
        self,
        coordinates: Sequence[Any],
        **options,
    ) -> Tuple[RoutePreview, bool]:
        """Cached preview if live, else a fresh one, else a fallback.

        Returns (preview, from_cache).
        """
        cached = self.get_cached_preview(coordinates)
        if cached is not None:
            return cached, True
        try:
            return self.generate_preview(coordinates, use_cache=False, **options), False
        except PreviewError as e:
            logger.warning("Preview generation failed (%s); using fallback preview", e)
            return self.generate_fallback_preview(coordinates), False


def build_default_service(store: Optional[KeyValueStore] = None) -> RoutePreviewService:
    """Wire the production collaborators from environment settings."""
    store = store or SQLiteStore()
    resolver = ImageryResolver(
        client=StreetViewClient(GOOGLE_MAPS_API_KEY),
        cache=TTLCache(store, STREET_VIEW_NAMESPACE),
    )
    scorer = SafetyScorer(
        extractor=VisionClient(GOOGLE_CLOUD_VISION_API_KEY).annotate,
        cache=TTLCache(store, ANALYSIS_NAMESPACE),
    )
    preview_cache = TTLCache(
        store, PREVIEW_NAMESPACE, ttl=timedelta(seconds=PREVIEW_TTL_SECONDS),
    )
    return RoutePreviewService(resolver, scorer, preview_cache)
