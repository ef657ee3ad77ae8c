"""Unit tests for safety_scoring.py: per-image safety analysis.

Tests cover: keyword matching, brightness, each sub-score rule, weighted
overall score and grade boundaries, recommendation rules, raw data
retention, serialization, and SafetyScorer caching / failure handling.
"""

from unittest.mock import MagicMock

import pytest

from conftest import bright_street_features, dark_alley_features
from preview_cache import ANALYSIS_NAMESPACE, TTLCache
from safety_scoring import (
    AnalysisError,
    SafetyAnalysis,
    SafetyScorer,
    ScoreBreakdown,
    analysis_cache_key,
    analysis_from_dict,
    analyze_brightness,
    analyze_features,
    compute_safety_score,
    match_labels,
    neutral_error,
    score_building_type,
    score_crowd_density,
    score_isolation,
    score_lighting,
    score_sidewalk,
)
from vision_client import DominantColor, Label, LocalizedObject, VisionAPIError, VisionFeatures


def _labels(*pairs):
    return VisionFeatures(labels=[Label(d, s) for d, s in pairs])


# =========================================================================
# Helpers
# =========================================================================

class TestMatchLabels:
    def test_case_insensitive_substring(self):
        matches, conf = match_labels(
            [Label("Asphalt SIDEWALK", 0.6), Label("Tree", 0.9)],
            ("sidewalk",),
        )
        assert [m.label for m in matches] == ["Asphalt SIDEWALK"]
        assert conf == pytest.approx(0.6)

    def test_mean_confidence(self):
        _, conf = match_labels([Label("Shop", 0.4), Label("Store", 0.8)], ("shop", "store"))
        assert conf == pytest.approx(0.6)

    def test_no_match_zero_confidence(self):
        matches, conf = match_labels([Label("Sky", 0.9)], ("shop",))
        assert matches == []
        assert conf == 0


class TestAnalyzeBrightness:
    def test_white_is_ten(self):
        score, level, avg = analyze_brightness([DominantColor(255, 255, 255, 1.0)])
        assert score == 10.0
        assert level == "bright"
        assert avg == 255

    def test_black_is_zero(self):
        score, level, avg = analyze_brightness([DominantColor(0, 0, 0, 1.0)])
        assert score == 0.0
        assert level == "poor"
        assert avg == 0

    def test_no_colors_is_moderate(self):
        assert analyze_brightness([]) == (5.0, "moderate", 0)

    def test_pixel_fraction_weighting(self):
        colors = [DominantColor(255, 255, 255, 0.5), DominantColor(0, 0, 0, 0.5)]
        score, level, avg = analyze_brightness(colors)
        assert score == 5.0
        assert level == "moderate"
        assert avg == 128


# =========================================================================
# Sub-scores
# =========================================================================

class TestSubScores:
    def test_lighting_averages_brightness_and_label_confidence(self):
        features = VisionFeatures(
            labels=[Label("Street light", 0.8)],
            dominant_colors=[DominantColor(255, 255, 255, 1.0)],
        )
        lighting = score_lighting(features)
        assert lighting.score == 9.0
        assert lighting.confidence == pytest.approx(0.8)
        assert lighting.brightness == 255

    def test_lighting_without_colors_or_labels(self):
        assert score_lighting(VisionFeatures()).score == 2.5

    def test_sidewalk_detected(self):
        sidewalk = score_sidewalk(_labels(("Footpath", 0.7)))
        assert sidewalk.score == 8.0
        assert sidewalk.detected is True

    def test_sidewalk_missing(self):
        sidewalk = score_sidewalk(_labels(("Road", 0.9)))
        assert sidewalk.score == 3.0
        assert sidewalk.detected is False

    @pytest.mark.parametrize("people, labels, density, score", [
        (5, [], "high", 9.0),
        (0, [("Crowd", 0.75)], "high", 9.0),
        (2, [], "moderate", 6.0),
        (0, [("Pedestrian", 0.5)], "moderate", 6.0),
        (1, [("Person", 0.4)], "low", 3.0),
        (0, [], "low", 3.0),
    ])
    def test_crowd_density_bands(self, people, labels, density, score):
        features = VisionFeatures(
            labels=[Label(d, s) for d, s in labels],
            objects=[LocalizedObject("Person") for _ in range(people)],
        )
        crowd = score_crowd_density(features)
        assert crowd.density == density
        assert crowd.score == score
        assert crowd.person_count == people

    def test_isolation_default_without_negative_labels(self):
        isolation = score_isolation(_labels(("Building", 0.9)))
        assert isolation.score == 7.0
        assert isolation.isolated is False

    def test_isolation_scales_with_negative_confidence(self):
        isolation = score_isolation(_labels(("Forest", 0.4)))
        assert isolation.score == 6.0
        assert isolation.isolated is False

    def test_isolation_flags_strong_negative_context(self):
        isolation = score_isolation(_labels(("Abandoned building", 0.95)))
        assert isolation.score == 1.0
        assert isolation.isolated is True

    def test_building_type_commercial(self):
        building = score_building_type(_labels(("Restaurant", 0.8)))
        assert building.score == 9.0
        assert building.commercial is True

    def test_building_type_neutral(self):
        building = score_building_type(_labels(("House", 0.8)))
        assert building.score == 5.0
        assert building.commercial is False


# =========================================================================
# Overall score and grade
# =========================================================================

class TestComputeSafetyScore:
    def _breakdown(self, value):
        return ScoreBreakdown(value, value, value, value, value)

    def test_uniform_breakdown(self):
        score = compute_safety_score(self._breakdown(6.0))
        assert score.overall == 6.0
        assert score.grade == "Good"
        assert score.color == "#8BC34A"

    @pytest.mark.parametrize("value, grade", [
        (10.0, "Excellent"),
        (7.5, "Excellent"),
        (7.4, "Good"),
        (6.0, "Good"),
        (5.9, "Moderate"),
        (4.5, "Moderate"),
        (4.4, "Fair"),
        (3.0, "Fair"),
        (2.9, "Poor"),
        (1.0, "Poor"),
    ])
    def test_grade_bands(self, value, grade):
        assert compute_safety_score(self._breakdown(value)).grade == grade

    def test_weights_applied(self):
        # Only lighting at 10, everything else 0: 10 * 0.30
        score = compute_safety_score(ScoreBreakdown(10, 0, 0, 0, 0))
        assert score.overall == 3.0

    def test_grade_uses_unrounded_score(self):
        score = compute_safety_score(self._breakdown(7.49))
        assert score.overall == 7.5
        assert score.grade == "Good"

    def test_exact_threshold_is_excellent(self):
        score = compute_safety_score(self._breakdown(7.5))
        assert score.overall == 7.5
        assert score.grade == "Excellent"

    def test_rounds_half_up(self):
        # 0.25 * 9 + 0.20 * 0 ... = 2.25 -> 2.3
        score = compute_safety_score(ScoreBreakdown(0, 0, 9, 0, 0))
        assert score.overall == 2.3


# =========================================================================
# Whole-image analysis
# =========================================================================

class TestAnalyzeFeatures:
    def test_bright_daytime_street(self):
        analysis = analyze_features(bright_street_features())

        assert analysis.lighting.score == 9.5
        assert analysis.sidewalk.score == 8.0
        assert analysis.crowd_density.density == "high"
        assert analysis.isolation.score == 7.0
        assert analysis.building_type.score == 5.0
        assert 8.0 <= analysis.safety_score.overall <= 8.5
        assert analysis.safety_score.grade == "Excellent"
        assert analysis.recommendations.positives == [
            "Well-lit area with good visibility",
            "Sidewalk available for pedestrians",
            "High foot traffic - well-populated area",
        ]
        assert analysis.recommendations.concerns == []
        assert analysis.error is None

    def test_dark_alley(self):
        analysis = analyze_features(dark_alley_features())

        assert analysis.lighting.score == 0.0
        assert analysis.lighting.level == "poor"
        assert analysis.isolation.isolated is True
        assert analysis.safety_score.overall == 2.1
        assert analysis.safety_score.grade == "Poor"
        assert analysis.recommendations.concerns == [
            "Poor lighting conditions",
            "No clear sidewalk detected",
            "Low pedestrian activity",
            "Isolated or secluded area",
        ]
        assert analysis.recommendations.tips == [
            "Consider using this route during daylight hours",
            "Walk facing traffic if using roadway",
            "Stay alert and avoid distractions",
            "Consider walking with a companion",
        ]

    def test_commercial_positive(self):
        analysis = analyze_features(_labels(("Coffee shop", 0.9)))
        assert "Commercial area with businesses nearby" in analysis.recommendations.positives

    def test_overall_within_bounds(self):
        assert 1.0 <= analyze_features(VisionFeatures()).safety_score.overall <= 10.0

    def test_raw_data_truncated(self):
        features = VisionFeatures(
            labels=[Label(f"label {i}", 0.5) for i in range(15)],
            objects=[LocalizedObject(f"obj {i}") for i in range(8)],
            dominant_colors=[DominantColor(i, i, i, 0.1) for i in range(6)],
        )
        raw = analyze_features(features).raw_data

        assert len(raw["labels"]) == 10
        assert len(raw["objects"]) == 5
        assert len(raw["dominant_colors"]) == 3

    def test_serialization_round_trip(self):
        analysis = analyze_features(bright_street_features())
        assert analysis_from_dict(analysis.to_dict()) == analysis

    def test_error_round_trip(self):
        err = neutral_error("Vision down")
        restored = analysis_from_dict(err.to_dict())
        assert isinstance(restored, AnalysisError)
        assert restored == err


# =========================================================================
# SafetyScorer
# =========================================================================

@pytest.fixture()
def scorer(store, extractor):
    return SafetyScorer(extractor, TTLCache(store, ANALYSIS_NAMESPACE), batch_delay_s=0.5, sleep=MagicMock())


class TestSafetyScorer:
    def test_cache_key_is_sha256_of_url(self):
        key = analysis_cache_key("https://img/1")
        assert len(key) == 64
        assert key == analysis_cache_key("https://img/1")
        assert key != analysis_cache_key("https://img/2")

    def test_analyze_and_cache(self, scorer, extractor):
        first = scorer.analyze("https://img/1")
        second = scorer.analyze("https://img/1")

        assert isinstance(first, SafetyAnalysis)
        assert second == first
        extractor.assert_called_once_with("https://img/1")

    def test_extractor_failure_becomes_neutral_error(self, scorer, extractor):
        extractor.side_effect = VisionAPIError("Vision API error: 500")

        result = scorer.analyze("https://img/1")

        assert isinstance(result, AnalysisError)
        assert result.error == "Vision API error: 500"
        assert result.safety_score.overall == 5.0
        assert result.safety_score.grade == "Unknown"
        assert result.safety_score.color == "#9E9E9E"

    def test_errors_are_not_cached(self, scorer, extractor):
        extractor.side_effect = [VisionAPIError("boom"), bright_street_features()]

        assert isinstance(scorer.analyze("https://img/1"), AnalysisError)
        assert isinstance(scorer.analyze("https://img/1"), SafetyAnalysis)
        assert extractor.call_count == 2

    def test_batch_progress_and_delay(self, scorer):
        progress = []
        results = scorer.analyze_batch(
            ["https://img/1", "https://img/2", "https://img/3"],
            lambda cur, total: progress.append((cur, total)),
        )

        assert len(results) == 3
        assert progress == [(1, 3), (2, 3), (3, 3)]
        # Pause between uncached calls, none after the last
        assert scorer._sleep.call_count == 2

    def test_batch_skips_delay_for_cached(self, scorer):
        scorer.analyze("https://img/1")
        scorer._sleep.reset_mock()

        scorer.analyze_batch(["https://img/1", "https://img/2"])

        assert scorer._sleep.call_count == 0

    def test_clear_cache(self, scorer):
        scorer.analyze("https://img/1")
        scorer.analyze("https://img/2")
        assert scorer.clear_cache() == 2
        assert scorer.cached("https://img/1") is None
