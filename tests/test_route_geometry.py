"""Unit tests for route_geometry.py: route sampling and decimation.

Tests cover: coordinate validation, haversine/bearing helpers, sampling
counts and headings, single- and multi-segment routes, decimation, and the
optimal-heading helper.
"""

import pytest

from route_geometry import (
    Coordinate,
    PointType,
    bearing_deg,
    calculate_optimal_heading,
    decimate_points,
    haversine_m,
    route_length_m,
    sample_route_points,
)


def _route(*pairs):
    return [Coordinate(lat, lng) for lat, lng in pairs]


# =========================================================================
# Coordinate
# =========================================================================

class TestCoordinate:
    def test_rejects_out_of_range_latitude(self):
        with pytest.raises(ValueError):
            Coordinate(91.0, 0.0)

    def test_rejects_out_of_range_longitude(self):
        with pytest.raises(ValueError):
            Coordinate(0.0, -180.5)

    def test_from_dict_accepts_long_and_short_keys(self):
        assert Coordinate.from_dict({"latitude": 1.5, "longitude": 2.5}) == Coordinate(1.5, 2.5)
        assert Coordinate.from_dict({"lat": 1.5, "lng": 2.5}) == Coordinate(1.5, 2.5)

    def test_from_dict_accepts_pair(self):
        assert Coordinate.from_dict([40.7, -74.0]) == Coordinate(40.7, -74.0)

    def test_from_dict_rejects_missing_fields(self):
        with pytest.raises(ValueError):
            Coordinate.from_dict({"latitude": 1.0})

    @pytest.mark.parametrize("data", [
        {"latitude": [1], "longitude": 0},
        {"latitude": 0, "longitude": {"deg": 3}},
        {"lat": "north", "lng": 0},
        [[40.7], -74.0],
    ])
    def test_from_dict_rejects_non_numeric_values(self, data):
        with pytest.raises(ValueError, match="must be numbers"):
            Coordinate.from_dict(data)

    def test_to_dict_round_trip(self):
        c = Coordinate(37.7749, -122.4194)
        assert Coordinate.from_dict(c.to_dict()) == c


# =========================================================================
# Helpers
# =========================================================================

class TestGeometryHelpers:
    def test_haversine_one_hundredth_degree_at_equator(self):
        d = haversine_m(Coordinate(0, 0), Coordinate(0, 0.01))
        assert d == pytest.approx(1111.95, abs=0.1)

    def test_haversine_zero_for_same_point(self):
        assert haversine_m(Coordinate(10, 10), Coordinate(10, 10)) == 0

    @pytest.mark.parametrize("dest, expected", [
        ((0.01, 0.0), 0.0),
        ((0.0, 0.01), 90.0),
        ((-0.01, 0.0), 180.0),
        ((0.0, -0.01), 270.0),
    ])
    def test_bearing_cardinal_directions(self, dest, expected):
        assert bearing_deg(Coordinate(0, 0), Coordinate(*dest)) == pytest.approx(expected, abs=1e-6)

    def test_route_length_sums_segments(self):
        route = _route((0, 0), (0, 0.005), (0, 0.01))
        assert route_length_m(route) == pytest.approx(1111.95, abs=0.1)


# =========================================================================
# Sampling
# =========================================================================

class TestSampleRoutePoints:
    def test_straight_route_point_count(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 200)
        # start + 200/400/600/800 m + destination
        assert len(points) == 6

    def test_start_and_destination_are_key_points(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 200)

        start, dest = points[0], points[-1]
        assert start.type == PointType.START
        assert start.is_key_point is True
        assert start.heading is None
        assert start.distance_from_start == 0
        assert dest.type == PointType.DESTINATION
        assert dest.is_key_point is True
        assert dest.coordinate == Coordinate(0, 0.01)
        assert dest.distance_from_start == pytest.approx(1111.95, abs=0.1)

    def test_interior_points_evenly_spaced(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 200)
        interior = points[1:-1]

        assert [p.distance_from_start for p in interior] == [200, 400, 600, 800]
        assert all(p.type == PointType.SAMPLE for p in interior)
        assert all(p.is_key_point is False for p in interior)
        assert all(p.heading == 90 for p in interior)
        assert interior[0].coordinate.longitude == pytest.approx(0.01 * 200 / 1111.95, rel=1e-3)

    def test_indices_follow_order(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 200)
        assert [p.index for p in points] == list(range(len(points)))

    def test_destination_heading_from_last_segment(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 200)
        assert points[-1].heading == 90

    def test_route_shorter_than_sampling_distance(self):
        points = sample_route_points(_route((0, 0), (0, 0.001)), 200)
        assert len(points) == 2
        assert points[0].type == PointType.START
        assert points[1].type == PointType.DESTINATION

    def test_zero_length_route(self):
        points = sample_route_points(_route((5, 5), (5, 5)), 200)
        assert len(points) == 2
        assert points[1].distance_from_start == 0

    def test_multi_segment_headings_follow_segments(self):
        # ~556 m east, then ~556 m north
        route = _route((0, 0), (0, 0.005), (0.005, 0.005))
        points = sample_route_points(route, 200)

        assert len(points) == 6
        assert [p.heading for p in points[1:3]] == [90, 90]
        assert [p.heading for p in points[3:5]] == [0, 0]
        assert points[-1].heading == 0
        # 600 m is inside the second (northbound) segment
        assert points[3].coordinate.longitude == pytest.approx(0.005)
        assert points[3].coordinate.latitude > 0

    def test_distances_non_decreasing(self):
        route = _route((0, 0), (0.003, 0.002), (0.004, 0.009), (0.011, 0.01))
        points = sample_route_points(route, 150)
        distances = [p.distance_from_start for p in points]
        assert distances == sorted(distances)

    def test_larger_distance_never_adds_interior_points(self):
        route = _route((0, 0), (0.003, 0.002), (0.004, 0.009), (0.011, 0.01))
        distances = [25, 50, 75, 100, 150, 200, 333, 500, 1000, 5000]
        counts = [len(sample_route_points(route, d)) - 2 for d in distances]
        assert counts == sorted(counts, reverse=True)
        assert counts[0] > counts[-1] == 0

    def test_rejects_single_coordinate(self):
        with pytest.raises(ValueError):
            sample_route_points(_route((0, 0)), 200)

    def test_rejects_non_positive_distance(self):
        with pytest.raises(ValueError):
            sample_route_points(_route((0, 0), (0, 0.01)), 0)


# =========================================================================
# Decimation
# =========================================================================

class TestDecimatePoints:
    def _points(self, n):
        # 0.0005 deg ~ 55.6 m per vertex; 50 m sampling gives plenty of points
        route = _route(*[(0, 0.0005 * i) for i in range(n)])
        return sample_route_points(route, 50)

    def test_under_limit_unchanged(self):
        points = self._points(3)
        assert decimate_points(points, 50) == points

    def test_twenty_points_to_ten(self):
        points = sample_route_points(_route((0, 0), (0, 0.01)), 58)
        assert len(points) == 20

        limited = decimate_points(points, 10)

        assert len(limited) == 10
        # step = (20 - 2) // (10 - 2) = 2
        assert limited == [points[i] for i in (0, 2, 4, 6, 8, 10, 12, 14, 16, 19)]

    def test_keeps_first_and_last(self):
        points = self._points(30)
        limited = decimate_points(points, 7)
        assert limited[0] == points[0]
        assert limited[-1] == points[-1]
        assert len(limited) <= 7

    def test_preserves_order_without_duplicates(self):
        points = self._points(30)
        limited = decimate_points(points, 6)
        positions = [points.index(p) for p in limited]
        assert positions == sorted(set(positions))

    def test_max_two_keeps_endpoints(self):
        points = self._points(10)
        assert decimate_points(points, 2) == [points[0], points[-1]]


# =========================================================================
# Optimal heading
# =========================================================================

class TestCalculateOptimalHeading:
    ROUTE = _route((0, 0), (0, 0.01), (0.01, 0.01))

    def test_nearest_first_vertex_uses_outgoing_segment(self):
        heading = calculate_optimal_heading(self.ROUTE, Coordinate(0.0001, 0.0001))
        assert heading == pytest.approx(90.0, abs=0.01)

    def test_nearest_middle_vertex_uses_outgoing_segment(self):
        heading = calculate_optimal_heading(self.ROUTE, Coordinate(0.0, 0.0099))
        assert heading == pytest.approx(0.0, abs=0.01)

    def test_nearest_last_vertex_uses_incoming_segment(self):
        heading = calculate_optimal_heading(self.ROUTE, Coordinate(0.011, 0.01))
        assert heading == pytest.approx(0.0, abs=0.01)

    def test_single_vertex_route(self):
        assert calculate_optimal_heading(_route((1, 1)), Coordinate(1, 1)) == 0.0
