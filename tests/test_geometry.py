"""Tests for convex hull geometry."""

import numpy as np

from tripmodel.geometry import Point, convex_hull, convex_hull_indices


def _cross(o, a, b):
    return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)


def _is_ccw_convex(points):
    n = len(points)
    return all(
        _cross(points[i], points[(i + 1) % n], points[(i + 2) % n]) > 0
        for i in range(n)
    )


class TestConvexHullIndices:
    """Tests for the monotone chain hull on raw coordinates."""

    def test_empty(self):
        """No points, no hull."""
        assert convex_hull_indices(np.zeros((0, 2))) == []

    def test_single_point(self):
        """A single point is its own hull."""
        assert convex_hull_indices([[3.0, 4.0]]) == [0]

    def test_duplicates_reduced(self):
        """Identical coordinates are kept once, first occurrence wins."""
        assert convex_hull_indices([[1.0, 1.0], [1.0, 1.0], [1.0, 1.0]]) == [0]

    def test_square_with_interior_point(self):
        """Interior points are excluded and corners come out counter-clockwise."""
        xy = [[0, 0], [1, 1], [0.5, 0.5], [1, 0], [0, 1]]
        hull = convex_hull_indices(xy)

        assert hull == [0, 3, 1, 4]

    def test_collinear_points(self):
        """Collinear points reduce to the two extremes."""
        xy = [[2, 0], [0, 0], [1, 0]]
        assert sorted(convex_hull_indices(xy)) == [0, 1]

    def test_collinear_edge_points_dropped(self):
        """Points on a hull edge are not corners."""
        xy = [[0, 0], [2, 0], [1, 0], [2, 2], [0, 2]]
        hull = convex_hull_indices(xy)

        assert 2 not in hull
        assert len(hull) == 4


class TestConvexHull:
    """Tests for the Point-based hull."""

    def test_hull_is_subset(self):
        """Every hull corner is one of the input points."""
        rng = np.random.default_rng(7)
        points = [Point(float(x), float(y)) for x, y in rng.uniform(0, 100, size=(50, 2))]

        hull = convex_hull(points)

        assert set(hull) <= set(points)
        assert 3 <= len(hull) <= len(points)

    def test_hull_is_convex_and_ccw(self):
        """Consecutive corners always turn left."""
        rng = np.random.default_rng(11)
        points = [Point(float(x), float(y)) for x, y in rng.normal(size=(80, 2))]

        hull = convex_hull(points)

        assert _is_ccw_convex(hull)

    def test_all_points_inside(self):
        """No input point lies strictly outside any hull edge."""
        rng = np.random.default_rng(3)
        points = [Point(float(x), float(y)) for x, y in rng.uniform(-5, 5, size=(40, 2))]

        hull = convex_hull(points)
        n = len(hull)
        for p in points:
            for i in range(n):
                assert _cross(hull[i], hull[(i + 1) % n], p) >= -1e-9

    def test_small_inputs(self):
        """Zero or one point is returned unchanged."""
        assert convex_hull([]) == []
        p = Point(1.0, 2.0)
        assert convex_hull([p]) == [p]

    def test_keeps_geographic_coordinates(self):
        """Hull corners keep their lon/lat."""
        points = [
            Point(0.0, 0.0, lon=-74.0, lat=40.7),
            Point(10.0, 0.0, lon=-73.9, lat=40.7),
            Point(0.0, 10.0, lon=-74.0, lat=40.8),
        ]
        hull = convex_hull(points)

        assert {p.lon for p in hull} == {-74.0, -73.9}
