# -*- coding: utf-8 -*-
"""
Unit tests for tractselect_pkg/geometry/kdtree.py.

Tests k-d tree construction and closed-box range queries against a
brute-force filter.
"""

import pytest
import numpy as np

from tractselect_pkg.errors import InvalidGeometryError
from tractselect_pkg.geometry.kdtree import LEAF_SIZE, PointSpatialIndex


def brute_force(points, lo, hi):
    """Positions of points inside the closed box [lo, hi]."""
    if len(points) == 0:
        return np.empty(0, dtype=np.int64)
    inside = np.all((points >= lo) & (points <= hi), axis=1)
    return np.flatnonzero(inside)


@pytest.mark.numba
class TestConstruction:
    """Tests for building the index."""

    def test_empty_index(self):
        """An empty point set builds and answers every query with nothing."""
        index = PointSpatialIndex(np.empty((0, 3)))
        assert len(index) == 0
        assert index.is_empty
        assert index.bounds is None
        result = index.range_query((-1e9, -1e9, -1e9), (1e9, 1e9, 1e9))
        assert result.shape == (0,)

    def test_single_point(self):
        """A single point is found by a box containing it."""
        index = PointSpatialIndex(np.array([[1.0, 2.0, 3.0]]))
        assert index.range_query((0, 0, 0), (5, 5, 5)).tolist() == [0]
        assert index.range_query((2, 2, 2), (5, 5, 5)).tolist() == []

    def test_default_payloads_are_positions(self):
        """Without payloads each point carries its own position."""
        index = PointSpatialIndex(np.random.default_rng(0).random((20, 3)))
        np.testing.assert_array_equal(index.payloads, np.arange(20))

    def test_payload_rows(self):
        """Two-column payload rows are returned unchanged."""
        points = np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0], [5.0, 5.0, 5.0]])
        payloads = np.array([[7, 0], [7, 1], [9, 0]])
        index = PointSpatialIndex(points, payloads)
        result = index.range_query((0, 0, 0), (2, 2, 2))
        np.testing.assert_array_equal(result, [[7, 0], [7, 1]])

    def test_payload_length_mismatch(self):
        """Payloads must have one row per point."""
        with pytest.raises(InvalidGeometryError):
            PointSpatialIndex(np.zeros((3, 3)), np.arange(2))

    def test_bad_point_shape(self):
        """Points must be (N, 3)."""
        with pytest.raises(InvalidGeometryError):
            PointSpatialIndex(np.zeros((4, 2)))

    def test_invalid_leaf_size(self):
        with pytest.raises(ValueError):
            PointSpatialIndex(np.zeros((4, 3)), leaf_size=0)

    def test_arrays_are_read_only(self):
        """Built indices cannot be modified through their arrays."""
        index = PointSpatialIndex(np.random.default_rng(1).random((50, 3)))
        with pytest.raises(ValueError):
            index.points[0, 0] = 42.0
        with pytest.raises(ValueError):
            index.tree.order[0] = 3

    def test_input_not_modified(self):
        """Building the index leaves the caller's array untouched."""
        points = np.random.default_rng(2).random((40, 3))
        before = points.copy()
        PointSpatialIndex(points)
        np.testing.assert_array_equal(points, before)

    def test_bounds(self):
        points = np.array([[0.0, 5.0, -1.0], [2.0, -3.0, 4.0], [1.0, 1.0, 1.0]])
        index = PointSpatialIndex(points)
        np.testing.assert_array_equal(index.bounds, [[0.0, -3.0, -1.0], [2.0, 5.0, 4.0]])

    def test_leaves_partition_all_points(self):
        """Every point appears exactly once in the tree's order array."""
        index = PointSpatialIndex(np.random.default_rng(3).random((1000, 3)))
        order = np.sort(index.tree.order)
        np.testing.assert_array_equal(order, np.arange(1000))
        leaves = index.tree.node_left < 0
        sizes = index.tree.node_end[leaves] - index.tree.node_start[leaves]
        assert sizes.max() <= LEAF_SIZE
        assert sizes.sum() == 1000

    def test_splits_are_stable_medians(self):
        """Every split halves its bucket on the cycling axis, keeping input order."""
        rng = np.random.default_rng(11)
        # Coarse values give many ties on every axis
        points = rng.integers(0, 4, size=(700, 3)).astype(np.float64)
        tree = PointSpatialIndex(points, leaf_size=4).tree
        stack = [(0, 0)]
        while stack:
            node, depth = stack.pop()
            segment = tree.order[tree.node_start[node]:tree.node_end[node]]
            assert np.all(np.diff(segment) > 0)
            left, right = tree.node_left[node], tree.node_right[node]
            if left < 0:
                continue
            axis = depth % 3
            left_ids = tree.order[tree.node_start[left]:tree.node_end[left]]
            right_ids = tree.order[tree.node_start[right]:tree.node_end[right]]
            assert len(left_ids) == len(segment) // 2
            assert points[left_ids, axis].max() <= points[right_ids, axis].min()
            stack.extend([(left, depth + 1), (right, depth + 1)])

    @pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
    def test_non_finite_points_rejected(self, bad):
        points = np.zeros((4, 3))
        points[2, 1] = bad
        with pytest.raises(InvalidGeometryError, match="non-finite"):
            PointSpatialIndex(points)


@pytest.mark.numba
class TestRangeQuery:
    """Tests for closed-box queries."""

    @pytest.mark.parametrize("n_points", [0, 1, 2, 1500])
    def test_matches_brute_force(self, n_points):
        """Query results equal the brute-force filter for random boxes."""
        rng = np.random.default_rng(n_points)
        points = rng.uniform(-5.0, 5.0, size=(n_points, 3))
        index = PointSpatialIndex(points)
        for _ in range(25):
            a = rng.uniform(-6.0, 6.0, size=3)
            b = rng.uniform(-6.0, 6.0, size=3)
            lo, hi = np.minimum(a, b), np.maximum(a, b)
            np.testing.assert_array_equal(
                index.query_indices(lo, hi), brute_force(points, lo, hi)
            )

    def test_boundary_is_inclusive(self):
        """Points exactly on a face of the box are returned."""
        points = np.array([[0.0, 0.0, 0.0], [2.0, 2.0, 2.0], [2.0, 1.0, 2.000001]])
        index = PointSpatialIndex(points)
        assert index.query_indices((0, 0, 0), (2, 2, 2)).tolist() == [0, 1]

    def test_zero_extent_box(self):
        """A flat box selects the points lying in its plane."""
        points = np.array([[1.0, 0.0, 0.0], [1.0, 5.0, -2.0], [1.5, 0.0, 0.0]])
        index = PointSpatialIndex(points)
        result = index.query_indices((1.0, -10.0, -10.0), (1.0, 10.0, 10.0))
        assert result.tolist() == [0, 1]

    def test_inverted_box_is_empty(self):
        index = PointSpatialIndex(np.zeros((5, 3)))
        assert index.query_indices((1, 1, 1), (0, 0, 0)).size == 0

    def test_duplicate_points(self):
        """Coincident points are all returned, in input order."""
        points = np.vstack([np.ones((30, 3)), np.zeros((30, 3)), np.ones((30, 3))])
        index = PointSpatialIndex(points, leaf_size=4)
        result = index.query_indices((0.5, 0.5, 0.5), (1.5, 1.5, 1.5))
        np.testing.assert_array_equal(result, np.r_[0:30, 60:90])

    def test_grid_points(self):
        """Regular grids (many ties per axis) are queried exactly."""
        g = np.arange(10, dtype=np.float64)
        points = np.stack(np.meshgrid(g, g, g, indexing="ij"), axis=-1).reshape(-1, 3)
        index = PointSpatialIndex(points)
        lo, hi = np.array([2.0, 3.0, 4.0]), np.array([5.0, 3.0, 9.0])
        np.testing.assert_array_equal(
            index.query_indices(lo, hi), brute_force(points, lo, hi)
        )

    def test_repeated_queries_identical(self):
        """The index is immutable, so repeated queries agree."""
        points = np.random.default_rng(5).random((300, 3))
        index = PointSpatialIndex(points)
        first = index.range_query((0.2, 0.2, 0.2), (0.7, 0.7, 0.7))
        second = index.range_query((0.2, 0.2, 0.2), (0.7, 0.7, 0.7))
        np.testing.assert_array_equal(first, second)
