# -*- coding: utf-8 -*-
"""
Unit tests for tractselect_pkg/logic/streamline_geometry.py.

Tests spline sampling, frames, colors, length and curvature metrics and
metric filtering.
"""

import pytest
import numpy as np

from tractselect_pkg.errors import InvalidGeometryError
from tractselect_pkg.logic.selection import SelectionResult
from tractselect_pkg.logic.streamline_geometry import (
    StreamlineGeometryBuilder,
    filter_by_metrics,
    sample_bspline,
    streamline_metrics,
)
from tractselect_pkg.utils import ColorMode


def circle_arc(radius, n_points, step):
    """Vertices on a circle in the xy-plane with a fixed angular step."""
    angles = np.arange(n_points) * step
    return np.stack(
        [radius * np.cos(angles), radius * np.sin(angles), np.zeros(n_points)], axis=1
    )


def straight_line(n_points, spacing=1.5):
    return np.stack(
        [np.arange(n_points) * spacing, np.full(n_points, 2.0), np.full(n_points, -1.0)],
        axis=1,
    )


class TestSampleBspline:
    """Tests for sample_bspline()."""

    @pytest.mark.parametrize("n_vertices,subdivisions", [(2, 1), (3, 2), (10, 4)])
    def test_sample_count(self, n_vertices, subdivisions):
        samples = sample_bspline(straight_line(n_vertices), subdivisions)
        assert samples.shape == ((n_vertices + 1) * subdivisions + 1, 3)

    def test_interpolates_end_vertices(self):
        """The clamped spline starts and ends exactly on the first and last vertex."""
        vertices = circle_arc(3.0, 7, 0.4)
        samples = sample_bspline(vertices, 3)
        np.testing.assert_allclose(samples[0], vertices[0], atol=1e-12)
        np.testing.assert_allclose(samples[-1], vertices[-1], atol=1e-12)

    def test_straight_line_stays_on_line(self):
        samples = sample_bspline(straight_line(6), 5)
        np.testing.assert_allclose(samples[:, 1], 2.0)
        np.testing.assert_allclose(samples[:, 2], -1.0)
        assert np.all(np.diff(samples[:, 0]) >= -1e-12)


class TestMetrics:
    """Tests for length and curvature."""

    @pytest.mark.parametrize("n_points", [3, 5, 50])
    def test_straight_line(self, n_points):
        """A straight line has zero curvature and length (N - 1) * spacing."""
        length, curvature = streamline_metrics(straight_line(n_points, spacing=1.5))
        assert length == pytest.approx((n_points - 1) * 1.5)
        assert curvature.shape == (n_points - 2,)
        np.testing.assert_allclose(curvature, 0.0, atol=1e-12)

    def test_circle_curvature(self):
        """Interior vertices of a regular arc have curvature cos(step / 2) / R."""
        radius, step = 5.0, 0.1
        _, curvature = streamline_metrics(circle_arc(radius, 30, step))
        expected = np.cos(step / 2.0) / radius
        np.testing.assert_allclose(curvature[1:-1], expected, rtol=1e-9)

    def test_two_points(self):
        length, curvature = streamline_metrics(np.array([[0.0, 0.0, 0.0], [3.0, 4.0, 0.0]]))
        assert length == pytest.approx(5.0)
        assert curvature.size == 0

    def test_repeated_vertices(self):
        """Duplicate consecutive vertices do not produce NaN."""
        vertices = np.array([[0.0, 0, 0], [0.0, 0, 0], [1.0, 0, 0], [2.0, 0, 0]])
        _, curvature = streamline_metrics(vertices)
        assert np.all(np.isfinite(curvature))


class TestBuildCurve:
    """Tests for StreamlineGeometryBuilder.build_curve()."""

    def test_point_count_and_shapes(self):
        curve = StreamlineGeometryBuilder(subdivisions=3).build_curve(circle_arc(2.0, 8, 0.3))
        assert curve.n_points == (8 + 1) * 3 + 1
        for arr in (curve.tangents, curve.normals, curve.binormals, curve.point_colors):
            assert arr.shape == (curve.n_points, 3)
        assert curve.segment_colors.shape == (7, 3)
        assert curve.local_curvature.shape == (6,)

    def test_frames_are_orthonormal(self):
        """Tangent, normal and binormal form a unit orthogonal frame at every sample."""
        vertices = np.stack([np.cos(np.linspace(0, 6, 40)), np.sin(np.linspace(0, 6, 40)),
                             np.linspace(0, 4, 40)], axis=1)
        curve = StreamlineGeometryBuilder().build_curve(vertices)
        for arr in (curve.tangents, curve.normals, curve.binormals):
            np.testing.assert_allclose(np.linalg.norm(arr, axis=1), 1.0, atol=1e-9)
        np.testing.assert_allclose(
            np.sum(curve.tangents * curve.normals, axis=1), 0.0, atol=1e-9
        )
        np.testing.assert_allclose(
            np.sum(curve.normals * curve.binormals, axis=1), 0.0, atol=1e-9
        )

    def test_straight_line_frame_constant(self):
        """Along a straight line the transported normal does not rotate."""
        curve = StreamlineGeometryBuilder().build_curve(straight_line(10))
        np.testing.assert_allclose(curve.normals, curve.normals[0], atol=1e-9)
        assert curve.average_curvature == pytest.approx(0.0, abs=1e-12)

    def test_metrics_summary(self):
        radius, step = 4.0, 0.2
        curve = StreamlineGeometryBuilder().build_curve(circle_arc(radius, 20, step))
        assert curve.minimum_curvature <= curve.average_curvature <= curve.maximum_curvature
        assert curve.length == pytest.approx(19 * 2 * radius * np.sin(step / 2))

    def test_two_point_streamline(self):
        """Two vertices give zero curvature summaries and a valid spline."""
        curve = StreamlineGeometryBuilder().build_curve(np.array([[0.0, 0, 0], [0.0, 0, 2.0]]))
        assert curve.average_curvature == 0.0
        assert curve.minimum_curvature == 0.0
        assert curve.maximum_curvature == 0.0
        assert curve.length == pytest.approx(2.0)
        np.testing.assert_allclose(curve.tangents, [[0.0, 0.0, 1.0]] * curve.n_points)

    @pytest.mark.parametrize("n_points", [0, 1])
    def test_short_streamline_rejected(self, n_points):
        with pytest.raises(InvalidGeometryError):
            StreamlineGeometryBuilder().build_curve(np.zeros((n_points, 3)))

    @pytest.mark.parametrize("bad", [np.nan, np.inf])
    def test_non_finite_vertex_rejected(self, bad):
        """A NaN or infinite vertex raises instead of producing a NaN length."""
        vertices = np.array([[0.0, 0.0, 0.0], [bad, 1.0, 1.0], [2.0, 2.0, 2.0]])
        with pytest.raises(InvalidGeometryError, match="Streamline #5"):
            StreamlineGeometryBuilder().build_curve(vertices, source_index=5)

    @pytest.mark.parametrize("subdivisions", [0, -2, 1.5])
    def test_bad_subdivisions(self, subdivisions):
        with pytest.raises(ValueError):
            StreamlineGeometryBuilder(subdivisions=subdivisions)
        with pytest.raises(ValueError):
            StreamlineGeometryBuilder().build_curve(straight_line(4), subdivisions=subdivisions)

    def test_input_not_modified(self):
        vertices = circle_arc(1.0, 6, 0.5)
        before = vertices.copy()
        StreamlineGeometryBuilder().build_curve(vertices)
        np.testing.assert_array_equal(vertices, before)


class TestColors:
    """Tests for direction coloring."""

    def test_global_direction(self):
        """Every segment gets the end-to-end direction color."""
        vertices = np.array([[0.0, 0, 0], [0.0, 1, 0], [3.0, 1, 0], [3.0, 0, 4.0]])
        curve = StreamlineGeometryBuilder(color_mode=ColorMode.GLOBAL_DIRECTION).build_curve(vertices)
        np.testing.assert_allclose(curve.segment_colors, [[0.6, 0.0, 0.8]] * 3)
        np.testing.assert_allclose(curve.point_colors, [[0.6, 0.0, 0.8]] * curve.n_points)

    def test_local_direction(self):
        """Each segment gets the absolute value of its own direction."""
        vertices = np.array([[0.0, 0, 0], [0.0, -2, 0], [3.0, -2, 0]])
        curve = StreamlineGeometryBuilder(color_mode=ColorMode.LOCAL_DIRECTION,
                                          subdivisions=2).build_curve(vertices)
        np.testing.assert_allclose(curve.segment_colors, [[0, 1, 0], [1, 0, 0]])
        np.testing.assert_allclose(curve.point_colors[0], [0, 1, 0])
        np.testing.assert_allclose(curve.point_colors[-1], [1, 0, 0])

    def test_colors_in_unit_range(self):
        vertices = np.random.default_rng(5).normal(size=(12, 3))
        for mode in ColorMode:
            curve = StreamlineGeometryBuilder(color_mode=mode).build_curve(vertices)
            assert curve.point_colors.min() >= 0.0
            assert curve.point_colors.max() <= 1.0 + 1e-12


class TestBuildCurves:
    """Tests for collection building and metric filtering."""

    def test_source_indices_default(self, sample_streamlines):
        curves = StreamlineGeometryBuilder().build_curves(sample_streamlines)
        assert [c.source_index for c in curves] == [0, 1, 2]

    def test_selection_result_indices(self, sample_streamlines):
        """Curves built from a selection carry the root collection indices."""
        result = SelectionResult([0, 2], (sample_streamlines[0], sample_streamlines[2]))
        curves = StreamlineGeometryBuilder().build_curves(result)
        assert [c.source_index for c in curves] == [0, 2]

    def test_empty(self):
        assert StreamlineGeometryBuilder().build_curves([]) == []

    def test_filter_by_metrics(self):
        builder = StreamlineGeometryBuilder()
        curves = builder.build_curves([
            straight_line(3, spacing=1.0),    # length 2, straight
            straight_line(11, spacing=1.0),   # length 10, straight
            circle_arc(3.0, 10, 0.5),         # length ~13.4, curved
        ])
        assert filter_by_metrics(curves, min_length=5.0) == [curves[1], curves[2]]
        assert filter_by_metrics(curves, max_length=2.0) == [curves[0]]
        assert filter_by_metrics(curves, max_average_curvature=0.1) == curves[:2]
        assert builder.filter_by_metrics(curves) == curves
