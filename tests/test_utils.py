# -*- coding: utf-8 -*-
"""
Unit tests for tractselect_pkg/utils.py.

Tests constants, the color mode enum, formatting and the point and
streamline validation helpers used throughout TractSelect.
"""

import pytest
import numpy as np

from tractselect_pkg.errors import InvalidGeometryError
from tractselect_pkg.utils import (
    ColorMode,
    DEFAULT_INTERIOR_EPSILON,
    DEFAULT_MAX_STREAMLINES,
    DEFAULT_SUBDIVISIONS,
    MIN_STREAMLINE_POINTS,
    as_point,
    as_points,
    as_streamline,
    format_tuple,
)


class TestColorModeEnum:
    """Tests for the ColorMode enumeration."""

    def test_values(self):
        assert ColorMode.GLOBAL_DIRECTION.value == 0
        assert ColorMode.LOCAL_DIRECTION.value == 1

    def test_color_mode_count(self):
        """Verify both color modes exist."""
        assert len(list(ColorMode)) == 2


class TestConstants:
    """Tests for module constants."""

    def test_defaults(self):
        assert DEFAULT_MAX_STREAMLINES == 1000
        assert DEFAULT_SUBDIVISIONS >= 1
        assert DEFAULT_INTERIOR_EPSILON > 0
        assert MIN_STREAMLINE_POINTS == 2


class TestFormatTuple:
    """Tests for the format_tuple function."""

    def test_simple_tuple(self):
        """Format a simple tuple with default precision."""
        assert format_tuple((1.0, 2.0, 3.0)) == "(1.00, 2.00, 3.00)"

    def test_custom_precision(self):
        assert format_tuple((1.5555, 2.6666), precision=3) == "(1.556, 2.667)"

    def test_numpy_array(self):
        """NumPy arrays are formatted like tuples."""
        assert format_tuple(np.array([1.0, -2.5, 3.0])) == "(1.00, -2.50, 3.00)"

    def test_non_tuple_input(self):
        assert format_tuple("not a tuple") == "not a tuple"

    def test_non_numeric_items(self):
        """Items that cannot be formatted fall back to str()."""
        assert format_tuple(("a", "b")) == "('a', 'b')"


class TestAsPoint:
    """Tests for as_point() and as_points()."""

    def test_point_conversion(self):
        point = as_point([1, 2, 3])
        assert point.dtype == np.float64
        assert point.shape == (3,)

    @pytest.mark.parametrize("value", [[1.0, 2.0], [1.0, 2.0, 3.0, 4.0], [0.0, np.inf, 0.0]])
    def test_bad_point(self, value):
        with pytest.raises(InvalidGeometryError):
            as_point(value)

    def test_points_conversion(self):
        points = as_points(np.ones((4, 3), dtype=np.float32))
        assert points.dtype == np.float64
        assert points.flags.c_contiguous

    def test_empty_points(self):
        assert as_points([]).shape == (0, 3)

    def test_bad_points_shape(self):
        with pytest.raises(InvalidGeometryError):
            as_points(np.ones((4, 2)))

    @pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
    def test_non_finite_points(self, bad):
        """as_points rejects the same values as as_point."""
        points = np.zeros((5, 3))
        points[3, 2] = bad
        with pytest.raises(InvalidGeometryError, match="row 3"):
            as_points(points)


class TestAsStreamline:
    """Tests for as_streamline()."""

    def test_valid(self):
        sl = as_streamline(np.zeros((2, 3), dtype=np.float32))
        assert sl.shape == (2, 3)
        assert sl.dtype == np.float64

    @pytest.mark.parametrize("n_points", [0, 1])
    def test_too_short(self, n_points):
        with pytest.raises(InvalidGeometryError, match="Streamline #4"):
            as_streamline(np.zeros((n_points, 3)), 4)

    def test_none(self):
        with pytest.raises(InvalidGeometryError):
            as_streamline(None)
