# -*- coding: utf-8 -*-

"""
Utility functions, constants, and enums for the TractSelect package.
"""

import enum
import logging
from typing import Any

import numpy as np

from .errors import InvalidGeometryError

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_MAX_STREAMLINES: int = 1000
DEFAULT_SUBDIVISIONS: int = 2
DEFAULT_INTERIOR_EPSILON: float = 1.0
DEFAULT_WORKER_COUNT: int = 8
DEFAULT_SHUFFLE_SEED: int = 0
MIN_STREAMLINE_POINTS: int = 2
INTERIOR_CHUNK_SIZE: int = 4096


# --- Coloring Mode Enum ---
class ColorMode(enum.Enum):
    """Enum defining the streamline segment coloring modes."""
    GLOBAL_DIRECTION: int = 0
    LOCAL_DIRECTION: int = 1


def format_tuple(data: Any, precision: int = 2) -> str:
    """Formats a tuple of numbers into a string '(num1, num2, ...)'."""
    if isinstance(data, np.ndarray):
        data = data.tolist()
    if isinstance(data, (list, tuple)):
        try:
            return f"({', '.join(f'{x:.{precision}f}' for x in data)})"
        except (TypeError, ValueError):
            return str(data)  # Fallback
    return str(data)


def as_point(value: Any, name: str = "point") -> np.ndarray:
    """
    Converts a 3-element sequence into a float64 array of shape (3,).

    Raises:
        InvalidGeometryError: If the value does not hold exactly 3 finite numbers.
    """
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise InvalidGeometryError(
            f"{name} must have exactly 3 coordinates, got shape {np.shape(value)}"
        )
    if not np.all(np.isfinite(arr)):
        raise InvalidGeometryError(f"{name} contains non-finite values: {arr}")
    return arr


def as_points(value: Any, name: str = "points") -> np.ndarray:
    """
    Converts point data into a contiguous float64 array of shape (N, 3).

    An empty input yields an array of shape (0, 3).

    Raises:
        InvalidGeometryError: If the shape is wrong or a coordinate is NaN or
            infinite.
    """
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise InvalidGeometryError(
            f"{name} must have shape (N, 3), got {arr.shape}"
        )
    finite = np.isfinite(arr).all(axis=1)
    if not finite.all():
        bad = np.flatnonzero(~finite)
        raise InvalidGeometryError(
            f"{name} contains non-finite coordinates at row {int(bad[0])} "
            f"({bad.size} rows in total)"
        )
    return np.ascontiguousarray(arr)


def as_streamline(value: Any, index: int = -1) -> np.ndarray:
    """
    Validates a single streamline and returns it as a float64 (N, 3) array.

    Raises:
        InvalidGeometryError: If the streamline has fewer than two vertices
            or a NaN or infinite coordinate.
    """
    label = f"Streamline #{index}" if index >= 0 else "Streamline"
    if value is None:
        raise InvalidGeometryError(f"{label} is missing (None)")
    arr = as_points(value, name=label)
    if arr.shape[0] < MIN_STREAMLINE_POINTS:
        raise InvalidGeometryError(
            f"{label} has {arr.shape[0]} vertices; at least "
            f"{MIN_STREAMLINE_POINTS} are required"
        )
    return arr
