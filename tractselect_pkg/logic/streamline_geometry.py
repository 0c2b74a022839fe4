# -*- coding: utf-8 -*-

"""
Display geometry and shape metrics for streamlines.

Every streamline is smoothed with a uniform cubic B-spline whose control
points are the streamline vertices, clamped at both ends so the curve starts
and stops exactly on the first and last vertex. Along the sampled curve a
rotation-minimizing frame (tangent, normal, binormal) is propagated by
parallel transport, which is what tube renderers extrude along.

Length and curvature are measured on the raw vertices, not on the spline.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

import numpy as np
from numba import njit

from ..utils import DEFAULT_SUBDIVISIONS, ColorMode, as_streamline

logger = logging.getLogger(__name__)

# Uniform cubic B-spline basis, rows multiply [t^3, t^2, t, 1]
_BSPLINE_BASIS = (
    np.array(
        [
            [-1.0, 3.0, -3.0, 1.0],
            [3.0, -6.0, 3.0, 0.0],
            [-3.0, 0.0, 3.0, 0.0],
            [1.0, 4.0, 1.0, 0.0],
        ]
    )
    / 6.0
)

# Copies of each end vertex prepended/appended to clamp the spline
_END_PADDING: int = 2


@dataclass(frozen=True, eq=False)
class SplineCurve:
    """
    Render-ready geometry of one streamline.

    Attributes:
        points: (M, 3) samples of the smoothed curve.
        tangents: (M, 3) unit tangents.
        normals: (M, 3) unit normals of the parallel-transport frame.
        binormals: (M, 3) tangent x normal.
        point_colors: (M, 3) RGB in [0, 1] for every sample.
        segment_colors: (N - 1, 3) RGB in [0, 1] for every raw segment.
        length: Sum of the raw segment lengths.
        local_curvature: (N - 2,) curvature at the interior raw vertices.
        average_curvature: Mean of ``local_curvature`` (0.0 when empty).
        minimum_curvature: Minimum of ``local_curvature`` (0.0 when empty).
        maximum_curvature: Maximum of ``local_curvature`` (0.0 when empty).
        subdivisions: Samples per spline segment.
        source_index: Position of the streamline in its collection, if known.
    """

    points: np.ndarray
    tangents: np.ndarray
    normals: np.ndarray
    binormals: np.ndarray
    point_colors: np.ndarray
    segment_colors: np.ndarray
    length: float
    local_curvature: np.ndarray
    average_curvature: float
    minimum_curvature: float
    maximum_curvature: float
    subdivisions: int
    source_index: Optional[int] = None

    @property
    def n_points(self) -> int:
        return self.points.shape[0]


# ============================================================================
# Numeric Helpers
# ============================================================================


def _safe_normalize(vectors: np.ndarray) -> np.ndarray:
    """Row-normalizes (K, 3) vectors; zero rows stay zero."""
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    out = np.zeros_like(vectors)
    np.divide(vectors, norms, out=out, where=norms > 0.0)
    return out


def sample_bspline(vertices: np.ndarray, subdivisions: int) -> np.ndarray:
    """
    Samples the end-clamped uniform cubic B-spline through ``vertices``.

    Args:
        vertices: (N, 3) control points, N >= 2.
        subdivisions: Samples per spline segment (>= 1).

    Returns:
        ((N + 1) * subdivisions + 1, 3) array starting at the first vertex and
        ending at the last.
    """
    control = np.concatenate(
        [
            np.repeat(vertices[:1], _END_PADDING, axis=0),
            vertices,
            np.repeat(vertices[-1:], _END_PADDING, axis=0),
        ]
    )
    n_segments = control.shape[0] - 3

    t = np.arange(subdivisions, dtype=np.float64) / subdivisions
    powers = np.stack([t**3, t**2, t, np.ones_like(t)], axis=1)
    weights = powers @ _BSPLINE_BASIS

    # windows[j, m] = control[j + m]
    windows = np.stack([control[m:m + n_segments] for m in range(4)], axis=1)
    samples = np.einsum("km,jmd->jkd", weights, windows).reshape(-1, 3)
    return np.concatenate([samples, control[-1:]])


def _unit_tangents(points: np.ndarray) -> np.ndarray:
    """Finite-difference tangents; zero tangents inherit a neighbour's."""
    tangents = _safe_normalize(np.gradient(points, axis=0))
    valid = np.any(tangents != 0.0, axis=1)
    if not valid.any():
        tangents[:] = (1.0, 0.0, 0.0)
        return tangents
    if not valid.all():
        # Forward-fill, then back-fill the leading gap
        idx = np.where(valid, np.arange(len(valid)), 0)
        np.maximum.accumulate(idx, out=idx)
        first = int(np.argmax(valid))
        idx[:first] = first
        tangents = tangents[idx]
    return tangents


@njit(nogil=True, cache=True)
def _parallel_transport_normals(tangents: np.ndarray) -> np.ndarray:
    """
    Propagates a normal along unit tangents by minimal rotation.

    Each step rotates the previous normal about (T_prev x T_cur) by the angle
    between the tangents (Rodrigues' formula) and re-orthogonalizes it.
    """
    m = tangents.shape[0]
    normals = np.zeros((m, 3), dtype=np.float64)

    # Initial normal: least-aligned axis projected off the first tangent
    axis = 0
    for k in range(1, 3):
        if abs(tangents[0, k]) < abs(tangents[0, axis]):
            axis = k
    n = np.zeros(3, dtype=np.float64)
    n[axis] = 1.0
    n = n - (n[0] * tangents[0, 0] + n[1] * tangents[0, 1] + n[2] * tangents[0, 2]) * tangents[0]
    n = n / np.sqrt(n[0] ** 2 + n[1] ** 2 + n[2] ** 2)
    normals[0] = n

    for i in range(1, m):
        tp = tangents[i - 1]
        tc = tangents[i]
        kx = tp[1] * tc[2] - tp[2] * tc[1]
        ky = tp[2] * tc[0] - tp[0] * tc[2]
        kz = tp[0] * tc[1] - tp[1] * tc[0]
        s = np.sqrt(kx * kx + ky * ky + kz * kz)
        c = tp[0] * tc[0] + tp[1] * tc[1] + tp[2] * tc[2]

        if s > 1e-12:
            kx /= s
            ky /= s
            kz /= s
            kn = kx * n[0] + ky * n[1] + kz * n[2]
            cx = ky * n[2] - kz * n[1]
            cy = kz * n[0] - kx * n[2]
            cz = kx * n[1] - ky * n[0]
            n = np.array(
                [
                    n[0] * c + cx * s + kx * kn * (1.0 - c),
                    n[1] * c + cy * s + ky * kn * (1.0 - c),
                    n[2] * c + cz * s + kz * kn * (1.0 - c),
                ]
            )

        d = n[0] * tc[0] + n[1] * tc[1] + n[2] * tc[2]
        cand = n - d * tc
        norm = np.sqrt(cand[0] ** 2 + cand[1] ** 2 + cand[2] ** 2)
        if norm > 1e-12:
            n = cand / norm
        normals[i] = n

    return normals


def streamline_metrics(vertices: np.ndarray):
    """
    Length and discrete curvature of a raw polyline.

    At interior vertex i the tangent T_i is the direction of
    p[i+1] - p[i-1] (one-sided at the ends), dT/ds is the central difference
    of the neighbouring tangents over the two adjacent segment lengths, and
    the curvature is the magnitude of its component normal to T_i.

    Returns:
        Tuple (length, local_curvature) with local_curvature of shape (N - 2,).
    """
    segments = np.diff(vertices, axis=0)
    seg_len = np.linalg.norm(segments, axis=1)
    length = float(seg_len.sum())

    n = vertices.shape[0]
    if n < 3:
        return length, np.zeros(0, dtype=np.float64)

    chords = np.empty_like(vertices)
    chords[0] = segments[0]
    chords[-1] = segments[-1]
    chords[1:-1] = vertices[2:] - vertices[:-2]
    tangents = _safe_normalize(chords)

    ds = (seg_len[1:] + seg_len[:-1])[:, None]
    dT = np.zeros((n - 2, 3), dtype=np.float64)
    np.divide(tangents[2:] - tangents[:-2], ds, out=dT, where=ds > 0.0)

    t_mid = tangents[1:-1]
    normal_part = dT - np.sum(dT * t_mid, axis=1, keepdims=True) * t_mid
    return length, np.linalg.norm(normal_part, axis=1)


def segment_colors(vertices: np.ndarray, color_mode: ColorMode) -> np.ndarray:
    """
    Direction colors of the raw segments, one RGB row per segment.

    GLOBAL_DIRECTION paints every segment with the end-to-end direction,
    LOCAL_DIRECTION each segment with its own direction.
    """
    n_segments = vertices.shape[0] - 1
    if color_mode == ColorMode.LOCAL_DIRECTION:
        return np.abs(_safe_normalize(np.diff(vertices, axis=0)))
    direction = _safe_normalize((vertices[-1] - vertices[0])[None, :])
    return np.repeat(np.abs(direction), n_segments, axis=0)


def filter_by_metrics(
    curves: Iterable[SplineCurve],
    min_length: Optional[float] = None,
    max_length: Optional[float] = None,
    max_average_curvature: Optional[float] = None,
) -> List[SplineCurve]:
    """Keeps the curves whose metrics lie within the given (inclusive) limits."""
    kept = []
    for curve in curves:
        if min_length is not None and curve.length < min_length:
            continue
        if max_length is not None and curve.length > max_length:
            continue
        if (
            max_average_curvature is not None
            and curve.average_curvature > max_average_curvature
        ):
            continue
        kept.append(curve)
    return kept


# ============================================================================
# Builder
# ============================================================================


class StreamlineGeometryBuilder:
    """Builds SplineCurve objects for single streamlines or collections."""

    filter_by_metrics = staticmethod(filter_by_metrics)

    def __init__(
        self,
        subdivisions: int = DEFAULT_SUBDIVISIONS,
        color_mode: ColorMode = ColorMode.GLOBAL_DIRECTION,
    ) -> None:
        self.subdivisions = self._check_subdivisions(subdivisions)
        self.color_mode = color_mode

    @staticmethod
    def _check_subdivisions(subdivisions: int) -> int:
        if int(subdivisions) != subdivisions or subdivisions < 1:
            raise ValueError(f"subdivisions must be an integer >= 1, got {subdivisions}")
        return int(subdivisions)

    def build_curve(
        self,
        streamline: Any,
        subdivisions: Optional[int] = None,
        source_index: Optional[int] = None,
    ) -> SplineCurve:
        """
        Builds the spline geometry and metrics of one streamline.

        Args:
            streamline: (N, 3) vertices, N >= 2. Not modified.
            subdivisions: Overrides the builder's samples per segment.
            source_index: Position of the streamline in its collection.

        Raises:
            InvalidGeometryError: If the streamline has fewer than two vertices.
            ValueError: If ``subdivisions`` is below 1.
        """
        subdiv = (
            self.subdivisions
            if subdivisions is None
            else self._check_subdivisions(subdivisions)
        )
        vertices = as_streamline(
            streamline, -1 if source_index is None else int(source_index)
        )

        points = sample_bspline(vertices, subdiv)
        tangents = _unit_tangents(points)
        normals = _parallel_transport_normals(np.ascontiguousarray(tangents))
        binormals = np.cross(tangents, normals)

        seg_colors = segment_colors(vertices, self.color_mode)
        # Spline segment j spans raw segment j - 1; the final sample closes the last one
        spline_segment = np.minimum(np.arange(points.shape[0]) // subdiv, len(vertices))
        raw_segment = np.clip(spline_segment - 1, 0, len(seg_colors) - 1)
        point_colors = seg_colors[raw_segment]

        length, local_curvature = streamline_metrics(vertices)
        if local_curvature.size:
            average = float(local_curvature.mean())
            minimum = float(local_curvature.min())
            maximum = float(local_curvature.max())
        else:
            average = minimum = maximum = 0.0

        return SplineCurve(
            points=points,
            tangents=tangents,
            normals=normals,
            binormals=binormals,
            point_colors=point_colors,
            segment_colors=seg_colors,
            length=length,
            local_curvature=local_curvature,
            average_curvature=average,
            minimum_curvature=minimum,
            maximum_curvature=maximum,
            subdivisions=subdiv,
            source_index=source_index,
        )

    def build_curves(
        self,
        streamlines: Sequence[Any],
        source_indices: Optional[Iterable[int]] = None,
    ) -> List[SplineCurve]:
        """
        Builds curves for a whole collection.

        A SelectionResult input tags each curve with its root collection index.

        Args:
            streamlines: Streamline collection or SelectionResult.
            source_indices: Optional per-streamline indices to record.
        """
        if source_indices is None:
            indices = getattr(streamlines, "indices", None)
            source_indices = (
                [int(i) for i in indices] if indices is not None else range(len(streamlines))
            )

        t0 = time.perf_counter()
        curves = [
            self.build_curve(sl, source_index=int(idx))
            for sl, idx in zip(streamlines, source_indices)
        ]
        if not curves:
            logger.debug("No streamlines to build curves for")
            return curves

        logger.info(
            f"Built {len(curves)} curves in {(time.perf_counter() - t0) * 1000:.1f} ms; "
            f"maximum length {max(c.length for c in curves):.2f}, "
            f"maximum curvature {max(c.maximum_curvature for c in curves):.4f}, "
            f"maximum average curvature {max(c.average_curvature for c in curves):.4f}"
        )
        return curves
