# -*- coding: utf-8 -*-

"""
Point-in-solid classification against closed triangle meshes.

Each query point casts a ray along a fixed direction and counts the mesh
triangles it crosses (Möller-Trumbore test); an odd count means the point
is inside. Triangles are binned once into a uniform grid over their
projection onto the plane orthogonal to the ray, so a ray only tests the
triangles of one grid cell. Grids and triangle data are read-only after
construction and shared by all worker threads; the per-point test is a
pure Numba kernel released from the GIL.

Rays that graze a triangle edge or vertex are re-cast along the next of
three fixed directions. Points lying on the surface count as inside.
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import logging
import time
import warnings
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from numba import njit

from ..errors import InvalidGeometryError, NonManifoldMeshWarning
from ..utils import (
    DEFAULT_INTERIOR_EPSILON,
    DEFAULT_WORKER_COUNT,
    INTERIOR_CHUNK_SIZE,
    as_point,
    as_points,
)
from .regions import TriangleMesh

logger = logging.getLogger(__name__)

# Fixed, deliberately non axis-aligned ray directions (tried in order)
_RAY_DIRECTIONS = np.array(
    [
        [0.8112421851755609, 0.5223034508972876, 0.2627453283939862],
        [-0.3141592653589793, 0.7071067811865476, 0.6324555320336759],
        [0.4472135954999579, -0.2672612419124244, -0.8539125638299665],
    ],
    dtype=np.float64,
)
_RAY_DIRECTIONS /= np.linalg.norm(_RAY_DIRECTIONS, axis=1, keepdims=True)

# Base tolerance, scaled by epsilon (and by the mesh size for distances)
_BASE_TOLERANCE: float = 1e-9
_MAX_GRID_RESOLUTION: int = 256


# ============================================================================
# Numba Kernels
# ============================================================================


@njit(nogil=True, cache=True)
def _build_triangle_grid(
    tri_umin: np.ndarray,
    tri_umax: np.ndarray,
    tri_vmin: np.ndarray,
    tri_vmax: np.ndarray,
    origin_u: float,
    origin_v: float,
    cell_u: float,
    cell_v: float,
    res: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Bins triangles by their projected bounding rectangle (CSR layout).

    Returns:
        Tuple (cell_start, cell_tris); the triangles of cell c are
        cell_tris[cell_start[c]:cell_start[c + 1]].
    """
    n_tri = tri_umin.shape[0]
    counts = np.zeros(res * res + 1, dtype=np.int64)

    for t in range(n_tri):
        i0 = min(max(int(np.floor((tri_umin[t] - origin_u) / cell_u)), 0), res - 1)
        i1 = min(max(int(np.floor((tri_umax[t] - origin_u) / cell_u)), 0), res - 1)
        j0 = min(max(int(np.floor((tri_vmin[t] - origin_v) / cell_v)), 0), res - 1)
        j1 = min(max(int(np.floor((tri_vmax[t] - origin_v) / cell_v)), 0), res - 1)
        for i in range(i0, i1 + 1):
            for j in range(j0, j1 + 1):
                counts[i * res + j + 1] += 1

    cell_start = np.cumsum(counts)
    fill = cell_start[:-1].copy()
    cell_tris = np.empty(cell_start[-1], dtype=np.int64)

    for t in range(n_tri):
        i0 = min(max(int(np.floor((tri_umin[t] - origin_u) / cell_u)), 0), res - 1)
        i1 = min(max(int(np.floor((tri_umax[t] - origin_u) / cell_u)), 0), res - 1)
        j0 = min(max(int(np.floor((tri_vmin[t] - origin_v) / cell_v)), 0), res - 1)
        j1 = min(max(int(np.floor((tri_vmax[t] - origin_v) / cell_v)), 0), res - 1)
        for i in range(i0, i1 + 1):
            for j in range(j0, j1 + 1):
                c = i * res + j
                cell_tris[fill[c]] = t
                fill[c] += 1

    return cell_start, cell_tris


@njit(nogil=True, cache=True)
def _cast_rays(
    points: np.ndarray,
    direction: np.ndarray,
    axis_u: np.ndarray,
    axis_v: np.ndarray,
    origin_u: float,
    origin_v: float,
    cell_u: float,
    cell_v: float,
    res: int,
    cell_start: np.ndarray,
    cell_tris: np.ndarray,
    v0: np.ndarray,
    e1: np.ndarray,
    e2: np.ndarray,
    area2: np.ndarray,
    mesh_min: np.ndarray,
    mesh_max: np.ndarray,
    dist_tol: float,
    rel_tol: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Ray parity test for a batch of points along one direction.

    Returns:
        Tuple (inside, ambiguous) of (N,) boolean arrays. ``ambiguous`` marks
        rays that passed within tolerance of a triangle edge or vertex, whose
        crossing count cannot be trusted.
    """
    n = points.shape[0]
    inside = np.zeros(n, dtype=np.bool_)
    ambiguous = np.zeros(n, dtype=np.bool_)
    dx = direction[0]
    dy = direction[1]
    dz = direction[2]

    for i in range(n):
        px = points[i, 0]
        py = points[i, 1]
        pz = points[i, 2]

        # Broad phase: outside the mesh bounds means outside the solid
        if (
            px < mesh_min[0] - dist_tol
            or px > mesh_max[0] + dist_tol
            or py < mesh_min[1] - dist_tol
            or py > mesh_max[1] + dist_tol
            or pz < mesh_min[2] - dist_tol
            or pz > mesh_max[2] + dist_tol
        ):
            continue

        pu = px * axis_u[0] + py * axis_u[1] + pz * axis_u[2]
        pv = px * axis_v[0] + py * axis_v[1] + pz * axis_v[2]
        ci = int(np.floor((pu - origin_u) / cell_u))
        cj = int(np.floor((pv - origin_v) / cell_v))
        if ci < 0 or ci >= res or cj < 0 or cj >= res:
            continue
        c = ci * res + cj

        hits = 0
        grazing = False
        on_surface = False

        for k in range(cell_start[c], cell_start[c + 1]):
            t_idx = cell_tris[k]

            # pvec = direction x e2
            qx = dy * e2[t_idx, 2] - dz * e2[t_idx, 1]
            qy = dz * e2[t_idx, 0] - dx * e2[t_idx, 2]
            qz = dx * e2[t_idx, 1] - dy * e2[t_idx, 0]
            det = e1[t_idx, 0] * qx + e1[t_idx, 1] * qy + e1[t_idx, 2] * qz

            # Near-tangent ray: skip the triangle
            if abs(det) <= rel_tol * area2[t_idx]:
                continue
            inv_det = 1.0 / det

            sx = px - v0[t_idx, 0]
            sy = py - v0[t_idx, 1]
            sz = pz - v0[t_idx, 2]
            u = (sx * qx + sy * qy + sz * qz) * inv_det
            if u < -rel_tol or u > 1.0 + rel_tol:
                continue

            # qvec = s x e1
            rx = sy * e1[t_idx, 2] - sz * e1[t_idx, 1]
            ry = sz * e1[t_idx, 0] - sx * e1[t_idx, 2]
            rz = sx * e1[t_idx, 1] - sy * e1[t_idx, 0]
            v = (dx * rx + dy * ry + dz * rz) * inv_det
            if v < -rel_tol or u + v > 1.0 + rel_tol:
                continue

            t = (e2[t_idx, 0] * rx + e2[t_idx, 1] * ry + e2[t_idx, 2] * rz) * inv_det
            if abs(t) <= dist_tol:
                on_surface = True
                break
            if t < 0.0:
                continue

            if u < rel_tol or v < rel_tol or u + v > 1.0 - rel_tol:
                grazing = True
            hits += 1

        if on_surface:
            inside[i] = True
        else:
            inside[i] = hits % 2 == 1
            ambiguous[i] = grazing

    return inside, ambiguous


# ============================================================================
# Ray Grids
# ============================================================================


class _RayGrid(NamedTuple):
    """Triangle bins for one ray direction."""

    direction: np.ndarray
    axis_u: np.ndarray
    axis_v: np.ndarray
    origin_u: float
    origin_v: float
    cell_u: float
    cell_v: float
    res: int
    cell_start: np.ndarray
    cell_tris: np.ndarray


def _orthonormal_axes(direction: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    helper = np.zeros(3)
    helper[int(np.argmin(np.abs(direction)))] = 1.0
    axis_u = np.cross(direction, helper)
    axis_u /= np.linalg.norm(axis_u)
    axis_v = np.cross(direction, axis_u)
    return axis_u, axis_v


def _build_ray_grid(
    direction: np.ndarray, corners: np.ndarray, pad: float
) -> _RayGrid:
    """
    Args:
        direction: Unit ray direction.
        corners: (T, 3, 3) triangle corner coordinates.
        pad: Amount each projected triangle rectangle is grown by.
    """
    axis_u, axis_v = _orthonormal_axes(direction)
    proj_u = corners @ axis_u
    proj_v = corners @ axis_v
    tri_umin = proj_u.min(axis=1) - pad
    tri_umax = proj_u.max(axis=1) + pad
    tri_vmin = proj_v.min(axis=1) - pad
    tri_vmax = proj_v.max(axis=1) + pad

    origin_u = float(tri_umin.min())
    origin_v = float(tri_vmin.min())
    res = int(np.clip(np.sqrt(len(corners)), 1, _MAX_GRID_RESOLUTION))
    cell_u = max(float(tri_umax.max()) - origin_u, pad, 1e-12) / res
    cell_v = max(float(tri_vmax.max()) - origin_v, pad, 1e-12) / res

    cell_start, cell_tris = _build_triangle_grid(
        tri_umin, tri_umax, tri_vmin, tri_vmax, origin_u, origin_v, cell_u, cell_v, res
    )
    for arr in (axis_u, axis_v, cell_start, cell_tris):
        arr.flags.writeable = False
    return _RayGrid(
        direction, axis_u, axis_v, origin_u, origin_v, cell_u, cell_v, res,
        cell_start, cell_tris,
    )


# ============================================================================
# Interior Tester
# ============================================================================


class MeshInteriorTester:
    """
    Classifies points as inside or outside a closed triangle mesh.

    The tester is immutable after construction and safe to share between
    threads. Batch classification runs on a bounded thread pool, which is
    either injected (and then never shut down here), owned for the lifetime
    of a ``with`` block, or created for the duration of a single call.

    Points on the mesh surface are classified as inside.
    """

    def __init__(
        self,
        mesh: TriangleMesh,
        epsilon: float = DEFAULT_INTERIOR_EPSILON,
        max_workers: int = DEFAULT_WORKER_COUNT,
        executor: Optional[Executor] = None,
        chunk_size: int = INTERIOR_CHUNK_SIZE,
        stacklevel: int = 2,
    ) -> None:
        """
        Args:
            mesh: Closed (ideally watertight) triangle mesh.
            epsilon: Tolerance factor; distances within
                ``epsilon * 1e-9 * max(1, mesh diagonal)`` of the surface count
                as on the surface, and rays within ``epsilon * 1e-9`` (relative)
                of a triangle's plane or edges are treated as tangent/grazing.
            max_workers: Size of the worker pool for batch classification.
            executor: Optional externally owned executor to run batches on.
            chunk_size: Number of points handed to one worker task.
            stacklevel: Stack level of the non-watertight warning, counted from
                this constructor (2 points at the code creating the tester).
        """
        if epsilon <= 0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

        self.mesh = mesh
        self.epsilon = float(epsilon)
        self.max_workers = int(max_workers)
        self.chunk_size = int(chunk_size)
        self._executor = executor
        self._owns_executor = False

        t0 = time.perf_counter()
        bounds = mesh.bounds
        self._mesh_min = np.ascontiguousarray(bounds[0])
        self._mesh_max = np.ascontiguousarray(bounds[1])
        self.dist_tolerance = self.epsilon * _BASE_TOLERANCE * max(1.0, mesh.diagonal)
        self.rel_tolerance = self.epsilon * _BASE_TOLERANCE

        corners = mesh.vertices[mesh.triangles]
        e1 = corners[:, 1] - corners[:, 0]
        e2 = corners[:, 2] - corners[:, 0]
        area2 = np.linalg.norm(np.cross(e1, e2), axis=1)

        # Zero-area triangles never contribute a crossing
        valid = area2 > self.rel_tolerance * max(1.0, mesh.diagonal) ** 2
        n_degenerate = int(np.count_nonzero(~valid))
        if n_degenerate == mesh.n_triangles:
            raise InvalidGeometryError(f"{mesh!r} has no triangle with non-zero area")
        if n_degenerate:
            logger.info(f"Skipping {n_degenerate} degenerate triangles in {mesh!r}")

        self._v0 = np.ascontiguousarray(corners[valid, 0])
        self._e1 = np.ascontiguousarray(e1[valid])
        self._e2 = np.ascontiguousarray(e2[valid])
        self._area2 = np.ascontiguousarray(area2[valid])
        for arr in (self._mesh_min, self._mesh_max, self._v0, self._e1, self._e2, self._area2):
            arr.flags.writeable = False

        valid_corners = corners[valid]
        self._grids: List[_RayGrid] = [
            _build_ray_grid(d, valid_corners, self.dist_tolerance)
            for d in _RAY_DIRECTIONS
        ]

        self.is_watertight = mesh.is_watertight
        if not self.is_watertight:
            message = (
                f"{mesh!r} is not watertight ({mesh.boundary_edge_count} boundary "
                f"edges, {mesh.non_manifold_edge_count} non-manifold edges); "
                f"points near the gaps may be misclassified."
            )
            logger.warning(message)
            warnings.warn(message, NonManifoldMeshWarning, stacklevel=stacklevel)

        logger.debug(
            f"Prepared interior tester for {mesh!r} in "
            f"{(time.perf_counter() - t0) * 1000:.1f} ms"
        )

    # --- Pool lifetime ---

    def __enter__(self) -> "MeshInteriorTester":
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="mesh-interior"
            )
            self._owns_executor = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Shuts down the worker pool if this tester created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            self._owns_executor = False

    # --- Classification ---

    def _cast(self, grid: _RayGrid, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return _cast_rays(
            points,
            grid.direction,
            grid.axis_u,
            grid.axis_v,
            grid.origin_u,
            grid.origin_v,
            grid.cell_u,
            grid.cell_v,
            grid.res,
            grid.cell_start,
            grid.cell_tris,
            self._v0,
            self._e1,
            self._e2,
            self._area2,
            self._mesh_min,
            self._mesh_max,
            self.dist_tolerance,
            self.rel_tolerance,
        )

    def inside_mask(self, points: np.ndarray) -> np.ndarray:
        """
        Classifies a batch of points in the calling thread.

        Returns:
            (N,) boolean mask, True where the point is inside (or on) the mesh.
        """
        pts = as_points(points)
        inside, ambiguous = self._cast(self._grids[0], pts)
        for grid in self._grids[1:]:
            retry = np.flatnonzero(ambiguous)
            if retry.size == 0:
                break
            retry_inside, retry_ambiguous = self._cast(grid, pts[retry])
            inside[retry] = retry_inside
            ambiguous = np.zeros_like(ambiguous)
            ambiguous[retry] = retry_ambiguous
        return inside

    def is_inside(self, point) -> bool:
        """Returns True if the point lies inside (or on) the mesh."""
        return bool(self.inside_mask(as_point(point)[None, :])[0])

    def _classify_chunk(self, points: np.ndarray, start: int) -> np.ndarray:
        return np.flatnonzero(self.inside_mask(points)) + start

    def classify_points(self, points: np.ndarray) -> np.ndarray:
        """
        Classifies all points, in parallel chunks, and blocks until done.

        Returns:
            Ascending int64 array of the positions of the points inside the mesh.
        """
        pts = as_points(points)
        n = pts.shape[0]
        if n == 0:
            return np.empty(0, dtype=np.int64)

        t0 = time.perf_counter()
        starts = range(0, n, self.chunk_size)

        if len(starts) == 1:
            result = self._classify_chunk(pts, 0)
        elif self._executor is not None:
            result = self._run_chunks(self._executor, pts, starts)
        else:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="mesh-interior"
            ) as pool:
                result = self._run_chunks(pool, pts, starts)

        logger.debug(
            f"Classified {n} points against {self.mesh!r}: {len(result)} inside "
            f"({(time.perf_counter() - t0) * 1000:.1f} ms)"
        )
        return result

    def _run_chunks(self, pool: Executor, pts: np.ndarray, starts: range) -> np.ndarray:
        futures = [
            pool.submit(self._classify_chunk, pts[s:s + self.chunk_size], s)
            for s in starts
        ]
        # Chunk results are disjoint
        parts = [f.result() for f in futures]
        return np.sort(np.concatenate(parts)).astype(np.int64, copy=False)
