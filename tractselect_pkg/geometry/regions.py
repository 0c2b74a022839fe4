# -*- coding: utf-8 -*-

"""
Selection volume descriptors.

A selection volume is either an axis-aligned box (converted to a convex
polytope of six half-spaces for k-d tree clipping) or a closed triangle
mesh (used for precise point-in-solid tests). Both carry a ``kind`` tag so
callers can dispatch without inspecting types.
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Sequence, Tuple, Union

import numpy as np

from ..errors import InvalidGeometryError
from ..utils import as_point, as_points, format_tuple
from .coordinates import apply_affine

logger = logging.getLogger(__name__)


class RegionKind(enum.Enum):
    """Tag of a selection volume."""
    BOX: int = 0
    MESH: int = 1


# ============================================================================
# Half-Spaces and Polytopes
# ============================================================================


@dataclass(frozen=True, eq=False)
class HalfSpace:
    """
    Closed half-space {p : dot(normal, p) + offset >= 0}.

    The normal is stored as a unit vector; the offset is rescaled with it.
    """

    normal: np.ndarray
    offset: float

    def __post_init__(self) -> None:
        normal = as_point(self.normal, "normal")
        length = float(np.linalg.norm(normal))
        if length == 0.0:
            raise InvalidGeometryError("Half-space normal must be non-zero")
        normal = normal / length
        normal.flags.writeable = False
        object.__setattr__(self, "normal", normal)
        object.__setattr__(self, "offset", float(self.offset) / length)

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        """Signed distances of (N, 3) points; non-negative means inside."""
        return as_points(points) @ self.normal + self.offset

    def contains(self, points: np.ndarray) -> np.ndarray:
        return self.signed_distance(points) >= 0.0


@dataclass(frozen=True, eq=False)
class ConvexPolytope:
    """Intersection of closed half-spaces."""

    half_spaces: Tuple[HalfSpace, ...]

    def __post_init__(self) -> None:
        planes = tuple(self.half_spaces)
        if not planes:
            raise InvalidGeometryError("A convex polytope needs at least one half-space")
        object.__setattr__(self, "half_spaces", planes)

    def __len__(self) -> int:
        return len(self.half_spaces)

    @property
    def normals(self) -> np.ndarray:
        """(K, 3) array of unit plane normals."""
        return np.array([h.normal for h in self.half_spaces], dtype=np.float64)

    @property
    def offsets(self) -> np.ndarray:
        """(K,) array of plane offsets."""
        return np.array([h.offset for h in self.half_spaces], dtype=np.float64)

    def contains(self, points: np.ndarray) -> np.ndarray:
        """Boolean mask of the (N, 3) points lying inside every half-space."""
        pts = as_points(points)
        if pts.shape[0] == 0:
            return np.zeros(0, dtype=bool)
        return np.all(pts @ self.normals.T + self.offsets >= 0.0, axis=1)


# ============================================================================
# Box Region
# ============================================================================


@dataclass(frozen=True, eq=False)
class BoxRegion:
    """
    Axis-aligned selection box.

    The box spans ``position + bbox_min`` to ``position + bbox_max``. Only
    translation is taken into account; a rotated selection volume is not
    representable here. A zero extent on an axis is allowed and makes the
    region a closed plane slab of zero thickness.
    """

    position: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray
    kind: RegionKind = field(default=RegionKind.BOX, init=False)

    def __post_init__(self) -> None:
        position = as_point(self.position, "position")
        lo = as_point(self.bbox_min, "bbox_min")
        hi = as_point(self.bbox_max, "bbox_max")
        if np.any(lo > hi):
            raise InvalidGeometryError(
                f"Inverted box: bbox_min {format_tuple(lo)} exceeds "
                f"bbox_max {format_tuple(hi)}"
            )
        if np.any(lo == hi):
            logger.debug(
                f"Box {format_tuple(lo)}-{format_tuple(hi)} has zero extent; "
                f"treating it as a closed plane"
            )
        for arr in (position, lo, hi):
            arr.flags.writeable = False
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "bbox_min", lo)
        object.__setattr__(self, "bbox_max", hi)

    @classmethod
    def from_corners(cls, corner_a, corner_b) -> "BoxRegion":
        """Builds a box at the origin from two opposite world-space corners."""
        a = as_point(corner_a, "corner_a")
        b = as_point(corner_b, "corner_b")
        return cls(np.zeros(3), np.minimum(a, b), np.maximum(a, b))

    @property
    def world_min(self) -> np.ndarray:
        return self.position + self.bbox_min

    @property
    def world_max(self) -> np.ndarray:
        return self.position + self.bbox_max

    @property
    def is_degenerate(self) -> bool:
        return bool(np.any(self.bbox_min == self.bbox_max))

    def to_polytope(self) -> ConvexPolytope:
        """
        Six half-spaces bounding the box, one per face.

        For each axis a "coordinate >= min" plane with normal +e and offset
        -(min + position), and a "coordinate <= max" plane with normal -e and
        offset (max + position).
        """
        planes = []
        for axis in (2, 0, 1):
            e = np.zeros(3)
            e[axis] = 1.0
            upper = self.bbox_max[axis] + self.position[axis]
            lower = self.bbox_min[axis] + self.position[axis]
            planes.append(HalfSpace(-e, upper))
            planes.append(HalfSpace(e, -lower))
        return ConvexPolytope(tuple(planes))

    def contains(self, points: np.ndarray) -> np.ndarray:
        pts = as_points(points)
        return np.all((pts >= self.world_min) & (pts <= self.world_max), axis=1)


# ============================================================================
# Triangle Mesh
# ============================================================================


class TriangleMesh:
    """
    Immutable triangle mesh: (V, 3) vertices and (T, 3) vertex indices.

    Raises:
        InvalidGeometryError: For a mesh without triangles or with triangle
            indices outside the vertex array.
    """

    def __init__(self, vertices: np.ndarray, triangles: np.ndarray) -> None:
        self._vertices = as_points(vertices, "vertices").copy()
        tris = np.asarray(triangles)
        if tris.size == 0:
            raise InvalidGeometryError("Selection mesh has no triangles")
        if tris.ndim != 2 or tris.shape[1] != 3:
            raise InvalidGeometryError(
                f"triangles must have shape (T, 3), got {tris.shape}"
            )
        if not np.issubdtype(tris.dtype, np.integer):
            rounded = np.rint(tris)
            if not np.array_equal(rounded, tris):
                raise InvalidGeometryError("triangle indices must be integers")
            tris = rounded
        tris = np.ascontiguousarray(tris, dtype=np.int64)
        n_vertices = self._vertices.shape[0]
        if tris.min() < 0 or tris.max() >= n_vertices:
            raise InvalidGeometryError(
                f"triangle indices must lie in [0, {n_vertices}), "
                f"got range [{tris.min()}, {tris.max()}]"
            )
        self._triangles = tris
        self._vertices.flags.writeable = False
        self._triangles.flags.writeable = False
        self._edge_stats = None
        used = self._vertices[np.unique(self._triangles)]
        self._bounds = np.stack([used.min(axis=0), used.max(axis=0)])
        self._bounds.flags.writeable = False

    @classmethod
    def from_buffers(cls, vertex_buffer: Sequence[float], index_buffer: Sequence[int]) -> "TriangleMesh":
        """Builds a mesh from flat buffers (3 floats per vertex, 3 indices per triangle)."""
        vb = np.asarray(vertex_buffer, dtype=np.float64).reshape(-1)
        ib = np.asarray(index_buffer).reshape(-1)
        if vb.size % 3 != 0:
            raise InvalidGeometryError(
                f"vertex buffer length {vb.size} is not a multiple of 3"
            )
        if ib.size % 3 != 0:
            raise InvalidGeometryError(
                f"index buffer length {ib.size} is not a multiple of 3"
            )
        return cls(vb.reshape(-1, 3), ib.reshape(-1, 3))

    def __repr__(self) -> str:
        return f"TriangleMesh(vertices={self.n_vertices}, triangles={self.n_triangles})"

    @property
    def vertices(self) -> np.ndarray:
        return self._vertices

    @property
    def triangles(self) -> np.ndarray:
        return self._triangles

    @property
    def n_vertices(self) -> int:
        return self._vertices.shape[0]

    @property
    def n_triangles(self) -> int:
        return self._triangles.shape[0]

    @property
    def bounds(self) -> np.ndarray:
        """(2, 3) array [min, max] over the referenced vertices."""
        return self._bounds

    @property
    def diagonal(self) -> float:
        lo, hi = self.bounds
        return float(np.linalg.norm(hi - lo))

    def _edge_counts(self) -> Tuple[int, int]:
        if self._edge_stats is None:
            tris = self._triangles
            # Triangles with repeated indices take no part in the topology
            proper = (
                (tris[:, 0] != tris[:, 1])
                & (tris[:, 1] != tris[:, 2])
                & (tris[:, 0] != tris[:, 2])
            )
            tris = tris[proper]
            edges = np.concatenate(
                [tris[:, [0, 1]], tris[:, [1, 2]], tris[:, [2, 0]]], axis=0
            )
            edges = np.sort(edges, axis=1)
            _, counts = np.unique(edges, axis=0, return_counts=True)
            self._edge_stats = (
                int(np.count_nonzero(counts == 1)),
                int(np.count_nonzero(counts > 2)),
            )
        return self._edge_stats

    @property
    def boundary_edge_count(self) -> int:
        """Number of edges used by exactly one triangle."""
        return self._edge_counts()[0]

    @property
    def non_manifold_edge_count(self) -> int:
        """Number of edges shared by more than two triangles."""
        return self._edge_counts()[1]

    @property
    def is_watertight(self) -> bool:
        boundary, non_manifold = self._edge_counts()
        return boundary == 0 and non_manifold == 0


def transformed_mesh(mesh: TriangleMesh, matrix: np.ndarray) -> TriangleMesh:
    """
    Returns a new mesh with every vertex mapped through a 4x4 affine.

    The input mesh is left untouched so it can be reused for later selections.
    """
    return TriangleMesh(apply_affine(mesh.vertices, matrix), mesh.triangles)


@dataclass(frozen=True)
class MeshRegion:
    """Selection volume bounded by a closed triangle mesh."""

    mesh: TriangleMesh
    name: str = ""
    kind: RegionKind = field(default=RegionKind.MESH, init=False)


SelectionRegion = Union[BoxRegion, MeshRegion]
