# -*- coding: utf-8 -*-

"""
Static k-d tree over 3-D points.

The tree is built once from a point array and never modified afterwards.
Nodes are stored in flat numpy arrays (bucketed leaves, median splits on
cycling axes) so that traversal can run inside Numba kernels without any
Python objects. Every node keeps the bounding box of the points below it,
which is what range queries and polytope clipping prune against.
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import logging
import time
from typing import NamedTuple, Optional

import numpy as np
from numba import njit

from ..utils import as_point, as_points
from ..errors import InvalidGeometryError

logger = logging.getLogger(__name__)

# Points per leaf bucket
LEAF_SIZE: int = 8

# Traversal stack capacity; tree depth is ~log2(n / LEAF_SIZE)
_STACK_CAPACITY: int = 128


# ============================================================================
# Numba Kernels
# ============================================================================


@njit(nogil=True, cache=True)
def _build_kdtree(points: np.ndarray, leaf_size: int):
    """
    Builds the flat node arrays of a balanced k-d tree.

    The split axis cycles x, y, z with depth. Each split selects the
    median in linear time and partitions the bucket stably, so both halves
    stay in ascending input order and coincident coordinates are always
    ordered by their input position. The build is O(n log n).

    Args:
        points: (N, 3) float64 array, N >= 1.
        leaf_size: Maximum number of points in a leaf bucket.

    Returns:
        Tuple (order, node_start, node_end, node_left, node_right,
        node_min, node_max).
    """
    n = points.shape[0]
    max_nodes = 2 * n + 1

    node_start = np.zeros(max_nodes, dtype=np.int64)
    node_end = np.zeros(max_nodes, dtype=np.int64)
    node_left = np.full(max_nodes, -1, dtype=np.int64)
    node_right = np.full(max_nodes, -1, dtype=np.int64)
    node_min = np.zeros((max_nodes, 3), dtype=np.float64)
    node_max = np.zeros((max_nodes, 3), dtype=np.float64)

    order = np.arange(n)

    stack_node = np.empty(_STACK_CAPACITY, dtype=np.int64)
    stack_depth = np.empty(_STACK_CAPACITY, dtype=np.int64)

    node_start[0] = 0
    node_end[0] = n
    n_nodes = 1
    stack_node[0] = 0
    stack_depth[0] = 0
    top = 1

    while top > 0:
        top -= 1
        node = stack_node[top]
        depth = stack_depth[top]
        start = node_start[node]
        end = node_end[node]

        # Bounding box of this subtree
        for k in range(3):
            lo = points[order[start], k]
            hi = lo
            for j in range(start + 1, end):
                v = points[order[j], k]
                if v < lo:
                    lo = v
                if v > hi:
                    hi = v
            node_min[node, k] = lo
            node_max[node, k] = hi

        count = end - start
        if count <= leaf_size:
            continue

        axis = depth % 3
        segment = order[start:end].copy()
        coords = np.empty(count, dtype=np.float64)
        for j in range(count):
            coords[j] = points[segment[j], axis]

        # Selection of the median in linear time; the segment is already in
        # ascending input order, so ties at the pivot go left by input order
        mid = count // 2
        pivot = np.partition(coords, mid)[mid]
        n_less = 0
        for j in range(count):
            if coords[j] < pivot:
                n_less += 1
        ties_left = mid - n_less

        li = start
        ri = start + mid
        for j in range(count):
            c = coords[j]
            if c < pivot or (c == pivot and ties_left > 0):
                if c == pivot:
                    ties_left -= 1
                order[li] = segment[j]
                li += 1
            else:
                order[ri] = segment[j]
                ri += 1

        left = n_nodes
        right = n_nodes + 1
        n_nodes += 2

        node_start[left] = start
        node_end[left] = start + mid
        node_start[right] = start + mid
        node_end[right] = end
        node_left[node] = left
        node_right[node] = right

        stack_node[top] = right
        stack_depth[top] = depth + 1
        top += 1
        stack_node[top] = left
        stack_depth[top] = depth + 1
        top += 1

    return (
        order,
        node_start[:n_nodes].copy(),
        node_end[:n_nodes].copy(),
        node_left[:n_nodes].copy(),
        node_right[:n_nodes].copy(),
        node_min[:n_nodes].copy(),
        node_max[:n_nodes].copy(),
    )


@njit(nogil=True, cache=True)
def _range_query_mask(
    points: np.ndarray,
    order: np.ndarray,
    node_start: np.ndarray,
    node_end: np.ndarray,
    node_left: np.ndarray,
    node_right: np.ndarray,
    node_min: np.ndarray,
    node_max: np.ndarray,
    box_min: np.ndarray,
    box_max: np.ndarray,
) -> np.ndarray:
    """
    Marks every point inside the closed box [box_min, box_max].

    Returns:
        (N,) boolean mask over the indexed points.
    """
    n = points.shape[0]
    mask = np.zeros(n, dtype=np.bool_)
    if node_start.shape[0] == 0:
        return mask

    stack = np.empty(_STACK_CAPACITY, dtype=np.int64)
    stack[0] = 0
    top = 1

    while top > 0:
        top -= 1
        node = stack[top]

        disjoint = False
        contained = True
        for k in range(3):
            if node_max[node, k] < box_min[k] or node_min[node, k] > box_max[k]:
                disjoint = True
                break
            if node_min[node, k] < box_min[k] or node_max[node, k] > box_max[k]:
                contained = False
        if disjoint:
            continue

        if contained:
            for j in range(node_start[node], node_end[node]):
                mask[order[j]] = True
            continue

        if node_left[node] < 0:
            for j in range(node_start[node], node_end[node]):
                p = order[j]
                inside = True
                for k in range(3):
                    v = points[p, k]
                    if v < box_min[k] or v > box_max[k]:
                        inside = False
                        break
                if inside:
                    mask[p] = True
            continue

        stack[top] = node_right[node]
        top += 1
        stack[top] = node_left[node]
        top += 1

    return mask


# ============================================================================
# Spatial Index
# ============================================================================


class KDTreeArrays(NamedTuple):
    """Flat node storage of a built tree, shared read-only with kernels."""

    order: np.ndarray
    node_start: np.ndarray
    node_end: np.ndarray
    node_left: np.ndarray
    node_right: np.ndarray
    node_min: np.ndarray
    node_max: np.ndarray


def _empty_tree_arrays() -> KDTreeArrays:
    empty_int = np.empty(0, dtype=np.int64)
    empty_box = np.empty((0, 3), dtype=np.float64)
    return KDTreeArrays(
        empty_int, empty_int, empty_int, empty_int, empty_int, empty_box, empty_box
    )


class PointSpatialIndex:
    """
    Immutable k-d tree over 3-D points, each carrying a payload row.

    Queries are exact: every point inside the queried region is returned.
    An index built from zero points answers every query with an empty result.
    """

    def __init__(
        self,
        points: np.ndarray,
        payloads: Optional[np.ndarray] = None,
        leaf_size: int = LEAF_SIZE,
    ) -> None:
        """
        Builds the index.

        Args:
            points: (N, 3) array of point coordinates.
            payloads: Optional array whose first dimension is N. Defaults to
                the point positions 0..N-1.
            leaf_size: Maximum number of points per leaf bucket.
        """
        if leaf_size < 1:
            raise ValueError(f"leaf_size must be >= 1, got {leaf_size}")

        self._points = as_points(points).copy()
        n = self._points.shape[0]

        if payloads is None:
            self._payloads = np.arange(n, dtype=np.int64)
        else:
            self._payloads = np.array(payloads, copy=True)
            if self._payloads.shape[:1] != (n,):
                raise InvalidGeometryError(
                    f"payloads must have {n} rows, got shape {self._payloads.shape}"
                )

        t0 = time.perf_counter()
        if n == 0:
            self._tree = _empty_tree_arrays()
        else:
            self._tree = KDTreeArrays(*_build_kdtree(self._points, leaf_size))

        # Instances are value-like once built
        self._points.flags.writeable = False
        self._payloads.flags.writeable = False
        for arr in self._tree:
            arr.flags.writeable = False

        logger.debug(
            f"Built k-d tree over {n} points ({len(self._tree.node_start)} nodes) "
            f"in {(time.perf_counter() - t0) * 1000:.1f} ms"
        )

    def __len__(self) -> int:
        return self._points.shape[0]

    @property
    def is_empty(self) -> bool:
        return self._points.shape[0] == 0

    @property
    def points(self) -> np.ndarray:
        return self._points

    @property
    def payloads(self) -> np.ndarray:
        return self._payloads

    @property
    def tree(self) -> KDTreeArrays:
        return self._tree

    @property
    def bounds(self) -> Optional[np.ndarray]:
        """(2, 3) array [min, max] of all points, or None when empty."""
        if self.is_empty:
            return None
        return np.stack([self._tree.node_min[0], self._tree.node_max[0]])

    def query_mask(self, box_min, box_max) -> np.ndarray:
        """Boolean mask over the points lying in the closed box."""
        lo = as_point(box_min, "box_min")
        hi = as_point(box_max, "box_max")
        if self.is_empty or np.any(lo > hi):
            return np.zeros(len(self), dtype=bool)
        t = self._tree
        return _range_query_mask(
            self._points,
            t.order,
            t.node_start,
            t.node_end,
            t.node_left,
            t.node_right,
            t.node_min,
            t.node_max,
            lo,
            hi,
        )

    def query_indices(self, box_min, box_max) -> np.ndarray:
        """Ascending positions of the points lying in the closed box."""
        return np.flatnonzero(self.query_mask(box_min, box_max))

    def range_query(self, box_min, box_max) -> np.ndarray:
        """Payloads of all points lying in the closed box [box_min, box_max]."""
        return self._payloads[self.query_indices(box_min, box_max)]
