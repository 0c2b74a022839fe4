# -*- coding: utf-8 -*-

"""
Convex polytope clipping of a k-d tree.

Collects the points of a PointSpatialIndex that satisfy every half-space of
a convex polytope. Subtrees whose bounding box lies entirely outside one
half-space are pruned, subtrees entirely inside all half-spaces are taken
without per-point tests, and only the remaining leaves are tested point by
point. Comparisons are inclusive, so points on a face belong to the region.
"""

from __future__ import annotations

import logging
import time
from typing import Union

import numpy as np
from numba import njit

from .kdtree import PointSpatialIndex, _STACK_CAPACITY
from .regions import BoxRegion, ConvexPolytope

logger = logging.getLogger(__name__)

# Node classification against a polytope
_OUTSIDE = 0
_INSIDE = 1
_STRADDLING = 2


@njit(nogil=True, cache=True)
def _classify_box(
    box_min: np.ndarray,
    box_max: np.ndarray,
    normals: np.ndarray,
    offsets: np.ndarray,
) -> int:
    """Classifies an axis-aligned box against all half-spaces."""
    fully_inside = True
    for i in range(normals.shape[0]):
        best = offsets[i]
        worst = offsets[i]
        for k in range(3):
            nk = normals[i, k]
            if nk > 0.0:
                best += nk * box_max[k]
                worst += nk * box_min[k]
            elif nk < 0.0:
                best += nk * box_min[k]
                worst += nk * box_max[k]
        if best < 0.0:
            return _OUTSIDE
        if worst < 0.0:
            fully_inside = False
    if fully_inside:
        return _INSIDE
    return _STRADDLING


@njit(nogil=True, cache=True)
def _clip_mask(
    points: np.ndarray,
    order: np.ndarray,
    node_start: np.ndarray,
    node_end: np.ndarray,
    node_left: np.ndarray,
    node_right: np.ndarray,
    node_min: np.ndarray,
    node_max: np.ndarray,
    normals: np.ndarray,
    offsets: np.ndarray,
) -> np.ndarray:
    """
    Marks the points satisfying dot(normal_i, p) + offset_i >= 0 for all i.

    Returns:
        (N,) boolean mask over the indexed points.
    """
    n = points.shape[0]
    mask = np.zeros(n, dtype=np.bool_)
    if node_start.shape[0] == 0:
        return mask

    n_planes = normals.shape[0]
    stack = np.empty(_STACK_CAPACITY, dtype=np.int64)
    stack[0] = 0
    top = 1

    while top > 0:
        top -= 1
        node = stack[top]

        state = _classify_box(node_min[node], node_max[node], normals, offsets)
        if state == _OUTSIDE:
            continue

        if state == _INSIDE:
            for j in range(node_start[node], node_end[node]):
                mask[order[j]] = True
            continue

        if node_left[node] < 0:
            for j in range(node_start[node], node_end[node]):
                p = order[j]
                inside = True
                for i in range(n_planes):
                    d = (
                        normals[i, 0] * points[p, 0]
                        + normals[i, 1] * points[p, 1]
                        + normals[i, 2] * points[p, 2]
                        + offsets[i]
                    )
                    if d < 0.0:
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


def clip_mask(index: PointSpatialIndex, polytope: ConvexPolytope) -> np.ndarray:
    """Boolean mask over the index points lying inside the polytope."""
    if index.is_empty:
        return np.zeros(0, dtype=bool)
    t = index.tree
    return _clip_mask(
        index.points,
        t.order,
        t.node_start,
        t.node_end,
        t.node_left,
        t.node_right,
        t.node_min,
        t.node_max,
        np.ascontiguousarray(polytope.normals),
        np.ascontiguousarray(polytope.offsets),
    )


def clip_indices(index: PointSpatialIndex, polytope: ConvexPolytope) -> np.ndarray:
    """Ascending positions of the index points lying inside the polytope."""
    return np.flatnonzero(clip_mask(index, polytope))


def clip(index: PointSpatialIndex, polytope: ConvexPolytope) -> np.ndarray:
    """Payloads of all index points lying inside the polytope."""
    return index.payloads[clip_indices(index, polytope)]


class ConvexRegionClipper:
    """
    Clips spatial indices against one convex region.

    Accepts either a ready ConvexPolytope or a BoxRegion, which is converted
    to its six bounding half-spaces once.
    """

    def __init__(self, region: Union[ConvexPolytope, BoxRegion]) -> None:
        if isinstance(region, BoxRegion):
            self.polytope = region.to_polytope()
        else:
            self.polytope = region

    def inside_mask(self, index: PointSpatialIndex) -> np.ndarray:
        t0 = time.perf_counter()
        mask = clip_mask(index, self.polytope)
        logger.debug(
            f"Clipped {len(index)} points against {len(self.polytope)} planes: "
            f"{int(mask.sum())} inside ({(time.perf_counter() - t0) * 1000:.1f} ms)"
        )
        return mask

    def inside(self, index: PointSpatialIndex) -> np.ndarray:
        """Payloads of the points inside the region."""
        return index.payloads[np.flatnonzero(self.inside_mask(index))]

    def outside(self, index: PointSpatialIndex) -> np.ndarray:
        """Payloads of the points outside the region."""
        return index.payloads[np.flatnonzero(~self.inside_mask(index))]
