# -*- coding: utf-8 -*-

"""
Endpoint-based streamline selection.

A streamline is selected by a volume when its first or its last vertex lies
inside the volume (inclusion), or when neither does (exclusion). Endpoints
of a collection are gathered into an EndpointIndex: two rows per streamline
(row 2*i is the start of streamline i, row 2*i + 1 its end) backed by a
k-d tree for box queries. Mesh volumes classify the same endpoint rows with
a MeshInteriorTester.

Results always list streamlines in their original order, each at most once,
and can be fed back in as the input of a further selection.
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence, Tuple, Union

import numpy as np

from ..errors import InvalidGeometryError
from ..geometry.clipping import ConvexRegionClipper
from ..geometry.interior import MeshInteriorTester
from ..geometry.kdtree import PointSpatialIndex
from ..geometry.regions import (
    BoxRegion,
    ConvexPolytope,
    MeshRegion,
    RegionKind,
    SelectionRegion,
    TriangleMesh,
)
from ..utils import (
    DEFAULT_INTERIOR_EPSILON,
    DEFAULT_WORKER_COUNT,
    MIN_STREAMLINE_POINTS,
    as_streamline,
)

logger = logging.getLogger(__name__)

# Endpoint roles stored in the payload column 1
ROLE_START: int = 0
ROLE_END: int = 1


# ============================================================================
# Selection Result
# ============================================================================


@dataclass(frozen=True, eq=False)
class SelectionResult:
    """
    Streamlines chosen by a selection, in original order.

    Attributes:
        indices: Ascending int64 positions of the selected streamlines in the
            root collection (the collection the first selection ran on).
        streamlines: The selected streamlines, aligned with ``indices``.
        low_confidence: True if a mesh that was not watertight took part in
            producing this result.
    """

    indices: np.ndarray
    streamlines: Tuple[np.ndarray, ...]
    low_confidence: bool = False

    def __post_init__(self) -> None:
        idx = np.array(self.indices, dtype=np.int64).reshape(-1)
        idx.flags.writeable = False
        object.__setattr__(self, "indices", idx)
        object.__setattr__(self, "streamlines", tuple(self.streamlines))
        if len(self.streamlines) != idx.shape[0]:
            raise ValueError(
                f"{idx.shape[0]} indices but {len(self.streamlines)} streamlines"
            )

    @classmethod
    def empty(cls, low_confidence: bool = False) -> "SelectionResult":
        return cls(np.empty(0, dtype=np.int64), (), low_confidence)

    def __len__(self) -> int:
        return len(self.streamlines)

    def __getitem__(self, item: int) -> np.ndarray:
        return self.streamlines[item]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.streamlines)

    @property
    def is_empty(self) -> bool:
        return len(self.streamlines) == 0


def _unwrap_collection(
    streamlines: Any,
) -> Tuple[Sequence[np.ndarray], Optional[np.ndarray], bool]:
    """Returns (collection, root indices or None, inherited low_confidence)."""
    if isinstance(streamlines, SelectionResult):
        return streamlines.streamlines, streamlines.indices, streamlines.low_confidence
    if streamlines is None:
        return (), None, False
    return streamlines, None, False


def _make_result(
    collection: Sequence[np.ndarray],
    root_indices: Optional[np.ndarray],
    local: np.ndarray,
    low_confidence: bool,
) -> SelectionResult:
    local = np.asarray(local, dtype=np.int64)
    indices = root_indices[local] if root_indices is not None else local
    return SelectionResult(
        indices, tuple(collection[int(i)] for i in local), low_confidence
    )


# ============================================================================
# Endpoint Index
# ============================================================================


def _has_flat_buffers(streamlines: Any) -> bool:
    return (
        hasattr(streamlines, "_data")
        and hasattr(streamlines, "_offsets")
        and hasattr(streamlines, "_lengths")
    )


def _first_non_finite_streamline(
    data: np.ndarray, offsets: np.ndarray, lengths: np.ndarray
) -> int:
    """
    Index of the first streamline referencing a NaN or infinite vertex, or -1.

    Only rows covered by ``offsets``/``lengths`` count, since sliced
    ArraySequence views share the buffer of their parent.
    """
    finite = np.isfinite(data).all(axis=1)
    if finite.all():
        return -1
    bad_rows = np.flatnonzero(~finite)
    by_start = np.argsort(offsets, kind="stable")
    pos = np.searchsorted(offsets[by_start], bad_rows, side="right") - 1
    valid = pos >= 0
    owners = by_start[pos[valid]]
    hit = bad_rows[valid] < offsets[owners] + lengths[owners]
    if not hit.any():
        return -1
    return int(owners[hit].min())


def extract_endpoints(streamlines: Sequence[np.ndarray]) -> np.ndarray:
    """
    Gathers the first and last vertex of every streamline.

    ArraySequence inputs are read straight from their flat buffers.

    Returns:
        (2n, 3) float64 array; row 2*i is the start of streamline i and
        row 2*i + 1 its end.

    Raises:
        InvalidGeometryError: If any streamline has fewer than two vertices
            or a NaN or infinite coordinate.
    """
    n = len(streamlines)
    if n == 0:
        return np.empty((0, 3), dtype=np.float64)

    if _has_flat_buffers(streamlines):
        lengths = np.asarray(streamlines._lengths, dtype=np.int64)
        offsets = np.asarray(streamlines._offsets, dtype=np.int64)
        short = np.flatnonzero(lengths < MIN_STREAMLINE_POINTS)
        if short.size:
            first = int(short[0])
            raise InvalidGeometryError(
                f"Streamline #{first} has {lengths[first]} vertices; at least "
                f"{MIN_STREAMLINE_POINTS} are required ({short.size} invalid in total)"
            )
        data = np.asarray(streamlines._data, dtype=np.float64).reshape(-1, 3)
        bad = _first_non_finite_streamline(data, offsets, lengths)
        if bad >= 0:
            raise InvalidGeometryError(
                f"Streamline #{bad} contains non-finite coordinates"
            )
        endpoints = np.empty((2 * n, 3), dtype=np.float64)
        endpoints[0::2] = data[offsets]
        endpoints[1::2] = data[offsets + lengths - 1]
        return endpoints

    endpoints = np.empty((2 * n, 3), dtype=np.float64)
    for i in range(n):
        sl = as_streamline(streamlines[i], i)
        endpoints[2 * i] = sl[0]
        endpoints[2 * i + 1] = sl[-1]
    return endpoints


@dataclass(frozen=True, eq=False)
class EndpointIndex:
    """
    Spatial index over the start and end points of a streamline collection.

    Payload rows are ``(streamline_index, role)`` with role ROLE_START or
    ROLE_END. Build once per collection and pass it explicitly to repeated
    box selections on that same collection.
    """

    endpoints: np.ndarray
    payloads: np.ndarray
    spatial_index: PointSpatialIndex

    @classmethod
    def build(cls, streamlines: Sequence[np.ndarray]) -> "EndpointIndex":
        t0 = time.perf_counter()
        endpoints = extract_endpoints(streamlines)
        n = endpoints.shape[0] // 2
        payloads = np.empty((2 * n, 2), dtype=np.int64)
        payloads[:, 0] = np.repeat(np.arange(n, dtype=np.int64), 2)
        payloads[:, 1] = np.tile(np.array([ROLE_START, ROLE_END], dtype=np.int64), n)
        spatial_index = PointSpatialIndex(endpoints, payloads)
        logger.debug(
            f"Endpoint index for {n} streamlines built in "
            f"{(time.perf_counter() - t0) * 1000:.1f} ms"
        )
        return cls(spatial_index.points, spatial_index.payloads, spatial_index)

    @property
    def n_streamlines(self) -> int:
        return self.endpoints.shape[0] // 2

    def __len__(self) -> int:
        return self.n_streamlines


# ============================================================================
# Selector
# ============================================================================


class StreamlineSelector:
    """
    Selects streamlines whose endpoints fall inside a box or a closed mesh.

    The selector holds only configuration; it can be reused across
    collections and regions.
    """

    def __init__(
        self,
        epsilon: float = DEFAULT_INTERIOR_EPSILON,
        max_workers: int = DEFAULT_WORKER_COUNT,
        executor: Optional[Executor] = None,
    ) -> None:
        """
        Args:
            epsilon: Tolerance factor for mesh interior tests.
            max_workers: Worker count for mesh classification.
            executor: Optional externally owned executor used for mesh
                classification; never shut down by the selector.
        """
        self.epsilon = epsilon
        self.max_workers = max_workers
        self.executor = executor

    @staticmethod
    def _apply_mode(hits: np.ndarray, n: int, inclusion: bool) -> np.ndarray:
        # Endpoint rows 2*i and 2*i+1 belong to streamline i
        selected = hits.reshape(n, 2).any(axis=1)
        if not inclusion:
            selected = ~selected
        return np.flatnonzero(selected)

    def select_by_region(
        self,
        streamlines: Any,
        region: Union[BoxRegion, ConvexPolytope],
        inclusion: bool = True,
        index: Optional[EndpointIndex] = None,
    ) -> SelectionResult:
        """
        Selects streamlines by box (or any convex polytope).

        Args:
            streamlines: Input collection or a previous SelectionResult.
            region: Box region or convex polytope.
            inclusion: Keep streamlines with an endpoint inside (True) or
                with no endpoint inside (False).
            index: Prebuilt EndpointIndex of exactly this collection. A fresh
                index is built when omitted.

        Returns:
            SelectionResult in original order.
        """
        collection, root, low_confidence = _unwrap_collection(streamlines)
        n = len(collection)
        if n == 0:
            logger.debug("Box selection on an empty collection")
            return SelectionResult.empty(low_confidence)

        t0 = time.perf_counter()
        if index is None:
            index = EndpointIndex.build(collection)
        elif index.n_streamlines != n:
            raise ValueError(
                f"Endpoint index covers {index.n_streamlines} streamlines but the "
                f"collection has {n}"
            )
        t_index = time.perf_counter()

        hits = ConvexRegionClipper(region).inside_mask(index.spatial_index)
        local = self._apply_mode(hits, n, inclusion)
        t_clip = time.perf_counter()

        logger.info(
            f"Box selection ({'inclusion' if inclusion else 'exclusion'}): "
            f"{len(local)}/{n} streamlines "
            f"(index {(t_index - t0) * 1000:.1f} ms, clip {(t_clip - t_index) * 1000:.1f} ms)"
        )
        return _make_result(collection, root, local, low_confidence)

    def select_by_mesh(
        self,
        streamlines: Any,
        mesh: Union[TriangleMesh, MeshRegion],
        inclusion: bool = True,
        index: Optional[EndpointIndex] = None,
        *,
        _stacklevel: int = 3,
    ) -> SelectionResult:
        """
        Selects streamlines by the interior of a closed triangle mesh.

        A mesh that is not watertight still yields a result, flagged with
        ``low_confidence``.

        Args:
            streamlines: Input collection or a previous SelectionResult.
            mesh: Triangle mesh (or MeshRegion) in the streamlines' space.
            inclusion: Keep streamlines with an endpoint inside (True) or
                with no endpoint inside (False).
            index: Optional prebuilt EndpointIndex whose endpoints are reused.
        """
        if isinstance(mesh, MeshRegion):
            mesh = mesh.mesh
        collection, root, low_confidence = _unwrap_collection(streamlines)
        n = len(collection)
        if n == 0:
            logger.debug("Mesh selection on an empty collection")
            return SelectionResult.empty(low_confidence)

        t0 = time.perf_counter()
        if index is None:
            endpoints = extract_endpoints(collection)
        elif index.n_streamlines != n:
            raise ValueError(
                f"Endpoint index covers {index.n_streamlines} streamlines but the "
                f"collection has {n}"
            )
        else:
            endpoints = index.endpoints

        tester = MeshInteriorTester(
            mesh,
            epsilon=self.epsilon,
            max_workers=self.max_workers,
            executor=self.executor,
            stacklevel=_stacklevel,
        )
        with tester:
            inside = tester.classify_points(endpoints)

        hits = np.zeros(2 * n, dtype=bool)
        hits[inside] = True
        local = self._apply_mode(hits, n, inclusion)

        logger.info(
            f"Mesh selection ({'inclusion' if inclusion else 'exclusion'}): "
            f"{len(local)}/{n} streamlines in {(time.perf_counter() - t0) * 1000:.1f} ms"
        )
        return _make_result(
            collection, root, local, low_confidence or not tester.is_watertight
        )

    def select(
        self,
        streamlines: Any,
        region: SelectionRegion,
        inclusion: bool = True,
        index: Optional[EndpointIndex] = None,
        *,
        _stacklevel: int = 3,
    ) -> SelectionResult:
        """Dispatches to box or mesh selection on the region's kind tag."""
        if region.kind is RegionKind.BOX:
            return self.select_by_region(streamlines, region, inclusion, index)
        if region.kind is RegionKind.MESH:
            return self.select_by_mesh(
                streamlines, region.mesh, inclusion, index, _stacklevel=_stacklevel + 1
            )
        raise ValueError(f"Unsupported region kind: {region.kind}")

    def select_sequential(
        self,
        streamlines: Any,
        regions: Sequence[SelectionRegion],
        inclusion: bool = True,
    ) -> SelectionResult:
        """
        Filters the collection through each region in turn.

        Every step only sees the survivors of the previous one, so the result
        is the intersection of the individual selections. With no regions the
        whole collection is returned.
        """
        collection, root, low_confidence = _unwrap_collection(streamlines)
        result = _make_result(
            collection, root, np.arange(len(collection)), low_confidence
        )
        for step, region in enumerate(regions):
            if result.is_empty:
                logger.info(f"Sequential selection emptied after step {step}")
                break
            result = self.select(result, region, inclusion, _stacklevel=4)
        return result
