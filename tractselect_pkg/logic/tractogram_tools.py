# -*- coding: utf-8 -*-

"""
Tractogram session handling for TractSelect.

A TractogramSession keeps one loaded streamline collection together with
its display state: a seeded shuffled order, a throttle on how many curves
are shown at once, and the global endpoint index used by box selections on
the whole collection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..geometry.coordinates import check_affine_inverse, voxel_to_world
from ..geometry.regions import BoxRegion, MeshRegion, TriangleMesh, transformed_mesh
from ..utils import DEFAULT_MAX_STREAMLINES, DEFAULT_SHUFFLE_SEED, as_point
from .selection import EndpointIndex, SelectionResult, StreamlineSelector
from .streamline_geometry import SplineCurve, StreamlineGeometryBuilder

if TYPE_CHECKING:
    from ..file_io import TractogramData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamlineNumberData:
    """
    Outcome of a display count change.

    Attributes:
        reduction: True if the count went down (or stayed the same).
        curves: The curves to remove on a reduction; otherwise every curve
            now on display, old and newly built.
    """

    reduction: bool
    curves: Tuple[SplineCurve, ...]


class TractogramSession:
    """
    Display and selection state of one streamline collection.

    The collection itself is never modified; selections return new
    SelectionResult objects indexing into it.
    """

    def __init__(
        self,
        streamlines: Sequence[np.ndarray],
        affine: Optional[np.ndarray] = None,
        max_streamline_count: int = DEFAULT_MAX_STREAMLINES,
        seed: Optional[int] = DEFAULT_SHUFFLE_SEED,
        builder: Optional[StreamlineGeometryBuilder] = None,
        selector: Optional[StreamlineSelector] = None,
    ) -> None:
        """
        Args:
            streamlines: Streamline collection (list or ArraySequence).
            affine: 4x4 affine of the tractogram (identity if omitted).
            max_streamline_count: Maximum number of curves on display.
            seed: Seed of the display shuffle; None for a random order.
            builder: Curve builder; a default one is created if omitted.
            selector: Selector; a default one is created if omitted.
        """
        if max_streamline_count < 0:
            raise ValueError(
                f"max_streamline_count must be >= 0, got {max_streamline_count}"
            )
        self.streamlines = streamlines
        self.affine = np.eye(4) if affine is None else np.asarray(affine, dtype=np.float64)
        if not np.allclose(self.affine, np.eye(4)):
            check_affine_inverse(self.affine)

        self.max_streamline_count = int(max_streamline_count)
        self.builder = builder if builder is not None else StreamlineGeometryBuilder()
        self.selector = selector if selector is not None else StreamlineSelector()

        self._rng = np.random.default_rng(seed)
        self.display_order = self._rng.permutation(len(streamlines))
        self._global_index: Optional[EndpointIndex] = None
        self._displayed: Optional[List[SplineCurve]] = None
        self.selection: Optional[SelectionResult] = None

        logger.info(
            f"Tractogram session with {len(streamlines)} streamlines "
            f"(displaying up to {self.max_streamline_count})"
        )

    @classmethod
    def from_tractogram_data(cls, data: "TractogramData", **kwargs: Any) -> "TractogramSession":
        """Creates a session from a loaded tractogram file."""
        return cls(data.streamlines, affine=data.affine, **kwargs)

    def __len__(self) -> int:
        return len(self.streamlines)

    @property
    def global_index(self) -> Optional[EndpointIndex]:
        """Endpoint index of the full collection, built on first use."""
        if self._global_index is None and len(self.streamlines) > 0:
            self._global_index = EndpointIndex.build(self.streamlines)
        return self._global_index

    def _build_display(self, positions: np.ndarray) -> List[SplineCurve]:
        return self.builder.build_curves(
            [self.streamlines[int(i)] for i in positions],
            source_indices=[int(i) for i in positions],
        )

    def displayed_curves(self) -> List[SplineCurve]:
        """Curves of the first ``max_streamline_count`` shuffled streamlines."""
        if self._displayed is None:
            self._displayed = self._build_display(
                self.display_order[: self.max_streamline_count]
            )
        return list(self._displayed)

    def change_number_of_streamlines(self, count: int) -> StreamlineNumberData:
        """
        Changes how many streamlines are displayed.

        Args:
            count: New display count.

        Returns:
            StreamlineNumberData with the curves to drop (reduction) or the full
            list of curves on display after building the missing ones (increase).
        """
        if count < 0:
            raise ValueError(f"Streamline count must be >= 0, got {count}")
        current = self.displayed_curves()
        n_old = len(current)
        self.max_streamline_count = int(count)

        if count > n_old:
            added = self._build_display(self.display_order[n_old:count])
            self._displayed = current + added
            logger.info(f"Displaying {len(self._displayed)} streamlines (+{len(added)})")
            return StreamlineNumberData(False, tuple(self._displayed))

        removed = current[count:]
        self._displayed = current[:count]
        if removed:
            logger.info(f"Displaying {len(self._displayed)} streamlines (-{len(removed)})")
        return StreamlineNumberData(True, tuple(removed))

    def voxel_box(self, corner_a, corner_b) -> BoxRegion:
        """
        Box region from two corners given in the tractogram's voxel grid.

        All eight corners are mapped to world space through the session
        affine; the region is their axis-aligned bounding box.
        """
        a = as_point(corner_a, "corner_a")
        b = as_point(corner_b, "corner_b")
        corners = np.array(
            [
                voxel_to_world([x, y, z], self.affine)
                for x in (a[0], b[0])
                for y in (a[1], b[1])
                for z in (a[2], b[2])
            ]
        )
        return BoxRegion.from_corners(corners.min(axis=0), corners.max(axis=0))

    def select_box(self, box: BoxRegion, inclusion: bool = True) -> SelectionResult:
        """Box selection on the full collection using the global index."""
        result = self.selector.select_by_region(
            self.streamlines, box, inclusion, index=self.global_index
        )
        self.selection = result
        return result

    def select_meshes(
        self,
        meshes: Sequence[Union[TriangleMesh, MeshRegion]],
        inclusion: bool = True,
        transform: Optional[np.ndarray] = None,
        voxel_space: bool = False,
    ) -> Tuple[SelectionResult, List[SplineCurve]]:
        """
        Selects through every mesh in turn and builds the display of the result.

        Args:
            meshes: Selection meshes, applied sequentially.
            inclusion: Inclusion (True) or exclusion (False) for every mesh.
            transform: Optional 4x4 matrix mapping the meshes into the
                streamline space. The given meshes are not modified.
            voxel_space: The meshes (after ``transform``) are in the
                tractogram's voxel grid and are mapped to world space with the
                session affine.

        Returns:
            Tuple (selection, curves) where curves covers a shuffled subset of
            at most ``max_streamline_count`` selected streamlines.
        """
        matrix = None if transform is None else np.asarray(transform, dtype=np.float64)
        if voxel_space:
            matrix = self.affine if matrix is None else self.affine @ matrix

        regions = []
        for item in meshes:
            region = item if isinstance(item, MeshRegion) else MeshRegion(item)
            if matrix is not None:
                region = MeshRegion(transformed_mesh(region.mesh, matrix), region.name)
            regions.append(region)

        result = self.selector.select_sequential(self.streamlines, regions, inclusion)
        self.selection = result

        if result.is_empty:
            logger.warning(
                "Empty list of streamlines. No streamline selection will be displayed."
            )
            return result, []

        order = self._rng.permutation(len(result))[: self.max_streamline_count]
        curves = self.builder.build_curves(
            [result.streamlines[int(i)] for i in order],
            source_indices=[int(result.indices[i]) for i in order],
        )
        return result, curves
