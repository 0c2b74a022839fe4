# -*- coding: utf-8 -*-

"""
Coordinate transformation utilities for TractSelect.

Provides helper functions for converting between voxel indices and
world (RASmm) coordinates using affine transformation matrices, and for
mapping whole streamline collections into a shared space.
"""

# ============================================================================
# Imports
# ============================================================================

import logging
from typing import List, Sequence

import numpy as np

from ..errors import InvalidGeometryError

logger = logging.getLogger(__name__)


def _as_affine(affine: np.ndarray) -> np.ndarray:
    aff = np.asarray(affine, dtype=np.float64)
    if aff.shape != (4, 4):
        raise InvalidGeometryError(f"Affine must be 4x4, got shape {aff.shape}")
    return aff


# ============================================================================
# Coordinate Transformation Functions
# ============================================================================


def voxel_to_world(vox_coord: List[float], affine: np.ndarray) -> np.ndarray:
    """
    Converts a voxel index [i, j, k] to world RASmm coordinates [x, y, z].

    Args:
        vox_coord: Voxel coordinates as [i, j, k].
        affine: 4x4 affine transformation matrix.

    Returns:
        World coordinates as numpy array [x, y, z].
    """
    homog_vox = np.array([vox_coord[0], vox_coord[1], vox_coord[2], 1.0])
    world_coord = np.dot(_as_affine(affine), homog_vox)
    return world_coord[:3]


def apply_affine(points: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """
    Applies a 4x4 affine to an (N, 3) point array.

    Returns:
        A new (N, 3) float64 array; the input is not modified.
    """
    aff = _as_affine(affine)
    pts = np.asarray(points, dtype=np.float64)
    if pts.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise InvalidGeometryError(f"points must have shape (N, 3), got {pts.shape}")
    return pts @ aff[:3, :3].T + aff[:3, 3]


def transform_streamlines(
    streamlines: Sequence[np.ndarray], affine: np.ndarray
) -> List[np.ndarray]:
    """Maps every streamline through the affine into new arrays."""
    aff = _as_affine(affine)
    return [apply_affine(sl, aff) for sl in streamlines]


def check_affine_inverse(affine: np.ndarray, tolerance: float = 0.015) -> bool:
    """
    Verifies that an affine can be inverted within a per-cell tolerance.

    Returns:
        True if ``affine @ inv(affine)`` matches the identity within tolerance.
    """
    aff = _as_affine(affine)
    try:
        inv = np.linalg.inv(aff)
    except np.linalg.LinAlgError:
        logger.warning("Affine is singular and cannot be inverted.")
        return False

    if np.allclose(aff @ inv, np.eye(4), atol=tolerance, rtol=0.0):
        logger.info("Inverse affine and original affine agree within tolerance.")
        return True

    logger.warning(
        f"Inverse affine and original affine differ by more than {tolerance} "
        f"per cell; apply the original affine to the streamlines instead."
    )
    return False
