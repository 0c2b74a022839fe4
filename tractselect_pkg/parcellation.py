# -*- coding: utf-8 -*-

"""
Parcellation volumes as a source of selection meshes.

Handles FreeSurfer-style parcellation/segmentation volumes:
- Load label volumes (aparc+aseg, etc.) with nibabel
- Parse the FreeSurfer color LUT for region names
- Extract a closed world-space surface mesh for any label
- Look up the labels under streamline endpoints with Numba
"""

from __future__ import annotations

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import nibabel as nib
import vtk
from numba import njit, prange
from scipy import ndimage
from vtk.util import numpy_support

from .errors import InvalidGeometryError
from .geometry.coordinates import apply_affine
from .geometry.regions import MeshRegion, TriangleMesh
from .logic.selection import extract_endpoints

logger = logging.getLogger(__name__)


# Default FreeSurfer LUT locations
FREESURFER_LUT_PATHS = [
    os.path.join(os.environ.get("FREESURFER_HOME", ""), "FreeSurferColorLUT.txt"),
    os.path.expanduser("~/.freesurfer/FreeSurferColorLUT.txt"),
]

# Subcortical aseg labels, available without a FreeSurfer installation
FREESURFER_BUILTIN_LABELS: Dict[int, str] = {
    0: "Unknown",
    2: "Left-Cerebral-White-Matter",
    3: "Left-Cerebral-Cortex",
    4: "Left-Lateral-Ventricle",
    7: "Left-Cerebellum-White-Matter",
    8: "Left-Cerebellum-Cortex",
    10: "Left-Thalamus",
    11: "Left-Caudate",
    12: "Left-Putamen",
    13: "Left-Pallidum",
    16: "Brain-Stem",
    17: "Left-Hippocampus",
    18: "Left-Amygdala",
    26: "Left-Accumbens-area",
    28: "Left-VentralDC",
    41: "Right-Cerebral-White-Matter",
    42: "Right-Cerebral-Cortex",
    43: "Right-Lateral-Ventricle",
    46: "Right-Cerebellum-White-Matter",
    47: "Right-Cerebellum-Cortex",
    49: "Right-Thalamus",
    50: "Right-Caudate",
    51: "Right-Putamen",
    52: "Right-Pallidum",
    53: "Right-Hippocampus",
    54: "Right-Amygdala",
    58: "Right-Accumbens-area",
    60: "Right-VentralDC",
    251: "CC_Posterior",
    252: "CC_Mid_Posterior",
    253: "CC_Central",
    254: "CC_Mid_Anterior",
    255: "CC_Anterior",
}


@dataclass
class ParcellationData:
    """Integer label volume with its voxel-to-world affine and region names."""

    labels: np.ndarray
    affine: np.ndarray
    label_names: Dict[int, str] = field(default_factory=dict)
    path: Optional[str] = None

    def present_labels(self) -> np.ndarray:
        """Sorted non-zero labels occurring in the volume."""
        values = np.unique(self.labels)
        return values[values > 0]

    def name_of(self, label: int) -> str:
        return self.label_names.get(int(label), f"Region_{label}")


# ============================================================================
# Label Table
# ============================================================================


def parse_label_table(lut_path: Optional[str] = None) -> Dict[int, str]:
    """
    Parses a FreeSurfer color LUT into a label-to-name mapping.

    Priority: given LUT file > LUT in the default locations > built-in labels.

    Args:
        lut_path: Path to a LUT file. If None or missing, searches the default
            paths.

    Returns:
        Dictionary mapping label IDs to region names.
    """
    candidates = list(FREESURFER_LUT_PATHS)
    if lut_path:
        if os.path.isfile(lut_path):
            candidates.insert(0, lut_path)
        else:
            logger.warning(f"LUT file not found: {lut_path}; trying the default locations.")
    lut_file = next((p for p in candidates if p and os.path.isfile(p)), None)

    if lut_file is not None:
        label_names: Dict[int, str] = {0: "Unknown"}
        try:
            with open(lut_file, "r", encoding="utf-8") as f:
                for line in f:
                    parts = line.split()
                    # Skip comments and empty lines
                    if not parts or parts[0].startswith("#"):
                        continue
                    if len(parts) >= 2:
                        try:
                            label_names[int(parts[0])] = parts[1]
                        except ValueError:
                            continue
            logger.info(f"Loaded {len(label_names)} labels from FreeSurfer LUT: {lut_file}")
            return label_names
        except OSError as e:
            logger.warning(f"Failed to parse FreeSurfer LUT ({lut_file}): {e}")

    logger.info("Using built-in FreeSurfer labels (no external LUT file found).")
    return FREESURFER_BUILTIN_LABELS.copy()


# ============================================================================
# Loading
# ============================================================================


def load_parcellation(path: str, lut_path: Optional[str] = None) -> ParcellationData:
    """
    Loads a parcellation/segmentation NIfTI file.

    Labels present in the volume but missing from the LUT get a generic
    ``Region_<label>`` name.

    Raises:
        FileNotFoundError: If the path does not exist.
        ValueError: If the image is not a 3D volume.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Parcellation file not found: {path}")

    try:
        img = nib.load(path)
        data = np.asarray(img.dataobj, dtype=np.int32)
        affine = img.affine.astype(np.float64)
    except Exception as e:
        logger.error(f"Error loading parcellation: {e}", exc_info=True)
        raise

    if data.ndim != 3:
        raise ValueError(f"Parcellation file must be a 3D volume, got shape {data.shape}")

    parcellation = ParcellationData(data, affine, parse_label_table(lut_path), path)
    present = parcellation.present_labels()
    for label in present:
        parcellation.label_names.setdefault(int(label), f"Region_{label}")

    logger.info(f"Loaded parcellation: {path} with {len(present)} regions")
    return parcellation


# ============================================================================
# Region Meshes
# ============================================================================


def _label_slices(labels: np.ndarray, label: int) -> Tuple[slice, ...]:
    if label <= 0:
        raise InvalidGeometryError(f"Region label must be positive, got {label}")
    objects = ndimage.find_objects(labels, max_label=label)
    if len(objects) < label or objects[label - 1] is None:
        raise InvalidGeometryError(f"Label {label} does not occur in the parcellation")
    return objects[label - 1]


def region_mesh(labels: np.ndarray, affine: np.ndarray, label: int) -> TriangleMesh:
    """
    Extracts the closed boundary surface of one label as a world-space mesh.

    The label's bounding region is cropped out (with a one-voxel empty
    margin so the surface closes at the volume border) and contoured with
    discrete marching cubes; vertices are then mapped through ``affine``.

    Args:
        labels: 3D integer label volume.
        affine: 4x4 voxel-to-world affine.
        label: Positive label value.

    Raises:
        InvalidGeometryError: If the label does not occur in the volume.
    """
    t0 = time.perf_counter()
    labels = np.asarray(labels)
    if labels.ndim != 3:
        raise InvalidGeometryError(f"Label volume must be 3D, got shape {labels.shape}")

    slices = _label_slices(labels, int(label))
    mask = np.pad((labels[slices] == label).astype(np.uint8), 1)
    origin = np.array([s.start for s in slices], dtype=np.float64) - 1.0

    image = vtk.vtkImageData()
    image.SetDimensions(*mask.shape)
    scalars = numpy_support.numpy_to_vtk(
        mask.ravel(order="F"), deep=True, array_type=vtk.VTK_UNSIGNED_CHAR
    )
    image.GetPointData().SetScalars(scalars)

    contour = vtk.vtkDiscreteMarchingCubes()
    contour.SetInputData(image)
    contour.GenerateValues(1, 1, 1)
    contour.Update()
    poly_data = contour.GetOutput()

    if poly_data.GetNumberOfPolys() == 0:
        raise InvalidGeometryError(f"Label {label} produced an empty surface")

    vertices = numpy_support.vtk_to_numpy(poly_data.GetPoints().GetData()).astype(np.float64)
    cells = numpy_support.vtk_to_numpy(poly_data.GetPolys().GetData())
    # Legacy cell layout: [3, a, b, c, 3, ...]
    triangles = cells.reshape(-1, 4)[:, 1:]

    mesh = TriangleMesh(apply_affine(vertices + origin, affine), triangles)
    logger.debug(
        f"Surface of label {label}: {mesh.n_triangles} triangles in "
        f"{(time.perf_counter() - t0) * 1000:.1f} ms"
    )
    return mesh


def region_meshes(parcellation: ParcellationData, labels: Sequence[int]) -> List[MeshRegion]:
    """Named selection regions for several labels of a parcellation."""
    return [
        MeshRegion(
            region_mesh(parcellation.labels, parcellation.affine, int(label)),
            parcellation.name_of(label),
        )
        for label in labels
    ]


# ============================================================================
# Endpoint Labels
# ============================================================================


@njit(parallel=True, cache=True)
def _lookup_labels(
    points: np.ndarray,
    inv_affine_3x3: np.ndarray,
    inv_affine_offset: np.ndarray,
    labels: np.ndarray,
) -> np.ndarray:
    """
    Label of the voxel nearest to each world point (0 outside the volume).
    """
    n = points.shape[0]
    dims = labels.shape
    out = np.zeros(n, dtype=np.int32)

    for i in prange(n):
        vox = np.empty(3, dtype=np.int64)
        for r in range(3):
            v = (
                inv_affine_3x3[r, 0] * points[i, 0]
                + inv_affine_3x3[r, 1] * points[i, 1]
                + inv_affine_3x3[r, 2] * points[i, 2]
                + inv_affine_offset[r]
            )
            vox[r] = int(np.floor(v + 0.5))

        if 0 <= vox[0] < dims[0] and 0 <= vox[1] < dims[1] and 0 <= vox[2] < dims[2]:
            out[i] = labels[vox[0], vox[1], vox[2]]

    return out


def endpoint_labels(
    streamlines: Sequence[np.ndarray], labels: np.ndarray, affine: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Labels under the start and end point of every streamline.

    Args:
        streamlines: Streamline collection in world coordinates.
        labels: 3D integer label volume.
        affine: 4x4 voxel-to-world affine of the volume.

    Returns:
        Tuple (start_labels, end_labels), each an (N,) int32 array.
    """
    endpoints = extract_endpoints(streamlines)
    if endpoints.shape[0] == 0:
        empty = np.zeros(0, dtype=np.int32)
        return empty, empty.copy()

    inv_affine = np.linalg.inv(np.asarray(affine, dtype=np.float64))
    found = _lookup_labels(
        endpoints,
        np.ascontiguousarray(inv_affine[:3, :3]),
        np.ascontiguousarray(inv_affine[:3, 3]),
        np.ascontiguousarray(labels, dtype=np.int32),
    )
    return found[0::2].copy(), found[1::2].copy()
