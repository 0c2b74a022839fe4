# -*- coding: utf-8 -*-
"""
Pytest configuration and shared fixtures for TractSelect tests.

Provides reusable streamline collections, selection meshes and NIfTI
volumes for selection, geometry and I/O testing.
"""

import os
import tempfile
import numpy as np
import pytest
import nibabel as nib
from nibabel.streamlines import ArraySequence

from tractselect_pkg.geometry.regions import TriangleMesh


# ============================================================================
# Streamline Fixtures
# ============================================================================


@pytest.fixture
def sample_streamlines():
    """
    Creates a simple ArraySequence with 3 synthetic streamlines.

    Returns:
        ArraySequence: Three streamlines with varying point counts.
    """
    streamlines = [
        np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0], [2.0, 2.0, 2.0]],
                 dtype=np.float32),
        np.array([[5.0, 5.0, 5.0], [6.0, 6.0, 6.0]], dtype=np.float32),
        np.array([[10.0, 0.0, 0.0], [10.0, 1.0, 0.0], [10.0, 2.0, 0.0],
                  [10.0, 3.0, 0.0]], dtype=np.float32),
    ]
    return ArraySequence(streamlines)


@pytest.fixture
def scenario_streamlines():
    """
    Four two-point streamlines, only the first and third of which touch [0, 2]^3.

    Returns:
        list: Streamlines as (2, 3) float64 arrays.
    """
    return [
        np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]),
        np.array([[5.0, 5.0, 5.0], [6.0, 6.0, 6.0]]),
        np.array([[0.5, 0.5, 0.0], [0.5, 0.5, 10.0]]),
        np.array([[100.0, 100.0, 100.0], [101.0, 101.0, 101.0]]),
    ]


@pytest.fixture
def random_streamlines():
    """
    Creates 600 random streamlines with 2-6 points inside [-10, 10]^3.

    Returns:
        list: Streamlines as float64 arrays.
    """
    rng = np.random.default_rng(1234)
    return [
        rng.uniform(-10.0, 10.0, size=(int(rng.integers(2, 7)), 3))
        for _ in range(600)
    ]


@pytest.fixture
def sample_affine():
    """
    Creates a standard identity affine matrix.

    Returns:
        np.ndarray: 4x4 identity affine matrix with 1mm isotropic voxels.
    """
    return np.eye(4, dtype=np.float32)


@pytest.fixture
def sample_affine_scaled():
    """
    Creates an affine matrix with 2mm isotropic voxels.

    Returns:
        np.ndarray: 4x4 affine matrix with 2mm scaling.
    """
    affine = np.eye(4, dtype=np.float32)
    affine[0, 0] = 2.0
    affine[1, 1] = 2.0
    affine[2, 2] = 2.0
    return affine


# ============================================================================
# Mesh Fixtures
# ============================================================================


def make_box_mesh(lo=(-0.5, -0.5, -0.5), hi=(0.5, 0.5, 0.5)):
    """Closed, outward-oriented 12-triangle mesh of an axis-aligned box."""
    x0, y0, z0 = lo
    x1, y1, z1 = hi
    vertices = np.array([
        [x0, y0, z0], [x1, y0, z0], [x1, y1, z0], [x0, y1, z0],
        [x0, y0, z1], [x1, y0, z1], [x1, y1, z1], [x0, y1, z1],
    ], dtype=np.float64)
    triangles = np.array([
        [0, 2, 1], [0, 3, 2],  # bottom
        [4, 5, 6], [4, 6, 7],  # top
        [0, 1, 5], [0, 5, 4],  # front
        [2, 3, 7], [2, 7, 6],  # back
        [0, 4, 7], [0, 7, 3],  # left
        [1, 2, 6], [1, 6, 5],  # right
    ], dtype=np.int64)
    return TriangleMesh(vertices, triangles)


@pytest.fixture
def box_mesh_factory():
    """
    Factory for closed box meshes.

    Returns:
        callable: make_box_mesh(lo, hi).
    """
    return make_box_mesh


@pytest.fixture
def unit_cube_mesh():
    """
    Unit cube centered at the origin (vertices at +-0.5).

    Returns:
        TriangleMesh: Watertight 12-triangle cube.
    """
    return make_box_mesh()


@pytest.fixture
def open_cube_mesh():
    """
    Unit cube with its top face removed (not watertight).

    Returns:
        TriangleMesh: 10-triangle open box.
    """
    cube = make_box_mesh()
    return TriangleMesh(cube.vertices, np.delete(cube.triangles, [2, 3], axis=0))


@pytest.fixture
def icosphere_mesh():
    """
    Subdivided icosahedron approximating a sphere of radius 2 at (1, 1, 1).

    Returns:
        TriangleMesh: Watertight mesh with 320 triangles.
    """
    t = (1.0 + np.sqrt(5.0)) / 2.0
    verts = [
        [-1, t, 0], [1, t, 0], [-1, -t, 0], [1, -t, 0],
        [0, -1, t], [0, 1, t], [0, -1, -t], [0, 1, -t],
        [t, 0, -1], [t, 0, 1], [-t, 0, -1], [-t, 0, 1],
    ]
    faces = [
        [0, 11, 5], [0, 5, 1], [0, 1, 7], [0, 7, 10], [0, 10, 11],
        [1, 5, 9], [5, 11, 4], [11, 10, 2], [10, 7, 6], [7, 1, 8],
        [3, 9, 4], [3, 4, 2], [3, 2, 6], [3, 6, 8], [3, 8, 9],
        [4, 9, 5], [2, 4, 11], [6, 2, 10], [8, 6, 7], [9, 8, 1],
    ]
    verts = [np.array(v, dtype=np.float64) / np.linalg.norm(v) for v in verts]

    for _ in range(2):
        midpoints = {}
        new_faces = []

        def midpoint(a, b):
            key = (min(a, b), max(a, b))
            if key not in midpoints:
                m = verts[a] + verts[b]
                verts.append(m / np.linalg.norm(m))
                midpoints[key] = len(verts) - 1
            return midpoints[key]

        for a, b, c in faces:
            ab, bc, ca = midpoint(a, b), midpoint(b, c), midpoint(c, a)
            new_faces += [[a, ab, ca], [b, bc, ab], [c, ca, bc], [ab, bc, ca]]
        faces = new_faces

    vertices = np.array(verts) * 2.0 + 1.0
    return TriangleMesh(vertices, np.array(faces, dtype=np.int64))


# ============================================================================
# NIfTI Fixtures
# ============================================================================


@pytest.fixture
def temp_parcellation_file():
    """
    Creates a temporary label volume with two cubic regions.

    Label 10 fills voxels [2, 6)^3 and label 17 fills [10, 13)^3 of a
    16^3 volume with 2mm voxels.

    Yields:
        str: Path to the temporary NIfTI file.
    """
    data = np.zeros((16, 16, 16), dtype=np.int32)
    data[2:6, 2:6, 2:6] = 10
    data[10:13, 10:13, 10:13] = 17
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    img = nib.Nifti1Image(data, affine)

    with tempfile.NamedTemporaryFile(suffix='.nii.gz', delete=False) as f:
        temp_path = f.name

    nib.save(img, temp_path)

    yield temp_path

    if os.path.exists(temp_path):
        os.remove(temp_path)


# ============================================================================
# Markers for Test Categories
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "numba: marks tests using Numba JIT")
