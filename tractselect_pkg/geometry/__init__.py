# -*- coding: utf-8 -*-

"""
Geometry package for TractSelect.

Contains the static k-d tree, selection volume descriptors, convex
polytope clipping, mesh interior classification and affine helpers.
"""

from .kdtree import PointSpatialIndex
from .regions import (
    BoxRegion,
    ConvexPolytope,
    HalfSpace,
    MeshRegion,
    RegionKind,
    SelectionRegion,
    TriangleMesh,
    transformed_mesh,
)
from .clipping import ConvexRegionClipper
from .interior import MeshInteriorTester

__all__ = [
    "PointSpatialIndex",
    "BoxRegion",
    "ConvexPolytope",
    "HalfSpace",
    "MeshRegion",
    "RegionKind",
    "SelectionRegion",
    "TriangleMesh",
    "transformed_mesh",
    "ConvexRegionClipper",
    "MeshInteriorTester",
]
