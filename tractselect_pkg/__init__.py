# -*- coding: utf-8 -*-

"""
TractSelect: endpoint-based streamline selection for tractography.

Selects the streamlines of a whole-brain tractogram whose start or end point
lies inside an axis-aligned box or a closed triangle mesh, and derives spline
display geometry plus length/curvature metrics for them.
"""

from .errors import InvalidGeometryError, NonManifoldMeshWarning
from .utils import ColorMode
from .geometry import (
    BoxRegion,
    MeshInteriorTester,
    MeshRegion,
    PointSpatialIndex,
    RegionKind,
    TriangleMesh,
)
from .logic import (
    EndpointIndex,
    SelectionResult,
    SplineCurve,
    StreamlineGeometryBuilder,
    StreamlineSelector,
    TractogramSession,
)

__version__ = "1.0.0"

__all__ = [
    "InvalidGeometryError",
    "NonManifoldMeshWarning",
    "ColorMode",
    "BoxRegion",
    "MeshInteriorTester",
    "MeshRegion",
    "PointSpatialIndex",
    "RegionKind",
    "TriangleMesh",
    "EndpointIndex",
    "SelectionResult",
    "SplineCurve",
    "StreamlineGeometryBuilder",
    "StreamlineSelector",
    "TractogramSession",
]
