# -*- coding: utf-8 -*-

"""
Logic package for TractSelect.

Contains endpoint-based streamline selection, spline geometry and metrics,
and the tractogram session that ties them to a loaded collection.
"""

from .selection import EndpointIndex, SelectionResult, StreamlineSelector
from .streamline_geometry import SplineCurve, StreamlineGeometryBuilder
from .tractogram_tools import StreamlineNumberData, TractogramSession

__all__ = [
    "EndpointIndex",
    "SelectionResult",
    "StreamlineSelector",
    "SplineCurve",
    "StreamlineGeometryBuilder",
    "StreamlineNumberData",
    "TractogramSession",
]
