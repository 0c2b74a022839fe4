# -*- coding: utf-8 -*-

"""
Exception and warning types raised by the TractSelect selection engine.
"""


class InvalidGeometryError(ValueError):
    """
    Raised for structurally invalid input geometry.

    Examples are streamlines with fewer than two vertices, meshes without
    triangles, inverted selection boxes or arrays of the wrong shape.
    """


class NonManifoldMeshWarning(UserWarning):
    """
    Emitted when a selection mesh has boundary or non-manifold edges.

    Interior classification still runs, but points close to the gaps may
    be classified incorrectly.
    """
