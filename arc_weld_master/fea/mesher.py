"""Structured plate meshes for weld simulations.

Builds HEX8 or TET4 meshes of an axis-aligned box from per-axis node
coordinates, so the same routine serves uniform plates and plates graded
towards the weld line.

All coordinates are in meters.  X is the travel direction, Y the transverse
direction and Z the thickness direction with the top (torch side) surface at
``z_max``.  Every mesh carries the six face node sets ``x_min`` ... ``z_max``.
"""
from __future__ import annotations

import logging

import numpy as np

from arc_weld_master.fea.config import WeldMesh

logger = logging.getLogger(__name__)

# Kuhn split of a hexahedron (VTK corner order) into six positive tetrahedra
# sharing the 0-6 diagonal; neighbouring cells split their common faces the
# same way, so the tetrahedral mesh is conforming.
_HEX_TO_TETS = np.array([
    [0, 1, 2, 6],
    [0, 2, 3, 6],
    [0, 3, 7, 6],
    [0, 7, 4, 6],
    [0, 4, 5, 6],
    [0, 5, 1, 6],
])

FACE_SETS = ("x_min", "x_max", "y_min", "y_max", "z_min", "z_max")


class BoxMesher:
    """Generate structured box meshes.

    All methods are ``@staticmethod`` so the class can be used without
    instantiation.
    """

    ELEMENT_TYPES = ("HEX8", "TET4")

    @staticmethod
    def structured_box(
        length: float,
        width: float,
        thickness: float,
        nx: int,
        ny: int,
        nz: int,
        element_type: str = "HEX8",
        origin=(0.0, 0.0, 0.0),
    ) -> WeldMesh:
        """Uniform box ``[0, length] x [0, width] x [0, thickness]`` shifted by ``origin``.

        Parameters
        ----------
        length, width, thickness : float
            Box dimensions in meters along X, Y and Z.
        nx, ny, nz : int
            Number of cells along each axis.
        element_type : str
            "HEX8", or "TET4" for six tetrahedra per cell.
        """
        if min(nx, ny, nz) < 1:
            raise ValueError(f"Cell counts must be >= 1, got {(nx, ny, nz)}")
        if min(length, width, thickness) <= 0.0:
            raise ValueError("Box dimensions must be positive")
        ox, oy, oz = (float(v) for v in origin)
        return BoxMesher.from_coordinates(
            np.linspace(ox, ox + length, nx + 1),
            np.linspace(oy, oy + width, ny + 1),
            np.linspace(oz, oz + thickness, nz + 1),
            element_type,
        )

    @staticmethod
    def from_coordinates(x, y, z, element_type: str = "HEX8") -> WeldMesh:
        """Tensor-product mesh through strictly increasing axis coordinates."""
        if element_type not in BoxMesher.ELEMENT_TYPES:
            raise ValueError(
                f"Unsupported element type {element_type!r}; "
                f"expected one of {BoxMesher.ELEMENT_TYPES}"
            )
        axes = [np.asarray(a, dtype=float) for a in (x, y, z)]
        for name, a in zip("xyz", axes):
            if a.ndim != 1 or a.size < 2 or np.any(np.diff(a) <= 0.0):
                raise ValueError(f"{name} coordinates must be strictly increasing, length >= 2")
        nx, ny, nz = (a.size - 1 for a in axes)

        # node (i, j, k) -> i + (nx+1) * (j + (ny+1) * k)
        zz, yy, xx = np.meshgrid(axes[2], axes[1], axes[0], indexing="ij")
        nodes = np.column_stack([xx.ravel(), yy.ravel(), zz.ravel()])

        k, j, i = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing="ij")
        base = (i + (nx + 1) * (j + (ny + 1) * k)).ravel()
        sx, sy = 1, nx + 1
        sz = (nx + 1) * (ny + 1)
        corners = np.array([
            0, sx, sx + sy, sy,
            sz, sz + sx, sz + sx + sy, sz + sy,
        ])
        hexes = base[:, None] + corners[None, :]

        if element_type == "HEX8":
            elements = hexes
        else:
            elements = hexes[:, _HEX_TO_TETS].reshape(-1, 4)

        mesh = WeldMesh(
            nodes=nodes,
            elements=elements.astype(np.int64),
            element_type=element_type,
            mesh_stats={
                "num_nodes": int(nodes.shape[0]),
                "num_elements": int(elements.shape[0]),
                "cells": [nx, ny, nz],
                "min_spacing_m": float(min(np.diff(a).min() for a in axes)),
            },
        )
        BoxMesher._add_face_sets(mesh, axes)
        logger.info(
            "Box mesh: %d nodes, %d %s elements (%d x %d x %d cells)",
            mesh.n_nodes, mesh.n_elements, element_type, nx, ny, nz,
        )
        return mesh

    @staticmethod
    def _add_face_sets(mesh: WeldMesh, axes) -> None:
        for axis, (lo_name, hi_name) in enumerate(zip(FACE_SETS[::2], FACE_SETS[1::2])):
            coord = mesh.nodes[:, axis]
            tol = 1e-6 * (axes[axis][-1] - axes[axis][0])
            mesh.add_node_set(lo_name, np.nonzero(coord <= axes[axis][0] + tol)[0])
            mesh.add_node_set(hi_name, np.nonzero(coord >= axes[axis][-1] - tol)[0])

    @staticmethod
    def graded_axis(lo: float, hi: float, fine: float, coarse: float,
                    focus: float, fine_width: float, ratio: float = 1.3) -> np.ndarray:
        """Axis coordinates with spacing ``fine`` around ``focus`` growing to ``coarse``.

        Spacing is uniform within ``fine_width / 2`` of ``focus`` and grows
        geometrically by ``ratio`` (capped at ``coarse``) towards both ends.
        """
        if not lo < hi:
            raise ValueError("graded_axis needs lo < hi")
        if fine <= 0.0 or coarse < fine or ratio < 1.0:
            raise ValueError("Need 0 < fine <= coarse and ratio >= 1")
        focus = min(max(focus, lo), hi)
        band_lo = max(lo, focus - 0.5 * fine_width)
        band_hi = min(hi, focus + 0.5 * fine_width)
        n_band = max(1, int(round((band_hi - band_lo) / fine)))
        band = np.linspace(band_lo, band_hi, n_band + 1)

        def grow(start: float, end: float) -> list[float]:
            span = abs(end - start)
            if span <= 1e-12:
                return []
            sign = 1.0 if end > start else -1.0
            points, pos, h = [], 0.0, fine
            while True:
                h = min(h * ratio, coarse)
                if pos + h >= span - 0.5 * h:
                    points.append(end)
                    return points
                pos += h
                points.append(start + sign * pos)

        left = grow(band_lo, lo)[::-1]
        right = grow(band_hi, hi)
        return np.concatenate([left, band, right])
