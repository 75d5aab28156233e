"""Stress recovery for weld FEA post-processing.

Von Mises and principal stresses, inverse-distance nodal extrapolation of
Gauss-point quantities, and hotspot identification.

Stress convention (Voigt notation)
-----------------------------------
[sigma_xx, sigma_yy, sigma_zz, tau_xy, tau_yz, tau_xz]

Von Mises formula
-----------------
sigma_vm = sqrt(0.5 * ((sxx-syy)^2 + (syy-szz)^2 + (szz-sxx)^2
                        + 6*(txy^2 + tyz^2 + txz^2)))

Nodal extrapolation
-------------------
Each node collects the Gauss-point values of all elements sharing it and
averages them weighted by inverse distance from Gauss point to node.  The
weights depend only on geometry and are computed once.  A uniform field is
reproduced exactly.
"""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from arc_weld_master.fea.elements import ElementGeometry

logger = logging.getLogger(__name__)


class StressRecovery:
    """Gauss-point to node post-processing for one mesh.

    Parameters
    ----------
    nodes : (N, 3) node coordinates.
    geometry : ElementGeometry
        Supplies connectivity and Gauss point coordinates.

    Examples
    --------
    >>> sr = StressRecovery(mesh.nodes, geometry)
    >>> nodal = sr.extrapolate_to_nodes(gauss_stress)
    >>> vm = sr.von_mises(nodal)
    """

    def __init__(self, nodes: NDArray[np.float64], geometry: ElementGeometry) -> None:
        self.geometry = geometry
        self.n_nodes = nodes.shape[0]
        conn = geometry.connectivity
        # (E, G, n) distance from every Gauss point to every element node
        dist = np.linalg.norm(
            geometry.gp_coords[:, :, None, :] - nodes[conn][:, None, :, :], axis=-1,
        )
        self._weights = 1.0 / (dist + 1e-30)
        total = np.bincount(
            conn.ravel(), weights=self._weights.sum(axis=1).ravel(), minlength=self.n_nodes,
        )
        self._inv_total = np.zeros(self.n_nodes)
        np.divide(1.0, total, out=self._inv_total, where=total > 0.0)

    # ------------------------------------------------------------------
    # Von Mises / principal stresses
    # ------------------------------------------------------------------

    @staticmethod
    def von_mises(stress_voigt: NDArray[np.float64]) -> NDArray[np.float64]:
        """Von Mises equivalent stress for any (..., 6) Voigt input."""
        s = np.asarray(stress_voigt, dtype=np.float64)
        sxx, syy, szz = s[..., 0], s[..., 1], s[..., 2]
        txy, tyz, txz = s[..., 3], s[..., 4], s[..., 5]
        vm_sq = 0.5 * (
            (sxx - syy) ** 2
            + (syy - szz) ** 2
            + (szz - sxx) ** 2
            + 6.0 * (txy ** 2 + tyz ** 2 + txz ** 2)
        )
        return np.sqrt(np.maximum(vm_sq, 0.0))

    @staticmethod
    def principal_stresses(
        stress_voigt: NDArray[np.float64],
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Principal stresses (..., 3) sorted descending and directions (..., 3, 3).

        Column i of the direction matrix belongs to principal value i.
        """
        s = np.asarray(stress_voigt, dtype=np.float64)
        tensor = np.empty(s.shape[:-1] + (3, 3))
        tensor[..., 0, 0] = s[..., 0]
        tensor[..., 1, 1] = s[..., 1]
        tensor[..., 2, 2] = s[..., 2]
        tensor[..., 0, 1] = tensor[..., 1, 0] = s[..., 3]
        tensor[..., 1, 2] = tensor[..., 2, 1] = s[..., 4]
        tensor[..., 0, 2] = tensor[..., 2, 0] = s[..., 5]
        values, vectors = np.linalg.eigh(tensor)
        # eigh is ascending
        return values[..., ::-1], vectors[..., ::-1]

    # ------------------------------------------------------------------
    # Nodal extrapolation
    # ------------------------------------------------------------------

    def extrapolate_to_nodes(self, gauss_values: NDArray[np.float64]) -> NDArray[np.float64]:
        """Inverse-distance average of (E, G) or (E, G, k) Gauss values at the nodes."""
        values = np.asarray(gauss_values, dtype=np.float64)
        conn = self.geometry.connectivity
        if values.ndim == 2:
            contrib = np.einsum("ega,eg->ea", self._weights, values)
            return np.bincount(
                conn.ravel(), weights=contrib.ravel(), minlength=self.n_nodes,
            ) * self._inv_total
        contrib = np.einsum("ega,egk->eak", self._weights, values)
        out = np.empty((self.n_nodes, values.shape[2]))
        for k in range(values.shape[2]):
            out[:, k] = np.bincount(
                conn.ravel(), weights=contrib[:, :, k].ravel(), minlength=self.n_nodes,
            )
        return out * self._inv_total[:, None]

    # ------------------------------------------------------------------
    # Hotspots
    # ------------------------------------------------------------------

    def find_hotspots(
        self,
        gauss_vm: NDArray[np.float64],
        n_top: int = 10,
        yield_strength_mpa: Optional[float] = None,
    ) -> list[dict]:
        """Top-N Gauss points by von Mises stress, highest first.

        Each dict has keys: element_id, gauss_point, x, y, z, stress_mpa,
        safety_factor.
        """
        n_gauss = gauss_vm.shape[1]
        flat_vm = gauss_vm.ravel()
        n_return = min(n_top, flat_vm.size)
        if n_return == 0:
            return []

        top = np.argpartition(flat_vm, -n_return)[-n_return:]
        top = top[np.argsort(flat_vm[top])[::-1]]

        hotspots = []
        for flat_idx in top:
            elem_id = int(flat_idx // n_gauss)
            gp_id = int(flat_idx % n_gauss)
            x, y, z = self.geometry.gp_coords[elem_id, gp_id]
            stress_mpa = float(flat_vm[flat_idx]) / 1e6
            if yield_strength_mpa is not None and stress_mpa > 0.0:
                safety_factor = yield_strength_mpa / stress_mpa
            else:
                safety_factor = float("inf")
            hotspots.append({
                "element_id": elem_id,
                "gauss_point": gp_id,
                "x": float(x),
                "y": float(y),
                "z": float(z),
                "stress_mpa": stress_mpa,
                "safety_factor": safety_factor,
            })
        return hotspots
