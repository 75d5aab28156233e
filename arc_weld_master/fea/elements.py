"""Linear TET4 / HEX8 isoparametric element formulations.

Each element class provides shape functions, natural derivatives, a Gauss
rule and the local face table.  ``ElementGeometry`` evaluates them for a
whole mesh at once so the solvers can form element kernels as vectorised
``einsum`` contractions over contiguous element chunks.

Node numbering follows the VTK / meshio convention for ``tetra`` and
``hexahedron`` cells.

Voigt ordering for strain and stress is ``[xx, yy, zz, xy, yz, xz]`` with
engineering shear strains.
"""
from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from arc_weld_master.fea.errors import InvalidMesh

_HEX_G = 1.0 / np.sqrt(3.0)


class _IsoparametricElement:
    """Shared single-element operations for the linear 3D elements."""

    N_NODES: int = 0
    GAUSS_POINTS: NDArray[np.float64] = np.empty((0, 4))
    FACES: tuple = ()
    MESHIO_TYPE: str = ""

    @staticmethod
    def shape_functions(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        raise NotImplementedError

    @staticmethod
    def shape_derivatives(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        raise NotImplementedError


class TET4Element(_IsoparametricElement):
    """4-node linear tetrahedron.

    Natural coordinates (xi, eta, zeta) with N0 = 1 - xi - eta - zeta.
    The 4-point rule is exact for quadratic integrands, which covers the
    consistent capacitance matrix.
    """

    N_NODES = 4
    MESHIO_TYPE = "tetra"

    _A = 0.5854101966249685
    _B = 0.1381966011250105
    GAUSS_POINTS = np.array([
        [_B, _B, _B, 1.0 / 24.0],
        [_A, _B, _B, 1.0 / 24.0],
        [_B, _A, _B, 1.0 / 24.0],
        [_B, _B, _A, 1.0 / 24.0],
    ])

    FACES = ((0, 2, 1), (0, 1, 3), (1, 2, 3), (0, 3, 2))

    _DN = np.array([
        [-1.0, 1.0, 0.0, 0.0],
        [-1.0, 0.0, 1.0, 0.0],
        [-1.0, 0.0, 0.0, 1.0],
    ])

    @staticmethod
    def shape_functions(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        return np.array([1.0 - xi - eta - zeta, xi, eta, zeta])

    @staticmethod
    def shape_derivatives(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        return TET4Element._DN.copy()


class HEX8Element(_IsoparametricElement):
    """8-node trilinear hexahedron with 2x2x2 Gauss quadrature."""

    N_NODES = 8
    MESHIO_TYPE = "hexahedron"

    NODE_NATURAL_COORDS = np.array([
        [-1.0, -1.0, -1.0],
        [1.0, -1.0, -1.0],
        [1.0, 1.0, -1.0],
        [-1.0, 1.0, -1.0],
        [-1.0, -1.0, 1.0],
        [1.0, -1.0, 1.0],
        [1.0, 1.0, 1.0],
        [-1.0, 1.0, 1.0],
    ])

    GAUSS_POINTS = np.array([
        [sx * _HEX_G, sy * _HEX_G, sz * _HEX_G, 1.0]
        for sz in (-1.0, 1.0) for sy in (-1.0, 1.0) for sx in (-1.0, 1.0)
    ])

    FACES = (
        (0, 3, 2, 1),
        (4, 5, 6, 7),
        (0, 1, 5, 4),
        (1, 2, 6, 5),
        (2, 3, 7, 6),
        (3, 0, 4, 7),
    )

    @staticmethod
    def shape_functions(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        nc = HEX8Element.NODE_NATURAL_COORDS
        return 0.125 * (1.0 + xi * nc[:, 0]) * (1.0 + eta * nc[:, 1]) * (1.0 + zeta * nc[:, 2])

    @staticmethod
    def shape_derivatives(xi: float, eta: float, zeta: float) -> NDArray[np.float64]:
        nc = HEX8Element.NODE_NATURAL_COORDS
        a = 1.0 + xi * nc[:, 0]
        b = 1.0 + eta * nc[:, 1]
        c = 1.0 + zeta * nc[:, 2]
        return 0.125 * np.array([
            nc[:, 0] * b * c,
            a * nc[:, 1] * c,
            a * b * nc[:, 2],
        ])


_ELEMENTS = {"TET4": TET4Element, "HEX8": HEX8Element}


def get_element(element_type: str) -> type:
    """Return the element class for ``element_type`` ("TET4" or "HEX8")."""
    try:
        return _ELEMENTS[element_type]
    except KeyError:
        raise ValueError(
            f"Unsupported element type {element_type!r}; "
            f"expected one of {sorted(_ELEMENTS)}"
        ) from None


def _b_from_gradients(dN: NDArray[np.float64]) -> NDArray[np.float64]:
    """Build B matrices from physical gradients.

    ``dN`` has shape ``(..., 3, n)``; the result has shape ``(..., 6, 3n)``.
    """
    lead = dN.shape[:-2]
    n = dN.shape[-1]
    B = np.zeros(lead + (6, 3 * n))
    dNx, dNy, dNz = dN[..., 0, :], dN[..., 1, :], dN[..., 2, :]
    B[..., 0, 0::3] = dNx
    B[..., 1, 1::3] = dNy
    B[..., 2, 2::3] = dNz
    B[..., 3, 0::3] = dNy
    B[..., 3, 1::3] = dNx
    B[..., 4, 1::3] = dNz
    B[..., 4, 2::3] = dNy
    B[..., 5, 0::3] = dNz
    B[..., 5, 2::3] = dNx
    return B


class ElementGeometry:
    """Per-Gauss-point geometry for every element of a mesh.

    Attributes
    ----------
    N : (G, n) shape functions at the Gauss points.
    dN : (E, G, 3, n) physical gradients.
    wdet : (E, G) quadrature weight times Jacobian determinant.
    gp_coords : (E, G, 3) physical Gauss point coordinates.
    volumes : (E,) element volumes.
    """

    def __init__(self, nodes: NDArray[np.float64], elements: NDArray[np.int64],
                 element_type: str) -> None:
        self.element = get_element(element_type)
        self.connectivity = np.asarray(elements, dtype=np.int64)
        gauss = self.element.GAUSS_POINTS
        coords = np.asarray(nodes, dtype=np.float64)[self.connectivity]

        self.N = np.array([self.element.shape_functions(*gp[:3]) for gp in gauss])
        dN_nat = np.array([self.element.shape_derivatives(*gp[:3]) for gp in gauss])

        # J[e, g] = dN_nat[g] @ coords[e]
        J = np.einsum("gan,enj->egaj", dN_nat, coords)
        det = np.linalg.det(J)
        bad = np.unique(np.nonzero(det <= 0.0)[0])
        if bad.size:
            raise InvalidMesh(
                f"{bad.size} degenerate or inverted element(s) with non-positive "
                f"Jacobian, first ids: {bad[:10].tolist()}"
            )

        self.dN = np.linalg.solve(J, np.broadcast_to(dN_nat, J.shape[:2] + dN_nat.shape[1:]))
        self.wdet = det * gauss[:, 3]
        self.gp_coords = np.einsum("gn,enj->egj", self.N, coords)
        self.volumes = self.wdet.sum(axis=1)

    @property
    def n_elements(self) -> int:
        return self.connectivity.shape[0]

    @property
    def n_gauss(self) -> int:
        return self.N.shape[0]

    def b_matrices(self, sl: slice = slice(None)) -> NDArray[np.float64]:
        """(Ec, G, 6, 3n) strain-displacement matrices for an element range."""
        return _b_from_gradients(self.dN[sl])

    def to_gauss(self, nodal: NDArray[np.float64], sl: slice = slice(None)) -> NDArray[np.float64]:
        """Interpolate nodal values (N,) or (N, k) to Gauss points."""
        values = np.asarray(nodal)[self.connectivity[sl]]
        if values.ndim == 2:
            return values @ self.N.T
        return np.einsum("gn,enk->egk", self.N, values)
