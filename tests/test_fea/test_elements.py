"""Tests for the linear TET4 / HEX8 element formulations and ElementGeometry."""
from __future__ import annotations

import numpy as np
import pytest

from arc_weld_master.fea.elements import (
    ElementGeometry,
    HEX8Element,
    TET4Element,
    get_element,
)
from arc_weld_master.fea.errors import InvalidMesh

UNIT_TET = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
])

UNIT_HEX = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [1.0, 1.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
    [1.0, 0.0, 1.0],
    [1.0, 1.0, 1.0],
    [0.0, 1.0, 1.0],
])


class TestShapeFunctions:
    @pytest.mark.parametrize("element", [TET4Element, HEX8Element])
    def test_partition_of_unity(self, element):
        """Sum of shape functions = 1 at every Gauss point."""
        for xi, eta, zeta, _ in element.GAUSS_POINTS:
            assert abs(element.shape_functions(xi, eta, zeta).sum() - 1.0) < 1e-12

    @pytest.mark.parametrize("element", [TET4Element, HEX8Element])
    def test_derivatives_sum_to_zero(self, element):
        dN = element.shape_derivatives(0.1, 0.2, 0.3)
        assert dN.shape == (3, element.N_NODES)
        assert np.allclose(dN.sum(axis=1), 0.0, atol=1e-12)

    def test_hex_kronecker_delta_at_nodes(self):
        for i, (xi, eta, zeta) in enumerate(HEX8Element.NODE_NATURAL_COORDS):
            N = HEX8Element.shape_functions(xi, eta, zeta)
            assert np.allclose(N, np.eye(8)[i], atol=1e-12)

    def test_gauss_weights_sum_to_reference_volume(self):
        assert TET4Element.GAUSS_POINTS[:, 3].sum() == pytest.approx(1.0 / 6.0)
        assert HEX8Element.GAUSS_POINTS[:, 3].sum() == pytest.approx(8.0)


def _elasticity(E: float, nu: float) -> np.ndarray:
    lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
    mu = E / (2.0 * (1.0 + nu))
    D = np.zeros((6, 6))
    D[:3, :3] = lam
    D[0, 0] = D[1, 1] = D[2, 2] = lam + 2.0 * mu
    D[3, 3] = D[4, 4] = D[5, 5] = mu
    return D


def _point_gradient(element, coords, xi, eta, zeta):
    """Physical gradients and det(J) at one natural point."""
    dN_nat = element.shape_derivatives(xi, eta, zeta)
    J = dN_nat @ coords
    return np.linalg.solve(J, dN_nat), float(np.linalg.det(J))


def _element_matrices(element, coords, k, rho_cp, D):
    """Gauss-point loop over one element: conductivity, capacity and stiffness."""
    n = element.N_NODES
    Kc, C, Ks = np.zeros((n, n)), np.zeros((n, n)), np.zeros((3 * n, 3 * n))
    for xi, eta, zeta, w in element.GAUSS_POINTS:
        N = element.shape_functions(xi, eta, zeta)
        dN, det_J = _point_gradient(element, coords, xi, eta, zeta)
        B = np.zeros((6, 3 * n))
        B[0, 0::3] = B[3, 1::3] = B[5, 2::3] = dN[0]
        B[1, 1::3] = B[3, 0::3] = B[4, 2::3] = dN[1]
        B[2, 2::3] = B[4, 1::3] = B[5, 0::3] = dN[2]
        Kc += k * (dN.T @ dN) * det_J * w
        C += rho_cp * np.outer(N, N) * det_J * w
        Ks += B.T @ D @ B * det_J * w
    return Kc, C, Ks


SKEWED_HEX = UNIT_HEX * np.array([0.01, 0.02, 0.005]) + np.outer(UNIT_HEX[:, 2], [0.002, 0.0, 0.0])


class TestElementMatrices:
    """Vectorised kernels on ElementGeometry against a per-element loop."""

    @pytest.mark.parametrize("etype,coords", [("TET4", UNIT_TET), ("HEX8", SKEWED_HEX)])
    def test_kernels_match_element_loop(self, etype, coords):
        geo = ElementGeometry(coords, np.arange(len(coords))[None, :], etype)
        D = _elasticity(200e9, 0.3)
        Kc_ref, C_ref, Ks_ref = _element_matrices(geo.element, coords, 45.0, 3.9e6, D)

        Kc = 45.0 * np.einsum("egia,egib,eg->eab", geo.dN, geo.dN, geo.wdet)[0]
        C = 3.9e6 * np.einsum("ga,gb,eg->eab", geo.N, geo.N, geo.wdet)[0]
        B = geo.b_matrices()
        Ks = np.einsum("egia,ij,egjb,eg->eab", B, D, B, geo.wdet)[0]
        np.testing.assert_allclose(Kc, Kc_ref, rtol=1e-10, atol=1e-12 * np.abs(Kc_ref).max())
        np.testing.assert_allclose(C, C_ref, rtol=1e-10, atol=1e-12 * np.abs(C_ref).max())
        np.testing.assert_allclose(Ks, Ks_ref, rtol=1e-10, atol=1e-12 * np.abs(Ks_ref).max())

    @pytest.mark.parametrize("etype,coords", [("TET4", UNIT_TET), ("HEX8", UNIT_HEX)])
    def test_conductivity_annihilates_constants(self, etype, coords):
        geo = ElementGeometry(coords, np.arange(len(coords))[None, :], etype)
        Ke = 45.0 * np.einsum("egia,egib,eg->eab", geo.dN, geo.dN, geo.wdet)[0]
        assert np.allclose(Ke @ np.ones(len(coords)), 0.0, atol=1e-9)
        assert np.allclose(Ke, Ke.T)

    @pytest.mark.parametrize("etype,coords", [("TET4", UNIT_TET), ("HEX8", UNIT_HEX)])
    def test_capacity_total(self, etype, coords):
        """Consistent capacitance integrates rho*cp over the volume."""
        geo = ElementGeometry(coords, np.arange(len(coords))[None, :], etype)
        C = 3.9e6 * np.einsum("ga,gb,eg->eab", geo.N, geo.N, geo.wdet)[0]
        assert C.sum() == pytest.approx(3.9e6 * geo.volumes[0])

    def test_stiffness_rigid_translation(self):
        geo = ElementGeometry(UNIT_HEX, np.arange(8)[None, :], "HEX8")
        B = geo.b_matrices()
        Ke = np.einsum("egia,ij,egjb,eg->eab", B, _elasticity(200e9, 0.3), B, geo.wdet)[0]
        u = np.tile([1.0, -2.0, 0.5], 8)
        assert np.abs(Ke @ u).max() < 1e-6 * np.abs(Ke).max()


class TestLookup:
    def test_get_element(self):
        assert get_element("TET4") is TET4Element
        assert get_element("HEX8") is HEX8Element
        with pytest.raises(ValueError):
            get_element("TET10")


class TestElementGeometry:
    def test_matches_single_element_volume(self):
        geo = ElementGeometry(UNIT_HEX, np.arange(8)[None, :], "HEX8")
        assert geo.n_elements == 1
        assert geo.n_gauss == 8
        assert geo.volumes[0] == pytest.approx(1.0)

    def test_gradients_match_single_element(self):
        coords = UNIT_TET * np.array([0.01, 0.02, 0.005])
        geo = ElementGeometry(coords, np.arange(4)[None, :], "TET4")
        dN, det_J = _point_gradient(TET4Element, coords, 0.25, 0.25, 0.25)
        assert np.allclose(geo.dN[0, 0], dN)
        assert geo.wdet[0].sum() == pytest.approx(det_J / 6.0)

    def test_scaled_hex_volume(self):
        geo = ElementGeometry(UNIT_HEX * 0.01, np.arange(8)[None, :], "HEX8")
        assert geo.volumes[0] == pytest.approx(1e-6)

    def test_to_gauss_linear_field(self):
        """Linear nodal fields are interpolated exactly."""
        geo = ElementGeometry(UNIT_HEX, np.arange(8)[None, :], "HEX8")
        T = 100.0 + 50.0 * UNIT_HEX[:, 0] - 20.0 * UNIT_HEX[:, 2]
        expected = 100.0 + 50.0 * geo.gp_coords[..., 0] - 20.0 * geo.gp_coords[..., 2]
        assert np.allclose(geo.to_gauss(T), expected)

    def test_to_gauss_vector_field(self):
        geo = ElementGeometry(UNIT_TET, np.arange(4)[None, :], "TET4")
        values = np.tile([1.0, 2.0, 3.0], (4, 1))
        assert np.allclose(geo.to_gauss(values), [[1.0, 2.0, 3.0]])

    def test_b_matrix_strain_of_linear_field(self):
        """u = eps . x gives back the Voigt strain with engineering shear."""
        geo = ElementGeometry(UNIT_HEX, np.arange(8)[None, :], "HEX8")
        grad = np.array([[1e-3, 2e-4, 0.0], [0.0, -5e-4, 0.0], [0.0, 0.0, 3e-4]])
        u = (UNIT_HEX @ grad.T).ravel()
        strain = np.einsum("egij,j->egi", geo.b_matrices(), u)
        assert np.allclose(strain, [1e-3, -5e-4, 3e-4, 2e-4, 0.0, 0.0])

    def test_inverted_raises_invalid_mesh(self):
        with pytest.raises(InvalidMesh):
            ElementGeometry(UNIT_TET, np.array([[0, 2, 1, 3]]), "TET4")
