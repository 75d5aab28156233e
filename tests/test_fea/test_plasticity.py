"""Tests for the J2 radial return mapping and its consistent tangent."""
from __future__ import annotations

import numpy as np
import pytest

from arc_weld_master.fea.plasticity import (
    ENGINEERING,
    GaussPointState,
    deviator,
    equivalent_stress,
    radial_return,
)

E = 200e9
NU = 0.3
G = E / (2.0 * (1.0 + NU))
SIGMA_Y = 250e6
LAM = E * NU / ((1.0 + NU) * (1.0 - 2.0 * NU))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _elasticity() -> np.ndarray:
    D = np.diag([G] * 6)
    D[:3, :3] = LAM
    D[0, 0] = D[1, 1] = D[2, 2] = LAM + 2.0 * G
    return D


def _return(strain, plastic=None, eq=None, eigen=None, hardening=0.0, yield_stress=SIGMA_Y):
    strain = np.atleast_2d(np.asarray(strain, dtype=float))
    m = strain.shape[0]
    return radial_return(
        strain,
        np.zeros((m, 6)) if plastic is None else np.atleast_2d(plastic),
        np.zeros(m) if eq is None else np.atleast_1d(eq),
        np.zeros((m, 6)) if eigen is None else np.atleast_2d(eigen),
        np.full(m, E), np.full(m, NU),
        np.full(m, yield_stress), np.full(m, hardening),
    )


def _uniaxial(eps: float) -> np.ndarray:
    return np.array([eps, -NU * eps, -NU * eps, 0.0, 0.0, 0.0])


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------

class TestStressInvariants:
    def test_deviator_is_traceless(self):
        s = deviator(np.array([100.0, 50.0, -30.0, 10.0, 0.0, 5.0]))
        assert s[:3].sum() == pytest.approx(0.0, abs=1e-12)
        assert s[3] == 10.0

    def test_uniaxial_equivalent(self):
        assert equivalent_stress(np.array([300e6, 0, 0, 0, 0, 0])) == pytest.approx(300e6)

    def test_pure_shear_equivalent(self):
        tau = 100e6
        assert equivalent_stress(np.array([0, 0, 0, tau, 0, 0])) == pytest.approx(np.sqrt(3.0) * tau)

    def test_hydrostatic_has_no_equivalent(self):
        assert equivalent_stress(np.array([1e8, 1e8, 1e8, 0, 0, 0])) == pytest.approx(0.0, abs=1e-3)

    def test_elastic_tangent_is_elasticity_matrix(self):
        D = _return(np.zeros(6)).tangent[0]
        assert D[0, 0] == pytest.approx(LAM + 2 * G)
        assert D[0, 1] == pytest.approx(LAM)
        assert D[3, 3] == pytest.approx(G)


# ---------------------------------------------------------------------------
# Return mapping
# ---------------------------------------------------------------------------

class TestRadialReturn:
    def test_elastic_step(self):
        eps = 0.5 * SIGMA_Y / E
        ret = _return(_uniaxial(eps))
        assert not ret.yielded[0]
        assert ret.stress[0, 0] == pytest.approx(E * eps, rel=1e-9)
        assert np.allclose(ret.stress[0, 1:], 0.0, atol=1e-3)
        assert ret.eq_plastic_strain[0] == 0.0
        assert np.allclose(ret.tangent[0], _elasticity())

    def test_perfect_plasticity_on_yield_surface(self):
        ret = _return(_uniaxial(5.0 * SIGMA_Y / E))
        assert ret.yielded[0]
        assert equivalent_stress(ret.stress[0]) == pytest.approx(SIGMA_Y, rel=1e-9)
        assert ret.eq_plastic_strain[0] > 0.0

    def test_linear_hardening(self):
        H = 2e9
        ret = _return(_uniaxial(5.0 * SIGMA_Y / E), hardening=H)
        q = equivalent_stress(ret.stress[0])
        assert q == pytest.approx(SIGMA_Y + H * ret.eq_plastic_strain[0], rel=1e-9)

    def test_plastic_flow_is_isochoric(self):
        ret = _return(_uniaxial(5.0 * SIGMA_Y / E))
        assert ret.plastic_strain[0, :3].sum() == pytest.approx(0.0, abs=1e-15)

    def test_equivalent_plastic_strain_matches_tensor(self):
        """eps_bar = sqrt(2/3 eps_p:eps_p) for a single radial step."""
        strain = np.array([3e-3, -1e-3, 0.5e-3, 2e-3, 0.0, 1e-3])
        ret = _return(strain)
        ep = ret.plastic_strain[0] / ENGINEERING
        norm = np.sqrt(np.sum(ep[:3] ** 2) + 2.0 * np.sum(ep[3:] ** 2))
        assert ret.eq_plastic_strain[0] == pytest.approx(np.sqrt(2.0 / 3.0) * norm, rel=1e-9)

    def test_pressure_is_elastic(self):
        strain = np.array([4e-3, 4e-3, 4e-3, 0.0, 0.0, 0.0])
        ret = _return(strain)
        K = E / (3.0 * (1.0 - 2.0 * NU))
        assert not ret.yielded[0]
        assert np.allclose(ret.stress[0, :3], K * 12e-3)

    def test_eigenstrain_offsets_strain(self):
        """Free thermal expansion produces no stress."""
        eigen = np.array([1e-3, 1e-3, 1e-3, 0.0, 0.0, 0.0])
        ret = _return(eigen, eigen=eigen)
        assert np.allclose(ret.stress, 0.0, atol=1e-3)

    def test_committed_state_is_input(self):
        """Unloading from a plastic state is elastic and keeps eps_p."""
        first = _return(_uniaxial(5.0 * SIGMA_Y / E))
        second = _return(_uniaxial(4.5 * SIGMA_Y / E), plastic=first.plastic_strain,
                         eq=first.eq_plastic_strain)
        assert not second.yielded[0]
        assert second.eq_plastic_strain[0] == first.eq_plastic_strain[0]
        assert np.allclose(second.plastic_strain, first.plastic_strain)

    def test_batch_independent(self):
        strains = np.stack([_uniaxial(0.1 * SIGMA_Y / E), _uniaxial(5.0 * SIGMA_Y / E)])
        batch = _return(strains)
        for i in range(2):
            single = _return(strains[i])
            assert np.allclose(batch.stress[i], single.stress[0])
        assert batch.yielded.tolist() == [False, True]

    @pytest.mark.parametrize("hardening", [0.0, 5e9])
    def test_consistent_tangent_matches_finite_difference(self, hardening):
        strain = np.array([3e-3, -1e-3, 0.5e-3, 2e-3, -1e-3, 1e-3])
        ret = _return(strain, hardening=hardening)
        assert ret.yielded[0]
        h = 1e-9
        fd = np.empty((6, 6))
        for j in range(6):
            dp = strain.copy()
            dm = strain.copy()
            dp[j] += h
            dm[j] -= h
            fd[:, j] = (_return(dp, hardening=hardening).stress[0]
                        - _return(dm, hardening=hardening).stress[0]) / (2 * h)
        assert np.allclose(ret.tangent[0], fd, rtol=1e-4, atol=1e-4 * np.abs(fd).max())

    def test_tangent_symmetric(self):
        ret = _return(np.array([3e-3, -1e-3, 0.5e-3, 2e-3, 0.0, 1e-3]), hardening=1e9)
        assert np.allclose(ret.tangent[0], ret.tangent[0].T)


# ---------------------------------------------------------------------------
# State arena
# ---------------------------------------------------------------------------

class TestGaussPointState:
    def test_zeros_shapes(self):
        state = GaussPointState.zeros(5, 8)
        assert state.stress.shape == (5, 8, 6)
        assert state.eq_plastic_strain.shape == (5, 8)
