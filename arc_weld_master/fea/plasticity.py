"""Gauss-point state and J2 (von Mises) radial return mapping.

State lives in one arena of arrays indexed ``[element, point]``; nothing is
shared between points.  The return mapping is vectorised over any flat batch
of points.

Voigt ordering is ``[xx, yy, zz, xy, yz, xz]``; strains carry engineering
shear (gamma = 2 eps), stresses carry tensor shear.

Linear isotropic hardening:  sigma_y(T, ep) = sigma_y0(T) + H(T) * ep

Radial return (trial state ``s_tr``, ``q_tr = sqrt(3/2 s_tr:s_tr)``)::

    dgamma = (q_tr - sigma_y) / (3G + H)
    s      = (1 - 3G dgamma / q_tr) s_tr
    d eps_p = dgamma * 3/2 * s_tr / q_tr

Consistent tangent::

    C = K 1(x)1 + 2G theta I_dev - 2G theta_bar n(x)n
    theta     = 1 - 3G dgamma / q_tr
    theta_bar = 1 / (1 + H / 3G) - (1 - theta)
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

# tensor shear -> engineering shear
ENGINEERING = np.array([1.0, 1.0, 1.0, 2.0, 2.0, 2.0])
IDENTITY_VOIGT = np.array([1.0, 1.0, 1.0, 0.0, 0.0, 0.0])

_ONE_ONE = np.outer(IDENTITY_VOIGT, IDENTITY_VOIGT)
_I_DEV = np.zeros((6, 6))
_I_DEV[:3, :3] = -1.0 / 3.0
_I_DEV[0, 0] = _I_DEV[1, 1] = _I_DEV[2, 2] = 2.0 / 3.0
_I_DEV[3, 3] = _I_DEV[4, 4] = _I_DEV[5, 5] = 0.5

_YIELD_TOL = 1.0e-10


@dataclass
class GaussPointState:
    """Committed per-point mechanical and metallurgical state."""
    stress: NDArray[np.float64]                 # (E, G, 6)
    plastic_strain: NDArray[np.float64]         # (E, G, 6) engineering shear
    eq_plastic_strain: NDArray[np.float64]      # (E, G)
    trip_strain: NDArray[np.float64]            # (E, G, 6) engineering shear
    martensite: NDArray[np.float64]             # (E, G)
    transformation_strain: NDArray[np.float64]  # (E, G) volumetric

    @classmethod
    def zeros(cls, n_elements: int, n_gauss: int) -> "GaussPointState":
        return cls(
            stress=np.zeros((n_elements, n_gauss, 6)),
            plastic_strain=np.zeros((n_elements, n_gauss, 6)),
            eq_plastic_strain=np.zeros((n_elements, n_gauss)),
            trip_strain=np.zeros((n_elements, n_gauss, 6)),
            martensite=np.zeros((n_elements, n_gauss)),
            transformation_strain=np.zeros((n_elements, n_gauss)),
        )


@dataclass
class ReturnMapResult:
    stress: NDArray[np.float64]            # (M, 6)
    plastic_strain: NDArray[np.float64]    # (M, 6)
    eq_plastic_strain: NDArray[np.float64]  # (M,)
    tangent: NDArray[np.float64]           # (M, 6, 6)
    yielded: NDArray[np.bool_]             # (M,)


def deviator(stress: NDArray[np.float64]) -> NDArray[np.float64]:
    s = np.array(stress, dtype=float, copy=True)
    s[..., :3] -= s[..., :3].mean(axis=-1, keepdims=True)
    return s


def equivalent_stress(stress: NDArray[np.float64]) -> NDArray[np.float64]:
    """Von Mises equivalent stress sqrt(3/2 s:s) for Voigt stresses (..., 6)."""
    s = deviator(stress)
    ss = np.sum(s[..., :3] ** 2, axis=-1) + 2.0 * np.sum(s[..., 3:] ** 2, axis=-1)
    return np.sqrt(1.5 * ss)


def radial_return(
    strain: NDArray[np.float64],
    plastic_strain: NDArray[np.float64],
    eq_plastic_strain: NDArray[np.float64],
    eigenstrain: NDArray[np.float64],
    E: NDArray[np.float64],
    nu: NDArray[np.float64],
    yield_stress: NDArray[np.float64],
    hardening: NDArray[np.float64],
) -> ReturnMapResult:
    """Elastic predictor / plastic corrector for a batch of M points.

    Parameters
    ----------
    strain : (M, 6) total strain.
    plastic_strain, eq_plastic_strain : committed plastic state.
    eigenstrain : (M, 6) thermal + transformation + TRIP strain.
    E, nu, yield_stress, hardening : (M,) properties at the point temperature.
    """
    G = E / (2.0 * (1.0 + nu))
    K = E / (3.0 * (1.0 - 2.0 * nu))

    e = strain - plastic_strain - eigenstrain
    vol = e[:, :3].sum(axis=1)
    p = K * vol
    s = np.empty_like(e)
    s[:, :3] = 2.0 * G[:, None] * (e[:, :3] - vol[:, None] / 3.0)
    s[:, 3:] = G[:, None] * e[:, 3:]

    ss = np.sum(s[:, :3] ** 2, axis=1) + 2.0 * np.sum(s[:, 3:] ** 2, axis=1)
    q = np.sqrt(1.5 * ss)
    sy = yield_stress + hardening * eq_plastic_strain
    f = q - sy
    yielded = f > _YIELD_TOL * sy

    q_safe = np.where(yielded, q, 1.0)
    dgamma = np.where(yielded, f / (3.0 * G + hardening), 0.0)
    theta = np.where(yielded, 1.0 - 3.0 * G * dgamma / q_safe, 1.0)

    stress = s * theta[:, None]
    stress[:, :3] += p[:, None]

    flow = 1.5 * s / q_safe[:, None]
    new_plastic = plastic_strain + (dgamma[:, None] * flow) * ENGINEERING
    new_eq = eq_plastic_strain + dgamma

    tangent = (K[:, None, None] * _ONE_ONE
               + (2.0 * G * theta)[:, None, None] * _I_DEV)
    if np.any(yielded):
        idx = np.nonzero(yielded)[0]
        Gy = G[idx]
        theta_bar = 1.0 / (1.0 + hardening[idx] / (3.0 * Gy)) - (1.0 - theta[idx])
        n_hat = s[idx] / np.sqrt(ss[idx])[:, None]
        tangent[idx] -= (2.0 * Gy * theta_bar)[:, None, None] * np.einsum(
            "mi,mj->mij", n_hat, n_hat,
        )

    return ReturnMapResult(stress, new_plastic, new_eq, tangent, yielded)
