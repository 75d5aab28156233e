"""Quasi-static elasto-plastic response to a frozen temperature history.

Small-strain additive decomposition at every Gauss point::

    eps = eps_e + eps_p + eps_th + eps_tr + eps_trip
    eps_th   = alpha(T) (T - T_ref)                     (normal components)
    eps_tr   = dV/V * X_m / 3                           (normal components)
    d eps_trip = 3/2 K dX_m s                           (Greenwood-Johnson)

Each load increment is solved in total form with Newton-Raphson and the
consistent tangent of ``plasticity.radial_return``.  Convergence is
``|R_free| <= tol * max(|R_0|, |F_e|)`` or ``|R_free| <= atol`` where
``R_0`` is the out-of-balance force at the start of the increment and
``|F_e|`` the assembled magnitude of the element internal forces there.  A
failing increment is split in two (temperatures and phase fields are
interpolated in time) up to ``max_load_bisections`` levels deep before
``MechanicalDivergence`` is raised.

Clamps are re-partitioned every increment, so a released clamp frees its
DOFs from the next increment on.  With no active clamp the incremental
displacement is made orthogonal to the six rigid-body modes through
Lagrange multipliers (``rigid_body_constraint="auto"``).
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from arc_weld_master.fea.assembler import ParallelAssembler, SparsityPattern
from arc_weld_master.fea.cancellation import CancellationToken
from arc_weld_master.fea.config import SolverConfig, WeldMesh
from arc_weld_master.fea.elements import ElementGeometry
from arc_weld_master.fea.errors import Cancelled, MechanicalDivergence
from arc_weld_master.fea.material_properties import (
    HARDENING_MODULUS,
    POISSON_RATIO,
    THERMAL_EXPANSION,
    YIELD_STRESS,
    YOUNGS_MODULUS,
    MaterialField,
)
from arc_weld_master.fea.plasticity import (
    ENGINEERING,
    IDENTITY_VOIGT,
    GaussPointState,
    deviator,
    equivalent_stress,
    radial_return,
)
from arc_weld_master.fea.results import (
    ConvergenceLog,
    ConvergenceRecord,
    MechanicalResult,
    MetallurgyResult,
    TemperatureHistory,
)
from arc_weld_master.fea.stress_recovery import StressRecovery

logger = logging.getLogger(__name__)


class _IncrementFailed(Exception):
    pass


def load_step_indices(times: NDArray[np.float64], stride: int,
                      release_times: tuple = ()) -> list[int]:
    """Thermal step indices that become load steps.

    Step 0, every ``stride``-th step, the last step, and for each release
    time the first thermal step at or after it.
    """
    n = times.size
    if n == 0:
        return []
    steps = set(range(0, n, stride))
    steps.add(n - 1)
    for release in release_times:
        i = int(np.searchsorted(times, release - 1e-12, side="left"))
        if i < n:
            steps.add(i)
    return sorted(steps)


class MechanicalSolver:
    """Load-step the mechanical problem along a thermal history.

    Parameters
    ----------
    mesh : WeldMesh
    geometry : ElementGeometry
    materials : MaterialField
    config : SolverConfig
        Uses the mechanical settings and ``clamps``.
    assembler : ParallelAssembler, optional
    event_bus : EventBus, optional
        Receives ``mechanical.step`` after every load step.
    convergence_log : ConvergenceLog, optional
    """

    def __init__(
        self,
        mesh: WeldMesh,
        geometry: ElementGeometry,
        materials: MaterialField,
        config: SolverConfig,
        assembler: Optional[ParallelAssembler] = None,
        event_bus=None,
        convergence_log: Optional[ConvergenceLog] = None,
    ) -> None:
        self.mesh = mesh
        self.geometry = geometry
        self.materials = materials
        self.config = config
        self.assembler = assembler or ParallelAssembler(mesh.n_elements, 1)
        self.event_bus = event_bus
        self.log = convergence_log if convergence_log is not None else ConvergenceLog()
        self.pattern = SparsityPattern(mesh.elements, mesh.n_nodes, dofs_per_node=3)
        self.recovery = StressRecovery(mesh.nodes, geometry)
        self.n_dof = mesh.n_dof

        self._annealing = materials.per_element(lambda d: d.annealing_temp)
        self._clamp_dofs = []
        for clamp in config.clamps:
            nodes = mesh.node_set(clamp.node_set)
            dofs = (nodes[:, None] * 3 + np.asarray(clamp.components)[None, :]).ravel()
            self._clamp_dofs.append((clamp, np.unique(dofs)))
        self._rigid = self._rigid_body_modes()

    # ------------------------------------------------------------------
    # Boundary conditions
    # ------------------------------------------------------------------

    def _rigid_body_modes(self) -> sp.csr_matrix:
        """(6, n_dof) translation rows and rotation rows about the centroid."""
        nodes = self.mesh.nodes
        r = nodes - nodes.mean(axis=0)
        length = max(float(np.abs(r).max()), 1e-30)
        r = r / length
        n = nodes.shape[0]
        ids = np.arange(n) * 3
        ones = np.ones(n)
        rows = np.concatenate([
            np.zeros(n), np.ones(n), np.full(n, 2),
            np.full(n, 3), np.full(n, 3),
            np.full(n, 4), np.full(n, 4),
            np.full(n, 5), np.full(n, 5),
        ])
        cols = np.concatenate([
            ids, ids + 1, ids + 2,
            ids + 2, ids + 1,            # (r x u)_x = ry uz - rz uy
            ids, ids + 2,                # (r x u)_y = rz ux - rx uz
            ids + 1, ids,                # (r x u)_z = rx uy - ry ux
        ])
        vals = np.concatenate([
            ones, ones, ones,
            r[:, 1], -r[:, 2],
            r[:, 2], -r[:, 0],
            r[:, 0], -r[:, 1],
        ])
        return sp.csr_matrix((vals, (rows, cols)), shape=(6, self.n_dof))

    def _partition(self, time_s: float):
        """Fixed DOFs, spring diagonal and whether rigid-body constraints apply."""
        fixed = []
        spring = np.zeros(self.n_dof)
        any_active = False
        for clamp, dofs in self._clamp_dofs:
            if not clamp.is_active(time_s):
                continue
            any_active = True
            if clamp.kind == "fixed":
                fixed.append(dofs)
            else:
                spring[dofs] += clamp.stiffness
        fixed = np.unique(np.concatenate(fixed)) if fixed else np.empty(0, dtype=np.int64)
        rigid = self.config.rigid_body_constraint == "auto" and not any_active
        return fixed, spring, rigid

    # ------------------------------------------------------------------
    # Increment fields
    # ------------------------------------------------------------------

    def _increment_fields(self, time_s: float, state: GaussPointState) -> dict:
        """Temperature-dependent properties and eigenstrain at ``time_s``."""
        geo = self.geometry
        T = geo.to_gauss(self.history.at(time_s))
        mat = self.materials
        fields = {
            "E": mat.evaluate(YOUNGS_MODULUS, T),
            "nu": mat.evaluate(POISSON_RATIO, T),
            "yield": mat.evaluate(YIELD_STRESS, T),
            "hardening": mat.evaluate(HARDENING_MODULUS, T),
        }
        alpha = mat.evaluate(THERMAL_EXPANSION, T)
        volumetric = alpha * (T - self._T_ref)

        if self.metallurgy is not None:
            xm_nodal, eps_v_nodal = self.metallurgy.at(time_s)
            xm = geo.to_gauss(xm_nodal)
            eps_v = geo.to_gauss(eps_v_nodal)
            d_xm = np.maximum(xm - state.martensite, 0.0)
            trip = state.trip_strain + (
                1.5 * (self._trip_k * d_xm)[..., None] * deviator(state.stress) * ENGINEERING
            )
            volumetric = volumetric + eps_v / 3.0
        else:
            xm = state.martensite
            eps_v = state.transformation_strain
            trip = state.trip_strain

        fields["eigenstrain"] = volumetric[..., None] * IDENTITY_VOIGT + trip
        fields["trip"] = trip
        fields["martensite"] = xm
        fields["transformation_strain"] = eps_v

        eq_plastic = state.eq_plastic_strain
        annealed = T >= self._annealing[:, None]
        if np.any(annealed):
            eq_plastic = np.where(annealed, 0.0, eq_plastic)
        fields["eq_plastic_strain"] = eq_plastic
        return fields

    def _kernel(self, u: NDArray[np.float64], state: GaussPointState, fields: dict):
        geo = self.geometry
        dof_map = self.pattern.dof_map

        def kernel(sl: slice):
            B = geo.b_matrices(sl)
            n_el, n_gp = B.shape[:2]
            strain = np.einsum("egij,ej->egi", B, u[dof_map[sl]])
            ret = radial_return(
                strain.reshape(-1, 6),
                state.plastic_strain[sl].reshape(-1, 6),
                fields["eq_plastic_strain"][sl].ravel(),
                fields["eigenstrain"][sl].reshape(-1, 6),
                fields["E"][sl].ravel(),
                fields["nu"][sl].ravel(),
                fields["yield"][sl].ravel(),
                fields["hardening"][sl].ravel(),
            )
            stress = ret.stress.reshape(n_el, n_gp, 6)
            C = ret.tangent.reshape(n_el, n_gp, 6, 6)
            wdet = geo.wdet[sl]
            fe = np.einsum("eg,egki,egk->ei", wdet, B, stress)
            CB = np.einsum("egkl,eglj->egkj", C, B)
            Ke = np.einsum("eg,egki,egkj->eij", wdet, B, CB)
            return (
                Ke, fe, stress,
                ret.plastic_strain.reshape(n_el, n_gp, 6),
                ret.eq_plastic_strain.reshape(n_el, n_gp),
                ret.yielded.reshape(n_el, n_gp),
            )

        return kernel

    # ------------------------------------------------------------------
    # One increment
    # ------------------------------------------------------------------

    def _increment(self, state: GaussPointState, u0: NDArray[np.float64], time_s: float):
        """Newton solve at ``time_s`` from the committed ``state``.

        Returns the new state, displacement, iteration count and final
        residual norm; raises ``_IncrementFailed``.
        """
        cfg = self.config
        fields = self._increment_fields(time_s, state)
        fixed, spring, rigid = self._partition(time_s)
        free_mask = np.ones(self.n_dof, dtype=bool)
        free_mask[fixed] = False
        free = np.nonzero(free_mask)[0]

        u = u0.copy()
        reference = None
        iterations = 0
        while True:
            Ke, fe, stress, eps_p, epbar, yielded = self.assembler.map(
                self._kernel(u, state, fields)
            )
            F_int = self.pattern.vector(fe) + spring * u
            R = -F_int
            norm = float(np.linalg.norm(R[free]))
            if not np.isfinite(norm):
                raise _IncrementFailed("non-finite residual")
            if reference is None:
                # element force magnitudes keep the reference meaningful when
                # the increment starts in equilibrium
                reference = max(norm, float(np.linalg.norm(self.pattern.vector(np.abs(fe))[free])))
            if norm <= cfg.mechanical_atol or norm <= cfg.mechanical_tolerance * reference:
                break
            if iterations >= cfg.max_newton_iterations:
                raise _IncrementFailed(
                    f"no convergence in {iterations} Newton iterations "
                    f"(residual {norm:.3e}, reference {reference:.3e})"
                )

            K = self.pattern.matrix(Ke, diagonal=spring)
            K_ff = K[free][:, free]
            R_f = R[free]
            if rigid:
                G_f = self._rigid[:, free]
                scale = float(K_ff.diagonal().mean())
                A = sp.bmat([[K_ff, scale * G_f.T], [scale * G_f, None]], format="csc")
                du_f = spla.spsolve(A, np.concatenate([R_f, np.zeros(6)]))[:R_f.size]
            else:
                du_f = spla.spsolve(K_ff.tocsc(), R_f)
            if not np.all(np.isfinite(du_f)):
                raise _IncrementFailed("singular or ill-conditioned tangent")
            u[free] += du_f
            iterations += 1

        new_state = GaussPointState(
            stress=stress,
            plastic_strain=eps_p,
            eq_plastic_strain=epbar,
            trip_strain=fields["trip"],
            martensite=fields["martensite"],
            transformation_strain=fields["transformation_strain"],
        )
        logger.debug(
            "Increment t=%.4f s: %d Newton iterations, residual %.3e, %d yielded points",
            time_s, iterations, norm, int(yielded.sum()),
        )
        return new_state, u, iterations, norm

    def _advance(self, state: GaussPointState, u: NDArray[np.float64],
                 t_a: float, t_b: float, depth: int = 0):
        """Solve from ``t_a`` to ``t_b``, bisecting on failure.

        Returns (state, u, iterations, residual, bisections).
        """
        try:
            new_state, new_u, iterations, residual = self._increment(state, u, t_b)
            return new_state, new_u, iterations, residual, 0
        except _IncrementFailed as exc:
            if depth >= self.config.max_load_bisections or t_b - t_a <= 1e-12:
                raise
            t_mid = 0.5 * (t_a + t_b)
            logger.warning(
                "Load increment [%.4f, %.4f] s failed (%s); bisecting at %.4f s",
                t_a, t_b, exc, t_mid,
            )
        state_m, u_m, it1, _, b1 = self._advance(state, u, t_a, t_mid, depth + 1)
        state_b, u_b, it2, residual, b2 = self._advance(state_m, u_m, t_mid, t_b, depth + 1)
        return state_b, u_b, it1 + it2, residual, 1 + b1 + b2

    # ------------------------------------------------------------------
    # Load-step loop
    # ------------------------------------------------------------------

    def _package(self, records: dict, state: GaussPointState, t_start: float,
                 completed: bool) -> MechanicalResult:
        n = self.mesh.n_nodes
        m = len(records["times"])

        def stack(key, shape):
            return np.stack(records[key]) if m else np.empty((0,) + shape)

        return MechanicalResult(
            times=np.array(records["times"], dtype=float),
            step_indices=np.array(records["steps"], dtype=np.int64),
            displacement=stack("displacement", (n, 3)),
            stress=stack("stress", (n, 6)),
            von_mises=stack("von_mises", (n,)),
            plastic_strain=stack("plastic_strain", (n,)),
            gauss_von_mises_max=np.array(records["gauss_vm_max"], dtype=float),
            gauss_state=state,
            solve_time_s=time.perf_counter() - t_start,
            completed=completed,
        )

    def _record(self, records: dict, step: int, time_s: float,
                state: GaussPointState, u: NDArray[np.float64]) -> float:
        nodal_stress = self.recovery.extrapolate_to_nodes(state.stress)
        gauss_vm_max = float(equivalent_stress(state.stress).max())
        records["times"].append(time_s)
        records["steps"].append(step)
        records["displacement"].append(u.reshape(-1, 3).copy())
        records["stress"].append(nodal_stress)
        records["von_mises"].append(self.recovery.von_mises(nodal_stress))
        records["plastic_strain"].append(
            self.recovery.extrapolate_to_nodes(state.eq_plastic_strain)
        )
        records["gauss_vm_max"].append(gauss_vm_max)
        return gauss_vm_max

    def solve(
        self,
        history: TemperatureHistory,
        metallurgy: Optional[MetallurgyResult] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MechanicalResult:
        """Run every load step over the frozen ``history``.

        Raises
        ------
        MechanicalDivergence
            When an increment fails after every allowed bisection.
        Cancelled
            When ``cancel_token`` is set; checked between load steps.

        Both exceptions carry the partial ``MechanicalResult``.
        """
        if not history.frozen:
            raise RuntimeError("Mechanical solve needs a frozen temperature history")
        cfg = self.config
        t_start = time.perf_counter()
        self.history = history
        self.metallurgy = metallurgy
        geo = self.geometry

        times = history.times
        if cfg.reference_temperature is not None:
            self._T_ref = np.full((geo.n_elements, geo.n_gauss), float(cfg.reference_temperature))
        else:
            self._T_ref = geo.to_gauss(history.temperatures[0])
        if metallurgy is not None:
            self._trip_k = geo.to_gauss(metallurgy.trip_coefficient)
        else:
            self._trip_k = np.zeros((geo.n_elements, geo.n_gauss))

        releases = tuple(c.release_time for c in cfg.clamps if c.release_time is not None)
        steps = load_step_indices(times, cfg.mechanical_stride, releases)

        state = GaussPointState.zeros(geo.n_elements, geo.n_gauss)
        u = np.zeros(self.n_dof)
        records = {key: [] for key in (
            "times", "steps", "displacement", "stress", "von_mises",
            "plastic_strain", "gauss_vm_max",
        )}
        t_prev = float(times[0]) if times.size else 0.0

        for k, step in enumerate(steps):
            if cancel_token is not None and cancel_token.is_cancelled():
                logger.info("Mechanical solve cancelled after %d load steps", k)
                raise Cancelled(
                    f"Mechanical solve cancelled at load step {k}",
                    partial=self._package(records, state, t_start, completed=False),
                    step=k,
                )
            t = float(times[step])
            try:
                state, u, iterations, residual, bisections = self._advance(state, u, t_prev, t)
            except _IncrementFailed as exc:
                self.log.add(ConvergenceRecord(
                    "mechanical", k, t, t - t_prev, cfg.max_newton_iterations,
                    float("nan"), cfg.max_load_bisections, converged=False,
                ))
                logger.error(
                    "Load step %d (t=%.4f s) diverged after %d bisections: %s",
                    k, t, cfg.max_load_bisections, exc,
                )
                raise MechanicalDivergence(
                    f"Load step {k} at t={t:.4f} s diverged: {exc}",
                    partial=self._package(records, state, t_start, completed=False),
                    step=k,
                ) from None

            gauss_vm_max = self._record(records, step, t, state, u)
            self.log.add(ConvergenceRecord(
                "mechanical", k, t, t - t_prev, iterations, residual, bisections,
                converged=True,
            ))
            if self.event_bus is not None:
                self.event_bus.emit("mechanical.step", {
                    "load_step": k,
                    "thermal_step": step,
                    "time": t,
                    "iterations": iterations,
                    "bisections": bisections,
                    "max_von_mises": gauss_vm_max,
                })
            t_prev = t

        result = self._package(records, state, t_start, completed=True)
        logger.info(
            "Mechanical solve: %d load steps, final max von Mises %.3e Pa, %.2f s wall",
            len(steps), result.gauss_von_mises_max[-1] if len(steps) else float("nan"),
            result.solve_time_s,
        )
        return result
