"""Transient nonlinear heat conduction with a moving Goldak source.

Galerkin finite elements in space, theta-method in time (theta = 0.5 is
Crank-Nicolson):

    (C + theta dt K) T^{n+1} = (C - (1 - theta) dt K) T^n + dt F^{n+theta}

``C`` (capacitance) and ``K`` (conductivity plus the boundary film matrix)
depend on temperature and are reassembled every Picard iteration at the
theta-weighted temperature.  Convection adds ``h A`` to the diagonal of
``K`` and ``h A T_amb`` to ``F``; radiation is linearised around the
current iterate with

    h_rad = eps sigma (T_s^2 + T_amb^2)(T_s + T_amb)      (kelvin)

The capacity uses the secant of the specific enthalpy over the step,
``(H(T^{n+1}) - H(T^n)) / (T^{n+1} - T^n)``, so latent heat is absorbed in
full even when a step crosses the whole melting range.  Picard corrections
after the first solve are under-relaxed by ``picard_relaxation``.

A step that produces NaN, overflows ``divergence_temperature`` or whose
Picard change stops shrinking is retried with half the timestep up to
``max_timestep_retries`` times before ``ThermalDivergence`` is raised.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from arc_weld_master.fea.assembler import ParallelAssembler, SparsityPattern
from arc_weld_master.fea.cancellation import CancellationToken
from arc_weld_master.fea.config import SolverConfig, WeldMesh
from arc_weld_master.fea.elements import ElementGeometry
from arc_weld_master.fea.errors import Cancelled, ThermalDivergence
from arc_weld_master.fea.heat_source import GoldakHeatSource
from arc_weld_master.fea.material_properties import (
    CONDUCTIVITY,
    DENSITY,
    SPECIFIC_HEAT,
    MaterialField,
)
from arc_weld_master.fea.results import (
    ConvergenceLog,
    ConvergenceRecord,
    TemperatureHistory,
    ThermalResult,
    cooling_time,
)

logger = logging.getLogger(__name__)

STEFAN_BOLTZMANN = 5.670374419e-8  # W/(m^2 K^4)
_KELVIN = 273.15
_SECANT_MIN_DT = 1.0e-3  # K


class _StepDiverged(Exception):
    pass


class ThermalSolver:
    """Time-march the heat equation and record the nodal temperature history.

    Parameters
    ----------
    mesh : WeldMesh
    geometry : ElementGeometry
        Gauss-point geometry from ``validate_mesh``.
    materials : MaterialField
    heat_source : GoldakHeatSource
    config : SolverConfig
    assembler : ParallelAssembler, optional
        Worker pool for element kernels; a serial one is created if omitted.
    event_bus : EventBus, optional
        Receives a ``thermal.step`` notification after every completed step.
    convergence_log : ConvergenceLog, optional
    """

    def __init__(
        self,
        mesh: WeldMesh,
        geometry: ElementGeometry,
        materials: MaterialField,
        heat_source: GoldakHeatSource,
        config: SolverConfig,
        assembler: Optional[ParallelAssembler] = None,
        event_bus=None,
        convergence_log: Optional[ConvergenceLog] = None,
    ) -> None:
        self.mesh = mesh
        self.geometry = geometry
        self.materials = materials
        self.source = heat_source
        self.config = config
        self.assembler = assembler or ParallelAssembler(mesh.n_elements, 1)
        self.event_bus = event_bus
        self.log = convergence_log if convergence_log is not None else ConvergenceLog()
        self.pattern = SparsityPattern(mesh.elements, mesh.n_nodes, dofs_per_node=1)
        self._conn = geometry.connectivity
        self._surface_area = mesh.boundary_node_areas(config.boundary.surfaces)
        self.energy_input_j = 0.0

    # ------------------------------------------------------------------
    # Element kernels
    # ------------------------------------------------------------------

    def _material_kernel(self, T0: NDArray[np.float64], T1: NDArray[np.float64]):
        geo = self.geometry
        lumped = self.config.lumped_capacity
        theta = self.config.theta

        def kernel(sl: slice):
            T0_gp = geo.to_gauss(T0, sl)
            T1_gp = geo.to_gauss(T1, sl)
            T_gp = theta * T1_gp + (1.0 - theta) * T0_gp
            k = self.materials.evaluate(CONDUCTIVITY, T_gp, sl)
            rho_cp = (self.materials.evaluate(DENSITY, T_gp, sl)
                      * self._specific_capacity(T0_gp, T1_gp, T_gp, sl))
            wdet = geo.wdet[sl]
            dN = geo.dN[sl]
            Ke = np.einsum("eg,egai,egaj->eij", k * wdet, dN, dN)
            if lumped:
                Ce = np.einsum("eg,gi->ei", rho_cp * wdet, geo.N)
            else:
                Ce = np.einsum("eg,gi,gj->eij", rho_cp * wdet, geo.N, geo.N)
            return Ke, Ce

        return kernel

    def _specific_capacity(self, T0_gp, T1_gp, T_gp, sl: slice) -> NDArray[np.float64]:
        """Secant ``(H(T1) - H(T0)) / (T1 - T0)``; apparent cp where the step is tiny."""
        dT = T1_gp - T0_gp
        small = np.abs(dT) < _SECANT_MIN_DT
        secant = ((self.materials.enthalpy(T1_gp, sl) - self.materials.enthalpy(T0_gp, sl))
                  / np.where(small, 1.0, dT))
        return np.where(small, self.materials.apparent_specific_heat(T_gp, sl), secant)

    def _source_load(self, time_s: float) -> NDArray[np.float64]:
        if not self.source.is_active(time_s):
            return np.zeros(self.mesh.n_nodes)
        geo = self.geometry

        def kernel(sl: slice):
            q = self.source.flux_at(geo.gp_coords[sl], time_s)
            return (np.einsum("eg,gi->ei", q * geo.wdet[sl], geo.N),)

        (fe,) = self.assembler.map(kernel)
        F = self.pattern.vector(fe)
        if self.config.normalize_source_power:
            total = F.sum()
            if total > 0.0:
                F *= self.source.spec.effective_power / total
        return F

    def _film_coefficient(self, T_surface: NDArray[np.float64]) -> NDArray[np.float64]:
        bc = self.config.boundary
        h = np.full_like(T_surface, bc.convection_htc)
        if bc.emissivity > 0.0:
            Ts = T_surface + _KELVIN
            Ta = bc.ambient_temp + _KELVIN
            h = h + bc.emissivity * STEFAN_BOLTZMANN * (Ts ** 2 + Ta ** 2) * (Ts + Ta)
        return h

    # ------------------------------------------------------------------
    # One timestep
    # ------------------------------------------------------------------

    def _step(self, T0: NDArray[np.float64], t0: float, dt: float):
        cfg = self.config
        theta = cfg.theta
        T_amb = cfg.boundary.ambient_temp
        F = self._source_load(t0 + theta * dt)
        T0_e = T0[self._conn]

        T1 = T0.copy()
        prev_change = np.inf
        for iteration in range(1, cfg.max_picard_iterations + 1):
            T_mid = theta * T1 + (1.0 - theta) * T0
            Ke, Ce = self.assembler.map(self._material_kernel(T0, T1))
            H = self._film_coefficient(T_mid) * self._surface_area

            KT0 = self.pattern.vector(np.einsum("eij,ej->ei", Ke, T0_e))
            if cfg.lumped_capacity:
                C_diag = self.pattern.vector(Ce)
                CT0 = C_diag * T0
                A = self.pattern.matrix(theta * dt * Ke, diagonal=C_diag + theta * dt * H)
            else:
                CT0 = self.pattern.vector(np.einsum("eij,ej->ei", Ce, T0_e))
                A = self.pattern.matrix(Ce + theta * dt * Ke, diagonal=theta * dt * H)
            b = CT0 - (1.0 - theta) * dt * (KT0 + H * T0) + dt * (F + H * T_amb)

            T_new = spla.spsolve(A, b)
            if not np.all(np.isfinite(T_new)):
                raise _StepDiverged("non-finite temperature")
            if np.abs(T_new).max() > cfg.divergence_temperature:
                raise _StepDiverged(f"temperature overflow {np.abs(T_new).max():.3e} C")

            change = float(np.abs(T_new - T1).max())
            if change <= cfg.thermal_tolerance:
                return T_new, iteration, change, F
            # the first solve is the predictor; later corrections are relaxed
            if iteration == 1:
                T1 = T_new
            else:
                T1 = T1 + cfg.picard_relaxation * (T_new - T1)
            if iteration == cfg.max_picard_iterations:
                if change > prev_change:
                    raise _StepDiverged(f"Picard change not shrinking ({change:.3e} C)")
                logger.warning(
                    "Picard iteration at t=%.4f s stopped at change %.3e C (tol %.3e)",
                    t0 + dt, change, cfg.thermal_tolerance,
                )
                return T1, iteration, change, F
            prev_change = change

    # ------------------------------------------------------------------
    # Time loop
    # ------------------------------------------------------------------

    def _finished(self, t: float, T: NDArray[np.float64], step: int) -> bool:
        cfg = self.config
        if cfg.end_time is not None and t >= cfg.end_time - 1e-12:
            return True
        if (cfg.cooling_end_temp is not None and step > 0
                and t >= self.source.end_time and T.max() < cfg.cooling_end_temp):
            return True
        return False

    def _next_dt(self, t: float) -> float:
        cfg = self.config
        arc_off = self.source.end_time
        if t < arc_off:
            dt = cfg.thermal_dt
            if arc_off - t > 1e-9:
                dt = min(dt, arc_off - t)
        else:
            dt = cfg.cooling_dt or cfg.thermal_dt
        if cfg.end_time is not None:
            dt = min(dt, cfg.end_time - t)
        return dt

    def _package(self, history: TemperatureHistory, t_start: float,
                 completed: bool) -> ThermalResult:
        history.freeze()
        temps = history.temperatures
        return ThermalResult(
            history=history,
            peak_temperature=history.peak_temperature() if history.n_steps else np.empty(0),
            time_of_peak=history.time_of_peak() if history.n_steps else np.empty(0),
            t8_5=cooling_time(history.times, temps) if history.n_steps else np.empty(0),
            solve_time_s=time.perf_counter() - t_start,
            completed=completed,
            metadata={
                "n_steps": history.n_steps - 1,
                "energy_input_j": self.energy_input_j,
                "theta": self.config.theta,
            },
        )

    def solve(self, cancel_token: Optional[CancellationToken] = None) -> ThermalResult:
        """Run the thermal time loop.

        Raises
        ------
        ThermalDivergence
            When a step fails after every allowed timestep halving.
        Cancelled
            When ``cancel_token`` is set; checked between steps.

        Both exceptions carry the frozen partial ``ThermalResult`` in
        ``partial``.
        """
        cfg = self.config
        t_start = time.perf_counter()
        history = TemperatureHistory(self.mesh.n_nodes)
        T = np.full(self.mesh.n_nodes, cfg.start_temperature)
        t = 0.0
        step = 0
        history.append(t, T)
        self.energy_input_j = 0.0

        while not self._finished(t, T, step):
            if cancel_token is not None and cancel_token.is_cancelled():
                logger.info("Thermal solve cancelled after %d steps (t=%.3f s)", step, t)
                raise Cancelled(
                    f"Thermal solve cancelled at t={t:.4f} s",
                    partial=self._package(history, t_start, completed=False),
                    step=step,
                )

            dt = self._next_dt(t)
            retries = 0
            while True:
                try:
                    T_new, iterations, residual, F = self._step(T, t, dt)
                    break
                except _StepDiverged as exc:
                    retries += 1
                    if retries > cfg.max_timestep_retries:
                        self.log.add(ConvergenceRecord(
                            "thermal", step + 1, t + dt, dt, cfg.max_picard_iterations,
                            float("nan"), retries - 1, converged=False,
                        ))
                        logger.error(
                            "Thermal step %d diverged at t=%.4f s after %d halvings: %s",
                            step + 1, t, retries - 1, exc,
                        )
                        raise ThermalDivergence(
                            f"Thermal step {step + 1} at t={t:.4f} s diverged: {exc}",
                            partial=self._package(history, t_start, completed=False),
                            step=step + 1,
                        ) from None
                    logger.warning(
                        "Thermal step %d at t=%.4f s failed (%s); halving dt to %.4e s",
                        step + 1, t, exc, dt * 0.5,
                    )
                    dt *= 0.5

            t += dt
            T = T_new
            step += 1
            history.append(t, T)
            self.energy_input_j += dt * float(F.sum())

            self.log.add(ConvergenceRecord(
                "thermal", step, t, dt, iterations, residual, retries, converged=True,
            ))
            if self.event_bus is not None:
                self.event_bus.emit("thermal.step", {
                    "step": step,
                    "time": t,
                    "dt": dt,
                    "max_temperature": float(T.max()),
                    "iterations": iterations,
                })
            logger.debug(
                "Thermal step %d: t=%.4f s dt=%.4e s Tmax=%.1f C (%d Picard)",
                step, t, dt, T.max(), iterations,
            )
            if step >= cfg.max_thermal_steps:
                logger.warning("Thermal solve stopped at max_thermal_steps=%d", step)
                break

        result = self._package(history, t_start, completed=True)
        logger.info(
            "Thermal solve: %d steps to t=%.2f s, peak %.1f C, %.2f s wall",
            step, t, result.max_temperature_c, result.solve_time_s,
        )
        return result
