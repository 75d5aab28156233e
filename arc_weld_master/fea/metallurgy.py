"""Solid-state phase transformations along nodal temperature histories.

For every node of a transforming material the model walks the frozen
temperature history once:

1. Reaching the austenitization temperature (Ac3) resets the node to fully
   austenitic.  This is the only reset rule.
2. While a node is austenitized and not heating, each diffusional product
   grows by JMAK kinetics ``X = 1 - exp(-k(T) t^n)``.  Non-isothermal
   cooling is handled with the additivity (virtual time) rule: the current
   fraction is converted to the equivalent time at the new temperature's
   rate, advanced by ``dt``, and converted back.  A product can only consume
   remaining austenite.
3. Below Ms the martensite fraction follows Koistinen-Marburger on the
   untransformed remainder, ``X_m = (1 - X_d)(1 - exp(-alpha (Ms - T)))``,
   and never decreases.
4. The volumetric transformation strain is ``dV/V * X_m``.

A node that has formed martensite and is then reheated above
``Ms + reheat_tolerance`` without reaching Ac3 is outside what this model
can represent: ``reheat_policy="error"`` raises ``InvalidThermalHistory``,
``"freeze"`` keeps the fractions unchanged.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from arc_weld_master.fea.cancellation import CancellationToken
from arc_weld_master.fea.config import SolverConfig
from arc_weld_master.fea.errors import Cancelled, InvalidThermalHistory
from arc_weld_master.fea.material_properties import MaterialField, TransformationData
from arc_weld_master.fea.results import MetallurgyResult, TemperatureHistory

logger = logging.getLogger(__name__)

PARENT = "parent"
AUSTENITE = "austenite"
MARTENSITE = "martensite"

_MAX_NORMALIZED_FRACTION = 0.999999


class MetallurgyModel:
    """Phase fractions and transformation strain from a temperature history.

    Parameters
    ----------
    materials : MaterialField
    connectivity : (E, n) element connectivity, used to assign node materials.
    n_nodes : int
    config : SolverConfig
        Supplies ``reheat_policy`` and ``reheat_tolerance``.
    """

    def __init__(self, materials: MaterialField, connectivity: NDArray[np.int64],
                 n_nodes: int, config: SolverConfig) -> None:
        self.materials = materials
        self.config = config
        self.n_nodes = n_nodes
        self.node_groups = materials.node_groups(connectivity, n_nodes)

    def phase_names(self) -> list[str]:
        names = [PARENT, AUSTENITE]
        for mid in self.node_groups:
            tr = self.materials.model.get(mid).transformation
            if tr is None:
                continue
            for phase in tr.diffusional:
                if phase not in names:
                    names.append(phase)
        names.append(MARTENSITE)
        return names

    def run(self, history: TemperatureHistory,
            cancel_token: Optional[CancellationToken] = None) -> MetallurgyResult:
        """Evaluate phase evolution for every node.

        Raises
        ------
        InvalidThermalHistory
            On reheating above Ms after martensite formed, with
            ``reheat_policy="error"``.
        Cancelled
            When ``cancel_token`` is set; checked between timesteps.
        """
        if not history.frozen:
            raise RuntimeError("Metallurgy needs a frozen temperature history")
        t0 = time.perf_counter()
        times = history.times
        temps = history.temperatures
        n_steps = times.size

        names = self.phase_names()
        phases = {name: np.zeros((n_steps, self.n_nodes)) for name in names}
        phases[PARENT][:] = 1.0
        strain = np.zeros((n_steps, self.n_nodes))
        austenitized = np.zeros(self.n_nodes, dtype=bool)
        trip = np.zeros(self.n_nodes)

        transforming = []
        for mid, nodes in self.node_groups.items():
            tr = self.materials.model.get(mid).transformation
            if tr is None:
                continue
            trip[nodes] = tr.trip_coefficient
            transforming.append((nodes, tr, _GroupState(nodes.size, tr)))

        def _partial(upto: int) -> MetallurgyResult:
            return MetallurgyResult(
                times=times[:upto],
                phases={k: v[:upto] for k, v in phases.items()},
                transformation_strain=strain[:upto],
                austenitized=austenitized.copy(),
                trip_coefficient=trip,
                completed=False,
            )

        for nodes, tr, state in transforming:
            state.record(phases, strain, 0, nodes)

        for i in range(1, n_steps):
            if cancel_token is not None and cancel_token.is_cancelled():
                raise Cancelled(
                    f"Metallurgy cancelled at step {i}", partial=_partial(i), step=i,
                )
            dt = times[i] - times[i - 1]
            for nodes, tr, state in transforming:
                T = temps[i, nodes]
                T_prev = temps[i - 1, nodes]
                bad = state.advance(T, T_prev, dt, self.config)
                if bad.size:
                    ids = nodes[bad]
                    msg = (
                        f"{ids.size} node(s) reheated above Ms={tr.ms_temp:.0f} C after "
                        f"forming martensite at t={times[i]:.3f} s, first ids: {ids[:10].tolist()}"
                    )
                    if self.config.reheat_policy == "error":
                        logger.error(msg)
                        raise InvalidThermalHistory(msg, partial=_partial(i), step=i)
                    logger.debug("%s (fractions frozen)", msg)
                state.record(phases, strain, i, nodes)
                austenitized[nodes] |= state.austenitized

        result = MetallurgyResult(
            times=times,
            phases=phases,
            transformation_strain=strain,
            austenitized=austenitized,
            trip_coefficient=trip,
        )
        final = result.final_fractions()
        logger.info(
            "Metallurgy: %d steps, %d austenitized nodes, max martensite %.3f (%.2f s)",
            n_steps, int(austenitized.sum()), float(final[MARTENSITE].max()),
            time.perf_counter() - t0,
        )
        return result


class _GroupState:
    """Current phase fractions for the nodes of one transforming material."""

    def __init__(self, n: int, tr: TransformationData) -> None:
        self.tr = tr
        self.fractions = {PARENT: np.ones(n), AUSTENITE: np.zeros(n)}
        for phase in tr.diffusional:
            self.fractions[phase] = np.zeros(n)
        self.fractions[MARTENSITE] = np.zeros(n)
        self.austenitized = np.zeros(n, dtype=bool)

    def advance(self, T: NDArray[np.float64], T_prev: NDArray[np.float64],
                dt: float, config: SolverConfig) -> NDArray[np.int64]:
        """Advance one step; returns local indices of invalid reheating nodes."""
        tr = self.tr
        x = self.fractions
        aus = x[AUSTENITE]
        mart = x[MARTENSITE]

        hot = T >= tr.austenitization_temp
        if np.any(hot):
            for values in x.values():
                values[hot] = 0.0
            aus[hot] = 1.0
            self.austenitized |= hot

        bad = self.austenitized & ~hot & (mart > 0.0) & (
            T > tr.ms_temp + config.reheat_tolerance
        )
        frozen = bad if config.reheat_policy == "freeze" else np.zeros_like(bad)

        cooling = self.austenitized & ~hot & ~frozen & (T <= T_prev)
        for phase, kinetics in tr.diffusional.items():
            k = kinetics.rate_constant(T)
            active = cooling & (k > 0.0) & (aus > 0.0)
            if not np.any(active):
                continue
            xp = x[phase][active]
            pool = xp + aus[active]
            y = np.clip(xp / pool, 0.0, _MAX_NORMALIZED_FRACTION)
            ka = k[active]
            t_virtual = (-np.log1p(-y) / ka) ** (1.0 / kinetics.n)
            y_new = 1.0 - np.exp(-ka * (t_virtual + dt) ** kinetics.n)
            gain = np.clip(y_new * pool - xp, 0.0, aus[active])
            x[phase][active] = xp + gain
            aus[active] -= gain

        below = self.austenitized & ~frozen & (T < tr.ms_temp)
        if np.any(below):
            x_diffusional = np.zeros(below.sum())
            for phase in tr.diffusional:
                x_diffusional += x[phase][below]
            target = (1.0 - x_diffusional) * (
                1.0 - np.exp(-tr.km_alpha * (tr.ms_temp - T[below]))
            )
            gain = np.clip(target - mart[below], 0.0, aus[below])
            mart[below] += gain
            aus[below] -= gain

        np.clip(aus, 0.0, 1.0, out=aus)
        return np.nonzero(bad)[0]

    def record(self, phases: dict, strain: NDArray[np.float64], step: int,
               nodes: NDArray[np.int64]) -> None:
        for name, values in self.fractions.items():
            phases[name][step, nodes] = values
        strain[step, nodes] = self.tr.martensite_volume_change * self.fractions[MARTENSITE]
