"""Mesh convergence automation with Richardson extrapolation.

Runs the thermal solver on a family of meshes from a mesh factory and
assesses whether a scalar of the temperature field has converged.  Uses
Richardson extrapolation to estimate the exact value and the convergence
order.

Typical usage
-------------
>>> study = MeshConvergenceStudy(
...     lambda h: BoxMesher.structured_box(0.1, 0.05, 0.01, round(0.1 / h),
...                                        round(0.05 / h), max(1, round(0.01 / h))),
...     heat_source_spec, materials, "S355", config)
>>> result = study.run_study([0.01, 0.005, 0.0025])
>>> print(study.generate_report(result))
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from arc_weld_master.fea.config import SolverConfig, WeldMesh, validate_mesh
from arc_weld_master.fea.heat_source import GoldakHeatSource, HeatSourceSpec
from arc_weld_master.fea.material_properties import MaterialField, MaterialModel
from arc_weld_master.fea.results import ThermalResult
from arc_weld_master.fea.thermal_solver import ThermalSolver

logger = logging.getLogger(__name__)

TARGET_QUANTITIES = ("peak_temperature", "probe_peak_temperature", "energy_input")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class ConvergenceResult:
    """Result container for a mesh convergence study.

    Attributes
    ----------
    mesh_sizes : list[float]
        Characteristic element sizes (m), coarsest first.
    n_nodes : list[int]
        Number of nodes at each refinement level.
    values : list[float]
        Target quantity at each refinement level.
    relative_changes : list[float]
        Percentage change between successive levels; first entry is nan.
    errors : list[float]
        Absolute difference to the finest level (last entry is 0).
    monotonic : bool
        Whether ``errors`` strictly decrease from coarsest to second finest.
    converged : bool
        Whether the last relative change is below the threshold.
    convergence_rate : float
        Richardson order estimate, nan if unavailable.
    extrapolated_value : float
        Richardson estimate of the exact value, nan if unavailable.
    recommended_mesh_size : float
    target_quantity : str
    """

    mesh_sizes: list[float]
    n_nodes: list[int]
    values: list[float]
    relative_changes: list[float]
    errors: list[float]
    monotonic: bool
    converged: bool
    convergence_rate: float
    extrapolated_value: float
    recommended_mesh_size: float
    target_quantity: str = "peak_temperature"
    results: list[ThermalResult] = field(default_factory=list, repr=False)


# ---------------------------------------------------------------------------
# Main study class
# ---------------------------------------------------------------------------


class MeshConvergenceStudy:
    """Thermal mesh refinement study.

    Parameters
    ----------
    mesh_factory : callable
        ``mesh_factory(h)`` returns a ``WeldMesh`` with element size ``h``.
    heat_source_spec : HeatSourceSpec
    materials : MaterialModel
    material_id : str
        Material assigned to every element.
    config : SolverConfig
    probe : array-like, optional
        Point whose nearest node is tracked for ``probe_peak_temperature``.
        Choose a point that is a node of every mesh.
    convergence_threshold : float
        Relative change threshold (%) below which convergence is declared.
    """

    def __init__(
        self,
        mesh_factory: Callable[[float], WeldMesh],
        heat_source_spec: HeatSourceSpec,
        materials: MaterialModel,
        material_id: str,
        config: SolverConfig,
        probe=None,
        convergence_threshold: float = 0.5,
    ) -> None:
        self.mesh_factory = mesh_factory
        self.heat_source_spec = heat_source_spec
        self.materials = materials
        self.material_id = material_id
        self.config = config
        self.probe = None if probe is None else np.asarray(probe, dtype=float)
        self.convergence_threshold = convergence_threshold

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_study(
        self,
        mesh_sizes: list[float],
        target_quantity: str = "peak_temperature",
    ) -> ConvergenceResult:
        """Run the thermal solve at every mesh size.

        Raises
        ------
        ValueError
            If fewer than 2 mesh sizes are provided, *target_quantity* is
            not recognised, or a probe quantity is requested without a probe.
        """
        if len(mesh_sizes) < 2:
            raise ValueError(
                "At least 2 mesh sizes are required for a convergence study, "
                f"got {len(mesh_sizes)}."
            )
        if target_quantity not in TARGET_QUANTITIES:
            raise ValueError(
                f"Unknown target_quantity {target_quantity!r}. "
                f"Must be one of {TARGET_QUANTITIES}."
            )
        if target_quantity == "probe_peak_temperature" and self.probe is None:
            raise ValueError("probe_peak_temperature needs a probe point")

        mesh_sizes = sorted(mesh_sizes, reverse=True)
        values: list[float] = []
        n_nodes: list[int] = []
        results: list[ThermalResult] = []

        for i, h in enumerate(mesh_sizes):
            logger.info("Convergence study level %d/%d: h=%.4g m", i + 1, len(mesh_sizes), h)
            mesh = self.mesh_factory(h)
            geometry = validate_mesh(mesh)
            field_ = MaterialField(self.materials, mesh.tags(), self.material_id)
            solver = ThermalSolver(
                mesh, geometry, field_, GoldakHeatSource(self.heat_source_spec), self.config,
            )
            result = solver.solve()
            value = self._extract_quantity(mesh, result, target_quantity)
            values.append(value)
            n_nodes.append(mesh.n_nodes)
            results.append(result)
            logger.info("  n_nodes=%d, %s=%.6f", mesh.n_nodes, target_quantity, value)

        relative_changes = self._compute_relative_changes(values)
        errors = [abs(v - values[-1]) for v in values]
        monotonic = all(a > b for a, b in zip(errors[:-2], errors[1:-1]))

        if len(mesh_sizes) >= 3:
            extrapolated_value, convergence_rate = self._richardson_extrapolate(
                mesh_sizes, values
            )
        else:
            extrapolated_value = float("nan")
            convergence_rate = float("nan")

        return ConvergenceResult(
            mesh_sizes=mesh_sizes,
            n_nodes=n_nodes,
            values=values,
            relative_changes=relative_changes,
            errors=errors,
            monotonic=monotonic,
            converged=self._check_convergence(values, self.convergence_threshold),
            convergence_rate=convergence_rate,
            extrapolated_value=extrapolated_value,
            recommended_mesh_size=self._recommend_mesh_size(mesh_sizes, relative_changes),
            target_quantity=target_quantity,
            results=results,
        )

    def generate_report(self, result: ConvergenceResult) -> str:
        """Human-readable table, Richardson estimate and recommendation."""
        lines: list[str] = []
        lines.append("=" * 72)
        lines.append("MESH CONVERGENCE STUDY REPORT")
        lines.append("=" * 72)
        lines.append(f"Target quantity : {result.target_quantity}")
        lines.append(f"Refinement levels: {len(result.mesh_sizes)}")
        lines.append("")

        header = (
            f"{'Level':>5s}  {'h [mm]':>10s}  {'nodes':>10s}  "
            f"{'value':>14s}  {'change%':>10s}"
        )
        lines.append(header)
        lines.append("-" * len(header))
        for i in range(len(result.mesh_sizes)):
            change_str = (
                "---"
                if i == 0 or math.isnan(result.relative_changes[i])
                else f"{result.relative_changes[i]:>10.4f}"
            )
            lines.append(
                f"{i + 1:>5d}  {result.mesh_sizes[i] * 1e3:>10.3f}  "
                f"{result.n_nodes[i]:>10d}  "
                f"{result.values[i]:>14.6f}  {change_str:>10s}"
            )
        lines.append("")

        lines.append("-" * 72)
        lines.append("RICHARDSON EXTRAPOLATION")
        lines.append("-" * 72)
        if math.isnan(result.convergence_rate):
            lines.append(
                "Not available (requires >= 3 refinement levels "
                "with monotonic convergence)."
            )
        else:
            lines.append(f"Estimated convergence order: {result.convergence_rate:.3f}")
            lines.append(f"Extrapolated exact value   : {result.extrapolated_value:.6f}")
            if result.extrapolated_value != 0.0:
                error_pct = abs(
                    (result.values[-1] - result.extrapolated_value)
                    / result.extrapolated_value * 100.0
                )
                lines.append(f"Estimated error (finest)   : {error_pct:.4f}%")
        lines.append("")

        lines.append("-" * 72)
        lines.append("RECOMMENDATION")
        lines.append("-" * 72)
        lines.append(f"Status             : {'CONVERGED' if result.converged else 'NOT CONVERGED'}")
        lines.append(f"Monotonic error    : {'yes' if result.monotonic else 'no'}")
        lines.append(f"Convergence threshold: {self.convergence_threshold:.2f}%")
        lines.append(f"Recommended mesh size: {result.recommended_mesh_size * 1e3:.3f} mm")
        lines.append("=" * 72)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _extract_quantity(self, mesh: WeldMesh, result: ThermalResult, quantity: str) -> float:
        if quantity == "peak_temperature":
            return result.max_temperature_c
        if quantity == "probe_peak_temperature":
            node = int(np.argmin(np.linalg.norm(mesh.nodes - self.probe, axis=1)))
            return float(result.peak_temperature[node])
        if quantity == "energy_input":
            return float(result.metadata["energy_input_j"])
        raise ValueError(f"Unknown target quantity: {quantity!r}")

    @staticmethod
    def _compute_relative_changes(values: list[float]) -> list[float]:
        """Percentage change between successive levels; first entry is nan."""
        changes: list[float] = [float("nan")]
        for i in range(1, len(values)):
            if values[i - 1] == 0.0:
                changes.append(0.0 if values[i] == 0.0 else float("inf"))
            else:
                changes.append(abs((values[i] - values[i - 1]) / values[i - 1]) * 100.0)
        return changes

    @staticmethod
    def _check_convergence(values: list[float], threshold: float = 0.5) -> bool:
        if len(values) < 2:
            return False
        prev, curr = values[-2], values[-1]
        if prev == 0.0:
            return curr == 0.0
        return abs((curr - prev) / prev) * 100.0 < threshold

    @staticmethod
    def _richardson_extrapolate(
        h_values: list[float], f_values: list[float]
    ) -> tuple[float, float]:
        """Richardson extrapolation using the 3 finest mesh levels.

            p = log((f3 - f2) / (f2 - f1)) / log(r)
            f_exact = f1 + (f1 - f2) / (r^p - 1)

        with ``r = h2 / h1`` and levels 1, 2, 3 the three finest meshes
        (h1 < h2 < h3).  Returns ``(nan, nan)`` for non-monotonic data.
        """
        if len(h_values) < 3:
            return float("nan"), float("nan")
        h1, h2 = h_values[-1], h_values[-2]
        f1, f2, f3 = f_values[-1], f_values[-2], f_values[-3]

        diff21 = f2 - f1
        diff32 = f3 - f2
        if diff21 == 0.0 or diff32 == 0.0:
            return f1, float("nan")
        ratio = diff32 / diff21
        if ratio <= 0.0 or h1 <= 0.0 or h2 <= 0.0:
            return float("nan"), float("nan")

        r = h2 / h1
        if r == 1.0:
            return float("nan"), float("nan")
        p = math.log(ratio) / math.log(r)
        if p <= 0.0 or math.isnan(p) or math.isinf(p):
            return float("nan"), float("nan")
        r_p = r ** p
        if r_p == 1.0:
            return float("nan"), float("nan")
        return f1 + (f1 - f2) / (r_p - 1.0), p

    @staticmethod
    def _recommend_mesh_size(mesh_sizes: list[float], relative_changes: list[float]) -> float:
        """Coarsest size whose change from the previous level is below 1%, else the finest."""
        for i in range(1, len(mesh_sizes)):
            change = relative_changes[i]
            if not math.isnan(change) and change < 1.0:
                return mesh_sizes[i]
        return mesh_sizes[-1]
