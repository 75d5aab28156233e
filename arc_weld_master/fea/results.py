"""Result containers for weld simulation runs.

``TemperatureHistory`` is the only channel from the thermal stage to the
metallurgy and mechanical stages: it is appended to while the thermal solver
runs and frozen (read-only arrays) before anything downstream reads it.

``ResultAssembler`` packages the stage results into a ``ResultSet`` keyed by
thermal step index, together with the convergence log and summary scalars.
Partial results of failed or cancelled runs are packaged the same way.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

import numpy as np
from numpy.typing import NDArray

from arc_weld_master.fea.config import WeldMesh
from arc_weld_master.fea.mesh_converter import MeshConverter
from arc_weld_master.fea.stress_recovery import StressRecovery

logger = logging.getLogger(__name__)


class RunStatus(enum.Enum):
    CREATED = "created"
    MESH_LOADED = "mesh_loaded"
    THERMAL_RUNNING = "thermal_running"
    THERMAL_COMPLETE = "thermal_complete"
    METALLURGY_COMPLETE = "metallurgy_complete"
    MECHANICAL_RUNNING = "mechanical_running"
    MECHANICAL_COMPLETE = "mechanical_complete"
    RESULTS_READY = "results_ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


def interpolate_in_time(times: NDArray[np.float64], values: NDArray[np.float64],
                        time: float) -> NDArray[np.float64]:
    """Linear interpolation of ``values[k]`` between stored times, clamped at the ends."""
    if times.size == 1:
        return values[0].copy()
    i = int(np.searchsorted(times, time, side="right")) - 1
    i = min(max(i, 0), times.size - 2)
    w = (time - times[i]) / (times[i + 1] - times[i])
    w = min(max(w, 0.0), 1.0)
    return (1.0 - w) * values[i] + w * values[i + 1]


# ---------------------------------------------------------------------------
# Thermal
# ---------------------------------------------------------------------------

class TemperatureHistory:
    """Nodal temperatures over time; append-only until frozen."""

    def __init__(self, n_nodes: int) -> None:
        self.n_nodes = n_nodes
        self._times: list[float] = []
        self._fields: list[NDArray[np.float64]] = []
        self._frozen = False
        self._times_arr: Optional[NDArray[np.float64]] = None
        self._temps_arr: Optional[NDArray[np.float64]] = None

    def append(self, time: float, temperature: NDArray[np.float64]) -> None:
        if self._frozen:
            raise RuntimeError("TemperatureHistory is frozen")
        if self._times and time <= self._times[-1]:
            raise ValueError(f"History times must increase ({time} after {self._times[-1]})")
        temperature = np.asarray(temperature, dtype=float)
        if temperature.shape != (self.n_nodes,):
            raise ValueError(f"Expected ({self.n_nodes},) temperatures, got {temperature.shape}")
        self._times.append(float(time))
        self._fields.append(temperature.copy())

    def freeze(self) -> "TemperatureHistory":
        if not self._frozen:
            times = np.array(self._times, dtype=float)
            temps = (np.stack(self._fields) if self._fields
                     else np.empty((0, self.n_nodes)))
            times.setflags(write=False)
            temps.setflags(write=False)
            self._times_arr, self._temps_arr = times, temps
            self._fields = []
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def times(self) -> NDArray[np.float64]:
        if self._frozen:
            return self._times_arr
        return np.array(self._times, dtype=float)

    @property
    def temperatures(self) -> NDArray[np.float64]:
        """(S, N) nodal temperatures."""
        if self._frozen:
            return self._temps_arr
        return np.stack(self._fields) if self._fields else np.empty((0, self.n_nodes))

    @property
    def n_steps(self) -> int:
        return len(self._times) if not self._frozen else self._times_arr.size

    def at(self, time: float) -> NDArray[np.float64]:
        """Nodal temperatures at ``time``, linearly interpolated."""
        return interpolate_in_time(self.times, self.temperatures, time)

    def node_series(self, node: int) -> NDArray[np.float64]:
        return self.temperatures[:, node]

    def peak_temperature(self) -> NDArray[np.float64]:
        return self.temperatures.max(axis=0)

    def time_of_peak(self) -> NDArray[np.float64]:
        return self.times[np.argmax(self.temperatures, axis=0)]


def cooling_time(times: NDArray[np.float64], temperatures: NDArray[np.float64],
                 upper: float = 800.0, lower: float = 500.0) -> NDArray[np.float64]:
    """Per-node cooling time from ``upper`` to ``lower`` after the peak (t8/5).

    NaN where a node never reached ``upper`` or has not yet cooled below
    ``lower`` by the end of the history.
    """
    n_nodes = temperatures.shape[1]
    out = np.full(n_nodes, np.nan)
    peaks = temperatures.max(axis=0)
    for node in np.nonzero(peaks >= upper)[0]:
        series = temperatures[:, node]
        ip = int(np.argmax(series))
        t_upper = _crossing_time(times[ip:], series[ip:], upper)
        t_lower = _crossing_time(times[ip:], series[ip:], lower)
        if t_upper is not None and t_lower is not None:
            out[node] = t_lower - t_upper
    return out


def _crossing_time(times, series, level) -> Optional[float]:
    below = np.nonzero(series <= level)[0]
    if below.size == 0:
        return None
    j = int(below[0])
    if j == 0:
        return float(times[0])
    t0, t1 = times[j - 1], times[j]
    T0, T1 = series[j - 1], series[j]
    return float(t0 + (T0 - level) / (T0 - T1) * (t1 - t0))


@dataclass
class ThermalResult:
    """Thermal stage result."""
    history: TemperatureHistory
    peak_temperature: np.ndarray       # (N,)
    time_of_peak: np.ndarray           # (N,)
    t8_5: np.ndarray                   # (N,) seconds, NaN where undefined
    solve_time_s: float
    solver_name: str = "crank-nicolson"
    completed: bool = True
    metadata: dict = field(default_factory=dict)

    @property
    def times(self) -> np.ndarray:
        return self.history.times

    @property
    def temperature_field(self) -> np.ndarray:
        """(S, N) temperatures."""
        return self.history.temperatures

    @property
    def max_temperature_c(self) -> float:
        return float(self.peak_temperature.max()) if self.peak_temperature.size else float("nan")


# ---------------------------------------------------------------------------
# Metallurgy
# ---------------------------------------------------------------------------

@dataclass
class MetallurgyResult:
    """Phase fractions and transformation strain per node and thermal step."""
    times: np.ndarray                  # (S,)
    phases: dict                       # name -> (S, N)
    transformation_strain: np.ndarray  # (S, N) volumetric dV/V
    austenitized: np.ndarray           # (N,) bool
    trip_coefficient: np.ndarray       # (N,) Greenwood-Johnson K, 0 if none
    completed: bool = True

    @property
    def phase_names(self) -> list[str]:
        return list(self.phases)

    @property
    def martensite(self) -> np.ndarray:
        if "martensite" in self.phases:
            return self.phases["martensite"]
        return np.zeros_like(self.transformation_strain)

    def at(self, time: float) -> tuple[np.ndarray, np.ndarray]:
        """Martensite fraction and volumetric transformation strain at ``time``."""
        return (
            interpolate_in_time(self.times, self.martensite, time),
            interpolate_in_time(self.times, self.transformation_strain, time),
        )

    def final_fractions(self) -> dict[str, np.ndarray]:
        return {name: values[-1].copy() for name, values in self.phases.items()}


# ---------------------------------------------------------------------------
# Mechanical
# ---------------------------------------------------------------------------

@dataclass
class MechanicalResult:
    """Mechanical stage result, one entry per stored load step."""
    times: np.ndarray                  # (M,)
    step_indices: np.ndarray           # (M,) thermal step index of each load step
    displacement: np.ndarray           # (M, N, 3)
    stress: np.ndarray                 # (M, N, 6) nodal, extrapolated
    von_mises: np.ndarray              # (M, N)
    plastic_strain: np.ndarray         # (M, N) equivalent plastic strain
    gauss_von_mises_max: np.ndarray    # (M,) max over Gauss points
    gauss_state: Any = None            # final GaussPointState
    solve_time_s: float = 0.0
    completed: bool = True


# ---------------------------------------------------------------------------
# Convergence log
# ---------------------------------------------------------------------------

@dataclass
class ConvergenceRecord:
    phase: str                         # "thermal" or "mechanical"
    step: int
    time: float
    dt: float
    iterations: int
    residual: float
    retries: int = 0                   # timestep halvings / load bisections
    converged: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class ConvergenceLog:
    """Ordered per-step solver records with optional listeners."""

    def __init__(self) -> None:
        self._records: list[ConvergenceRecord] = []
        self._listeners: list[Callable[[ConvergenceRecord], None]] = []

    def add_listener(self, listener: Callable[[ConvergenceRecord], None]) -> None:
        self._listeners.append(listener)

    def add(self, record: ConvergenceRecord) -> None:
        self._records.append(record)
        for listener in self._listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Convergence log listener failed")

    def for_phase(self, phase: str) -> list[ConvergenceRecord]:
        return [r for r in self._records if r.phase == phase]

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self._records]

    @property
    def records(self) -> list[ConvergenceRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Result set
# ---------------------------------------------------------------------------

@dataclass
class SummaryScalars:
    peak_temperature_c: float = float("nan")
    max_von_mises_pa: float = float("nan")
    max_displacement_m: float = float("nan")
    residual_max_von_mises_pa: float = float("nan")
    final_max_displacement_m: float = float("nan")
    haz_width_m: float = float("nan")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FieldFrame:
    """All fields at one thermal step."""
    step: int
    time: float
    temperature: np.ndarray
    phases: dict = field(default_factory=dict)
    displacement: Optional[np.ndarray] = None
    stress: Optional[np.ndarray] = None
    von_mises: Optional[np.ndarray] = None
    plastic_strain: Optional[np.ndarray] = None


@dataclass
class ResultSet:
    status: RunStatus
    mesh: WeldMesh
    thermal: Optional[ThermalResult] = None
    metallurgy: Optional[MetallurgyResult] = None
    mechanical: Optional[MechanicalResult] = None
    convergence_log: ConvergenceLog = field(default_factory=ConvergenceLog)
    summary: SummaryScalars = field(default_factory=SummaryScalars)
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return self.status in (RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def steps(self) -> list[int]:
        if self.thermal is None:
            return []
        return list(range(self.thermal.history.n_steps))

    def frame(self, step: int) -> FieldFrame:
        """Fields at thermal step ``step`` (negative indices count from the end).

        Mechanical fields come from the latest load step at or before
        ``step``; they are None before the first one.
        """
        if self.thermal is None:
            raise IndexError("ResultSet has no thermal history")
        n = self.thermal.history.n_steps
        if step < 0:
            step += n
        if not 0 <= step < n:
            raise IndexError(f"Step {step} out of range [0, {n})")

        frame = FieldFrame(
            step=step,
            time=float(self.thermal.times[step]),
            temperature=self.thermal.temperature_field[step],
        )
        if self.metallurgy is not None and step < self.metallurgy.times.size:
            frame.phases = {k: v[step] for k, v in self.metallurgy.phases.items()}
        mech = self.mechanical
        if mech is not None and mech.step_indices.size:
            k = int(np.searchsorted(mech.step_indices, step, side="right")) - 1
            if k >= 0:
                frame.displacement = mech.displacement[k]
                frame.stress = mech.stress[k]
                frame.von_mises = mech.von_mises[k]
                frame.plastic_strain = mech.plastic_strain[k]
        return frame

    def to_meshio(self, step: int = -1):
        """Mesh plus all fields at ``step`` as a ``meshio.Mesh``.

        Principal stresses are written in descending order with the direction
        of the largest one; node sets and element tags come along.
        """
        frame = self.frame(step)
        point_data: dict[str, np.ndarray] = {"temperature": np.asarray(frame.temperature)}
        if self.thermal is not None:
            point_data["peak_temperature"] = self.thermal.peak_temperature
        for name, values in frame.phases.items():
            point_data[f"phase_{name}"] = np.asarray(values)
        if frame.displacement is not None:
            point_data["displacement"] = np.asarray(frame.displacement)
            point_data["stress"] = np.asarray(frame.stress)
            point_data["von_mises"] = np.asarray(frame.von_mises)
            point_data["equivalent_plastic_strain"] = np.asarray(frame.plastic_strain)
            principal, directions = StressRecovery.principal_stresses(frame.stress)
            point_data["principal_stress"] = principal
            point_data["max_principal_direction"] = directions[:, :, 0]
        return MeshConverter.to_meshio(self.mesh, point_data)

    def write(self, path: str, step: int = -1) -> None:
        self.to_meshio(step).write(path)
        logger.info("Wrote step %d of %s run to %s", step, self.status.value, path)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "error": self.error,
            "summary": self.summary.to_dict(),
            "n_thermal_steps": len(self.steps),
            "n_mechanical_steps": (
                int(self.mechanical.times.size) if self.mechanical is not None else 0
            ),
            "phases": self.metallurgy.phase_names if self.metallurgy is not None else [],
            "convergence": self.convergence_log.to_list(),
            "metadata": self.metadata,
        }


def haz_width(nodes: NDArray[np.float64], peak: NDArray[np.float64],
              lateral_axis: NDArray[np.float64], threshold: float = 800.0) -> float:
    """Transverse extent of the region whose peak temperature reached ``threshold``."""
    hot = peak >= threshold
    if not np.any(hot):
        return 0.0
    lateral = nodes[hot] @ np.asarray(lateral_axis, dtype=float)
    return float(lateral.max() - lateral.min())


class ResultAssembler:
    """Package stage results into a ``ResultSet`` with summary scalars.

    Parameters
    ----------
    haz_threshold : float
        Peak temperature (C) that bounds the heat-affected zone.
    lateral_axis : array-like, optional
        Unit vector across the weld; HAZ width is skipped (NaN) without it.
    """

    def __init__(self, haz_threshold: float = 800.0,
                 lateral_axis: Optional[NDArray[np.float64]] = None) -> None:
        self.haz_threshold = haz_threshold
        self.lateral_axis = lateral_axis

    def summarize(self, mesh: WeldMesh, thermal: Optional[ThermalResult],
                  mechanical: Optional[MechanicalResult]) -> SummaryScalars:
        summary = SummaryScalars()
        if thermal is not None and thermal.history.n_steps:
            summary.peak_temperature_c = thermal.max_temperature_c
            if self.lateral_axis is not None:
                summary.haz_width_m = haz_width(
                    mesh.nodes, thermal.peak_temperature, self.lateral_axis,
                    self.haz_threshold,
                )
        if mechanical is not None and mechanical.times.size:
            magnitude = np.linalg.norm(mechanical.displacement, axis=2)
            summary.max_von_mises_pa = float(mechanical.gauss_von_mises_max.max())
            summary.max_displacement_m = float(magnitude.max())
            summary.residual_max_von_mises_pa = float(mechanical.gauss_von_mises_max[-1])
            summary.final_max_displacement_m = float(magnitude[-1].max())
        return summary

    def assemble(
        self,
        mesh: WeldMesh,
        status: RunStatus,
        thermal: Optional[ThermalResult] = None,
        metallurgy: Optional[MetallurgyResult] = None,
        mechanical: Optional[MechanicalResult] = None,
        convergence_log: Optional[ConvergenceLog] = None,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ResultSet:
        result = ResultSet(
            status=status,
            mesh=mesh,
            thermal=thermal,
            metallurgy=metallurgy,
            mechanical=mechanical,
            convergence_log=convergence_log if convergence_log is not None else ConvergenceLog(),
            summary=self.summarize(mesh, thermal, mechanical),
            error=error,
            metadata=dict(metadata or {}),
        )
        logger.info(
            "Assembled %s result set: %d thermal steps, %d load steps, peak %.1f C",
            status.value, len(result.steps),
            0 if mechanical is None else mechanical.times.size,
            result.summary.peak_temperature_c,
        )
        return result
