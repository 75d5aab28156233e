"""Weld simulation run: one-way coupled thermal, metallurgy and mechanics.

Orchestrates the analysis pipeline of a single run:

1. **Mesh** -- load and validate the mesh (``MESH_LOADED``).
2. **Thermal** -- transient heat conduction with the moving source.
3. **Metallurgy** -- phase fractions along the frozen temperature history.
4. **Mechanical** -- elasto-plastic load steps with thermal, transformation
   and TRIP strains.
5. **Results** -- one ``ResultSet`` with fields, convergence log and
   summary scalars.

Each run owns its event bus, worker pool and cancellation token; nothing is
shared between runs.  A stage that fails or is cancelled ends the run in
``FAILED`` or ``CANCELLED`` with a partial ``ResultSet`` holding every field
computed so far.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Optional, Union

from arc_weld_master.core.event_bus import EventBus
from arc_weld_master.core.logger import StructuredLogger
from arc_weld_master.fea.assembler import ParallelAssembler
from arc_weld_master.fea.cancellation import CancellationToken
from arc_weld_master.fea.config import SolverConfig, WeldMesh, validate_mesh
from arc_weld_master.fea.elements import ElementGeometry
from arc_weld_master.fea.errors import Cancelled, WeldSimError
from arc_weld_master.fea.heat_source import GoldakHeatSource, HeatSourceSpec
from arc_weld_master.fea.material_properties import MaterialField, MaterialModel
from arc_weld_master.fea.mechanical_solver import MechanicalSolver
from arc_weld_master.fea.mesh_converter import load_mesh
from arc_weld_master.fea.metallurgy import MetallurgyModel
from arc_weld_master.fea.plasticity import equivalent_stress
from arc_weld_master.fea.results import (
    ConvergenceLog,
    ResultAssembler,
    ResultSet,
    RunStatus,
)
from arc_weld_master.fea.thermal_solver import ThermalSolver

logger = logging.getLogger(__name__)

_TERMINAL = {RunStatus.RESULTS_READY, RunStatus.FAILED, RunStatus.CANCELLED}

_TRANSITIONS = {
    RunStatus.CREATED: {RunStatus.MESH_LOADED},
    RunStatus.MESH_LOADED: {RunStatus.THERMAL_RUNNING},
    RunStatus.THERMAL_RUNNING: {RunStatus.THERMAL_COMPLETE},
    RunStatus.THERMAL_COMPLETE: {RunStatus.METALLURGY_COMPLETE},
    RunStatus.METALLURGY_COMPLETE: {RunStatus.MECHANICAL_RUNNING},
    RunStatus.MECHANICAL_RUNNING: {RunStatus.MECHANICAL_COMPLETE},
    RunStatus.MECHANICAL_COMPLETE: {RunStatus.RESULTS_READY},
}


class WeldSimulation:
    """One simulation run.

    Parameters
    ----------
    heat_source : HeatSourceSpec
    materials : MaterialModel
    assignment : str or dict
        Material id for every element, or element tag -> material id.
    config : SolverConfig
    run_id : str, optional
        Generated when omitted.
    event_bus : EventBus, optional
        Progress notifications (``run.state``, ``thermal.step``,
        ``metallurgy.complete``, ``mechanical.step``).  A private bus is
        created when omitted and closed once the run reaches a terminal
        state.
    structured_logger : StructuredLogger, optional
        Receives run lifecycle events and per-step convergence records.
    haz_threshold : float
        Peak temperature (C) bounding the heat-affected zone.
    n_hotspots : int
        Number of final von Mises hotspots kept in the result metadata.
    """

    def __init__(
        self,
        heat_source: HeatSourceSpec,
        materials: MaterialModel,
        assignment: Union[str, dict],
        config: SolverConfig,
        run_id: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
        structured_logger: Optional[StructuredLogger] = None,
        haz_threshold: float = 800.0,
        n_hotspots: int = 5,
    ) -> None:
        self.heat_source = heat_source
        self.materials = materials
        self.assignment = assignment
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._owns_event_bus = event_bus is None
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.structured_logger = structured_logger
        self.haz_threshold = haz_threshold
        self.n_hotspots = n_hotspots

        self.mesh: Optional[WeldMesh] = None
        self.geometry: Optional[ElementGeometry] = None
        self.convergence_log = ConvergenceLog()
        self._state = RunStatus.CREATED
        self._state_history = [RunStatus.CREATED]
        self._token = CancellationToken()

        if structured_logger is not None:
            self.convergence_log.add_listener(
                lambda record: structured_logger.log_step(self.run_id, record.to_dict())
            )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunStatus:
        return self._state

    @property
    def state_history(self) -> list[RunStatus]:
        return list(self._state_history)

    def _transition(self, new: RunStatus) -> None:
        old = self._state
        if old in _TERMINAL:
            raise RuntimeError(f"Run {self.run_id} is already {old.value}")
        if new not in _TRANSITIONS.get(old, set()) and new not in (
            RunStatus.FAILED, RunStatus.CANCELLED,
        ):
            raise RuntimeError(f"Illegal transition {old.value} -> {new.value}")
        self._state = new
        self._state_history.append(new)
        logger.info("Run %s: %s -> %s", self.run_id, old.value, new.value)
        self.event_bus.emit("run.state", {
            "run_id": self.run_id, "state": new.value, "previous": old.value,
        })
        if self.structured_logger is not None:
            self.structured_logger.log_run(
                self.run_id, "state", {"state": new.value, "previous": old.value},
            )
        if new in _TERMINAL and self._owns_event_bus:
            self.event_bus.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_mesh(self, mesh: Union[WeldMesh, str]) -> ElementGeometry:
        """Load (from a path) and validate the mesh.

        Raises
        ------
        InvalidMesh
            The run moves to ``FAILED``.
        """
        if self._state is not RunStatus.CREATED:
            raise RuntimeError(f"Mesh can only be loaded in state created, not {self._state.value}")
        try:
            if isinstance(mesh, str):
                mesh = load_mesh(mesh)
            geometry = validate_mesh(mesh)
        except WeldSimError:
            self._transition(RunStatus.FAILED)
            raise
        self.mesh = mesh
        self.geometry = geometry
        self._transition(RunStatus.MESH_LOADED)
        return geometry

    def cancel(self) -> None:
        """Request cancellation; honoured at the next timestep boundary."""
        self._token.cancel()

    def run(self, cancel_token: Optional[CancellationToken] = None) -> ResultSet:
        """Run every stage and package the results.

        Validation errors (``ValueError``, ``InvalidMaterial``) are raised
        before solving.  Solver errors and cancellation are returned as a
        partial ``ResultSet`` tagged ``FAILED`` or ``CANCELLED``.  Any other
        exception moves the run to ``FAILED`` and propagates.
        """
        if self._state is not RunStatus.MESH_LOADED:
            raise RuntimeError(f"Run needs a loaded mesh (state is {self._state.value})")
        token = _AnyToken(self._token, cancel_token)
        t_start = time.perf_counter()

        try:
            self.config.validate()
            source = GoldakHeatSource(self.heat_source)
            field = MaterialField(self.materials, self.mesh.tags(), self.assignment)
            for name in self.config.boundary.surfaces or ():
                self.mesh.node_set(name)
            for clamp in self.config.clamps:
                self.mesh.node_set(clamp.node_set)
        except (ValueError, WeldSimError):
            self._transition(RunStatus.FAILED)
            raise

        if self.structured_logger is not None:
            self.structured_logger.log_run(self.run_id, "start", {
                "n_nodes": self.mesh.n_nodes,
                "n_elements": self.mesh.n_elements,
                "element_type": self.mesh.element_type,
                "power_w": self.heat_source.power,
            }, metadata={"config": self.config.to_dict()})
        logger.info(
            "Run %s: %d nodes, %d %s elements, %d worker(s)",
            self.run_id, self.mesh.n_nodes, self.mesh.n_elements,
            self.mesh.element_type, self.config.n_workers,
        )

        stages = {"thermal": None, "metallurgy": None, "mechanical": None}
        stage = "thermal"
        status = RunStatus.RESULTS_READY
        error = None
        hotspots: list = []

        with ParallelAssembler(self.mesh.n_elements, self.config.n_workers) as assembler:
            try:
                self._transition(RunStatus.THERMAL_RUNNING)
                stages["thermal"] = ThermalSolver(
                    self.mesh, self.geometry, field, source, self.config,
                    assembler=assembler, event_bus=self.event_bus,
                    convergence_log=self.convergence_log,
                ).solve(token)
                self._transition(RunStatus.THERMAL_COMPLETE)

                stage = "metallurgy"
                history = stages["thermal"].history
                metallurgy = MetallurgyModel(
                    field, self.geometry.connectivity, self.mesh.n_nodes, self.config,
                ).run(history, token)
                stages["metallurgy"] = metallurgy
                self._transition(RunStatus.METALLURGY_COMPLETE)
                self.event_bus.emit("metallurgy.complete", {
                    "run_id": self.run_id,
                    "phases": metallurgy.phase_names,
                    "austenitized_nodes": int(metallurgy.austenitized.sum()),
                    "max_martensite": float(metallurgy.martensite[-1].max()),
                })

                stage = "mechanical"
                self._transition(RunStatus.MECHANICAL_RUNNING)
                mechanical_solver = MechanicalSolver(
                    self.mesh, self.geometry, field, self.config,
                    assembler=assembler, event_bus=self.event_bus,
                    convergence_log=self.convergence_log,
                )
                mechanical = mechanical_solver.solve(history, metallurgy, token)
                stages["mechanical"] = mechanical
                self._transition(RunStatus.MECHANICAL_COMPLETE)
                hotspots = mechanical_solver.recovery.find_hotspots(
                    equivalent_stress(mechanical.gauss_state.stress), n_top=self.n_hotspots,
                )
            except Cancelled as exc:
                logger.info("Run %s cancelled during %s stage", self.run_id, stage)
                stages[stage] = exc.partial
                status, error = RunStatus.CANCELLED, str(exc)
            except WeldSimError as exc:
                logger.error("Run %s failed during %s stage: %s", self.run_id, stage, exc)
                stages[stage] = exc.partial
                status, error = RunStatus.FAILED, f"{type(exc).__name__}: {exc}"
            except Exception:
                logger.exception("Run %s crashed during %s stage", self.run_id, stage)
                self._transition(RunStatus.FAILED)
                raise

        centre, travel, lateral, depth = source.local_frame(source.start_time)
        metadata = {
            "run_id": self.run_id,
            "n_workers": self.config.n_workers,
            "element_type": self.mesh.element_type,
            "wall_time_s": time.perf_counter() - t_start,
            "failed_stage": stage if status is not RunStatus.RESULTS_READY else None,
            "hotspots": hotspots,
            "events_dropped": self.event_bus.dropped,
        }
        if stages["thermal"] is not None:
            metadata["energy_input_j"] = stages["thermal"].metadata.get("energy_input_j")

        result = ResultAssembler(self.haz_threshold, lateral).assemble(
            self.mesh, status,
            thermal=stages["thermal"],
            metallurgy=stages["metallurgy"],
            mechanical=stages["mechanical"],
            convergence_log=self.convergence_log,
            error=error,
            metadata=metadata,
        )
        self._transition(status)
        if self.structured_logger is not None:
            self.structured_logger.log_run(self.run_id, "finish", {
                "status": status.value,
                "error": error,
                "summary": result.summary.to_dict(),
            })
        if not self._owns_event_bus:
            self.event_bus.flush(timeout=5.0)
        return result


class _AnyToken(CancellationToken):
    """Cancelled when either the run's own token or the caller's token is."""

    def __init__(self, own: CancellationToken, other: Optional[CancellationToken]) -> None:
        super().__init__()
        self._own = own
        self._other = other

    def is_cancelled(self) -> bool:
        return self._own.is_cancelled() or (
            self._other is not None and self._other.is_cancelled()
        )
