"""Ready-made simulation inputs.

``bead_on_plate`` is the reference case: a single GMAW bead along the
centreline of a 200 x 100 x 10 mm S355 plate (200 A, 25 V, 5 mm/s,
eta = 0.8, Goldak a = b = 3 mm, c_f = 6 mm, c_r = 10 mm).  The centreline
peak lands between 1600 and 1700 C, with the region above 800 C between 8
and 12 mm wide.  Plate size and mesh resolution can be reduced for quick
checks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from arc_weld_master.fea.config import ClampBC, SolverConfig, ThermalBoundary, WeldMesh
from arc_weld_master.fea.heat_source import HeatSourceSpec, WeldPath
from arc_weld_master.fea.material_properties import MaterialModel
from arc_weld_master.fea.mesher import BoxMesher
from arc_weld_master.fea.workflow import WeldSimulation

logger = logging.getLogger(__name__)

BEAD_ON_PLATE = {
    "length": 0.200,
    "width": 0.100,
    "thickness": 0.010,
    "material": "S355",
    "current": 200.0,
    "voltage": 25.0,
    "travel_speed": 0.005,
    "efficiency": 0.8,
    "a": 0.003,
    "b": 0.003,
    "c_front": 0.006,
    "c_rear": 0.010,
}


@dataclass
class Scenario:
    """Everything needed to start a ``WeldSimulation``."""
    mesh: WeldMesh
    heat_source: HeatSourceSpec
    materials: MaterialModel
    assignment: Union[str, dict]
    config: SolverConfig
    description: str = ""
    parameters: dict = field(default_factory=dict)

    def simulation(self, **kwargs) -> WeldSimulation:
        """New run with the mesh already loaded; ``kwargs`` go to ``WeldSimulation``."""
        sim = WeldSimulation(
            self.heat_source, self.materials, self.assignment, self.config, **kwargs,
        )
        sim.load_mesh(self.mesh)
        return sim


def bead_on_plate(
    length: float = BEAD_ON_PLATE["length"],
    width: float = BEAD_ON_PLATE["width"],
    thickness: float = BEAD_ON_PLATE["thickness"],
    element_size: float = 0.005,
    fine_size: Optional[float] = None,
    element_type: str = "HEX8",
    cooling_time: float = 200.0,
    thermal_dt: float = 0.5,
    cooling_dt: float = 5.0,
    mechanical_stride: int = 2,
    clamp_edges: bool = False,
    n_workers: int = 1,
) -> Scenario:
    """Bead-on-plate input with the weld along ``y = width / 2`` on the top face.

    Parameters
    ----------
    element_size : float
        Spacing along the weld and away from it.
    fine_size : float, optional
        Transverse spacing within 10 mm of the weld line (``element_size / 2``
        when omitted).
    cooling_time : float
        Simulated time after arc-off.
    clamp_edges : bool
        Fix both ``y`` edges until the end of welding; otherwise the plate is
        free and only rigid-body motion is suppressed.
    """
    p = BEAD_ON_PLATE
    fine = fine_size or 0.5 * element_size
    x = np.linspace(0.0, length, max(2, int(round(length / element_size))) + 1)
    y = BoxMesher.graded_axis(0.0, width, fine, element_size, 0.5 * width, 0.02)
    z = np.linspace(0.0, thickness, max(2, int(round(thickness / fine))) + 1)
    mesh = BoxMesher.from_coordinates(x, y, z, element_type)

    margin = min(0.01, 0.1 * length)
    path = WeldPath.straight(
        (margin, 0.5 * width, thickness), (length - margin, 0.5 * width, thickness),
        p["travel_speed"],
    )
    heat_source = HeatSourceSpec(
        voltage=p["voltage"], current=p["current"], efficiency=p["efficiency"],
        a=p["a"], b=p["b"], c_front=p["c_front"], c_rear=p["c_rear"], path=path,
    )

    clamps = []
    if clamp_edges:
        clamps = [
            ClampBC("y_min", "fixed", release_time=path.end_time),
            ClampBC("y_max", "fixed", release_time=path.end_time),
        ]
    config = SolverConfig(
        thermal_dt=thermal_dt,
        cooling_dt=cooling_dt,
        end_time=path.end_time + cooling_time,
        cooling_end_temp=None,
        # backward Euler with relaxed Picard: the pool conductivity ramp makes
        # Crank-Nicolson ring
        theta=1.0,
        picard_relaxation=0.5,
        max_picard_iterations=30,
        normalize_source_power=True,
        reheat_policy="freeze",
        mechanical_stride=mechanical_stride,
        boundary=ThermalBoundary(convection_htc=15.0, ambient_temp=20.0, emissivity=0.6),
        clamps=clamps,
        n_workers=n_workers,
    )
    logger.info(
        "Bead-on-plate %.0f x %.0f x %.0f mm: %d nodes, weld %.1f s",
        length * 1e3, width * 1e3, thickness * 1e3, mesh.n_nodes, path.duration,
    )
    return Scenario(
        mesh=mesh,
        heat_source=heat_source,
        materials=MaterialModel.from_library([p["material"]]),
        assignment=p["material"],
        config=config,
        description="GMAW bead on S355 plate",
        parameters=dict(p, length=length, width=width, thickness=thickness,
                        element_size=element_size),
    )
