"""FEA configuration dataclasses: mesh container, boundary conditions, solver settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.csgraph import connected_components

from arc_weld_master.fea.elements import ElementGeometry, get_element
from arc_weld_master.fea.errors import InvalidMesh

logger = logging.getLogger(__name__)


@dataclass
class WeldMesh:
    """Container for a finite element mesh."""
    nodes: np.ndarray              # (N, 3) coordinates in meters
    elements: np.ndarray           # (E, nodes_per_elem) connectivity
    element_type: str              # "TET4" or "HEX8"
    node_sets: dict[str, np.ndarray] = field(default_factory=dict)
    element_tags: Optional[np.ndarray] = None   # (E,) integer material tags
    mesh_stats: dict = field(default_factory=dict)
    _boundary_faces: Optional[np.ndarray] = field(default=None, init=False, repr=False)

    @property
    def n_nodes(self) -> int:
        return self.nodes.shape[0]

    @property
    def n_elements(self) -> int:
        return self.elements.shape[0]

    @property
    def n_dof(self) -> int:
        """Total mechanical degrees of freedom (3 per node)."""
        return self.nodes.shape[0] * 3

    def tags(self) -> np.ndarray:
        """Element tags, all zero when the mesh carries none."""
        if self.element_tags is None:
            return np.zeros(self.n_elements, dtype=np.int64)
        return np.asarray(self.element_tags, dtype=np.int64)

    def nodes_in_box(self, lo, hi, tol: float = 1e-9) -> np.ndarray:
        """Indices of nodes inside the axis-aligned box [lo, hi]."""
        lo = np.asarray(lo, dtype=float) - tol
        hi = np.asarray(hi, dtype=float) + tol
        inside = np.all((self.nodes >= lo) & (self.nodes <= hi), axis=1)
        return np.nonzero(inside)[0]

    def add_node_set(self, name: str, indices) -> None:
        self.node_sets[name] = np.unique(np.asarray(indices, dtype=np.int64))

    def boundary_faces(self) -> np.ndarray:
        """Exterior faces (F, k): element faces that belong to exactly one element."""
        if self._boundary_faces is None:
            element = get_element(self.element_type)
            local = np.asarray(element.FACES)
            faces = self.elements[:, local].reshape(-1, local.shape[1])
            keys = np.sort(faces, axis=1)
            _, first, counts = np.unique(
                keys, axis=0, return_index=True, return_counts=True,
            )
            self._boundary_faces = faces[np.sort(first[counts == 1])]
        return self._boundary_faces

    def boundary_node_areas(self, surfaces: Optional[tuple] = None) -> np.ndarray:
        """Lumped exterior surface area per node (N,).

        Each face's area is shared equally between its nodes.  When
        ``surfaces`` names node sets, only faces whose nodes all lie in
        their union are counted.
        """
        faces = self.boundary_faces()
        if surfaces:
            allowed = np.zeros(self.n_nodes, dtype=bool)
            for name in surfaces:
                allowed[self.node_set(name)] = True
            faces = faces[np.all(allowed[faces], axis=1)]

        p = self.nodes[faces]
        if faces.shape[1] == 3:
            normal = np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0])
        else:
            normal = np.cross(p[:, 2] - p[:, 0], p[:, 3] - p[:, 1])
        area = 0.5 * np.linalg.norm(normal, axis=1)

        share = np.repeat(area / faces.shape[1], faces.shape[1])
        return np.bincount(faces.ravel(), weights=share, minlength=self.n_nodes)

    def node_set(self, name: str) -> np.ndarray:
        try:
            return self.node_sets[name]
        except KeyError:
            raise InvalidMesh(
                f"Node set {name!r} not found in mesh; available: {sorted(self.node_sets)}"
            ) from None


def validate_mesh(mesh: WeldMesh) -> ElementGeometry:
    """Check a mesh before solving and return its Gauss-point geometry.

    Raises
    ------
    InvalidMesh
        On unsupported element types, malformed connectivity, elements with
        repeated nodes or non-positive Jacobians, unreferenced nodes, a
        disconnected element graph, or node sets / tags that do not match.
    """
    try:
        element = get_element(mesh.element_type)
    except ValueError as exc:
        raise InvalidMesh(str(exc)) from None

    nodes = np.asarray(mesh.nodes)
    conn = np.asarray(mesh.elements)
    if nodes.ndim != 2 or nodes.shape[1] != 3 or nodes.shape[0] == 0:
        raise InvalidMesh(f"Nodes must be a non-empty (N, 3) array, got {nodes.shape}")
    if not np.all(np.isfinite(nodes)):
        raise InvalidMesh("Node coordinates contain NaN or inf")
    if conn.ndim != 2 or conn.shape[1] != element.N_NODES or conn.shape[0] == 0:
        raise InvalidMesh(
            f"{mesh.element_type} connectivity must be (E, {element.N_NODES}), got {conn.shape}"
        )
    if not np.issubdtype(conn.dtype, np.integer):
        raise InvalidMesh("Element connectivity must be integer")
    if conn.min() < 0 or conn.max() >= nodes.shape[0]:
        raise InvalidMesh("Element connectivity references nodes out of range")

    srt = np.sort(conn, axis=1)
    repeated = np.nonzero(np.any(srt[:, 1:] == srt[:, :-1], axis=1))[0]
    if repeated.size:
        raise InvalidMesh(
            f"{repeated.size} degenerate element(s) with repeated nodes, "
            f"first ids: {repeated[:10].tolist()}"
        )

    used = np.zeros(nodes.shape[0], dtype=bool)
    used[conn.ravel()] = True
    if not used.all():
        orphan = np.nonzero(~used)[0]
        raise InvalidMesh(
            f"{orphan.size} node(s) not referenced by any element, "
            f"first ids: {orphan[:10].tolist()}"
        )

    n = nodes.shape[0]
    rows = np.repeat(conn[:, 0], conn.shape[1] - 1)
    cols = conn[:, 1:].ravel()
    graph = sp.csr_matrix((np.ones(rows.size), (rows, cols)), shape=(n, n))
    n_parts, _ = connected_components(graph, directed=False)
    if n_parts > 1:
        raise InvalidMesh(f"Mesh is disconnected into {n_parts} parts")

    for name, idx in mesh.node_sets.items():
        idx = np.asarray(idx)
        if idx.size and (idx.min() < 0 or idx.max() >= n):
            raise InvalidMesh(f"Node set {name!r} references nodes out of range")

    if mesh.element_tags is not None and len(mesh.element_tags) != conn.shape[0]:
        raise InvalidMesh(
            f"element_tags has {len(mesh.element_tags)} entries for {conn.shape[0]} elements"
        )

    geometry = ElementGeometry(nodes, conn, mesh.element_type)
    logger.info(
        "Mesh validated: %d nodes, %d %s elements, volume %.4e m^3",
        n, conn.shape[0], mesh.element_type, geometry.volumes.sum(),
    )
    return geometry


# ---------------------------------------------------------------------------
# Boundary conditions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ThermalBoundary:
    """Convection + radiation to ambient on exterior faces."""
    convection_htc: float = 15.0        # W/(m^2 K)
    ambient_temp: float = 20.0          # deg C
    emissivity: float = 0.0
    surfaces: Optional[tuple] = None    # node set names; None = all exterior faces

    def validate(self) -> None:
        if self.convection_htc < 0.0:
            raise ValueError(f"convection_htc must be >= 0, got {self.convection_htc}")
        if not 0.0 <= self.emissivity <= 1.0:
            raise ValueError(f"emissivity must be in [0, 1], got {self.emissivity}")


@dataclass(frozen=True)
class ClampBC:
    """Fixed or spring restraint on a node set, optionally released at a time."""
    node_set: str
    kind: str = "fixed"                 # "fixed" or "spring"
    stiffness: float = 0.0              # N/m per constrained DOF (spring only)
    components: tuple = (0, 1, 2)
    release_time: Optional[float] = None

    def is_active(self, time: float) -> bool:
        return self.release_time is None or time < self.release_time

    def validate(self) -> None:
        if self.kind not in ("fixed", "spring"):
            raise ValueError(f"Clamp kind must be 'fixed' or 'spring', got {self.kind!r}")
        if self.kind == "spring" and self.stiffness <= 0.0:
            raise ValueError("Spring clamps need a positive stiffness")
        if not self.components or any(c not in (0, 1, 2) for c in self.components):
            raise ValueError(f"Clamp components must be drawn from (0, 1, 2), got {self.components}")


# ---------------------------------------------------------------------------
# Solver configuration
# ---------------------------------------------------------------------------

_SECTION_KEYS = {
    "thermal": {
        "dt": "thermal_dt",
        "cooling_dt": "cooling_dt",
        "end_time": "end_time",
        "cooling_end_temp": "cooling_end_temp",
        "theta": "theta",
        "tolerance": "thermal_tolerance",
        "max_picard_iterations": "max_picard_iterations",
        "relaxation": "picard_relaxation",
        "max_timestep_retries": "max_timestep_retries",
        "divergence_temperature": "divergence_temperature",
        "lumped_capacity": "lumped_capacity",
        "normalize_source_power": "normalize_source_power",
        "max_steps": "max_thermal_steps",
    },
    "metallurgy": {
        "reheat_policy": "reheat_policy",
        "reheat_tolerance": "reheat_tolerance",
    },
    "mechanical": {
        "stride": "mechanical_stride",
        "tolerance": "mechanical_tolerance",
        "atol": "mechanical_atol",
        "max_newton_iterations": "max_newton_iterations",
        "max_load_bisections": "max_load_bisections",
        "reference_temperature": "reference_temperature",
        "rigid_body_constraint": "rigid_body_constraint",
    },
}


@dataclass
class SolverConfig:
    """Time stepping, tolerances and boundary conditions for one run."""
    # thermal
    thermal_dt: float = 0.5
    cooling_dt: Optional[float] = None
    end_time: Optional[float] = None
    cooling_end_temp: Optional[float] = 100.0
    theta: float = 0.5
    thermal_tolerance: float = 0.1
    max_picard_iterations: int = 10
    picard_relaxation: float = 1.0
    max_timestep_retries: int = 4
    divergence_temperature: float = 1.0e5
    lumped_capacity: bool = True
    normalize_source_power: bool = False
    max_thermal_steps: int = 100000
    initial_temp: Optional[float] = None
    # metallurgy
    reheat_policy: str = "error"
    reheat_tolerance: float = 10.0
    # mechanical
    mechanical_stride: int = 1
    mechanical_tolerance: float = 1.0e-5
    mechanical_atol: float = 1.0e-8
    max_newton_iterations: int = 25
    max_load_bisections: int = 6
    reference_temperature: Optional[float] = None
    rigid_body_constraint: str = "auto"
    # boundary conditions
    boundary: ThermalBoundary = field(default_factory=ThermalBoundary)
    clamps: list[ClampBC] = field(default_factory=list)
    # parallel assembly
    n_workers: int = 1

    @property
    def start_temperature(self) -> float:
        """Initial temperature: preheat when given, else ambient."""
        if self.initial_temp is not None:
            return float(self.initial_temp)
        return float(self.boundary.ambient_temp)

    def validate(self) -> None:
        if self.thermal_dt <= 0.0:
            raise ValueError(f"thermal_dt must be positive, got {self.thermal_dt}")
        if self.cooling_dt is not None and self.cooling_dt <= 0.0:
            raise ValueError(f"cooling_dt must be positive, got {self.cooling_dt}")
        if self.end_time is None and self.cooling_end_temp is None:
            raise ValueError("Either end_time or cooling_end_temp must be set")
        if not 0.5 <= self.theta <= 1.0:
            raise ValueError(f"theta must be in [0.5, 1.0], got {self.theta}")
        if self.max_picard_iterations < 1 or self.max_newton_iterations < 1:
            raise ValueError("Iteration caps must be at least 1")
        if not 0.0 < self.picard_relaxation <= 1.0:
            raise ValueError(
                f"picard_relaxation must be in (0, 1], got {self.picard_relaxation}"
            )
        if self.max_timestep_retries < 0 or self.max_load_bisections < 0:
            raise ValueError("Retry and bisection counts must be >= 0")
        if self.mechanical_stride < 1:
            raise ValueError(f"mechanical_stride must be >= 1, got {self.mechanical_stride}")
        if self.reheat_policy not in ("error", "freeze"):
            raise ValueError(f"reheat_policy must be 'error' or 'freeze', got {self.reheat_policy!r}")
        if self.rigid_body_constraint not in ("auto", "never"):
            raise ValueError(
                f"rigid_body_constraint must be 'auto' or 'never', got {self.rigid_body_constraint!r}"
            )
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        self.boundary.validate()
        for clamp in self.clamps:
            clamp.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SolverConfig":
        """Build from the nested ``solver`` section of an application config."""
        kwargs: dict[str, Any] = {}
        for section, mapping in _SECTION_KEYS.items():
            for key, value in (data.get(section) or {}).items():
                if key not in mapping:
                    raise ValueError(f"Unknown solver.{section} key {key!r}")
                kwargs[mapping[key]] = value
        if data.get("initial_temp") is not None:
            kwargs["initial_temp"] = data["initial_temp"]
        if data.get("boundary"):
            boundary = dict(data["boundary"])
            if boundary.get("surfaces") is not None:
                boundary["surfaces"] = tuple(boundary["surfaces"])
            kwargs["boundary"] = ThermalBoundary(**boundary)
        clamps = []
        for item in data.get("clamps") or []:
            item = dict(item)
            if "components" in item:
                item["components"] = tuple(item["components"])
            clamps.append(ClampBC(**item))
        kwargs["clamps"] = clamps
        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def from_app_config(cls, app_config) -> "SolverConfig":
        config = cls.from_dict(app_config.get("solver", {}) or {})
        config.n_workers = int(app_config.get("parallel.workers", 1) or 1)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "boundary":
                value = {
                    "convection_htc": value.convection_htc,
                    "ambient_temp": value.ambient_temp,
                    "emissivity": value.emissivity,
                    "surfaces": value.surfaces,
                }
            elif f.name == "clamps":
                value = [
                    {
                        "node_set": c.node_set,
                        "kind": c.kind,
                        "stiffness": c.stiffness,
                        "components": list(c.components),
                        "release_time": c.release_time,
                    }
                    for c in value
                ]
            out[f.name] = value
        return out
