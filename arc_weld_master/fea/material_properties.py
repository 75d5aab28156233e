"""Temperature-dependent material properties for weld simulation.

Each library entry stores its properties as tables over a shared temperature
axis.  Lookup is piecewise-linear and clamped: outside the table the nearest
boundary value is returned, never an extrapolation.

Steels that transform on cooling also carry a ``transformation`` block with
the austenitization temperature, martensite start, Koistinen-Marburger
coefficient, martensite volume change, Greenwood-Johnson TRIP coefficient and
JMAK kinetics for each diffusional product phase.

Steels that melt under the arc carry a ``melting`` block.  Latent heat of
fusion enters through the specific enthalpy, released linearly between
solidus and liquidus, so the thermal solver can use the secant capacity
``(H(T1) - H(T0)) / (T1 - T0)`` and never steps over the melting range.
Above ``pool_onset`` the conductivity rises linearly to
``pool_conductivity_factor`` times its table value at ``pool_full``; this
stands in for the convective stirring of the weld pool, which a conduction
model does not resolve.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
from numpy.typing import NDArray

from arc_weld_master.fea.errors import InvalidMaterial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Property names
# ---------------------------------------------------------------------------

CONDUCTIVITY = "conductivity"              # W/(m K)
SPECIFIC_HEAT = "specific_heat"            # J/(kg K)
DENSITY = "density"                        # kg/m^3
YOUNGS_MODULUS = "youngs_modulus"          # Pa
POISSON_RATIO = "poisson_ratio"            # -
YIELD_STRESS = "yield_stress"              # Pa
THERMAL_EXPANSION = "thermal_expansion"    # 1/K, secant from the reference temperature
HARDENING_MODULUS = "hardening_modulus"    # Pa, linear isotropic hardening

REQUIRED_PROPERTIES = (
    CONDUCTIVITY, SPECIFIC_HEAT, DENSITY, YOUNGS_MODULUS,
    POISSON_RATIO, YIELD_STRESS, THERMAL_EXPANSION,
)
ALL_PROPERTIES = REQUIRED_PROPERTIES + (HARDENING_MODULUS,)

# Library key -> property name
_LIBRARY_KEYS = {
    "k_w_mk": CONDUCTIVITY,
    "cp_j_kgk": SPECIFIC_HEAT,
    "rho_kg_m3": DENSITY,
    "E_pa": YOUNGS_MODULUS,
    "nu": POISSON_RATIO,
    "yield_pa": YIELD_STRESS,
    "alpha_1_k": THERMAL_EXPANSION,
    "hardening_pa": HARDENING_MODULUS,
}


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PropertyCurve:
    """Piecewise-linear property table, clamped outside its temperature range."""
    temperatures: NDArray[np.float64]
    values: NDArray[np.float64]

    def __call__(self, temperature):
        return np.interp(temperature, self.temperatures, self.values)

    def integral(self, temperature):
        """Exact integral of the clamped curve from the first table temperature."""
        t, v = self.temperatures, self.values
        T = np.asarray(temperature, dtype=float)
        if t.size == 1:
            return v[0] * (T - t[0])
        cumulative = np.concatenate(([0.0], np.cumsum(0.5 * (v[1:] + v[:-1]) * np.diff(t))))
        i = np.clip(np.searchsorted(t, T, side="right") - 1, 0, t.size - 2)
        d = np.clip(T, t[0], t[-1]) - t[i]
        slope = (v[i + 1] - v[i]) / (t[i + 1] - t[i])
        inside = cumulative[i] + v[i] * d + 0.5 * slope * d * d
        return (inside + v[0] * np.minimum(T - t[0], 0.0)
                + v[-1] * np.maximum(T - t[-1], 0.0))

    @classmethod
    def constant(cls, value: float) -> "PropertyCurve":
        return cls(np.array([0.0]), np.array([float(value)]))


@dataclass(frozen=True)
class JMAKKinetics:
    """JMAK kinetics for one diffusional product: X = 1 - exp(-k(T) t^n).

    ``k(T)`` is a Gaussian C-curve centred on the nose temperature and is
    zero outside ``[t_lower, t_upper]``.
    """
    n: float
    b_max: float
    t_nose: float
    sigma: float
    t_upper: float
    t_lower: float

    def rate_constant(self, temperature):
        T = np.asarray(temperature, dtype=float)
        k = self.b_max * np.exp(-0.5 * ((T - self.t_nose) / self.sigma) ** 2)
        return np.where((T >= self.t_lower) & (T <= self.t_upper), k, 0.0)


@dataclass(frozen=True)
class TransformationData:
    austenitization_temp: float            # Ac3, reset temperature [C]
    ms_temp: float                         # martensite start [C]
    km_alpha: float = 0.011                # Koistinen-Marburger [1/K]
    martensite_volume_change: float = 0.012  # dV/V of austenite -> martensite
    trip_coefficient: float = 5.0e-11      # Greenwood-Johnson K [1/Pa]
    diffusional: dict = field(default_factory=dict)  # phase name -> JMAKKinetics


@dataclass(frozen=True)
class MeltingData:
    solidus: float                         # [C]
    liquidus: float                        # [C]
    latent_heat: float                     # [J/kg]
    pool_onset: float                      # conductivity ramp start [C]
    pool_full: float                       # conductivity ramp end [C]
    pool_conductivity_factor: float = 1.0

    def liquid_fraction(self, temperature):
        T = np.asarray(temperature, dtype=float)
        return np.clip((T - self.solidus) / (self.liquidus - self.solidus), 0.0, 1.0)

    def conductivity_factor(self, temperature):
        T = np.asarray(temperature, dtype=float)
        ramp = np.clip((T - self.pool_onset) / (self.pool_full - self.pool_onset), 0.0, 1.0)
        return 1.0 + (self.pool_conductivity_factor - 1.0) * ramp


@dataclass(frozen=True)
class MaterialDefinition:
    name: str
    curves: dict
    transformation: Optional[TransformationData] = None
    annealing_temp: Optional[float] = None
    melting: Optional[MeltingData] = None


# ---------------------------------------------------------------------------
# Material property library
# ---------------------------------------------------------------------------
# Keys:
#   temperature_c    -- shared temperature axis [C]
#   k_w_mk           -- Thermal conductivity [W/(m*K)]
#   cp_j_kgk         -- Specific heat capacity [J/(kg*K)]
#   rho_kg_m3        -- Density [kg/m^3]
#   E_pa             -- Young's modulus [Pa]
#   nu               -- Poisson's ratio [-]
#   yield_pa         -- Initial yield stress [Pa]
#   alpha_1_k        -- Secant thermal expansion coefficient [1/K]
#   hardening_pa     -- Linear isotropic hardening modulus [Pa] (optional)
#   annealing_temp_c -- Plastic strain reset temperature [C] (optional)
#   transformation   -- Solid-state phase transformation data (optional)
#   melting          -- Solidus / liquidus, latent heat and weld-pool
#                       conductivity ramp (optional)
#
# A property may be a scalar (constant), a list on the shared axis, or a
# {"temperature_c": [...], "values": [...]} table of its own.
# ---------------------------------------------------------------------------

WELD_MATERIALS: dict[str, dict] = {
    "S355": {
        "temperature_c": [20, 100, 200, 300, 400, 500, 600, 700, 800, 900, 1000, 1200, 1500],
        "k_w_mk": [51.0, 50.0, 47.5, 44.5, 41.5, 38.0, 35.0, 31.5, 27.5, 26.5, 27.5, 29.5, 33.0],
        "cp_j_kgk": [450, 485, 520, 555, 600, 660, 750, 1000, 800, 650, 640, 660, 700],
        "rho_kg_m3": 7850.0,
        "E_pa": [210e9, 205e9, 200e9, 190e9, 175e9, 155e9, 125e9, 80e9, 40e9, 25e9, 15e9, 10e9, 5e9],
        "nu": [0.29, 0.29, 0.30, 0.30, 0.31, 0.31, 0.32, 0.33, 0.34, 0.35, 0.36, 0.38, 0.40],
        "yield_pa": [355e6, 340e6, 315e6, 280e6, 250e6, 210e6, 160e6, 100e6, 60e6, 40e6, 25e6, 15e6, 10e6],
        "alpha_1_k": [11.5e-6, 12.0e-6, 12.5e-6, 13.0e-6, 13.4e-6, 13.8e-6, 14.2e-6,
                      14.5e-6, 14.0e-6, 14.5e-6, 15.0e-6, 15.5e-6, 16.0e-6],
        "hardening_pa": [2.0e9, 1.9e9, 1.8e9, 1.6e9, 1.4e9, 1.1e9, 0.8e9,
                         0.5e9, 0.3e9, 0.2e9, 0.1e9, 0.05e9, 0.02e9],
        "annealing_temp_c": 1450.0,
        # Pool conductivity ramp calibrated on the 200 A / 25 V bead-on-plate
        # reference weld.
        "melting": {
            "solidus_c": 1440.0,
            "liquidus_c": 1520.0,
            "latent_heat_j_kg": 2.7e5,
            "pool_onset_c": 1600.0,
            "pool_full_c": 1700.0,
            "pool_conductivity_factor": 100.0,
        },
        "transformation": {
            "austenitization_temp_c": 840.0,
            "ms_c": 420.0,
            "km_alpha": 0.011,
            "martensite_volume_change": 0.012,
            "trip_coefficient": 5.0e-11,
            "diffusional": {
                "ferrite": {"n": 2.0, "b_max": 0.02, "t_nose": 700.0, "sigma": 60.0,
                            "t_upper": 840.0, "t_lower": 600.0},
                "pearlite": {"n": 1.5, "b_max": 0.01, "t_nose": 620.0, "sigma": 50.0,
                             "t_upper": 720.0, "t_lower": 550.0},
                "bainite": {"n": 2.0, "b_max": 0.05, "t_nose": 480.0, "sigma": 40.0,
                            "t_upper": 550.0, "t_lower": 420.0},
            },
        },
    },
    "316L": {
        "temperature_c": [20, 100, 200, 400, 600, 800, 1000, 1200, 1400],
        "k_w_mk": [14.6, 15.5, 17.0, 19.5, 22.0, 24.5, 26.5, 28.5, 31.0],
        "cp_j_kgk": [470, 490, 515, 545, 565, 585, 605, 625, 645],
        "rho_kg_m3": 7960.0,
        "E_pa": [195e9, 190e9, 182e9, 166e9, 150e9, 130e9, 100e9, 50e9, 10e9],
        "nu": 0.3,
        "yield_pa": [290e6, 250e6, 210e6, 175e6, 150e6, 120e6, 60e6, 25e6, 10e6],
        "alpha_1_k": [15.9e-6, 16.2e-6, 16.8e-6, 17.5e-6, 18.1e-6, 18.6e-6, 19.1e-6, 19.5e-6, 19.9e-6],
        "hardening_pa": [1.5e9, 1.4e9, 1.3e9, 1.1e9, 0.9e9, 0.6e9, 0.3e9, 0.1e9, 0.02e9],
        "annealing_temp_c": 1350.0,
        "melting": {
            "solidus_c": 1375.0,
            "liquidus_c": 1400.0,
            "latent_heat_j_kg": 2.7e5,
            "pool_onset_c": 1480.0,
            "pool_full_c": 1580.0,
            "pool_conductivity_factor": 100.0,
        },
    },
}

_ALIASES: dict[str, str] = {
    "s355": "S355",
    "s355j2": "S355",
    "mild steel": "S355",
    "316l": "316L",
    "aisi 316l": "316L",
    "stainless": "316L",
}


def get_material(name: str) -> Optional[dict]:
    """Look up library properties by name (case-insensitive, alias-aware).

    Returns
    -------
    dict or None
        A **copy** of the property dictionary, or ``None`` if not found.
    """
    if name in WELD_MATERIALS:
        return dict(WELD_MATERIALS[name])

    key = _ALIASES.get(name.lower().strip())
    if key is not None:
        return dict(WELD_MATERIALS[key])

    return None


def list_materials() -> list[str]:
    """Return a sorted list of canonical material names."""
    return sorted(WELD_MATERIALS.keys())


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------

def _parse_curve(name: str, prop: str, raw, axis) -> PropertyCurve:
    if isinstance(raw, PropertyCurve):
        return raw
    if isinstance(raw, dict):
        temps, values = raw.get("temperature_c"), raw.get("values")
    elif np.isscalar(raw):
        return PropertyCurve.constant(float(raw))
    else:
        temps, values = axis, raw
    if temps is None or values is None:
        raise InvalidMaterial(f"{name}: {prop} table needs temperatures and values")
    temps = np.asarray(temps, dtype=float)
    values = np.asarray(values, dtype=float)
    if temps.ndim != 1 or temps.shape != values.shape or temps.size == 0:
        raise InvalidMaterial(
            f"{name}: {prop} table has {temps.size} temperatures and {values.size} values"
        )
    return PropertyCurve(temps, values)


def _parse_transformation(name: str, raw: dict) -> TransformationData:
    try:
        kinetics = {
            phase: JMAKKinetics(**params)
            for phase, params in (raw.get("diffusional") or {}).items()
        }
        return TransformationData(
            austenitization_temp=float(raw["austenitization_temp_c"]),
            ms_temp=float(raw["ms_c"]),
            km_alpha=float(raw.get("km_alpha", 0.011)),
            martensite_volume_change=float(raw.get("martensite_volume_change", 0.012)),
            trip_coefficient=float(raw.get("trip_coefficient", 5.0e-11)),
            diffusional=kinetics,
        )
    except (KeyError, TypeError) as exc:
        raise InvalidMaterial(f"{name}: malformed transformation block ({exc})") from None


def _parse_melting(name: str, raw: dict) -> MeltingData:
    try:
        liquidus = float(raw["liquidus_c"])
        onset = float(raw.get("pool_onset_c", liquidus))
        return MeltingData(
            solidus=float(raw["solidus_c"]),
            liquidus=liquidus,
            latent_heat=float(raw.get("latent_heat_j_kg", 0.0)),
            pool_onset=onset,
            pool_full=float(raw.get("pool_full_c", onset + 100.0)),
            pool_conductivity_factor=float(raw.get("pool_conductivity_factor", 1.0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidMaterial(f"{name}: malformed melting block ({exc})") from None


def definition_from_dict(name: str, data: dict) -> MaterialDefinition:
    """Build a ``MaterialDefinition`` from a library-format dictionary."""
    axis = data.get("temperature_c")
    curves = {}
    for key, prop in _LIBRARY_KEYS.items():
        if key in data:
            curves[prop] = _parse_curve(name, prop, data[key], axis)
    transformation = None
    if data.get("transformation"):
        transformation = _parse_transformation(name, data["transformation"])
    melting = None
    if data.get("melting"):
        melting = _parse_melting(name, data["melting"])
    annealing = data.get("annealing_temp_c")
    return MaterialDefinition(
        name=name,
        curves=curves,
        transformation=transformation,
        annealing_temp=None if annealing is None else float(annealing),
        melting=melting,
    )


def _validate(definition: MaterialDefinition) -> None:
    name = definition.name
    missing = [p for p in REQUIRED_PROPERTIES if p not in definition.curves]
    if missing:
        raise InvalidMaterial(f"{name}: missing required properties {missing}")

    for prop, curve in definition.curves.items():
        if prop not in ALL_PROPERTIES:
            raise InvalidMaterial(f"{name}: unknown property {prop!r}")
        t, v = curve.temperatures, curve.values
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(v))):
            raise InvalidMaterial(f"{name}: {prop} table contains NaN or inf")
        if t.size > 1 and np.any(np.diff(t) <= 0.0):
            raise InvalidMaterial(
                f"{name}: {prop} temperatures must be strictly increasing"
            )
        if prop == POISSON_RATIO:
            if np.any(v < 0.0) or np.any(v >= 0.5):
                raise InvalidMaterial(f"{name}: Poisson ratio must lie in [0, 0.5)")
        elif prop in (HARDENING_MODULUS, THERMAL_EXPANSION):
            if np.any(v < 0.0):
                raise InvalidMaterial(f"{name}: {prop} must be non-negative")
        elif np.any(v <= 0.0):
            raise InvalidMaterial(f"{name}: {prop} must be positive")

    melt = definition.melting
    if melt is not None:
        if melt.liquidus <= melt.solidus:
            raise InvalidMaterial(f"{name}: liquidus must lie above solidus")
        if melt.latent_heat < 0.0:
            raise InvalidMaterial(f"{name}: latent heat must be non-negative")
        if melt.pool_full <= melt.pool_onset:
            raise InvalidMaterial(f"{name}: pool conductivity ramp is empty")
        if melt.pool_conductivity_factor < 1.0:
            raise InvalidMaterial(f"{name}: pool conductivity factor must be >= 1")

    tr = definition.transformation
    if tr is not None:
        if tr.ms_temp >= tr.austenitization_temp:
            raise InvalidMaterial(f"{name}: Ms must lie below the austenitization temperature")
        if tr.km_alpha <= 0.0:
            raise InvalidMaterial(f"{name}: Koistinen-Marburger alpha must be positive")
        for phase, kin in tr.diffusional.items():
            if kin.n <= 0.0 or kin.b_max <= 0.0 or kin.sigma <= 0.0:
                raise InvalidMaterial(f"{name}: JMAK parameters of {phase} must be positive")
            if kin.t_lower >= kin.t_upper:
                raise InvalidMaterial(f"{name}: {phase} window is empty")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class MaterialModel:
    """Registry of validated material definitions with clamped lookup."""

    def __init__(self) -> None:
        self._materials: dict[str, MaterialDefinition] = {}

    @classmethod
    def from_library(cls, names: Optional[list[str]] = None) -> "MaterialModel":
        model = cls()
        for name in names or list_materials():
            data = get_material(name)
            if data is None:
                raise InvalidMaterial(f"Unknown library material {name!r}")
            canonical = _ALIASES.get(name.lower().strip(), name)
            model.register(canonical, data)
        return model

    def register(
        self, material_id: str, definition: Union[MaterialDefinition, dict]
    ) -> MaterialDefinition:
        """Validate and register a material.

        Raises
        ------
        InvalidMaterial
            If a required curve is missing or non-monotonic (its temperature
            axis is not strictly increasing) or values are out of physical
            range.  Values themselves may rise and fall with temperature.
        """
        if isinstance(definition, dict):
            definition = definition_from_dict(material_id, definition)
        _validate(definition)
        self._materials[material_id] = definition
        logger.debug("Registered material %s", material_id)
        return definition

    def get(self, material_id: str) -> MaterialDefinition:
        try:
            return self._materials[material_id]
        except KeyError:
            raise InvalidMaterial(f"Material {material_id!r} is not registered") from None

    def property_at(self, material_id: str, kind: str, temperature):
        """Clamped piecewise-linear value of ``kind`` at ``temperature``.

        ``temperature`` may be a scalar or an array; the result has the same
        shape.  The optional hardening modulus evaluates to zero when absent.
        """
        definition = self.get(material_id)
        curve = definition.curves.get(kind)
        if curve is None:
            if kind == HARDENING_MODULUS:
                return np.zeros_like(np.asarray(temperature, dtype=float))
            raise ValueError(f"Unknown material property {kind!r}")
        if kind == CONDUCTIVITY and definition.melting is not None:
            return curve(temperature) * definition.melting.conductivity_factor(temperature)
        return curve(temperature)

    def enthalpy_at(self, material_id: str, temperature):
        """Specific enthalpy [J/kg] relative to the first cp table temperature.

        Includes the latent heat of fusion when the material has a melting
        block.
        """
        definition = self.get(material_id)
        h = definition.curves[SPECIFIC_HEAT].integral(temperature)
        if definition.melting is not None:
            melt = definition.melting
            h = h + melt.latent_heat * melt.liquid_fraction(temperature)
        return h

    def apparent_specific_heat_at(self, material_id: str, temperature):
        """Derivative of ``enthalpy_at``: cp plus the latent heat spread over the melting range."""
        definition = self.get(material_id)
        cp = definition.curves[SPECIFIC_HEAT](temperature)
        melt = definition.melting
        if melt is None or melt.latent_heat == 0.0:
            return cp
        T = np.asarray(temperature, dtype=float)
        melting = (T >= melt.solidus) & (T <= melt.liquidus)
        return cp + np.where(melting, melt.latent_heat / (melt.liquidus - melt.solidus), 0.0)

    def __contains__(self, material_id: str) -> bool:
        return material_id in self._materials

    @property
    def ids(self) -> list[str]:
        return list(self._materials)


class MaterialField:
    """Per-element material assignment with vectorised property evaluation.

    Parameters
    ----------
    model : MaterialModel
    element_tags : (E,) integer tags from the mesh.
    assignment : str or dict
        One material id for every element, or a mapping tag -> material id.
    """

    def __init__(self, model: MaterialModel, element_tags: NDArray[np.int64],
                 assignment: Union[str, dict]) -> None:
        self.model = model
        tags = np.asarray(element_tags, dtype=np.int64)
        if isinstance(assignment, str):
            assignment = {int(t): assignment for t in np.unique(tags)}
        unassigned = sorted(set(np.unique(tags).tolist()) - set(assignment))
        if unassigned:
            raise InvalidMaterial(f"No material assigned to element tags {unassigned}")

        self.material_ids: list[str] = []
        for mid in assignment.values():
            model.get(mid)
            if mid not in self.material_ids:
                self.material_ids.append(mid)
        lookup = {tag: self.material_ids.index(mid) for tag, mid in assignment.items()}
        self.element_index = np.array([lookup[int(t)] for t in tags], dtype=np.int64)

    @property
    def uniform(self) -> bool:
        return len(self.material_ids) == 1

    def _per_material(self, lookup, temperature: NDArray[np.float64],
                      sl: slice) -> NDArray[np.float64]:
        if self.uniform:
            return lookup(self.material_ids[0], temperature)
        index = self.element_index[sl]
        out = np.empty_like(temperature, dtype=float)
        for i in np.unique(index):
            mask = index == i
            out[mask] = lookup(self.material_ids[i], temperature[mask])
        return out

    def evaluate(self, kind: str, temperature: NDArray[np.float64],
                 sl: slice = slice(None)) -> NDArray[np.float64]:
        """Property values for ``temperature`` shaped (Ec, ...) over elements ``sl``."""
        return self._per_material(
            lambda mid, T: self.model.property_at(mid, kind, T), temperature, sl,
        )

    def enthalpy(self, temperature: NDArray[np.float64],
                 sl: slice = slice(None)) -> NDArray[np.float64]:
        return self._per_material(self.model.enthalpy_at, temperature, sl)

    def apparent_specific_heat(self, temperature: NDArray[np.float64],
                               sl: slice = slice(None)) -> NDArray[np.float64]:
        return self._per_material(self.model.apparent_specific_heat_at, temperature, sl)

    def per_element(self, getter) -> NDArray[np.float64]:
        """Per-element scalar from each definition, NaN where ``getter`` returns None."""
        values = np.array([
            np.nan if getter(self.model.get(mid)) is None else getter(self.model.get(mid))
            for mid in self.material_ids
        ], dtype=float)
        return values[self.element_index]

    def node_groups(self, connectivity: NDArray[np.int64],
                    n_nodes: int) -> dict[str, NDArray[np.int64]]:
        """Nodes grouped by material; a shared node takes its lowest-index element's material."""
        n_elements = connectivity.shape[0]
        first = np.full(n_nodes, n_elements, dtype=np.int64)
        np.minimum.at(
            first, connectivity.ravel(),
            np.repeat(np.arange(n_elements), connectivity.shape[1]),
        )
        node_mat = np.full(n_nodes, -1, dtype=np.int64)
        touched = first < n_elements
        node_mat[touched] = self.element_index[first[touched]]
        return {
            self.material_ids[i]: np.nonzero(node_mat == i)[0]
            for i in range(len(self.material_ids))
            if np.any(node_mat == i)
        }
