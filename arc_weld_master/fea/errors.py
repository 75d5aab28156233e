"""Exception hierarchy for weld simulation runs.

Validation errors (``InvalidMesh``, ``InvalidMaterial``) are raised before any
solving starts.  Run-time errors carry the partial output of the stage that
failed in ``partial`` so the caller can still package what was computed.
"""
from __future__ import annotations

from typing import Any, Optional


class WeldSimError(Exception):
    """Base class for all weld simulation errors."""

    def __init__(self, message: str, partial: Any = None,
                 step: Optional[int] = None) -> None:
        super().__init__(message)
        self.partial = partial
        self.step = step


class InvalidMesh(WeldSimError):
    """Mesh has degenerate or disconnected elements, or missing sets."""


class InvalidMaterial(WeldSimError):
    """Material definition is incomplete or its tables are malformed."""


class ThermalDivergence(WeldSimError):
    """Thermal step failed after all timestep halvings."""


class InvalidThermalHistory(WeldSimError):
    """A node's temperature history cannot be handled by the phase model."""


class MechanicalDivergence(WeldSimError):
    """Newton iteration failed after all load-increment bisections."""


class Cancelled(WeldSimError):
    """The run observed a cancellation request between timesteps."""
