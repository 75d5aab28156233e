"""Mesh artifact import through meshio.

Reads any format meshio understands (Gmsh ``.msh``, VTK/VTU, XDMF, Abaqus
``.inp``, Medit ``.mesh`` ...) into a ``WeldMesh``:

* **Volume cells** -- ``tetra`` (TET4) or ``hexahedron`` (HEX8); a mesh
  must contain exactly one of the two.
* **Element tags** -- from ``gmsh:physical`` or ``medit:ref`` cell data
  (or a caller-supplied key); all zero when absent.
* **Node sets** -- meshio ``point_sets``, plus one set per named Gmsh
  physical surface built from the nodes of its facet cells.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

import meshio
import numpy as np

from arc_weld_master.fea.config import WeldMesh
from arc_weld_master.fea.elements import get_element
from arc_weld_master.fea.errors import InvalidMesh

logger = logging.getLogger(__name__)

_VOLUME_TYPES = {"tetra": "TET4", "hexahedron": "HEX8"}
_FACET_TYPES = ("triangle", "quad")
_TAG_KEYS = ("gmsh:physical", "medit:ref")


def load_mesh(path: str, tag_key: Optional[str] = None) -> WeldMesh:
    """Read a mesh file into a ``WeldMesh``.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    InvalidMesh
        If the file holds no (or mixed) supported volume cells.
    """
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Mesh file not found: {path}")
    msh = meshio.read(path)
    mesh = MeshConverter.from_meshio(msh, tag_key=tag_key)
    mesh.mesh_stats["source"] = path
    logger.info("Loaded %s: %d nodes, %d %s elements",
                path, mesh.n_nodes, mesh.n_elements, mesh.element_type)
    return mesh


class MeshConverter:
    """Convert between ``meshio.Mesh`` and ``WeldMesh``.

    All methods are ``@staticmethod`` so the class can be used without
    instantiation.
    """

    @staticmethod
    def from_meshio(msh, tag_key: Optional[str] = None) -> WeldMesh:
        volume = [
            (i, block) for i, block in enumerate(msh.cells) if block.type in _VOLUME_TYPES
        ]
        if not volume:
            raise InvalidMesh(
                f"No supported volume cells; expected one of {sorted(_VOLUME_TYPES)}"
            )
        kinds = {block.type for _, block in volume}
        if len(kinds) > 1:
            raise InvalidMesh(f"Mixed volume cell types are not supported: {sorted(kinds)}")
        cell_type = kinds.pop()

        elements = np.concatenate([block.data for _, block in volume]).astype(np.int64)
        tags = _volume_tags(msh, [i for i, _ in volume], tag_key)

        points = np.asarray(msh.points, dtype=float)
        if points.shape[1] == 2:
            points = np.column_stack([points, np.zeros(points.shape[0])])

        mesh = WeldMesh(
            nodes=points,
            elements=elements,
            element_type=_VOLUME_TYPES[cell_type],
            element_tags=tags,
            mesh_stats={
                "num_nodes": int(points.shape[0]),
                "num_elements": int(elements.shape[0]),
            },
        )
        for name, ids in (getattr(msh, "point_sets", None) or {}).items():
            mesh.add_node_set(name, ids)
        for name, ids in _physical_surface_sets(msh).items():
            mesh.add_node_set(name, ids)
        return mesh

    @staticmethod
    def to_meshio(mesh: WeldMesh, point_data: Optional[dict] = None):
        """``meshio.Mesh`` with the volume cells, element tags and node sets."""
        cell_type = get_element(mesh.element_type).MESHIO_TYPE
        return meshio.Mesh(
            points=mesh.nodes,
            cells=[(cell_type, mesh.elements)],
            point_data=dict(point_data or {}),
            cell_data={"gmsh:physical": [mesh.tags()]},
            point_sets={name: np.asarray(ids) for name, ids in mesh.node_sets.items()},
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _volume_tags(msh, block_ids: list[int], tag_key: Optional[str]) -> Optional[np.ndarray]:
    keys = (tag_key,) if tag_key else _TAG_KEYS
    for key in keys:
        arrays = msh.cell_data.get(key)
        if arrays is None:
            continue
        return np.concatenate([np.asarray(arrays[i]) for i in block_ids]).astype(np.int64)
    if tag_key:
        raise InvalidMesh(f"Cell data {tag_key!r} not found; available: {sorted(msh.cell_data)}")
    return None


def _physical_surface_sets(msh) -> dict[str, np.ndarray]:
    """Node sets for named 2-D Gmsh physical groups."""
    field_data = getattr(msh, "field_data", None) or {}
    physical = msh.cell_data.get("gmsh:physical")
    if not field_data or physical is None:
        return {}
    sets: dict[str, np.ndarray] = {}
    for name, (tag, dim) in ((n, v[:2]) for n, v in field_data.items()):
        if int(dim) != 2:
            continue
        nodes = [
            block.data[np.asarray(physical[i]) == tag].ravel()
            for i, block in enumerate(msh.cells)
            if block.type in _FACET_TYPES
        ]
        nodes = [n for n in nodes if n.size]
        if nodes:
            sets[name] = np.unique(np.concatenate(nodes))
    return sets
