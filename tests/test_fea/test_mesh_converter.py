"""Tests for meshio import and export of weld meshes."""
from __future__ import annotations

import meshio
import numpy as np
import pytest

from arc_weld_master.fea.errors import InvalidMesh
from arc_weld_master.fea.mesh_converter import MeshConverter, load_mesh
from arc_weld_master.fea.mesher import BoxMesher

# Unit tetrahedron plus a second one sharing the face (1, 2, 3)
POINTS = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
    [1.0, 1.0, 1.0],
])
TETS = np.array([[0, 1, 2, 3], [1, 2, 4, 3]])


class TestFromMeshio:
    def test_tetra(self):
        msh = meshio.Mesh(POINTS, [("tetra", TETS)])
        mesh = MeshConverter.from_meshio(msh)
        assert mesh.element_type == "TET4"
        assert mesh.n_elements == 2
        assert mesh.element_tags is None
        np.testing.assert_array_equal(mesh.tags(), [0, 0])

    def test_hexahedron_from_box(self):
        box = BoxMesher.structured_box(0.02, 0.01, 0.01, 2, 1, 1)
        msh = meshio.Mesh(box.nodes, [("hexahedron", box.elements)])
        mesh = MeshConverter.from_meshio(msh)
        assert mesh.element_type == "HEX8"
        np.testing.assert_array_equal(mesh.elements, box.elements)

    def test_physical_tags(self):
        msh = meshio.Mesh(
            POINTS, [("tetra", TETS)], cell_data={"gmsh:physical": [np.array([1, 2])]},
        )
        np.testing.assert_array_equal(MeshConverter.from_meshio(msh).tags(), [1, 2])

    def test_custom_tag_key(self):
        msh = meshio.Mesh(POINTS, [("tetra", TETS)], cell_data={"zone": [np.array([7, 8])]})
        np.testing.assert_array_equal(
            MeshConverter.from_meshio(msh, tag_key="zone").tags(), [7, 8],
        )
        with pytest.raises(InvalidMesh, match="not found"):
            MeshConverter.from_meshio(msh, tag_key="material")

    def test_facets_ignored_and_named_surfaces(self):
        msh = meshio.Mesh(
            POINTS,
            [("triangle", np.array([[0, 1, 2]])), ("tetra", TETS)],
            cell_data={"gmsh:physical": [np.array([5]), np.array([1, 1])]},
        )
        msh.field_data = {"bottom": np.array([5, 2]), "body": np.array([1, 3])}
        mesh = MeshConverter.from_meshio(msh)
        assert mesh.n_elements == 2
        np.testing.assert_array_equal(mesh.tags(), [1, 1])
        np.testing.assert_array_equal(mesh.node_set("bottom"), [0, 1, 2])
        assert "body" not in mesh.node_sets

    def test_point_sets(self):
        msh = meshio.Mesh(POINTS, [("tetra", TETS)], point_sets={"root": np.array([3, 0])})
        np.testing.assert_array_equal(MeshConverter.from_meshio(msh).node_set("root"), [0, 3])

    def test_planar_points_padded(self):
        msh = meshio.Mesh(POINTS[:, :2], [("tetra", TETS)])
        assert MeshConverter.from_meshio(msh).nodes.shape == (5, 3)

    def test_no_volume_cells(self):
        msh = meshio.Mesh(POINTS, [("triangle", np.array([[0, 1, 2]]))])
        with pytest.raises(InvalidMesh, match="No supported volume cells"):
            MeshConverter.from_meshio(msh)

    def test_mixed_volume_cells(self):
        box = BoxMesher.structured_box(0.01, 0.01, 0.01, 1, 1, 1)
        msh = meshio.Mesh(
            box.nodes, [("hexahedron", box.elements), ("tetra", np.array([[0, 1, 2, 4]]))],
        )
        with pytest.raises(InvalidMesh, match="Mixed"):
            MeshConverter.from_meshio(msh)


class TestToMeshio:
    def test_round_trip_in_memory(self):
        box = BoxMesher.structured_box(0.02, 0.01, 0.01, 2, 2, 1, "TET4")
        box.element_tags = np.arange(box.n_elements) % 2
        msh = MeshConverter.to_meshio(box, point_data={"temperature": np.full(box.n_nodes, 20.0)})
        assert msh.cells[0].type == "tetra"
        assert "temperature" in msh.point_data
        back = MeshConverter.from_meshio(msh)
        np.testing.assert_array_equal(back.tags(), box.tags())
        np.testing.assert_array_equal(back.node_set("z_max"), box.node_set("z_max"))


class TestLoadMesh:
    def test_vtu_file(self, tmp_path):
        box = BoxMesher.structured_box(0.02, 0.01, 0.01, 2, 1, 1)
        box.element_tags = np.array([3, 4])
        path = tmp_path / "plate.vtu"
        meshio.Mesh(
            box.nodes, [("hexahedron", box.elements)],
            cell_data={"gmsh:physical": [box.element_tags]},
        ).write(str(path))
        mesh = load_mesh(str(path))
        assert mesh.element_type == "HEX8"
        assert mesh.n_nodes == box.n_nodes
        np.testing.assert_allclose(mesh.nodes, box.nodes)
        np.testing.assert_array_equal(mesh.tags(), [3, 4])
        assert mesh.mesh_stats["source"] == str(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_mesh(str(tmp_path / "nope.msh"))
