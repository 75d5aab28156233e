"""Tests for structured box mesh generation."""
from __future__ import annotations

import numpy as np
import pytest

from arc_weld_master.fea.config import WeldMesh, validate_mesh
from arc_weld_master.fea.mesher import FACE_SETS, BoxMesher


class TestStructuredBox:
    def test_hex8_counts(self):
        mesh = BoxMesher.structured_box(0.2, 0.1, 0.01, 10, 5, 2)
        assert isinstance(mesh, WeldMesh)
        assert mesh.element_type == "HEX8"
        assert mesh.n_nodes == 11 * 6 * 3
        assert mesh.n_elements == 10 * 5 * 2
        assert mesh.elements.shape[1] == 8
        assert mesh.mesh_stats["num_nodes"] == mesh.n_nodes
        assert mesh.mesh_stats["cells"] == [10, 5, 2]

    def test_tet4_counts(self):
        mesh = BoxMesher.structured_box(0.2, 0.1, 0.01, 4, 3, 2, "TET4")
        assert mesh.n_elements == 6 * 4 * 3 * 2
        assert mesh.elements.shape[1] == 4

    @pytest.mark.parametrize("element_type", ["HEX8", "TET4"])
    def test_volume_and_orientation(self, element_type):
        mesh = BoxMesher.structured_box(0.03, 0.02, 0.01, 3, 2, 2, element_type)
        geometry = validate_mesh(mesh)
        assert np.all(geometry.volumes > 0.0)
        assert geometry.volumes.sum() == pytest.approx(0.03 * 0.02 * 0.01, rel=1e-12)

    def test_bounding_box_and_origin(self):
        mesh = BoxMesher.structured_box(0.2, 0.1, 0.01, 4, 2, 1, origin=(0.1, -0.05, 0.0))
        np.testing.assert_allclose(mesh.nodes.min(axis=0), [0.1, -0.05, 0.0])
        np.testing.assert_allclose(mesh.nodes.max(axis=0), [0.3, 0.05, 0.01])

    def test_face_sets(self):
        mesh = BoxMesher.structured_box(0.2, 0.1, 0.01, 4, 2, 1)
        assert set(FACE_SETS) <= set(mesh.node_sets)
        top = mesh.node_set("z_max")
        assert top.size == 5 * 3
        np.testing.assert_allclose(mesh.nodes[top, 2], 0.01)
        assert mesh.node_set("x_min").size == 3 * 2
        assert np.intersect1d(mesh.node_set("y_min"), mesh.node_set("y_max")).size == 0

    def test_tet4_conforming(self):
        """Each interior triangle is shared by exactly two tetrahedra."""
        mesh = BoxMesher.structured_box(0.02, 0.02, 0.02, 2, 2, 2, "TET4")
        faces = np.concatenate([
            mesh.elements[:, [0, 1, 2]], mesh.elements[:, [0, 1, 3]],
            mesh.elements[:, [0, 2, 3]], mesh.elements[:, [1, 2, 3]],
        ])
        _, counts = np.unique(np.sort(faces, axis=1), axis=0, return_counts=True)
        assert counts.max() == 2
        # boundary: 6 faces x 4 cells x 2 triangles
        assert np.sum(counts == 1) == 6 * 4 * 2

    @pytest.mark.parametrize("args", [
        (0.1, 0.1, 0.1, 0, 1, 1),
        (0.1, -0.1, 0.1, 1, 1, 1),
    ])
    def test_invalid_arguments(self, args):
        with pytest.raises(ValueError):
            BoxMesher.structured_box(*args)

    def test_unknown_element_type(self):
        with pytest.raises(ValueError, match="Unsupported element type"):
            BoxMesher.structured_box(0.1, 0.1, 0.1, 1, 1, 1, "TET10")


class TestFromCoordinates:
    def test_nonuniform_axes(self):
        x = [0.0, 0.01, 0.03, 0.06]
        mesh = BoxMesher.from_coordinates(x, [0.0, 0.02], [0.0, 0.005, 0.01])
        assert mesh.n_nodes == 4 * 2 * 3
        assert mesh.mesh_stats["min_spacing_m"] == pytest.approx(0.005)
        np.testing.assert_allclose(np.unique(mesh.nodes[:, 0]), x)

    def test_non_increasing_rejected(self):
        with pytest.raises(ValueError, match="strictly increasing"):
            BoxMesher.from_coordinates([0.0, 0.02, 0.01], [0.0, 1.0], [0.0, 1.0])


class TestGradedAxis:
    def test_endpoints_and_monotonic(self):
        y = BoxMesher.graded_axis(0.0, 0.1, 0.001, 0.005, 0.05, 0.01)
        assert y[0] == pytest.approx(0.0)
        assert y[-1] == pytest.approx(0.1)
        assert np.all(np.diff(y) > 0.0)

    def test_fine_band_around_focus(self):
        y = BoxMesher.graded_axis(0.0, 0.1, 0.001, 0.005, 0.05, 0.01)
        h = np.diff(y)
        mid = 0.5 * (y[1:] + y[:-1])
        band = np.abs(mid - 0.05) < 0.005
        np.testing.assert_allclose(h[band], 0.001, rtol=1e-9)
        assert h.max() <= 0.005 * 1.5
        assert h.max() > 0.002

    def test_focus_at_edge(self):
        y = BoxMesher.graded_axis(0.0, 0.05, 0.001, 0.004, 0.0, 0.006)
        assert y[0] == pytest.approx(0.0)
        assert np.diff(y)[0] == pytest.approx(0.001)

    def test_invalid(self):
        with pytest.raises(ValueError):
            BoxMesher.graded_axis(0.1, 0.0, 0.001, 0.005, 0.05, 0.01)
        with pytest.raises(ValueError):
            BoxMesher.graded_axis(0.0, 0.1, 0.01, 0.005, 0.05, 0.01)
