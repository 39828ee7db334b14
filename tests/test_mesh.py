"""
Tests for mesh generation, validation and refinement.
"""

import numpy as np
import pytest

from thermal_engine.core.errors import GeometryError
from thermal_engine.core.mesh import ElementType, MeshGenerator, ThermalMesh


class TestMeshGenerator:

    def test_node_numbering_is_row_major(self):
        mesh = MeshGenerator.rectangle(3e-3, 2e-3, 4, 3, 'BOARD')
        assert mesh.n_nodes == 12
        assert mesh.n_elements == 6
        # node id = iy * nx + ix
        np.testing.assert_allclose(mesh.coordinates[5], [1e-3, 1e-3])
        np.testing.assert_allclose(mesh.coordinates[11], [3e-3, 2e-3])

    def test_node_sets(self):
        mesh = MeshGenerator.rectangle(1.0, 1.0, 4, 4, 'BOARD')
        np.testing.assert_array_equal(mesh.get_node_set('left'), [0, 4, 8, 12])
        np.testing.assert_array_equal(mesh.get_node_set('top'), [12, 13, 14, 15])
        assert len(np.unique(mesh.get_node_set('boundary'))) == 12
        assert mesh.get_node_set('all').size == 16
        with pytest.raises(GeometryError):
            mesh.get_node_set('missing')

    def test_tri3_splits_each_cell(self):
        mesh = MeshGenerator.rectangle(1.0, 1.0, 3, 3, 'BOARD', element_type=ElementType.TRI3)
        assert mesh.n_elements == 8
        assert mesh.element_areas.sum() == pytest.approx(1.0)

    def test_area_and_volume(self, grid_20):
        assert grid_20.element_areas.sum() == pytest.approx((19e-3) ** 2)
        assert grid_20.element_volumes.sum() == pytest.approx((19e-3) ** 2 * 1.6e-3)
        assert grid_20.node_face_areas().sum() == pytest.approx((19e-3) ** 2)

    def test_boundary_mask(self):
        mesh = MeshGenerator.rectangle(1.0, 1.0, 4, 4, 'BOARD')
        assert mesh.boundary_mask().sum() == 12
        assert not mesh.boundary_mask()[5]

    def test_rejects_too_small_grid(self):
        with pytest.raises(GeometryError):
            MeshGenerator.rectangle(1.0, 1.0, 1, 4, 'BOARD')


class TestMeshValidation:

    def test_degenerate_element(self):
        coords = np.array([[0, 0], [1, 0], [2, 0]], dtype=float)
        mesh = ThermalMesh.from_arrays(coords, [[0, 1, 2]], 'BOARD')
        with pytest.raises(GeometryError, match="degenerate"):
            mesh.validate()

    def test_dangling_node(self):
        coords = np.array([[0, 0], [1, 0], [0, 1], [5, 5]], dtype=float)
        mesh = ThermalMesh.from_arrays(coords, [[0, 1, 2]], 'BOARD')
        with pytest.raises(GeometryError) as exc:
            mesh.validate()
        assert exc.value.details['node_ids'] == [3]

    def test_unknown_material(self, small_mesh):
        with pytest.raises(GeometryError, match="unknown material"):
            small_mesh.validate({'COPPER': object()})

    def test_connectivity_shape(self):
        with pytest.raises(GeometryError):
            ThermalMesh.from_arrays(np.zeros((4, 2)), [[0, 1]], 'BOARD')

    def test_from_arrays_detects_element_type(self):
        coords = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=float)
        mesh = ThermalMesh.from_arrays(coords, [[0, 1, 2, 3]], 'BOARD', node_sets={'hot': [2]})
        assert mesh.element_type is ElementType.QUAD4
        mesh.validate()
        np.testing.assert_array_equal(mesh.get_node_set('hot'), [2])


class TestMeshIdentity:

    def test_content_hash_tracks_materials(self):
        a = MeshGenerator.rectangle(1.0, 1.0, 3, 3, 'BOARD')
        b = MeshGenerator.rectangle(1.0, 1.0, 3, 3, 'BOARD')
        c = MeshGenerator.rectangle(1.0, 1.0, 3, 3, 'COPPER')
        assert a.content_hash() == b.content_hash()
        assert a.geometry_hash() == c.geometry_hash()
        assert a.content_hash() != c.content_hash()


class TestRefinement:

    def test_refined_halves_element_size(self, small_mesh):
        fine = small_mesh.refined(2)
        assert fine.grid.nx == 9
        h0 = small_mesh.characteristic_sizes()[1]
        h1 = fine.characteristic_sizes()[1]
        assert h1 == pytest.approx(h0 / 2)

    def test_refined_keeps_materials_and_node_sets(self):
        mesh = MeshGenerator.rectangle(2.0, 1.0, 3, 2, lambda ix, iy: 'CU' if ix == 1 else 'FR4')
        mesh.node_sets['sensor'] = np.array([1])
        fine = mesh.refined(2)
        assert fine.element_materials.count('CU') == 4
        np.testing.assert_allclose(fine.coordinates[fine.get_node_set('sensor')[0]],
                                   mesh.coordinates[1])

    def test_unstructured_mesh_cannot_refine(self):
        coords = np.array([[0, 0], [1, 0], [0, 1]], dtype=float)
        mesh = ThermalMesh.from_arrays(coords, [[0, 1, 2]], 'BOARD')
        with pytest.raises(GeometryError):
            mesh.refined(2)
