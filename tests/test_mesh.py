# tests/test_mesh.py
import numpy as np
import pytest

from pyhpfem.core.geometry import Geometry
from pyhpfem.core.mesh import Mesh, Operation
from pyhpfem.errors import MeshError
from pyhpfem.utils.meshgen import structured_quad

from fem_helpers import box, interface_edge, two_quads, unit_interval, unit_square


def test_counts_2d():
    mesh = unit_square(2, 2)
    assert (mesh.num_vertices, mesh.num_edges, mesh.num_elements) == (9, 12, 4)
    assert mesh.num_bdr_elements == 8
    assert mesh.num_faces == 0
    assert sorted(mesh.bdr_attributes.tolist()) == [1, 2, 3, 4]
    assert not mesh.nonconforming and mesh.ncmesh is None


def test_counts_3d():
    mesh = box(2, 1, 1)
    assert (mesh.num_vertices, mesh.num_edges, mesh.num_faces) == (12, 20, 11)
    assert mesh.num_bdr_elements == 10
    assert mesh.face_geometries() == [Geometry.SQUARE]


def test_edge_orientation_follows_vertex_numbers():
    mesh = unit_square(1, 1)
    E, Eo = mesh.element_edges(0)
    for e, o in zip(E, Eo):
        a, b = mesh.edge_vertices(e)
        assert a < b
        assert o in ((0, 1), (1, 0))
    # top edge runs from vertex 2 to vertex 3 locally, i.e. against the global direction
    assert Eo[2] == (1, 0)


def test_mixed_dimension_rejected():
    nodes, quads = structured_quad(1.0, 1.0, nx=1, ny=1)
    with pytest.raises(MeshError):
        Mesh(nodes, [quads[0], [0, 1]], element_type=["quad", "segment"])
    with pytest.raises(MeshError):
        Mesh(nodes, quads, element_type="prism")


# =============================================================================
# refinement
# =============================================================================
def test_uniform_refinement_stays_conforming():
    mesh = unit_square(1, 1)
    seq = mesh.sequence
    mesh.uniform_refinement()
    assert mesh.sequence == seq + 1
    assert mesh.last_operation == Operation.REFINE
    assert mesh.num_elements == 4 and mesh.num_vertices == 9
    assert not mesh.nonconforming
    assert len(mesh.hanging_vertices()) == 0


def test_local_refinement_creates_hanging_vertex():
    mesh = two_quads()
    assert mesh.nonconforming
    assert mesh.num_elements == 5
    assert mesh.num_vertices == 11

    hanging = mesh.hanging_vertices()
    assert len(hanging) == 1
    np.testing.assert_allclose(mesh.vertices[hanging[0]], [1.0, 0.5])

    edges = mesh.ncmesh.edge_list
    assert len(edges.masters) == 1 and len(edges.slaves) == 2
    assert edges.masters[0].index == interface_edge(mesh)
    # slave spans in master coordinates, each oriented like the slave edge
    pms = edges.point_matrices[Geometry.SEGMENT]
    spans = sorted(tuple(pms[s.matrix][0].tolist()) for s in edges.slaves)
    assert spans == [(0.0, 0.5), (1.0, 0.5)]


def test_refinement_transforms():
    mesh = two_quads()
    tr = mesh.refinement_transforms()
    assert [e.parent for e in tr.embeddings] == [0, 0, 0, 0, 1]
    assert [e.matrix for e in tr.embeddings] == [1, 2, 3, 4, 0]
    pm = tr.point_matrices[Geometry.SQUARE]
    assert pm.shape == (5, 2, 4)
    np.testing.assert_allclose(pm[1], [[0, 0.5, 0.5, 0], [0, 0, 0.5, 0.5]])


def test_boundary_attributes_survive_refinement():
    mesh = two_quads()
    # bottom: two halves of the refined square plus the coarse one
    attrs = [mesh.bdr_attribute(b) for b in range(mesh.num_bdr_elements)]
    assert attrs.count(1) == 3 and attrs.count(3) == 3
    assert attrs.count(2) == 1 and attrs.count(4) == 2


def test_children_inherit_element_attribute():
    nodes, elems = structured_quad(2.0, 1.0, nx=2, ny=1)
    mesh = Mesh(nodes, elems, element_type="quad", element_attributes=[7, 3])
    mesh.refine([1])
    assert [mesh.element_attribute(i) for i in range(mesh.num_elements)] == [7, 3, 3, 3, 3]


def test_refine_errors():
    mesh = unit_square(1, 1)
    with pytest.raises(IndexError):
        mesh.refine([3])
    with pytest.raises(NotImplementedError):
        box(1, 1, 1).refine([0])


# =============================================================================
# derefinement
# =============================================================================
def test_derefine_restores_coarse_mesh():
    mesh = two_quads()
    assert mesh.derefinement_table() == [(0, 1, 2, 3)]
    assert mesh.derefine()
    assert mesh.last_operation == Operation.DEREFINE
    assert mesh.num_elements == 2 and mesh.num_vertices == 6
    tr = mesh.derefinement_transforms()
    assert [e.parent for e in tr.embeddings] == [0, 0, 0, 0, 1]
    assert len(mesh.hanging_vertices()) == 0
    # nothing left to merge
    assert not mesh.derefine()


def test_derefine_requires_nonconforming_mesh():
    with pytest.raises(MeshError):
        unit_square(1, 1).derefine()
    with pytest.raises(MeshError):
        unit_interval(2).derefinement_transforms()


def test_copy_is_independent():
    mesh = two_quads(refine_left=False)
    fine = mesh.copy()
    fine.uniform_refinement()
    assert mesh.num_elements == 2
    assert fine.num_elements == 8
