# tests/test_conforming.py
"""Hanging-node constraints ``cP`` / ``cR`` on locally refined meshes."""
import logging

import numpy as np
import pytest
import scipy.sparse as sp

from pyhpfem.core.conforming import (DependencyMatrix, add_dependencies, build_conforming_interpolation,
                                     make_vdim_matrix)
from pyhpfem.core.geometry import Geometry
from pyhpfem.core.ordering import Ordering
from pyhpfem.errors import ConformityError

from fem_helpers import constraint_row, find_dof, h1_space, interface_edge, two_quads, unit_square


def _master_vertex_dofs(space):
    mesh = space.mesh
    a, b = mesh.edge_vertices(interface_edge(mesh))
    return int(space.get_vertex_dofs(a)[0]), int(space.get_vertex_dofs(b)[0])


def _hanging_dof(space):
    v = space.mesh.hanging_vertices()
    assert len(v) == 1
    return int(space.get_vertex_dofs(int(v[0]))[0])


# =============================================================================
# A) LOW LEVEL: dependency rows
# =============================================================================
def test_first_writer_wins():
    deps = DependencyMatrix(4)
    add_dependencies(deps, [0, 1], [2], np.array([[0.5, 0.5]]))
    add_dependencies(deps, [0, 3], [2], np.array([[1.0, 0.0]]))
    assert deps.row(2) == {0: 0.5, 1: 0.5}
    assert len(deps) == 1


def test_no_self_dependency_and_tolerance():
    deps = DependencyMatrix(4)
    # slave 0 coincides with master 0, tiny weight on master 1 is dropped
    add_dependencies(deps, [0, 1], [0, 2], np.array([[1.0, 1e-14], [0.25, 0.75]]))
    assert deps.row_size(0) == 0
    assert deps.row(2) == {0: 0.25, 1: 0.75}


def test_signed_dofs_flip_coefficients():
    deps = DependencyMatrix(4)
    add_dependencies(deps, [0, -2], [-4], np.array([[0.5, 0.5]]))
    assert deps.row(3) == {0: -0.5, 1: 0.5}


def test_skipfirst():
    deps = DependencyMatrix(4)
    add_dependencies(deps, [0], [2, 3], np.array([[1.0], [1.0]]), skipfirst=1)
    assert deps.row_size(2) == 0 and deps.row_size(3) == 1


# =============================================================================
# B) CONFORMING MESHES
# =============================================================================
def test_conforming_space_has_no_constraints():
    space = h1_space(unit_square(2, 2), 2)
    assert space.get_conforming_prolongation() is None
    assert space.get_conforming_restriction() is None
    assert space.get_n_conforming_dofs() == space.ndofs


# =============================================================================
# C) HANGING VERTEX
# =============================================================================
def test_linear_hanging_vertex_averages_master_ends():
    space = h1_space(two_quads(), 1)
    assert space.ndofs == 11
    P, R = space.get_conforming_prolongation(), space.get_conforming_restriction()
    assert P.shape == (11, 10) and R.shape == (10, 11)

    row = constraint_row(space, _hanging_dof(space))
    lo, hi = _master_vertex_dofs(space)
    expected = np.zeros(11)
    expected[[lo, hi]] = 0.5
    np.testing.assert_allclose(row, expected, atol=1e-14)


def test_quadratic_hanging_vertex_follows_master_midpoint():
    space = h1_space(two_quads(), 2)
    master_mid = int(space.get_edge_interior_dofs(interface_edge(space.mesh))[0])
    row = constraint_row(space, _hanging_dof(space))
    expected = np.zeros(space.ndofs)
    expected[master_mid] = 1.0
    np.testing.assert_allclose(row, expected, atol=1e-14)


def test_quadratic_slave_edge_weights():
    space = h1_space(two_quads(), 2)
    lo, hi = _master_vertex_dofs(space)
    master_mid = int(space.get_edge_interior_dofs(interface_edge(space.mesh))[0])
    # quarter point of the master edge: Q2 basis at t = 1/4
    row = constraint_row(space, find_dof(space, [1.0, 0.25]))
    assert row[lo] == pytest.approx(0.375)
    assert row[hi] == pytest.approx(-0.125)
    assert row[master_mid] == pytest.approx(0.75)
    assert np.count_nonzero(np.abs(row) > 1e-14) == 3


@pytest.mark.parametrize("order", [1, 2, 3])
def test_restriction_is_left_inverse(order):
    space = h1_space(two_quads(), order, DEBUG=True)
    P, R = space.get_conforming_prolongation(), space.get_conforming_restriction()
    np.testing.assert_allclose((R @ P).toarray(), np.eye(P.shape[1]), atol=1e-13)
    # R only selects
    assert np.all(R.data == 1.0)
    assert np.all(np.diff(R.indptr) == 1)


@pytest.mark.parametrize("order", [1, 2, 3])
def test_continuous_interpolants_are_reproduced(order):
    """A polynomial of the element order is already conforming, so
    ``P @ R`` leaves its interpolant unchanged."""
    space = h1_space(two_quads(), order)
    X = space.get_dof_coords()
    x = X[:, 0] ** order + X[:, 0] * X[:, 1] ** (order - 1) + X[:, 1] ** order
    P, R = space.get_conforming_prolongation(), space.get_conforming_restriction()
    np.testing.assert_allclose(P @ (R @ x), x, atol=1e-12)


def test_vector_space_constraints():
    scalar = h1_space(two_quads(), 2)
    for ordering in (Ordering.BY_NODES, Ordering.BY_VDIM):
        space = h1_space(two_quads(), 2, vdim=2, ordering=ordering)
        P = space.get_conforming_prolongation()
        Ps = scalar.get_conforming_prolongation()
        assert P.shape == (2 * Ps.shape[0], 2 * Ps.shape[1])
        assert P.nnz == 2 * Ps.nnz
        assert space.true_vsize == 2 * scalar.true_vsize
        for vd in range(2):
            rows = [space.dof_to_vdof(d, vd) for d in range(scalar.ndofs)]
            cols = [space.dof_to_vdof(d, vd, ndofs=Ps.shape[1]) for d in range(Ps.shape[1])]
            np.testing.assert_allclose(P[rows][:, cols].toarray(), Ps.toarray())


def test_make_vdim_matrix_by_vdim_interleaves():
    space = h1_space(unit_square(1, 1), 1, vdim=2, ordering=Ordering.BY_VDIM)
    M = make_vdim_matrix(space, sp.csr_matrix(np.array([[1.0, 2.0]])))
    np.testing.assert_allclose(M.toarray(), [[1, 0, 2, 0], [0, 1, 0, 2]])


def test_constraints_are_cached_and_logged(caplog):
    space = h1_space(two_quads(), 2)
    with caplog.at_level(logging.DEBUG, logger="pyhpfem.core.conforming"):
        P = space.get_conforming_prolongation()
    assert space.get_conforming_prolongation() is P
    assert "conforming interpolation" in caplog.text


def test_unsupported_master_geometry_is_fatal():
    space = h1_space(two_quads(), 1)
    space.mesh.ncmesh.edge_list.masters[0].geom = Geometry.CUBE
    with pytest.raises(ConformityError, match="unsupported master geometry CUBE"):
        build_conforming_interpolation(space)
