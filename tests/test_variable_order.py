# tests/test_variable_order.py
"""hp spaces: element orders, edge order variants and the minimum rule."""
import numpy as np
import pytest

from pyhpfem.core.orders import calc_edge_face_var_orders
from pyhpfem.errors import OutOfDateError, SpaceError
from pyhpfem.utils.bitset import OrderSet

from fem_helpers import constraint_row, h1_space, interface_edge, two_quads, unit_square


@pytest.fixture
def hp_space():
    """Refined left square at order 1, coarse right square (element 4) at order 2."""
    space = h1_space(two_quads(), 1)
    space.set_element_order(4, 2)
    space.update(want_transform=False)
    return space


# =============================================================================
# A) ORDER BOOKKEEPING
# =============================================================================
def test_set_element_order_marks_space_stale():
    space = h1_space(two_quads(), 1)
    assert not space.is_variable_order
    space.set_element_order(4, 2)
    assert space.is_variable_order and space.orders_changed
    with pytest.raises(OutOfDateError):
        space.get_element_dofs(0)
    space.update(want_transform=False)
    assert not space.orders_changed
    assert space.get_element_order(4) == 2 and space.get_element_order(0) == 1


def test_setting_the_same_order_is_a_no_op():
    space = h1_space(two_quads(), 1)
    space.set_element_order(0, 1)
    assert not space.orders_changed


def test_set_element_order_errors():
    space = h1_space(two_quads(), 1)
    with pytest.raises(IndexError):
        space.set_element_order(5, 2)
    with pytest.raises(ValueError):
        space.set_element_order(0, 0)


def test_variable_order_requires_nonconforming_mesh():
    space = h1_space(unit_square(2, 1), 1)
    space.set_element_order(0, 2)
    with pytest.raises(SpaceError):
        space.update(want_transform=False)


def test_update_with_transform_needs_a_mesh_step():
    space = h1_space(two_quads(), 1)
    space.set_element_order(4, 2)
    with pytest.raises(SpaceError):
        space.update()


def test_orders_and_mesh_cannot_change_together():
    mesh = two_quads()
    space = h1_space(mesh, 1)
    space.set_element_order(4, 2)
    mesh.refine([4])
    with pytest.raises(SpaceError):
        space.update()


# =============================================================================
# B) EDGE ORDER SETS
# =============================================================================
def test_master_edge_receives_slave_order():
    mesh = two_quads()
    orders = [1, 1, 1, 1, 2]
    edges, faces = calc_edge_face_var_orders(mesh, orders)
    assert faces == []
    assert edges[interface_edge(mesh)] == OrderSet([1, 2])
    relaxed, _ = calc_edge_face_var_orders(mesh, orders, relaxed=True)
    assert relaxed[interface_edge(mesh)] == OrderSet([2])


def test_edge_variants(hp_space):
    master = interface_edge(hp_space.mesh)
    assert hp_space.get_n_variants(1, master) == 2
    assert hp_space.get_edge_order(master, 0) == 1
    assert hp_space.get_edge_order(master, 1) == 2
    assert hp_space.get_edge_order(master, 2) == -1
    dofs, p = hp_space.get_edge_dofs(master, 2)
    assert p == -1 and len(dofs) == 0
    # in 2-D faces are edges
    assert hp_space.get_face_order(master, 1) == 2
    assert hp_space.get_n_variants(2, master) == 2


def test_hp_dof_count(hp_space):
    # 11 vertices, one order-2 variant on each edge of element 4, one bubble
    assert hp_space.ndofs == 11 + 4 + 1
    assert hp_space.nbdofs == 1
    assert len(hp_space.get_element_dofs(4)) == 9
    assert len(hp_space.get_element_dofs(0)) == 4


# =============================================================================
# C) CONSTRAINTS
# =============================================================================
def test_minimum_rule_makes_master_edge_linear(hp_space):
    master = interface_edge(hp_space.mesh)
    a, b = hp_space.mesh.edge_vertices(master)
    lo, hi = int(hp_space.get_vertex_dofs(a)[0]), int(hp_space.get_vertex_dofs(b)[0])
    expected = np.zeros(hp_space.ndofs)
    expected[[lo, hi]] = 0.5

    # order-2 variant interpolates the order-1 variant
    bubble = int(hp_space.get_edge_interior_dofs(master, 1)[0])
    np.testing.assert_allclose(constraint_row(hp_space, bubble), expected, atol=1e-14)
    # hanging vertex hangs on the order-1 variant
    hv = int(hp_space.get_vertex_dofs(int(hp_space.mesh.hanging_vertices()[0]))[0])
    np.testing.assert_allclose(constraint_row(hp_space, hv), expected, atol=1e-14)
    assert hp_space.true_vsize == hp_space.ndofs - 2


def test_restriction_interpolation(hp_space):
    R = hp_space.get_conforming_restriction()
    Q = hp_space.get_conforming_restriction_interpolation()
    assert Q.shape == R.shape
    P = hp_space.get_conforming_prolongation()
    np.testing.assert_allclose((Q @ P).toarray(), np.eye(P.shape[1]), atol=1e-13)


def test_relaxed_mode_keeps_single_variant():
    space = h1_space(two_quads(), 1, relaxed_hp=True)
    space.set_element_order(4, 2)
    space.update(want_transform=False)
    master = interface_edge(space.mesh)
    assert space.get_n_variants(1, master) == 1
    assert space.get_edge_order(master) == 2
    assert space.ndofs == 11 + 4 + 1

    mid = int(space.get_edge_interior_dofs(master)[0])
    hv = int(space.get_vertex_dofs(int(space.mesh.hanging_vertices()[0]))[0])
    expected = np.zeros(space.ndofs)
    expected[mid] = 1.0
    np.testing.assert_allclose(constraint_row(space, hv), expected, atol=1e-14)


def test_conforming_neighbours_of_different_order():
    """A mesh flagged non-conforming allows orders to differ without any
    refinement; the shared edge is reduced to the lower order."""
    space = h1_space(two_quads(refine_left=False, nonconforming=True), 1)
    space.set_element_order(1, 2)
    space.update(want_transform=False)
    shared = interface_edge(space.mesh)
    assert space.get_n_variants(1, shared) == 2
    assert space.ndofs == 6 + 4 + 1
    assert space.true_vsize == space.ndofs - 1

    X = space.get_dof_coords()
    x = 1.0 + X[:, 0] - 2.0 * X[:, 1]
    P, R = space.get_conforming_prolongation(), space.get_conforming_restriction()
    np.testing.assert_allclose(P @ (R @ x), x, atol=1e-12)


@pytest.mark.parametrize("operator_type", ["matrix_free", "sparse"])
def test_refining_an_hp_space_inherits_orders(hp_space, operator_type):
    def f(X):
        return 2.0 - X[:, 0] + 3.0 * X[:, 1]

    mesh = hp_space.mesh
    hp_space.set_update_operator_type(operator_type)
    x_old = f(hp_space.get_dof_coords())
    mesh.refine([4])
    hp_space.update()
    assert [hp_space.get_element_order(i) for i in range(mesh.num_elements)] == [1] * 4 + [2] * 4
    Th = hp_space.get_update_operator()
    assert Th.shape == (hp_space.vsize, len(x_old))
    np.testing.assert_allclose(Th @ x_old, f(hp_space.get_dof_coords()), atol=1e-12)


def test_derefining_takes_the_finest_child_order():
    mesh = two_quads()
    space = h1_space(mesh, 1)
    space.set_element_order(2, 3)
    space.update(want_transform=False)
    x_fine = 1.0 + 0.5 * space.get_dof_coords()[:, 1]
    mesh.derefine()
    space.update()
    assert space.get_element_order(0) == 3
    assert space.get_element_order(1) == 1
    x = space.get_update_operator() @ x_fine
    np.testing.assert_allclose(x, 1.0 + 0.5 * space.get_dof_coords()[:, 1], atol=1e-12)
