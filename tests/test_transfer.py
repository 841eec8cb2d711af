# tests/test_transfer.py
"""Refinement / derefinement operators and two-grid transfers."""
import logging

import numpy as np
import pytest
import scipy.sparse as sp

from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.core.transfer import (DerefinementOperator, GridTransfer, InterpolationGridTransfer,
                                   L2ProjectionGridTransfer, derefinement_matrix,
                                   local_derefinement_matrices, local_refinement_matrices,
                                   refinement_matrix)
from pyhpfem.core.geometry import Geometry
from pyhpfem.errors import SpaceError
from pyhpfem.fem.collection import L2Collection

from fem_helpers import h1_space, interpolate, two_quads, unit_interval, unit_square


def quadratic(X):
    return X[:, 0] ** 2 + 0.5 * X[:, 0] * X[:, 1] - X[:, 1] ** 2 + 1.0


def cubic_1d(X):
    return X[:, 0] ** 3 - X[:, 0]


# =============================================================================
# A) REFINEMENT
# =============================================================================
@pytest.mark.parametrize("mesh_fn,order,f", [
    (lambda: unit_interval(3), 3, cubic_1d),
    (lambda: unit_square(2, 2), 2, quadratic),
    (lambda: unit_square(2, 2, element_type="tri"), 2, quadratic),
    (lambda: two_quads(refine_left=False), 2, quadratic),
])
def test_update_interpolates_exactly(mesh_fn, order, f):
    mesh = mesh_fn()
    space = h1_space(mesh, order)
    space.set_update_operator_type("sparse")
    x = interpolate(space, f)

    mesh.uniform_refinement()
    space.update()
    Th = space.get_update_operator()
    assert sp.issparse(Th)
    assert Th.shape == (space.vsize, len(x))
    np.testing.assert_allclose(Th @ x, interpolate(space, f), atol=1e-12)


def test_local_refinement_with_hanging_vertex():
    mesh = two_quads(refine_left=False)
    space = h1_space(mesh, 2)
    space.set_update_operator_type("sparse")
    x = interpolate(space, quadratic)
    mesh.refine([0])
    space.update()
    np.testing.assert_allclose(space.get_update_operator() @ x, interpolate(space, quadratic), atol=1e-12)
    # the interpolated vector is conforming
    P, R = space.get_conforming_prolongation(), space.get_conforming_restriction()
    y = space.get_update_operator() @ x
    np.testing.assert_allclose(P @ (R @ y), y, atol=1e-12)


@pytest.mark.parametrize("vdim", [1, 2])
def test_matrix_free_matches_sparse(vdim):
    mesh = unit_square(2, 2)
    free = h1_space(mesh, 2, vdim=vdim)
    assembled = h1_space(mesh, 2, vdim=vdim)
    assembled.set_update_operator_type("sparse")
    mesh.uniform_refinement()
    free.update()
    assembled.update()

    A = free.get_update_operator()
    B = assembled.get_update_operator()
    rng = np.random.default_rng(1)
    x = rng.standard_normal(A.shape[1])
    y = rng.standard_normal(A.shape[0])
    np.testing.assert_allclose(A @ x, B @ x, atol=1e-12)
    np.testing.assert_allclose(A.rmatvec(y), B.T @ y, atol=1e-12)


def test_local_refinement_matrices_shape():
    mesh = unit_square(1, 1)
    space = h1_space(mesh, 2)
    mesh.uniform_refinement()
    space.update()
    mats = local_refinement_matrices(space, Geometry.SQUARE)
    assert mats.shape == (5, 9, 9)
    np.testing.assert_allclose(mats[0], np.eye(9), atol=1e-12)
    np.testing.assert_allclose(mats.sum(axis=2), 1.0, atol=1e-12)


def test_refinement_matrix_requires_refine():
    mesh = two_quads()
    space = h1_space(mesh, 1)
    old_ndofs, old_elem_dof = space.ndofs, space.build_element_to_dof_table()
    mesh.derefine()
    with pytest.raises(SpaceError):
        refinement_matrix(space, old_ndofs, old_elem_dof)


def test_update_is_a_no_op_when_in_sync():
    space = h1_space(unit_square(1, 1), 1)
    space.update()
    assert space.get_update_operator() is None


def test_update_must_follow_every_mesh_change():
    mesh = unit_square(1, 1)
    space = h1_space(mesh, 1)
    mesh.uniform_refinement()
    mesh.uniform_refinement()
    with pytest.raises(SpaceError):
        space.update()
    # without a transform any number of steps is fine
    space.update(want_transform=False)
    assert space.ndofs == 25 and space.get_update_operator() is None


def test_invalid_operator_type():
    space = h1_space(unit_square(1, 1), 1)
    with pytest.raises(ValueError):
        space.set_update_operator_type("dense")


# =============================================================================
# B) DEREFINEMENT
# =============================================================================
@pytest.mark.parametrize("order", [1, 2, 3])
def test_refine_derefine_round_trip(order):
    mesh = two_quads(refine_left=False, nonconforming=True)
    space = h1_space(mesh, order)
    x = interpolate(space, quadratic)
    mesh.refine([0])
    space.update()
    y = space.get_update_operator() @ x
    mesh.derefine()
    space.update()
    Th = space.get_update_operator()
    assert Th.shape == (len(x), len(y))
    np.testing.assert_allclose(Th @ y, x, atol=1e-12)


def test_local_derefinement_matrices():
    mesh = two_quads()
    space = h1_space(mesh, 1)
    mesh.derefine()
    space.update()
    mats = local_derefinement_matrices(space, Geometry.SQUARE)
    assert mats.shape == (5, 4, 4)
    np.testing.assert_allclose(mats[0], np.eye(4), atol=1e-12)
    # lower left child only sees the coarse vertex (0, 0)
    np.testing.assert_allclose(mats[1][0], [1, 0, 0, 0], atol=1e-12)
    assert np.isnan(mats[1][1:]).all()


def test_derefinement_matrix_needs_nonconforming_mesh():
    space = h1_space(unit_square(1, 1), 1)
    with pytest.raises(SpaceError):
        derefinement_matrix(space, space.ndofs, space.build_element_to_dof_table())


# =============================================================================
# C) TWO-GRID TRANSFERS
# =============================================================================
def _coarse_fine(order, vdim=1, coarse_nx=2):
    coarse_mesh = unit_square(coarse_nx, 2)
    fine_mesh = coarse_mesh.copy()
    fine_mesh.uniform_refinement()
    return h1_space(coarse_mesh, order, vdim), h1_space(fine_mesh, order, vdim)


@pytest.mark.parametrize("operator_type", ["sparse", "matrix_free"])
def test_transfer_operator_from_coarse_space(operator_type):
    coarse, fine = _coarse_fine(2)
    T = fine.get_transfer_operator(coarse, operator_type)
    np.testing.assert_allclose(T @ interpolate(coarse, quadratic), interpolate(fine, quadratic), atol=1e-12)


def test_transfer_between_orders():
    coarse_mesh = unit_square(2, 2)
    fine_mesh = coarse_mesh.copy()
    fine_mesh.uniform_refinement()
    coarse, fine = h1_space(coarse_mesh, 1), h1_space(fine_mesh, 3)
    f = lambda X: 2.0 * X[:, 0] - X[:, 1] + X[:, 0] * X[:, 1]
    T = fine.get_transfer_operator(coarse)
    np.testing.assert_allclose(T @ interpolate(coarse, f), interpolate(fine, f), atol=1e-12)


@pytest.mark.parametrize("vdim", [1, 2])
def test_interpolation_grid_transfer(vdim):
    coarse, fine = _coarse_fine(1, vdim)
    gt = InterpolationGridTransfer(coarse, fine)
    F, B = gt.forward_operator(), gt.backward_operator()
    assert isinstance(B, DerefinementOperator)
    assert gt.forward_operator() is F

    x = np.random.default_rng(2).standard_normal(coarse.vsize)
    np.testing.assert_allclose(B @ (F @ x), x, atol=1e-10)


def test_true_operators_without_constraints():
    coarse, fine = _coarse_fine(2)
    gt = InterpolationGridTransfer(coarse, fine)
    assert sp.issparse(gt.true_forward_operator())
    x = np.random.default_rng(3).standard_normal(coarse.vsize)
    np.testing.assert_allclose(gt.true_forward_operator() @ x, gt.forward_operator() @ x)
    np.testing.assert_allclose(gt.true_backward_operator() @ (gt.forward_operator() @ x), x, atol=1e-10)


def test_true_transfer_operator_with_hanging_nodes():
    coarse_mesh = two_quads(refine_left=False, nonconforming=True)
    fine_mesh = coarse_mesh.copy()
    fine_mesh.refine([0])
    coarse, fine = h1_space(coarse_mesh, 2), h1_space(fine_mesh, 2)
    T = fine.get_true_transfer_operator(coarse)
    assert T.shape == (fine.true_vsize, coarse.true_vsize)
    Tm = fine.get_true_transfer_operator(coarse, "matrix_free")
    x = np.random.default_rng(4).standard_normal(coarse.true_vsize)
    np.testing.assert_allclose(Tm @ x, T @ x, atol=1e-12)


def test_grid_transfer_rejects_mismatched_spaces():
    coarse, fine = _coarse_fine(1)
    vector_fine = h1_space(fine.mesh, 1, vdim=2)
    with pytest.raises(ValueError):
        InterpolationGridTransfer(coarse, vector_fine)
    with pytest.raises(NotImplementedError):
        GridTransfer(coarse, fine).forward_operator()


# =============================================================================
# D) L2 TWO-GRID PROJECTION
# =============================================================================
def _l2_pair(ho_order, lor_order):
    ho_mesh = two_quads(refine_left=False)
    lor_mesh = ho_mesh.copy()
    lor_mesh.uniform_refinement()
    return (FiniteElementSpace(ho_mesh, L2Collection(ho_order, 2)),
            FiniteElementSpace(lor_mesh, L2Collection(lor_order, 2)))


@pytest.mark.parametrize("ho_order,lor_order", [(1, 1), (2, 2), (1, 2)])
def test_l2_prolongation_inverts_projection(ho_order, lor_order):
    ho, lor = _l2_pair(ho_order, lor_order)
    gt = L2ProjectionGridTransfer(ho, lor)
    R, P = gt.forward_operator(), gt.backward_operator()
    assert R.shape == (lor.vsize, ho.vsize) and P.shape == (ho.vsize, lor.vsize)
    x = np.random.default_rng(5).standard_normal(ho.vsize)
    np.testing.assert_allclose(P @ (R @ x), x, atol=1e-10)


def test_l2_projection_of_constants():
    ho, lor = _l2_pair(2, 0)
    R = L2ProjectionGridTransfer(ho, lor).forward_operator()
    np.testing.assert_allclose(R @ np.full(ho.vsize, 3.0), 3.0, atol=1e-12)


def test_l2_projection_adjoint():
    ho, lor = _l2_pair(1, 0)
    R = L2ProjectionGridTransfer(ho, lor).forward_operator()
    rng = np.random.default_rng(6)
    x, y = rng.standard_normal(ho.vsize), rng.standard_normal(lor.vsize)
    assert y @ (R @ x) == pytest.approx(x @ R.rmatvec(y))


def test_l2_transfer_warns_on_continuous_spaces(caplog):
    coarse, fine = _coarse_fine(1)
    with caplog.at_level(logging.WARNING, logger="pyhpfem.core.transfer"):
        L2ProjectionGridTransfer(coarse, fine)
    assert "continuous spaces" in caplog.text
