# tests/test_essential.py
import numpy as np
import pytest

from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.core.ordering import Ordering
from pyhpfem.utils.bitset import BitSet

from fem_helpers import h1_space, two_quads, unit_square


def _on_boundary(X, tol=1e-12):
    return (np.abs(X[:, 0]) < tol) | (np.abs(X[:, 0] - 1) < tol) | \
           (np.abs(X[:, 1]) < tol) | (np.abs(X[:, 1] - 1) < tol)


# =============================================================================
# A) MARKERS on conforming meshes
# =============================================================================
def test_all_boundaries_q2():
    space = h1_space(unit_square(2, 2), 2)
    ess = space.get_essential_vdofs([1, 1, 1, 1])
    assert isinstance(ess, BitSet)
    assert ess.cardinality() == 16
    np.testing.assert_array_equal(ess.mask, _on_boundary(space.get_dof_coords()))


def test_single_side():
    space = h1_space(unit_square(2, 2), 2)
    left = space.get_essential_vdofs([0, 0, 0, 1])
    X = space.get_dof_coords()
    np.testing.assert_array_equal(left.to_indices(), np.flatnonzero(np.abs(X[:, 0]) < 1e-12))
    # attributes beyond the marker length are ignored
    assert space.get_essential_vdofs([0]).cardinality() == 0


@pytest.mark.parametrize("ordering", [Ordering.BY_NODES, Ordering.BY_VDIM])
def test_component_selection(ordering):
    space = h1_space(unit_square(2, 2), 2, vdim=2, ordering=ordering)
    both = space.get_essential_vdofs([1, 1, 1, 1])
    assert both.cardinality() == 32
    y_only = space.get_essential_vdofs([1, 1, 1, 1], component=1)
    assert y_only.cardinality() == 16
    for v in y_only.to_indices():
        assert space.vdof_to_dof(int(v))[1] == 1


def test_true_dofs_on_conforming_space():
    space = h1_space(unit_square(2, 2), 1)
    tdofs = space.get_essential_true_dofs([1, 1, 1, 1])
    np.testing.assert_array_equal(tdofs, [0, 1, 2, 3, 5, 6, 7, 8])


# =============================================================================
# B) NON-CONFORMING meshes
# =============================================================================
def test_hanging_vertex_is_not_essential():
    space = h1_space(two_quads(), 1)
    ess = space.get_essential_vdofs([1, 1, 1, 1])
    X = space.get_dof_coords()
    marked = X[ess.to_indices()]
    assert ess.cardinality() == 9
    assert not np.any(np.all(np.isclose(marked, [1.0, 0.5]), axis=1))
    assert not np.any(np.all(np.isclose(marked, [0.5, 0.5]), axis=1))

    tdofs = space.get_essential_true_dofs([1, 1, 1, 1])
    assert len(tdofs) == 9
    assert tdofs.max() < space.true_vsize


def test_conforming_conversions():
    space = h1_space(two_quads(), 1)
    hv = int(space.get_vertex_dofs(int(space.mesh.hanging_vertices()[0]))[0])
    marker = BitSet.from_indices([hv], space.vsize)
    # the hanging vertex maps to the two ends of its master edge
    cmarker = space.convert_to_conforming_vdofs(marker)
    assert cmarker.cardinality() == 2
    back = space.convert_from_conforming_vdofs(cmarker)
    assert back.cardinality() == 2
    assert not back[hv]


def test_conversions_are_identity_without_constraints():
    space = h1_space(unit_square(1, 1), 1)
    m = BitSet([True, False, False, True])
    assert space.convert_to_conforming_vdofs(m) == m
    assert space.convert_from_conforming_vdofs(m) == m


# =============================================================================
# C) LIST ↔ MARKER helpers
# =============================================================================
def test_marker_list_round_trip():
    marker = FiniteElementSpace.list_to_marker([1, 4], 6)
    np.testing.assert_array_equal(marker, [0, -1, 0, 0, -1, 0])
    np.testing.assert_array_equal(FiniteElementSpace.marker_to_list(marker), [1, 4])
    np.testing.assert_array_equal(FiniteElementSpace.list_to_marker([2], 3, mark_val=1), [0, 0, 1])
    np.testing.assert_array_equal(FiniteElementSpace.marker_to_list(BitSet([False, True])), [1])
