# tests/test_meshgen.py
import numpy as np
import pytest

from pyhpfem.core.mesh import Mesh
from pyhpfem.utils.meshgen import (delaunay_rectangle, rectangle_boundary_locators, segment_mesh,
                                   structured_hex, structured_quad, structured_triangles)


def _coords(nodes):
    return np.array([[n.x, n.y, n.z] for n in nodes])


def _signed_area(X, tri):
    a, b, c = X[tri, :2]
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def test_segment_mesh():
    nodes, elems = segment_mesh(2.0, 4, offset=-1.0)
    np.testing.assert_allclose(_coords(nodes)[:, 0], [-1.0, -0.5, 0.0, 0.5, 1.0])
    np.testing.assert_array_equal(elems, [[0, 1], [1, 2], [2, 3], [3, 4]])
    with pytest.raises(ValueError):
        segment_mesh(1.0, 0)


def test_structured_quad():
    nodes, elems = structured_quad(2.0, 1.0, nx=2, ny=1, offset=(1.0, 0.0))
    X = _coords(nodes)
    assert X.shape == (6, 3) and elems.shape == (2, 4)
    np.testing.assert_array_equal(elems[0], [0, 1, 4, 3])
    np.testing.assert_allclose(X[4, :2], [2.0, 1.0])
    with pytest.raises(ValueError):
        structured_quad(1.0, 1.0, nx=0, ny=1)


def test_structured_triangles_are_ccw():
    nodes, tris = structured_triangles(1.0, 1.0, nx=3, ny=2)
    X = _coords(nodes)
    assert tris.shape == (12, 3)
    assert all(_signed_area(X, t) > 0 for t in tris)


def test_delaunay_rectangle():
    nodes, tris = delaunay_rectangle(2.0, 1.0, nx=5, ny=3)
    X = _coords(nodes)
    assert len(nodes) == 15
    assert all(_signed_area(X, t) > 0 for t in tris)
    # the triangles tile the rectangle
    total = sum(0.5 * _signed_area(X, t) for t in tris)
    assert total == pytest.approx(2.0)


def test_structured_hex():
    nodes, hexes = structured_hex(2.0, 1.0, 1.0, nx=2, ny=1, nz=1)
    X = _coords(nodes)
    assert len(nodes) == 12 and hexes.shape == (2, 8)
    np.testing.assert_allclose(X[hexes[1]][:, 0].min(), 1.0)
    np.testing.assert_allclose(X[hexes[0][6]], [1.0, 1.0, 1.0])
    with pytest.raises(ValueError):
        structured_hex(1.0, 1.0, 1.0, nx=1, ny=0, nz=1)


def test_boundary_locators():
    loc = rectangle_boundary_locators(2.0, 1.0)
    assert loc[1](np.array([0.5, 0.0])) and not loc[1](np.array([0.5, 0.5]))
    assert loc[2](np.array([2.0, 0.3]))
    assert loc[3](np.array([1.0, 1.0]))
    assert loc[4](np.array([0.0, 0.7]))


def test_generated_meshes_build():
    nodes, tris = delaunay_rectangle(1.0, 1.0, nx=4, ny=4)
    mesh = Mesh(nodes, tris, element_type="tri", boundary_attributes=rectangle_boundary_locators(1.0, 1.0))
    assert mesh.num_elements == len(tris)
    assert sorted(set(mesh.bdr_attributes.tolist())) == [1, 2, 3, 4]
