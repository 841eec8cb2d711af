# tests/test_visualization.py
import matplotlib.pyplot as plt
import numpy as np
import pytest

from pyhpfem.io.visualization import plot_mesh

from fem_helpers import box, h1_space, two_quads, unit_interval, unit_square


def test_plot_conforming_mesh():
    mesh = unit_square(2, 2)
    ax = plot_mesh(mesh)
    assert ax.get_title() == "4 elements, 9 vertices"
    assert len(ax.collections) == 1
    # no hanging vertices, nothing but the mesh
    assert len(ax.lines) == 0


def test_hanging_vertices_are_marked():
    mesh = two_quads()
    ax = plot_mesh(mesh)
    assert len(ax.lines) == 1
    np.testing.assert_allclose(np.column_stack(ax.lines[0].get_data()), [[1.0, 0.5]])
    assert len(plot_mesh(mesh, plot_hanging=False).lines) == 0


def test_annotated_dofs_on_given_axes():
    mesh = two_quads()
    space = h1_space(mesh, 1)
    space.set_element_order(4, 2)
    space.update(want_transform=False)
    _, ax = plt.subplots()
    out = plot_mesh(mesh, space, annotate_dofs=True, ax=ax)
    assert out is ax
    labels = {t.get_text() for t in ax.texts}
    assert len(ax.texts) == mesh.num_vertices
    assert labels == {str(int(space.get_vertex_dofs(v)[0])) for v in range(mesh.num_vertices)}


def test_plot_1d_mesh():
    ax = plot_mesh(unit_interval(4))
    assert ax.get_title() == "4 elements, 5 vertices"


def test_plot_errors():
    with pytest.raises(ValueError):
        plot_mesh(box(1, 1, 1))
    with pytest.raises(ValueError):
        plot_mesh(unit_square(1, 1), annotate_dofs=True)
