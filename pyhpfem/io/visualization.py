"""pyhpfem.io.visualization"""
import numpy as np
from matplotlib.collections import LineCollection, PolyCollection
import matplotlib.pyplot as plt
from pyhpfem.core.ordering import decode_dofs


_ELEM_FILL = {
    "default": (0.9, 0.9, 0.9, 0.5),
}
_HANGING_COLOR = "red"


def _elem_fill(order, max_order):
    if max_order <= 1:
        return _ELEM_FILL["default"]
    # lighter for low order, darker blue for high order
    t = (order - 1) / max(max_order - 1, 1)
    return (0.9 - 0.5 * t, 0.9 - 0.3 * t, 1.0, 0.6)


def plot_mesh(mesh, space=None, *, annotate_dofs=False, plot_hanging=True,
              show=False, ax=None):
    """
    Plot the active elements of a 1-D or 2-D mesh.

    Args:
        mesh (Mesh): Mesh to draw.
        space (FiniteElementSpace, optional): When given, elements are shaded
            by polynomial order and (with ``annotate_dofs``) vertex DOFs are
            labelled with their global numbers.
        annotate_dofs (bool, optional): Write vertex DOF numbers. Requires
            ``space``.
        plot_hanging (bool, optional): Mark hanging vertices in red.
        show (bool, optional): Call ``plt.show()`` at the end.
        ax (matplotlib.axes.Axes, optional): Existing axes to draw on.
    Returns:
        matplotlib.axes.Axes: The axes containing the plot.
    """
    if mesh.dim not in (1, 2):
        raise ValueError(f"plot_mesh supports 1-D and 2-D meshes, got dim={mesh.dim}")
    if annotate_dofs and space is None:
        raise ValueError("annotate_dofs requires a space")
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 6))

    V = mesh.vertices
    if mesh.dim == 1:
        segs = [[(V[a, 0], 0.0), (V[b, 0], 0.0)] for a, b in
                (mesh.element_vertices(i) for i in range(mesh.num_elements))]
        ax.add_collection(LineCollection(segs, colors="black", linewidths=1.5))
        ax.plot(V[:, 0], np.zeros(len(V)), "ko", ms=3)
        coords = np.column_stack([V[:, 0], np.zeros(len(V))])
    else:
        orders = [space.get_element_order(i) for i in range(mesh.num_elements)] if space is not None else None
        max_order = max(orders) if orders else 1
        polys, colors = [], []
        for i in range(mesh.num_elements):
            polys.append(V[mesh.element_vertices(i)])
            colors.append(_elem_fill(orders[i], max_order) if orders else _ELEM_FILL["default"])
        ax.add_collection(PolyCollection(polys, facecolors=colors, edgecolors="black", linewidths=1.0))
        coords = V

        if plot_hanging:
            hanging = mesh.hanging_vertices()
            if len(hanging):
                ax.plot(V[hanging, 0], V[hanging, 1], "o", color=_HANGING_COLOR, ms=5, zorder=5)

    if annotate_dofs:
        for v in range(mesh.num_vertices):
            d = decode_dofs(space.get_vertex_dofs(v))
            ax.annotate(",".join(str(int(k)) for k in d), coords[v], textcoords="offset points",
                        xytext=(3, 3), fontsize=8)

    ax.autoscale_view()
    ax.set_aspect("equal" if mesh.dim == 2 else "auto")
    ax.set_title(f"{mesh.num_elements} elements, {mesh.num_vertices} vertices")
    if show:
        plt.show()
    return ax
