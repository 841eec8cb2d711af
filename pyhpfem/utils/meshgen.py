"""pyhpfem.utils.meshgen
Mesh generators for quick tests.

Every generator returns ``(nodes, elements)``: a list of :class:`Node` and
the corner connectivity of the elements in reference vertex order, ready for
``Mesh(nodes, elements, element_type=...)``.
"""
import numpy as np
from scipy.spatial import Delaunay
from typing import Callable, Dict, List, Optional, Tuple
import numba

from pyhpfem.core.topology import Node

__all__ = ["segment_mesh", "structured_quad", "structured_triangles", "delaunay_rectangle",
           "structured_hex", "rectangle_boundary_locators"]


def _to_nodes(coords: np.ndarray) -> List[Node]:
    coords = np.atleast_2d(coords)
    nodes = []
    for i, c in enumerate(coords):
        xyz = list(c) + [0.0] * (3 - len(c))
        nodes.append(Node(id=i, x=float(xyz[0]), y=float(xyz[1]), z=float(xyz[2])))
    return nodes


def segment_mesh(L: float = 1.0, n: int = 4, offset: float = 0.0):
    """``n`` equal segments on ``[offset, offset + L]``."""
    if n < 1:
        raise ValueError("need at least one segment")
    x = offset + np.linspace(0.0, L, n + 1)
    elems = np.column_stack([np.arange(n), np.arange(1, n + 1)]).astype(np.int64)
    return _to_nodes(x.reshape(-1, 1)), elems


@numba.njit(cache=True)
def _structured_quad_numba(Lx, Ly, nx, ny):
    nnx = nx + 1
    coords = np.zeros((nnx * (ny + 1), 2), dtype=np.float64)
    for j in range(ny + 1):
        for i in range(nnx):
            coords[j * nnx + i, 0] = Lx * i / nx
            coords[j * nnx + i, 1] = Ly * j / ny
    elems = np.empty((nx * ny, 4), dtype=np.int64)
    for j in range(ny):
        for i in range(nx):
            bl = j * nnx + i
            # CCW: bottom-left, bottom-right, top-right, top-left
            elems[j * nx + i, 0] = bl
            elems[j * nx + i, 1] = bl + 1
            elems[j * nx + i, 2] = bl + nnx + 1
            elems[j * nx + i, 3] = bl + nnx
    return coords, elems


def structured_quad(Lx: float, Ly: float, *, nx: int, ny: int,
                    offset: Optional[Tuple[float, float]] = None):
    """``nx × ny`` quadrilaterals on ``[0, Lx] × [0, Ly]``, numbered row by row."""
    if nx < 1 or ny < 1:
        raise ValueError("nx and ny must be positive")
    coords, elems = _structured_quad_numba(float(Lx), float(Ly), int(nx), int(ny))
    if offset is not None:
        coords = coords + np.asarray(offset, dtype=float)
    return _to_nodes(coords), elems


def structured_triangles(Lx: float, Ly: float, *, nx: int, ny: int):
    """Every quadrilateral of :func:`structured_quad` split along its
    bottom-left → top-right diagonal."""
    nodes, quads = structured_quad(Lx, Ly, nx=nx, ny=ny)
    tris = np.empty((2 * len(quads), 3), dtype=np.int64)
    tris[0::2] = quads[:, [0, 1, 2]]
    tris[1::2] = quads[:, [0, 2, 3]]
    return nodes, tris


def delaunay_rectangle(length: float, height: float, nx: int = 10, ny: int = 10):
    x = np.linspace(0.0, length, nx)
    y = np.linspace(0.0, height, ny)
    X, Y = np.meshgrid(x, y)
    pts = np.column_stack([X.ravel(), Y.ravel()])
    tri = Delaunay(pts)
    elems = tri.simplices.astype(np.int64)

    # make triangles CCW
    def signed_area(a, b, c):
        return (b[0]-a[0])*(c[1]-a[1]) - (b[1]-a[1])*(c[0]-a[0])
    for t in elems:
        a, b, c = pts[t]
        if signed_area(a, b, c) < 0:
            t[1], t[2] = t[2], t[1]
    return _to_nodes(pts), elems


def structured_hex(Lx: float, Ly: float, Lz: float, *, nx: int, ny: int, nz: int):
    """``nx × ny × nz`` hexahedra with the vertex order of the reference cube
    (bottom face counter-clockwise, then the top face)."""
    if min(nx, ny, nz) < 1:
        raise ValueError("nx, ny and nz must be positive")
    nnx, nny = nx + 1, ny + 1
    xs, ys, zs = (np.linspace(0.0, L, n + 1) for L, n in ((Lx, nx), (Ly, ny), (Lz, nz)))
    coords = np.array([(x, y, z) for z in zs for y in ys for x in xs], dtype=float)

    def nid(i, j, k):
        return (k * nny + j) * nnx + i

    elems = []
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                elems.append([nid(i, j, k), nid(i + 1, j, k), nid(i + 1, j + 1, k), nid(i, j + 1, k),
                              nid(i, j, k + 1), nid(i + 1, j, k + 1), nid(i + 1, j + 1, k + 1), nid(i, j + 1, k + 1)])
    return _to_nodes(coords), np.array(elems, dtype=np.int64)


def rectangle_boundary_locators(Lx: float, Ly: float, tol: float = 1e-12
                                ) -> Dict[int, Callable[[np.ndarray], bool]]:
    """Boundary attributes of ``[0, Lx] × [0, Ly]``: 1 bottom, 2 right,
    3 top, 4 left."""
    return {
        1: lambda x: abs(x[1]) < tol,
        2: lambda x: abs(x[0] - Lx) < tol,
        3: lambda x: abs(x[1] - Ly) < tol,
        4: lambda x: abs(x[0]) < tol,
    }
