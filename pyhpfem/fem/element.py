"""pyhpfem.fem.element
Equispaced nodal Lagrange elements on the reference geometries.

H1 elements order their nodes (and hence their local DOFs) by entity:
vertices, edges, faces, interior, each entity walked from its first
to its last local vertex. L2 elements keep the plain lattice order and own
every node.
"""
from __future__ import annotations

import numpy as np

from pyhpfem.core import geometry as geo
from pyhpfem.core.geometry import Geometry
from pyhpfem.fem.reference import get_reference


def interior_lattice(geom, p: int) -> np.ndarray:
    """Lattice nodes strictly inside the reference ``geom`` of order ``p``."""
    geom = Geometry(geom)
    r = [i / p for i in range(1, p)] if p > 0 else []
    if geom == Geometry.POINT:
        return np.zeros((1, 0))
    if geom == Geometry.SEGMENT:
        return np.array(r, dtype=float).reshape(-1, 1)
    if geom == Geometry.SQUARE:
        return np.array([(s, t) for t in r for s in r], dtype=float).reshape(-1, 2)
    if geom == Geometry.TRIANGLE:
        pts = [(i / p, j / p) for j in range(1, p) for i in range(1, p - j)]
        return np.array(pts, dtype=float).reshape(-1, 2)
    if geom == Geometry.CUBE:
        return np.array([(a, b, c) for c in r for b in r for a in r], dtype=float).reshape(-1, 3)
    raise KeyError(geom)


def _h1_nodes(geom: Geometry, p: int) -> np.ndarray:
    V = geo.VERTICES[geom]
    dim = geo.DIMENSION[geom]
    pts = [v for v in V]
    if dim >= 2:
        for a, b in geo.EDGES[geom]:
            for (s,) in interior_lattice(Geometry.SEGMENT, p):
                pts.append(V[a] + s * (V[b] - V[a]))
    if dim >= 3:
        for face in geo.FACES[geom]:
            A, B, D = V[face[0]], V[face[1]], V[face[3]]
            for s, t in interior_lattice(Geometry.SQUARE, p):
                pts.append(A + s * (B - A) + t * (D - A))
    pts.extend(interior_lattice(geom, p))
    return np.array(pts, dtype=float).reshape(-1, dim)


class NodalElement:
    """Lagrange element of ``order`` on ``geom``.

    ``layout`` is ``"h1"`` (entity ordered, shared DOFs) or ``"l2"``.
    """

    def __init__(self, geom, order: int, layout: str = "h1"):
        self.geom = Geometry(geom)
        self.order = int(order)
        self.layout = layout
        self.dim = geo.DIMENSION[self.geom]
        if self.geom == Geometry.POINT:
            self._ref = None
            self.nodes = np.zeros((1, 0))
            self._perm = np.zeros(1, dtype=int)
            return
        self._ref = get_reference(self.geom, self.order)
        if layout == "l2" or self.order == 0:
            self.nodes = self._ref.lattice.copy()
            self._perm = np.arange(self._ref.ndof)
        elif layout == "h1":
            self.nodes = _h1_nodes(self.geom, self.order)
            lattice = self._ref.lattice
            d = np.linalg.norm(self.nodes[:, None, :] - lattice[None, :, :], axis=2)
            self._perm = np.argmin(d, axis=1)
            if len(set(self._perm.tolist())) != self._ref.ndof:
                raise RuntimeError(f"node layout mismatch for {self.geom.name} order {order}")
        else:
            raise ValueError(f"unknown layout {layout!r}")

    @property
    def ndof(self) -> int:
        return self.nodes.shape[0]

    def __repr__(self):
        return f"<NodalElement {self.geom.name} p={self.order} {self.layout} ndof={self.ndof}>"

    def shape(self, x) -> np.ndarray:
        """Shape values at one point ``(dim,)`` → ``(ndof,)`` or at
        ``(n, dim)`` points → ``(n, ndof)``."""
        x = np.asarray(x, dtype=float)
        if x.ndim == 2:
            return np.array([self.shape(xi) for xi in x]).reshape(x.shape[0], self.ndof)
        if self._ref is None:
            return np.ones(1)
        return self._ref.shape(x)[self._perm]

    # ------------------------------------------------------------------
    # local operators
    # ------------------------------------------------------------------
    def transfer_matrix(self, fe: "NodalElement", trans) -> np.ndarray:
        """``I[i, j] = fe.shape_j(T(node_i))``: expresses this element's
        nodal values through the DOFs of ``fe``.

        ``trans`` maps this element's reference domain into the reference
        domain of ``fe`` (slave → master, fine → coarse, identity for
        order changes).
        """
        if self.geom == Geometry.POINT:
            x = trans.transform(np.zeros((1, 0)))
        else:
            x = trans.transform(self.nodes)
        return fe.shape(np.atleast_2d(x)).reshape(self.ndof, fe.ndof)

    def local_interpolation(self, trans) -> np.ndarray:
        """Fine (child) DOFs from coarse (parent) DOFs, ``trans``: child → parent."""
        return self.transfer_matrix(self, trans)

    def local_restriction(self, trans, fe: "NodalElement" = None) -> np.ndarray:
        """Coarse DOFs from the DOFs of one child (``fe``, default this
        element). Rows of coarse nodes that lie outside the child are ``nan``."""
        fe = self if fe is None else fe
        R = np.full((self.ndof, fe.ndof), np.nan)
        for i, x in enumerate(self.nodes):
            y = trans.inverse(x)
            if geo.inside(self.geom, y, 1e-10):
                R[i, :] = fe.shape(y)
        return R
