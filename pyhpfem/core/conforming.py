"""pyhpfem.core.conforming
Conforming interpolation of non-conforming and variable order spaces.

Every DOF that can be written as a combination of other DOFs (hanging
vertices and slave edges/faces, higher order variants of shared entities)
is a *slave*; all others are *true* DOFs. The builder records one
dependency row per slave DOF, resolves chains of dependencies and returns

* ``P``  (vsize × true vsize): true DOFs → all DOFs,
* ``R``  (true vsize × vsize): selects the true DOFs,
* ``Q``  (variable order only): like ``R`` but interpolates the highest
  order variant into the lowest one on master entities.
"""
from __future__ import annotations

import logging
from typing import Dict, List, NamedTuple, Optional
import numpy as np
import scipy.sparse as sp

from pyhpfem.core import geometry as geo
from pyhpfem.core.geometry import Geometry
from pyhpfem.core.ordering import map_dof, map_dofs
from pyhpfem.errors import ConformityError
from pyhpfem.fem.transform import IsoparametricTransformation

logger = logging.getLogger(__name__)

DEPENDENCY_TOL = 1e-12
_EDGE_EPS = 1e-14
_MASTER_GEOMETRIES = (Geometry.SEGMENT, Geometry.SQUARE, Geometry.TRIANGLE)


class ConformingOperators(NamedTuple):
    P: sp.csr_matrix
    R: sp.csr_matrix
    Q: Optional[sp.csr_matrix]


class DependencyMatrix:
    """Row-wise sparse accumulator ``dof -> {master dof: coefficient}``."""

    def __init__(self, n: int):
        self.n = n
        self.rows: Dict[int, Dict[int, float]] = {}

    def row_size(self, i: int) -> int:
        return len(self.rows.get(i, ()))

    def row(self, i: int) -> Dict[int, float]:
        return self.rows.get(i, {})

    def add(self, i: int, j: int, v: float):
        r = self.rows.setdefault(i, {})
        r[j] = r.get(j, 0.0) + v

    def __len__(self):
        return len(self.rows)


def add_dependencies(deps: DependencyMatrix, master_dofs, slave_dofs, I: np.ndarray, skipfirst: int = 0):
    """Make each not yet constrained slave DOF ``slave_dofs[i]`` (``i >=
    skipfirst``) depend on ``master_dofs`` with weights ``I[i, :]``.

    Signed DOFs carry their sign into the coefficient; a DOF never depends on
    itself, which drops the entries of shared vertices and of the duplicated
    DOFs of degenerate faces.
    """
    for i in range(skipfirst, len(slave_dofs)):
        s = int(slave_dofs[i])
        sdof, ssign = (s, 1.0) if s >= 0 else (-1 - s, -1.0)
        if deps.row_size(sdof):
            continue
        for j in range(len(master_dofs)):
            coef = I[i, j]
            if abs(coef) > DEPENDENCY_TOL:
                m = int(master_dofs[j])
                mdof, msign = (m, 1.0) if m >= 0 else (-1 - m, -1.0)
                if mdof != sdof:
                    deps.add(sdof, mdof, ssign * msign * coef)


def add_edge_face_dependencies(space, deps: DependencyMatrix, master_dofs, master_fe, nc_list, slave_index: int):
    """Constrain the edges of a slave face that lie strictly inside its master
    face. Such edges have no master edge, so the face relation is the only one
    covering them."""
    mesh, fec = space.mesh, space.fec
    slave = nc_list.slaves[slave_index]
    V = mesh.face_vertices(slave.index)
    E, _ = mesh.face_edges(slave.index)
    pm = nc_list.oriented_point_matrix(slave, mesh.face_geometry(slave.index))

    for i in range(len(E)):
        a, b = i, (i + 1) % len(V)
        if V[a] > V[b]:
            a, b = b, a
        edge_pm = pm[:2, [a, b]]
        mid = 0.5 * (edge_pm[:, 0] + edge_pm[:, 1])
        if _EDGE_EPS < mid[0] < 1 - _EDGE_EPS and _EDGE_EPS < mid[1] < 1 - _EDGE_EPS:
            slave_dofs, order = space.get_edge_dofs(int(E[i]), 0)
            edge_fe = fec.get_fe(Geometry.SEGMENT, order)
            I = edge_fe.transfer_matrix(master_fe, IsoparametricTransformation(Geometry.SEGMENT, edge_pm))
            add_dependencies(deps, master_dofs, slave_dofs, I, 0)


def _collect_nc_dependencies(space, deps: DependencyMatrix, sped: DependencyMatrix):
    mesh, fec = space.mesh, space.fec
    ncmesh = mesh.ncmesh
    if ncmesh is None:
        return
    for entity in (2, 1):
        nc_list = ncmesh.get_nc_list(entity)
        if not nc_list.masters:
            continue
        for master in nc_list.masters:
            master_geom = master.geom
            if master_geom not in _MASTER_GEOMETRIES:
                raise ConformityError(f"unsupported master geometry {master_geom.name} "
                                      f"(entity {entity}, index {master.index})")
            master_dofs, p = space.get_entity_dofs(entity, master.index, master_geom, 0)
            if not len(master_dofs):
                continue
            master_fe = fec.get_fe(master_geom, p)

            for si in range(master.slaves_begin, master.slaves_end):
                slave = nc_list.slaves[si]
                slave_dofs, q = space.get_entity_dofs(entity, slave.index, master_geom, 0)
                if not len(slave_dofs):
                    break
                slave_fe = fec.get_fe(slave.geom, q)
                T = IsoparametricTransformation(master_geom, nc_list.oriented_point_matrix(slave, master_geom))
                I = slave_fe.transfer_matrix(master_fe, T)

                # variable order 3-D: face edges are constrained by the edge relations
                skipfirst = 0
                if space.is_variable_order and entity == 2:
                    nv = fec.num_dofs(Geometry.POINT, q)
                    ne = fec.num_dofs(Geometry.SEGMENT, q)
                    skipfirst = geo.num_verts(master_geom) * (nv + ne)

                add_dependencies(deps, master_dofs, slave_dofs, I, skipfirst)
                if skipfirst:
                    add_edge_face_dependencies(space, deps, master_dofs, master_fe, nc_list, si)

            # lowest order set of a master interpolates its highest order set
            if space.is_variable_order:
                nvar = space.get_n_variants(entity, master.index)
                if nvar > 1:
                    highest_dofs, q = space.get_entity_dofs(entity, master.index, master_geom, nvar - 1)
                    highest_fe = fec.get_fe(master_geom, q)
                    I = master_fe.transfer_matrix(highest_fe, IsoparametricTransformation.identity(master_geom))
                    skip = len(master_dofs) - fec.num_dofs(master_geom, p)
                    add_dependencies(sped, highest_dofs, master_dofs, I, skip)


def _collect_variant_dependencies(space, deps: DependencyMatrix):
    """Minimum rule: higher order variants of an edge/face interpolate the
    lowest order one."""
    mesh, fec = space.mesh, space.fec
    for entity in range(1, mesh.dim):
        num_ent = mesh.num_edges if entity == 1 else mesh.num_faces
        for i in range(num_ent):
            if space.get_n_variants(entity, i) <= 1:
                continue
            geom = Geometry.SEGMENT if entity == 1 else mesh.face_geometry(i)
            T = IsoparametricTransformation.identity(geom)
            master_dofs, p = space.get_entity_dofs(entity, i, geom, 0)
            master_fe = fec.get_fe(geom, p)
            variant = 1
            while True:
                slave_dofs, q = space.get_entity_dofs(entity, i, geom, variant)
                if q < 0:
                    break
                slave_fe = fec.get_fe(geom, q)
                add_dependencies(deps, master_dofs, slave_dofs, slave_fe.transfer_matrix(master_fe, T))
                variant += 1


def build_conforming_interpolation(space) -> Optional[ConformingOperators]:
    """Build ``(P, R, Q)`` for ``space``; ``None`` when every DOF is true."""
    ndofs = space.ndofs
    deps = DependencyMatrix(ndofs)
    sped = DependencyMatrix(ndofs)

    _collect_nc_dependencies(space, deps, sped)
    if space.is_variable_order:
        _collect_variant_dependencies(space, deps)

    is_true = np.array([deps.row_size(i) == 0 for i in range(ndofs)], dtype=bool)
    n_true = int(is_true.sum())
    if n_true == ndofs:
        return None

    true_dofs = np.flatnonzero(is_true)
    true_index = np.full(ndofs, -1, dtype=np.int64)
    true_index[true_dofs] = np.arange(n_true)

    P_rows: List[Optional[Dict[int, float]]] = [None] * ndofs
    for i in true_dofs:
        P_rows[i] = {int(true_index[i]): 1.0}

    Q = None
    if space.is_variable_order:
        q_rows, q_cols, q_vals = [], [], []
        for i in true_dofs:
            row = sped.row(int(i)) or {int(i): 1.0}
            for j, v in row.items():
                q_rows.append(true_index[i])
                q_cols.append(j)
                q_vals.append(v)
        Q = sp.csr_matrix((q_vals, (q_rows, q_cols)), shape=(n_true, ndofs))

    # slaves of slaves are finalized in later passes
    n_finalized = n_true
    passes = 0
    finished = False
    while not finished:
        finished = True
        passes += 1
        for dof in range(ndofs):
            if P_rows[dof] is not None:
                continue
            dep = deps.row(dof)
            if any(P_rows[m] is None for m in dep):
                continue
            row: Dict[int, float] = {}
            for m, coef in dep.items():
                for c, v in P_rows[m].items():
                    row[c] = row.get(c, 0.0) + coef * v
            P_rows[dof] = row
            n_finalized += 1
            finished = False

    if n_finalized != ndofs:
        raise ConformityError(f"Error creating cP matrix: n_finalized = {n_finalized}, ndofs = {ndofs}")

    rows, cols, vals = [], [], []
    for i, row in enumerate(P_rows):
        for c, v in row.items():
            rows.append(i)
            cols.append(c)
            vals.append(v)
    P = sp.csr_matrix((vals, (rows, cols)), shape=(ndofs, n_true))
    R = sp.csr_matrix((np.ones(n_true), (np.arange(n_true), true_dofs)), shape=(n_true, ndofs))

    logger.debug("conforming interpolation: %d true of %d DOFs, %d finalization passes",
                 n_true, ndofs, passes)

    if space.vdim > 1:
        P = make_vdim_matrix(space, P)
        R = make_vdim_matrix(space, R)
        if Q is not None:
            Q = make_vdim_matrix(space, Q)
    return ConformingOperators(P, R, Q)


def make_vdim_matrix(space, mat: sp.spmatrix) -> sp.csr_matrix:
    """Replicate a scalar DOF matrix for every vector component using the
    space's ordering."""
    vdim = space.vdim
    if vdim == 1:
        return sp.csr_matrix(mat)
    mat = sp.csr_matrix(mat)
    height, width = mat.shape
    rows, cols, vals = [], [], []
    for i in range(height):
        lo, hi = mat.indptr[i], mat.indptr[i + 1]
        row_cols, row_vals = mat.indices[lo:hi], mat.data[lo:hi]
        for vd in range(vdim):
            r = map_dof(space.ordering, height, vdim, i, vd)
            rows.append(np.full(len(row_cols), r, dtype=np.int64))
            cols.append(map_dofs(space.ordering, width, vdim, row_cols, vd))
            vals.append(row_vals)
    rows = np.concatenate(rows) if rows else np.zeros(0, dtype=np.int64)
    cols = np.concatenate(cols) if cols else np.zeros(0, dtype=np.int64)
    vals = np.concatenate(vals) if vals else np.zeros(0)
    return sp.csr_matrix((vals, (rows, cols)), shape=(vdim * height, vdim * width))
