"""pyhpfem.core.transfer
Operators moving finite element vectors between consecutive meshes.

* refinement (coarse → fine): nodal interpolation, assembled as a sparse
  matrix or applied matrix-free;
* derefinement (fine → coarse): nodal restriction from the children;
* L2-optimal derefinement and the two-grid L2 projection between a
  coarse space and a space on its refined mesh.

Local matrices are computed once per geometry, element order and
refinement pattern (point matrix) and reused for every element.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, List, Optional, Sequence
import numpy as np
import scipy.linalg
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, aslinearoperator

from pyhpfem.core.geometry import Geometry
from pyhpfem.core.mesh import Operation
from pyhpfem.core.ordering import (decode_dofs, dof_signs, get_sub_vector,
                                   set_sub_vector, add_sub_vector)
from pyhpfem.errors import SpaceError
from pyhpfem.fem.integrators import MassIntegrator
from pyhpfem.fem.transform import IsoparametricTransformation
from pyhpfem.integration.quadrature import volume

logger = logging.getLogger(__name__)


def _transform(geom, pm) -> IsoparametricTransformation:
    return IsoparametricTransformation(geom, pm)


@lru_cache(maxsize=None)
def _local_transfer(fine_fe, coarse_fe, pm_key: tuple) -> np.ndarray:
    geom, shape, flat = pm_key
    T = _transform(geom, np.array(flat).reshape(shape))
    return fine_fe.transfer_matrix(coarse_fe, T)


def _pm_key(geom, pm) -> tuple:
    pm = np.asarray(pm, dtype=float)
    return Geometry(geom), pm.shape, tuple(pm.ravel().tolist())


# -------------------------------------------------------------------------
# refinement
# -------------------------------------------------------------------------
def local_refinement_matrices(space, geom, coarse_space=None) -> np.ndarray:
    """``(nmat, fine_ldof, coarse_ldof)`` interpolation matrices, one per
    point matrix of the last refinement, for the default order elements."""
    geom = Geometry(geom)
    pmats = space.mesh.refinement_transforms().point_matrices[geom]
    fine_fe = space.fec.fe_for_geometry(geom)
    coarse_fe = (coarse_space or space).fec.fe_for_geometry(geom)
    return np.array([_local_transfer(fine_fe, coarse_fe, _pm_key(geom, pm)) for pm in pmats])


class _RefinementData:
    """Per fine element local matrices and coarse DOF rows of a refinement."""

    def __init__(self, space, old_elem_dof: Sequence[np.ndarray], old_ndofs: int,
                 coarse_fec=None, coarse_orders=None):
        mesh = space.mesh
        if mesh.num_elements < len(old_elem_dof):
            raise SpaceError("Previous mesh is not coarser.")
        self.space = space
        self.old_elem_dof = [np.asarray(r, dtype=np.int64) for r in old_elem_dof]
        self.old_ndofs = int(old_ndofs)
        tr = mesh.refinement_transforms()
        if len(tr.embeddings) != mesh.num_elements:
            raise SpaceError("refinement transforms do not match the mesh")
        self.embeddings = tr.embeddings
        self.local: List[np.ndarray] = []
        for k, emb in enumerate(tr.embeddings):
            geom = mesh.element_geometry(k)
            fine_fe = space.get_fe(k)
            if coarse_fec is None:
                coarse_fe = fine_fe
            else:
                p = coarse_fec.default_order if coarse_orders is None else int(coarse_orders[emb.parent])
                coarse_fe = coarse_fec.get_fe(geom, p)
            pm = tr.point_matrices[geom][emb.matrix]
            self.local.append(_local_transfer(fine_fe, coarse_fe, _pm_key(geom, pm)))

    def coarse_vdofs(self, k: int, vd: int) -> np.ndarray:
        return self.space.dofs_to_vdofs(self.old_elem_dof[self.embeddings[k].parent], vd, ndofs=self.old_ndofs)


def refinement_matrix_main(space, data: _RefinementData) -> sp.csr_matrix:
    """Sparse interpolation, every fine vdof row written by the first element
    that contains it."""
    vdim = space.vdim
    height, width = space.vsize, data.old_ndofs * vdim
    mark = np.zeros(height, dtype=np.bool_)
    rows, cols, vals = [], [], []
    for k in range(space.mesh.num_elements):
        lP = data.local[k]
        dofs = space.get_element_dofs(k)
        for vd in range(vdim):
            c_vdofs = data.coarse_vdofs(k, vd)
            c_idx, c_sgn = decode_dofs(c_vdofs), dof_signs(c_vdofs)
            f_vdofs = space.dofs_to_vdofs(dofs, vd)
            for i, r in enumerate(f_vdofs):
                m = -1 - r if r < 0 else r
                if mark[m]:
                    continue
                s = -1.0 if r < 0 else 1.0
                rows.append(np.full(len(c_idx), m, dtype=np.int64))
                cols.append(c_idx)
                vals.append(s * c_sgn * lP[i])
                mark[m] = True
    if not mark.all():
        raise SpaceError("Not all rows of P set.")
    P = sp.csr_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                      shape=(height, width))
    P.eliminate_zeros()
    logger.debug("refinement matrix %s, nnz=%d", P.shape, P.nnz)
    return P


def refinement_matrix(space, old_ndofs: int, old_elem_dof) -> sp.csr_matrix:
    """Sparse old → new interpolation after :meth:`Mesh.refine`."""
    if space.mesh.last_operation != Operation.REFINE:
        raise SpaceError("last mesh operation was not a refinement")
    return refinement_matrix_main(space, _RefinementData(space, old_elem_dof, old_ndofs))


def refinement_matrix_from_coarse(space, coarse_space) -> sp.csr_matrix:
    """Interpolation from ``coarse_space`` on the mesh before the last
    refinement (possibly another collection or order) into ``space``."""
    data = _RefinementData(space, [coarse_space.get_element_dofs(i) for i in range(coarse_space.num_elements)],
                           coarse_space.ndofs, coarse_space.fec, coarse_space.elem_order)
    return refinement_matrix_main(space, data)


class RefinementOperator(LinearOperator):
    """Matrix-free version of :func:`refinement_matrix`.

    The transpose skips fine DOFs already met in a previous element so that
    shared DOFs contribute once, matching the sparse matrix.
    """

    def __init__(self, space, old_elem_dof, old_ndofs: int, *, _data: Optional[_RefinementData] = None):
        self.space = space
        self.data = _data or _RefinementData(space, old_elem_dof, old_ndofs)
        super().__init__(dtype=np.float64, shape=(space.vsize, self.data.old_ndofs * space.vdim))

    @classmethod
    def from_coarse_space(cls, space, coarse_space) -> "RefinementOperator":
        data = _RefinementData(space, [coarse_space.get_element_dofs(i) for i in range(coarse_space.num_elements)],
                               coarse_space.ndofs, coarse_space.fec, coarse_space.elem_order)
        return cls(space, None, coarse_space.ndofs, _data=data)

    def _matvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        space, data = self.space, self.data
        y = np.zeros(self.shape[0])
        for k in range(space.mesh.num_elements):
            dofs = space.get_element_dofs(k)
            lP = data.local[k]
            for vd in range(space.vdim):
                sub_x = get_sub_vector(x, data.coarse_vdofs(k, vd))
                set_sub_vector(y, space.dofs_to_vdofs(dofs, vd), lP @ sub_x)
        return y

    def _rmatvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        space, data = self.space, self.data
        y = np.zeros(self.shape[1])
        processed = np.zeros(space.ndofs, dtype=np.bool_)
        for k in range(space.mesh.num_elements):
            f_dofs = space.get_element_dofs(k)
            seen = processed[decode_dofs(f_dofs)]
            lP = data.local[k]
            for vd in range(space.vdim):
                sub_x = get_sub_vector(x, space.dofs_to_vdofs(f_dofs, vd))
                sub_x[seen] = 0.0
                add_sub_vector(y, data.coarse_vdofs(k, vd), lP.T @ sub_x)
            processed[decode_dofs(f_dofs)] = True
        return y


# -------------------------------------------------------------------------
# derefinement
# -------------------------------------------------------------------------
def local_derefinement_matrices(space, geom) -> np.ndarray:
    """``(nmat, ldof, ldof)`` nodal restriction matrices of the last
    derefinement; rows of coarse nodes outside a child are ``nan``."""
    geom = Geometry(geom)
    pmats = space.mesh.derefinement_transforms().point_matrices[geom]
    fe = space.fec.fe_for_geometry(geom)
    return np.array([fe.local_restriction(_transform(geom, pm)) for pm in pmats])


def derefinement_matrix(space, old_ndofs: int, old_elem_dof, old_orders=None) -> sp.csr_matrix:
    """Sparse fine → coarse nodal restriction after :meth:`Mesh.derefine`.

    Every coarse vdof takes its value from the first child that contains
    its node.
    """
    mesh = space.mesh
    if not mesh.nonconforming:
        raise SpaceError("Not implemented for conforming meshes.")
    if not old_ndofs:
        raise SpaceError("Missing previous (finer) space.")
    if space.ndofs > old_ndofs:
        raise SpaceError("Previous space is not finer.")
    dtrans = mesh.derefinement_transforms()
    if len(dtrans.embeddings) != len(old_elem_dof):
        raise SpaceError("derefinement transforms do not match the previous space")

    vdim = space.vdim
    height, width = space.vsize, old_ndofs * vdim
    mark = np.zeros(height, dtype=np.bool_)
    cache: Dict[tuple, np.ndarray] = {}
    rows, cols, vals = [], [], []
    for k, emb in enumerate(dtrans.embeddings):
        geom = mesh.element_geometry(emb.parent)
        coarse_fe = space.get_fe(emb.parent)
        fine_order = coarse_fe.order if old_orders is None else int(old_orders[k])
        key = (geom, coarse_fe.order, fine_order, emb.matrix)
        lR = cache.get(key)
        if lR is None:
            fine_fe = space.fec.get_fe(geom, fine_order)
            lR = coarse_fe.local_restriction(_transform(geom, dtrans.point_matrices[geom][emb.matrix]), fine_fe)
            cache[key] = lR

        dofs = space.get_element_dofs(emb.parent)
        old_dofs = np.asarray(old_elem_dof[k], dtype=np.int64)
        for vd in range(vdim):
            o_vdofs = space.dofs_to_vdofs(old_dofs, vd, ndofs=old_ndofs)
            o_idx, o_sgn = decode_dofs(o_vdofs), dof_signs(o_vdofs)
            c_vdofs = space.dofs_to_vdofs(dofs, vd)
            for i, r in enumerate(c_vdofs):
                if not np.isfinite(lR[i, 0]):
                    continue
                m = -1 - r if r < 0 else r
                if mark[m]:
                    continue
                s = -1.0 if r < 0 else 1.0
                rows.append(np.full(len(o_idx), m, dtype=np.int64))
                cols.append(o_idx)
                vals.append(s * o_sgn * lR[i])
                mark[m] = True

    if not mark.all():
        raise SpaceError("internal error: not all rows of R were set.")
    R = sp.csr_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                      shape=(height, width))
    R.eliminate_zeros()
    logger.debug("derefinement matrix %s, nnz=%d", R.shape, R.nnz)
    return R


class DerefinementOperator(LinearOperator):
    """L2-optimal fine → coarse restriction.

    For each refinement type (coarse geometry plus the point matrices of its
    children) the local operator of child ``s`` is
    ``lR_s = (sum_t P_t^T M_t P_t)^{-1} P_s^T M_s`` with ``P`` the local
    interpolation and ``M`` the child mass matrix from ``mass_integ``.
    """

    def __init__(self, f_fes, c_fes, mass_integ=None):
        if c_fes.ordering != f_fes.ordering or c_fes.vdim != f_fes.vdim:
            raise ValueError("incompatible coarse and fine FE spaces")
        mass_integ = mass_integ or MassIntegrator()
        self.fine_fes = f_fes
        f_mesh = f_fes.mesh
        rtrans = f_mesh.refinement_transforms()

        localP: Dict[Geometry, List[np.ndarray]] = {}
        localM: Dict[Geometry, List[np.ndarray]] = {}
        for geom in f_mesh.element_geometries():
            fine_fe = f_fes.fec.fe_for_geometry(geom)
            coarse_fe = c_fes.fec.fe_for_geometry(geom)
            localP[geom], localM[geom] = [], []
            for pm in rtrans.point_matrices[geom]:
                T = _transform(geom, pm)
                localP[geom].append(fine_fe.transfer_matrix(coarse_fe, T))
                localM[geom].append(mass_integ.assemble_element_matrix(fine_fe, T))

        cmap = rtrans.get_coarse_to_fine_map(f_mesh)
        if len(cmap.coarse_to_fine) != c_fes.num_elements:
            raise SpaceError("coarse space does not match the refinement transforms")
        self.coarse_to_fine = cmap.coarse_to_fine
        self.coarse_to_ref_type = cmap.coarse_to_ref_type

        self.localR: List[List[np.ndarray]] = []
        for mats, geom in zip(cmap.ref_type_to_matrix, cmap.ref_type_to_geom):
            lRs = [localP[geom][m].T @ localM[geom][m] for m in mats]
            lPtMP = sum(lR @ localP[geom][m] for lR, m in zip(lRs, mats))
            self.localR.append([np.linalg.solve(lPtMP, lR) for lR in lRs])

        self.coarse_elem_dof = [c_fes.get_element_dofs(i) for i in range(c_fes.num_elements)]
        self.coarse_ndofs = c_fes.ndofs
        super().__init__(dtype=np.float64, shape=(c_fes.vsize, f_fes.vsize))
        logger.debug("derefinement operator %s with %d refinement types", self.shape, len(self.localR))

    def _matvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        fes = self.fine_fes
        vdim = fes.vdim
        y = np.zeros(self.shape[0])
        for c, fines in enumerate(self.coarse_to_fine):
            c_vdofs = fes.dofs_to_vdofs(self.coarse_elem_dof[c], ndofs=self.coarse_ndofs)
            loc_y = np.zeros((len(c_vdofs) // vdim, vdim))
            for s, f in enumerate(fines):
                f_vdofs = fes.get_element_vdofs(f)
                loc_x = get_sub_vector(x, f_vdofs).reshape(vdim, -1).T
                loc_y += self.localR[self.coarse_to_ref_type[c]][s] @ loc_x
            set_sub_vector(y, c_vdofs, loc_y.T.ravel())
        return y


# -------------------------------------------------------------------------
# grid transfers
# -------------------------------------------------------------------------
class GridTransfer:
    """Pair of operators between a coarse space and a fine space."""

    def __init__(self, dom_fes, ran_fes):
        if dom_fes.vdim != ran_fes.vdim or dom_fes.ordering != ran_fes.ordering:
            raise ValueError("incompatible domain and range spaces")
        self.dom_fes = dom_fes
        self.ran_fes = ran_fes
        self.operator_type = "sparse"

    def forward_operator(self):
        raise NotImplementedError

    def backward_operator(self):
        raise NotImplementedError

    def true_forward_operator(self):
        return self.make_true_operator(self.dom_fes, self.ran_fes, self.forward_operator())

    def true_backward_operator(self):
        return self.make_true_operator(self.ran_fes, self.dom_fes, self.backward_operator())

    @staticmethod
    def make_true_operator(fes_in, fes_out, oper):
        """``R_out @ oper @ P_in`` with missing conforming operators treated as
        identities."""
        P_in = fes_in.get_conforming_prolongation()
        R_out = fes_out.get_conforming_restriction()
        if sp.issparse(oper):
            out = oper
            if R_out is not None:
                out = R_out @ out
            if P_in is not None:
                out = out @ P_in
            return sp.csr_matrix(out)
        out = aslinearoperator(oper)
        if R_out is not None:
            out = aslinearoperator(R_out) * out
        if P_in is not None:
            out = out * aslinearoperator(P_in)
        return out


class InterpolationGridTransfer(GridTransfer):
    """Nodal interpolation forward, L2-optimal derefinement backward."""

    def __init__(self, coarse_fes, fine_fes, operator_type: str = "sparse", mass_integ=None):
        super().__init__(coarse_fes, fine_fes)
        self.operator_type = operator_type
        self.mass_integ = mass_integ
        self._F = None
        self._B = None

    def forward_operator(self):
        if self._F is None:
            self._F = self.ran_fes.get_transfer_operator(self.dom_fes, self.operator_type)
        return self._F

    def backward_operator(self):
        if self._B is None:
            self._B = DerefinementOperator(self.ran_fes, self.dom_fes, self.mass_integ)
        return self._B


def _mixed_mass(fine_fe, coarse_fe, child_pm, fine_trans) -> np.ndarray:
    """``M[i, j] = ∫_fine φ_i ψ_j`` with ``ψ`` a coarse shape evaluated
    through the child → parent reference map."""
    geom = fine_fe.geom
    emb = _transform(geom, child_pm)
    pts, wts = volume(geom, fine_fe.order + coarse_fe.order + fine_trans.order_w)
    M = np.zeros((fine_fe.ndof, coarse_fe.ndof))
    for x, w in zip(pts, wts):
        M += (w * fine_trans.weight(x)) * np.outer(fine_fe.shape(x), coarse_fe.shape(emb.transform(x)))
    return M


class L2Projection(LinearOperator):
    """Coarse (high order) → fine (low order refined) L2 projection.

    Both spaces must be discontinuous: the projection is computed element
    patch by element patch, ``R = M_L^{-1} M_LH``.
    """

    def __init__(self, fes_ho, fes_lor, mass_integ=None):
        mass_integ = mass_integ or MassIntegrator()
        self.fes_ho, self.fes_lor = fes_ho, fes_lor
        mesh_lor = fes_lor.mesh
        rtrans = mesh_lor.refinement_transforms()
        cmap = rtrans.get_coarse_to_fine_map(mesh_lor)
        if len(cmap.coarse_to_fine) != fes_ho.num_elements:
            raise SpaceError("high order space does not match the refinement transforms")
        self.coarse_to_fine = cmap.coarse_to_fine

        # per coarse element: R (nlor_patch, nho) and M_L blocks for the prolongation
        self.R_blocks: List[np.ndarray] = []
        self.ML_blocks: List[np.ndarray] = []
        for c, fines in enumerate(self.coarse_to_fine):
            ho_fe = fes_ho.get_fe(c)
            R_rows, ML = [], []
            for f in fines:
                lor_fe = fes_lor.get_fe(f)
                trans = mesh_lor.element_transformation(f)
                geom = mesh_lor.element_geometry(f)
                pm = rtrans.point_matrices[geom][rtrans.embeddings[f].matrix]
                M_L = mass_integ.assemble_element_matrix(lor_fe, trans)
                M_LH = _mixed_mass(lor_fe, ho_fe, pm, trans)
                R_rows.append(np.linalg.solve(M_L, M_LH))
                ML.append(M_L)
            self.R_blocks.append(np.vstack(R_rows))
            self.ML_blocks.append(ML)
        super().__init__(dtype=np.float64, shape=(fes_lor.vsize, fes_ho.vsize))

    def _patch_vdofs(self, c: int, vd: int):
        ho = self.fes_ho.dofs_to_vdofs(self.fes_ho.get_element_dofs(c), vd)
        lor = np.concatenate([self.fes_lor.dofs_to_vdofs(self.fes_lor.get_element_dofs(f), vd)
                              for f in self.coarse_to_fine[c]])
        return ho, lor

    def _matvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        y = np.zeros(self.shape[0])
        for c, R in enumerate(self.R_blocks):
            for vd in range(self.fes_ho.vdim):
                ho, lor = self._patch_vdofs(c, vd)
                set_sub_vector(y, lor, R @ get_sub_vector(x, ho))
        return y

    def _rmatvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        y = np.zeros(self.shape[1])
        for c, R in enumerate(self.R_blocks):
            for vd in range(self.fes_ho.vdim):
                ho, lor = self._patch_vdofs(c, vd)
                add_sub_vector(y, ho, R.T @ get_sub_vector(x, lor))
        return y


class L2Prolongation(LinearOperator):
    """Left inverse of :class:`L2Projection`: ``P = (R^T M_L R)^{-1} R^T M_L``
    per patch, so that ``P @ R`` is the identity on the high order space."""

    def __init__(self, l2proj: L2Projection):
        self.l2proj = l2proj
        self.P_blocks = []
        for R, ML in zip(l2proj.R_blocks, l2proj.ML_blocks):
            M = scipy.linalg.block_diag(*ML)
            self.P_blocks.append(np.linalg.solve(R.T @ M @ R, R.T @ M))
        super().__init__(dtype=np.float64, shape=(l2proj.shape[1], l2proj.shape[0]))

    def _matvec(self, x):
        x = np.asarray(x, dtype=float).ravel()
        y = np.zeros(self.shape[0])
        proj = self.l2proj
        for c, P in enumerate(self.P_blocks):
            for vd in range(proj.fes_ho.vdim):
                ho, lor = proj._patch_vdofs(c, vd)
                set_sub_vector(y, ho, P @ get_sub_vector(x, lor))
        return y


class L2ProjectionGridTransfer(GridTransfer):
    """Two-grid transfer between a high order space and a low order space
    on the refined mesh: forward is the L2 projection, backward its
    least-squares inverse."""

    def __init__(self, fes_ho, fes_lor, mass_integ=None):
        super().__init__(fes_ho, fes_lor)
        if fes_ho.fec.family != "L2" or fes_lor.fec.family != "L2":
            logger.warning("L2ProjectionGridTransfer on continuous spaces %s -> %s: shared DOFs are "
                           "overwritten patch by patch, the result is not an L2 projection",
                           fes_ho.fec.name, fes_lor.fec.name)
        self.mass_integ = mass_integ
        self._F = None
        self._B = None

    def forward_operator(self) -> L2Projection:
        if self._F is None:
            self._F = L2Projection(self.dom_fes, self.ran_fes, self.mass_integ)
        return self._F

    def backward_operator(self) -> L2Prolongation:
        if self._B is None:
            self._B = L2Prolongation(self.forward_operator())
        return self._B
