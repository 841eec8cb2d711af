"""pyhpfem.core.fespace

Global DOF numbering of a (possibly variable order, possibly non-conforming)
finite element space.

DOFs are laid out in four contiguous blocks: vertex DOFs, edge DOFs, face
DOFs (3-D only) and element interior DOFs. In variable order spaces an edge
or face may carry several DOF ranges ("variants"), one per polynomial order
required by its neighbours, lowest order first. Hanging-node and order
constraints are expressed by the conforming prolongation ``cP`` built on
demand by :func:`pyhpfem.core.conforming.build_conforming_interpolation`.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple
import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import aslinearoperator

from pyhpfem.core import geometry as geo
from pyhpfem.core.cache import OperatorCache
from pyhpfem.core.conforming import ConformingOperators, build_conforming_interpolation
from pyhpfem.core.doftable import VarDofTable, build_ndof_to_order
from pyhpfem.core.geometry import Geometry
from pyhpfem.core.mesh import Operation
from pyhpfem.core.ordering import (Ordering, decode_dofs, dof_signs, dofs_to_vdofs,
                                   encode_dof, map_dof, map_dofs, mark_dofs, unmap_vdof)
from pyhpfem.core.orders import calc_edge_face_var_orders
from pyhpfem.core import transfer
from pyhpfem.errors import ConformityError, OutOfDateError, SpaceError
from pyhpfem.fem.transform import IsoparametricTransformation
from pyhpfem.utils.bitset import BitSet, OrderSet

logger = logging.getLogger(__name__)

_EMPTY = np.zeros(0, dtype=np.int64)
UPDATE_OPERATOR_TYPES = ("matrix_free", "sparse")
FACE_TYPES = ("interior", "boundary")


class FiniteElementSpace:
    """
    DOF manager of a finite element collection over a mesh.

    Parameters
    ----------
    mesh : Mesh
        Borrowed; must outlive the space. After every mesh modification
        :meth:`update` has to be called before the space is queried again.
    fec : H1Collection or L2Collection
    vdim : int
        Number of vector components.
    ordering : Ordering
        Layout of the vector components.
    relaxed_hp : bool
        Variable order only: do not propagate slave orders to master
        edges/faces (fewer constraints, conformity of differing orders is
        not enforced).
    DEBUG : bool
        Verify ``cR @ cP == I`` whenever the constraints are built.
    """

    def __init__(self, mesh, fec, vdim: int = 1, ordering: Ordering = Ordering.BY_NODES,
                 *, relaxed_hp: bool = False, DEBUG: bool = False):
        if vdim < 1:
            raise ValueError(f"vdim must be positive, got {vdim}")
        if fec.dim != mesh.dim:
            raise ValueError(f"collection {fec.name} does not match mesh dimension {mesh.dim}")
        self.mesh = mesh
        self.fec = fec
        self.vdim = int(vdim)
        self.ordering = Ordering(ordering)
        self.relaxed_hp = bool(relaxed_hp)
        self.DEBUG = DEBUG

        self.elem_order: Optional[np.ndarray] = None
        self.orders_changed = False
        self.sequence = mesh.sequence
        self.update_operator_type = "matrix_free"
        self.Th = None
        self.descriptor_extras: Dict[str, List[str]] = {}

        self._cache = OperatorCache()
        self._elem_dof: Optional[List[np.ndarray]] = None
        self._bdr_elem_dof: Optional[List[np.ndarray]] = None
        self._face_dof: Optional[List[np.ndarray]] = None
        self._dof_perm: Optional[np.ndarray] = None
        self._dof_elem: Optional[np.ndarray] = None
        self._dof_ldof: Optional[np.ndarray] = None
        self._construct()
        self._build_element_to_dof_table()

    def __repr__(self):
        return (f"<FiniteElementSpace {self.fec.name} vdim={self.vdim} ndofs={self.ndofs} "
                f"variable_order={self.is_variable_order}>")

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @property
    def is_variable_order(self) -> bool:
        return self.elem_order is not None

    def _element_order(self, i: int) -> int:
        return int(self.elem_order[i]) if self.elem_order is not None else self.fec.default_order

    def _construct(self):
        mesh, fec = self.mesh, self.fec
        if self.is_variable_order and not mesh.nonconforming:
            raise SpaceError("Variable order space requires a nonconforming mesh.")

        order = fec.default_order
        self._var_edge_dofs: Optional[VarDofTable] = None
        self._var_face_dofs: Optional[VarDofTable] = None
        self._bdofs: Optional[np.ndarray] = None
        self._ndof_to_order: Dict[Geometry, Dict[int, int]] = {}

        mixed_elements = len(mesh.element_geometries()) > 1
        mixed_faces = len(mesh.face_geometries()) > 1

        edge_orders = face_orders = None
        if self.is_variable_order:
            edge_orders, face_orders = calc_edge_face_var_orders(mesh, self.elem_order, self.relaxed_hp)
        elif mixed_faces:
            face_orders = [OrderSet.single(order)] * mesh.num_faces

        self.nvdofs = mesh.num_vertices * fec.num_dofs(Geometry.POINT, order)

        self.nedofs = 0
        if mesh.dim > 1 and mesh.num_edges:
            if edge_orders is not None:
                self._var_edge_dofs, self.nedofs = VarDofTable.build(
                    edge_orders, lambda i, p: fec.num_dofs(Geometry.SEGMENT, p))
                used = sorted({p for s in edge_orders for p in s})
                self._ndof_to_order[Geometry.SEGMENT] = build_ndof_to_order(
                    lambda p: fec.num_dofs(Geometry.SEGMENT, p), used)
            else:
                self.nedofs = mesh.num_edges * fec.num_dofs(Geometry.SEGMENT, order)

        self.nfdofs = 0
        self.uni_fdof = -1
        if mesh.num_faces:
            if face_orders is not None:
                self._var_face_dofs, self.nfdofs = VarDofTable.build(
                    face_orders, lambda i, p: fec.num_dofs(mesh.face_geometry(i), p))
                for g in mesh.face_geometries():
                    used = sorted({p for f, s in enumerate(face_orders) if mesh.face_geometry(f) == g for p in s})
                    self._ndof_to_order[g] = build_ndof_to_order(lambda p, g=g: fec.num_dofs(g, p), used)
            else:
                self.uni_fdof = fec.num_dofs(mesh.face_geometry(0), order)
                self.nfdofs = mesh.num_faces * self.uni_fdof

        if self.is_variable_order or mixed_elements:
            counts = [fec.num_dofs(mesh.element_geometry(i), self._element_order(i))
                      for i in range(mesh.num_elements)]
            self._bdofs = np.concatenate([[0], np.cumsum(counts, dtype=np.int64)]).astype(np.int64)
            self.nbdofs = int(self._bdofs[-1])
        elif mesh.num_elements:
            self.nbdofs = mesh.num_elements * fec.num_dofs(mesh.element_geometry(0), order)
        else:
            self.nbdofs = 0

        self.ndofs = self.nvdofs + self.nedofs + self.nfdofs + self.nbdofs
        self.orders_changed = False
        logger.debug("constructed %s: ndofs=%d (vertex %d, edge %d, face %d, interior %d)",
                     fec.name, self.ndofs, self.nvdofs, self.nedofs, self.nfdofs, self.nbdofs)

    def _destroy(self):
        self._cache.invalidate()
        self._elem_dof = None
        self._bdr_elem_dof = None
        self._face_dof = None
        self._dof_perm = None
        self._dof_elem = None
        self._dof_ldof = None
        self.Th = None

    # ------------------------------------------------------------------
    # sizes and up-to-date checks
    # ------------------------------------------------------------------
    @property
    def vsize(self) -> int:
        return self.vdim * self.ndofs

    def get_vsize(self) -> int:
        return self.vsize

    @property
    def true_vsize(self) -> int:
        P = self.get_conforming_prolongation()
        return self.vsize if P is None else P.shape[1]

    def get_true_vsize(self) -> int:
        return self.true_vsize

    @property
    def num_elements(self) -> int:
        return self.mesh.num_elements

    def _check_sequence(self):
        if self.sequence != self.mesh.sequence:
            raise OutOfDateError(f"space is out of date (space sequence {self.sequence}, "
                                 f"mesh sequence {self.mesh.sequence}); call update()")

    def _check_up_to_date(self):
        self._check_sequence()
        if self.orders_changed:
            raise OutOfDateError("element orders changed; call update()")

    # ------------------------------------------------------------------
    # element orders
    # ------------------------------------------------------------------
    def set_element_order(self, i: int, p: int):
        """Set the order of element ``i``; takes effect after :meth:`update`."""
        self._check_sequence()
        if not (0 <= i < self.mesh.num_elements):
            raise IndexError(f"element {i} out of range [0, {self.mesh.num_elements})")
        if p < self.fec.min_order:
            raise ValueError(f"order {p} below the minimum {self.fec.min_order} of {self.fec.name}")
        if self.elem_order is None:
            self.elem_order = np.full(self.mesh.num_elements, self.fec.default_order, dtype=np.int64)
        if self.elem_order[i] != p:
            self.elem_order[i] = p
            self.orders_changed = True

    def get_element_order(self, i: int) -> int:
        self._check_sequence()
        if not (0 <= i < self.mesh.num_elements):
            raise IndexError(f"element {i} out of range [0, {self.mesh.num_elements})")
        return self._element_order(i)

    def get_edge_order(self, edge: int, variant: int = 0) -> int:
        """Order of ``variant`` on ``edge``, -1 past the last variant."""
        self._check_up_to_date()
        if self._var_edge_dofs is None:
            return self.fec.default_order if variant == 0 else -1
        rng = self._var_edge_dofs.variant_range(edge, variant)
        return -1 if rng is None else self._ndof_to_order[Geometry.SEGMENT][rng[1]]

    def get_face_order(self, face: int, variant: int = 0) -> int:
        self._check_up_to_date()
        if self.mesh.dim == 2:
            return self.get_edge_order(face, variant)
        if self._var_face_dofs is None:
            return self.fec.default_order if variant == 0 else -1
        rng = self._var_face_dofs.variant_range(face, variant)
        if rng is None:
            return -1
        return self._ndof_to_order[self.mesh.face_geometry(face)][rng[1]]

    def get_n_variants(self, entity: int, index: int) -> int:
        """Number of order variants of an edge (``entity=1``) or face (2)."""
        if entity == 1:
            table = self._var_edge_dofs
        elif entity == 2:
            table = self._var_face_dofs if self.mesh.dim == 3 else self._var_edge_dofs
        else:
            raise ValueError(f"entity must be 1 (edge) or 2 (face), got {entity}")
        return 1 if table is None else table.num_variants(index)

    def update_element_orders(self):
        """Carry element orders over the last mesh operation: children inherit
        the parent's order, a derefined parent takes its finest child's."""
        mesh = self.mesh
        old = self.elem_order
        if mesh.last_operation == Operation.REFINE:
            tr = mesh.refinement_transforms()
            new = np.array([old[emb.parent] for emb in tr.embeddings], dtype=np.int64)
        elif mesh.last_operation == Operation.DEREFINE:
            tr = mesh.derefinement_transforms()
            new = np.zeros(mesh.num_elements, dtype=np.int64)
            for k, emb in enumerate(tr.embeddings):
                new[emb.parent] = max(new[emb.parent], old[k])
        else:
            raise SpaceError(f"cannot transfer element orders over {mesh.last_operation.name}")
        self.elem_order = new

    # ------------------------------------------------------------------
    # vector DOFs
    # ------------------------------------------------------------------
    def dof_to_vdof(self, dof: int, vd: int, ndofs: Optional[int] = None) -> int:
        return map_dof(self.ordering, self.ndofs if ndofs is None else ndofs, self.vdim, dof, vd)

    def vdof_to_dof(self, vdof: int) -> Tuple[int, int]:
        """Inverse of :meth:`dof_to_vdof` for unsigned vdofs: ``(dof, vd)``."""
        return unmap_vdof(self.ordering, self.ndofs, self.vdim, vdof)

    def dofs_to_vdofs(self, dofs, vd: Optional[int] = None, ndofs: Optional[int] = None) -> np.ndarray:
        """All components (``vd=None``) as blocks, or a single component."""
        n = self.ndofs if ndofs is None else ndofs
        if vd is None:
            return dofs_to_vdofs(self.ordering, n, self.vdim, dofs)
        return map_dofs(self.ordering, n, self.vdim, dofs, vd)

    def get_element_vdofs(self, i: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_element_dofs(i))

    def get_bdr_element_vdofs(self, b: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_bdr_element_dofs(b))

    def get_face_vdofs(self, face: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_face_dofs(face)[0])

    def get_edge_vdofs(self, edge: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_edge_dofs(edge)[0])

    def get_vertex_vdofs(self, v: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_vertex_dofs(v))

    def get_element_interior_vdofs(self, i: int) -> np.ndarray:
        return self.dofs_to_vdofs(self.get_element_interior_dofs(i))

    # ------------------------------------------------------------------
    # entity DOFs
    # ------------------------------------------------------------------
    def _renumber(self, dofs: np.ndarray) -> np.ndarray:
        if self._dof_perm is None or not len(dofs):
            return dofs
        new = self._dof_perm[decode_dofs(dofs)]
        return np.where(dofs >= 0, new, -1 - new)

    def _edge_base(self, edge: int, ne: int) -> int:
        if self._var_edge_dofs is not None:
            return self._var_edge_dofs.find_dofs(edge, ne)
        return edge * ne

    def _face_base(self, face: int, nf: int) -> int:
        if self._var_face_dofs is not None:
            return self._var_face_dofs.find_dofs(face, nf)
        return face * nf

    def _append_edge_dofs(self, dofs: list, E, Eo, order: int, ne: int):
        for e, o in zip(E, Eo):
            ebase = self.nvdofs + self._edge_base(int(e), ne)
            for j in self.fec.dof_ordering(Geometry.SEGMENT, order, o):
                dofs.append(encode_dof(ebase, int(j)))

    def _compute_element_dofs(self, i: int) -> np.ndarray:
        mesh, fec = self.mesh, self.fec
        if not (0 <= i < mesh.num_elements):
            raise IndexError(f"element {i} out of range [0, {mesh.num_elements})")
        dim = mesh.dim
        geom = mesh.element_geometry(i)
        order = self._element_order(i)

        nv = fec.num_dofs(Geometry.POINT, order)
        ne = fec.num_dofs(Geometry.SEGMENT, order) if dim > 1 else 0
        nb = fec.num_dofs(geom, order)

        dofs: List[int] = []
        if nv:
            for v in mesh.element_vertices(i):
                dofs.extend(int(v) * nv + j for j in range(nv))
        if ne:
            E, Eo = mesh.element_edges(i)
            self._append_edge_dofs(dofs, E, Eo, order, ne)
        if dim > 2 and fec.has_face_dofs(geom, order):
            F, Fo = mesh.element_faces(i)
            for f, o in zip(F, Fo):
                fgeom = mesh.face_geometry(int(f))
                nf = fec.num_dofs(fgeom, order)
                fbase = self.nvdofs + self.nedofs + self._face_base(int(f), nf)
                for j in fec.dof_ordering(fgeom, order, o):
                    dofs.append(encode_dof(fbase, int(j)))
        bbase = int(self._bdofs[i]) if self._bdofs is not None else i * nb
        first = self.nvdofs + self.nedofs + self.nfdofs + bbase
        dofs.extend(range(first, first + nb))
        return self._renumber(np.array(dofs, dtype=np.int64))

    def get_element_dofs(self, i: int) -> np.ndarray:
        """Global DOFs of element ``i`` in the local order of :meth:`get_fe`."""
        self._check_up_to_date()
        if self._elem_dof is not None:
            return self._elem_dof[i].copy()
        return self._compute_element_dofs(i)

    def _compute_bdr_element_dofs(self, b: int) -> np.ndarray:
        mesh, fec = self.mesh, self.fec
        if not (0 <= b < mesh.num_bdr_elements):
            raise IndexError(f"boundary element {b} out of range [0, {mesh.num_bdr_elements})")
        dim = mesh.dim
        order = fec.default_order
        if self.is_variable_order:
            order = self._element_order(mesh.bdr_element_adjacent_element(b)[0])

        nv = fec.num_dofs(Geometry.POINT, order)
        ne = fec.num_dofs(Geometry.SEGMENT, order) if dim > 1 else 0
        dofs: List[int] = []
        if nv:
            for v in mesh.bdr_element_vertices(b):
                dofs.extend(int(v) * nv + j for j in range(nv))
        if ne:
            E, Eo = mesh.bdr_element_edges(b)
            self._append_edge_dofs(dofs, E, Eo, order, ne)
        if dim == 3:
            geom = mesh.bdr_element_geometry(b)
            nf = fec.num_dofs(geom, order)
            if nf:
                fbase = self.nvdofs + self.nedofs + self._face_base(mesh.bdr_element_entity(b), nf)
                dofs.extend(range(fbase, fbase + nf))
        return self._renumber(np.array(dofs, dtype=np.int64))

    def get_bdr_element_dofs(self, b: int) -> np.ndarray:
        self._check_up_to_date()
        if self._bdr_elem_dof is not None:
            return self._bdr_elem_dof[b].copy()
        return self._compute_bdr_element_dofs(b)

    def get_vertex_dofs(self, v: int) -> np.ndarray:
        self._check_up_to_date()
        if not (0 <= v < self.mesh.num_vertices):
            raise IndexError(f"vertex {v} out of range [0, {self.mesh.num_vertices})")
        nv = self.fec.dof_for_geometry(Geometry.POINT)
        return self._renumber(np.arange(v * nv, (v + 1) * nv, dtype=np.int64))

    def get_edge_dofs(self, edge: int, variant: int = 0) -> Tuple[np.ndarray, int]:
        """DOFs of ``edge`` (vertices first) and their order.

        Returns ``(empty, -1)`` when ``variant`` is past the last variant, so
        variants can be enumerated by probing.
        """
        self._check_up_to_date()
        mesh, fec = self.mesh, self.fec
        if not (0 <= edge < mesh.num_edges):
            raise IndexError(f"edge {edge} out of range [0, {mesh.num_edges})")
        if self._var_edge_dofs is not None:
            rng = self._var_edge_dofs.variant_range(edge, variant)
            if rng is None:
                return _EMPTY.copy(), -1
            base, ne = rng
            p = self._ndof_to_order[Geometry.SEGMENT][ne]
        else:
            if variant > 0:
                return _EMPTY.copy(), -1
            p = fec.default_order
            ne = fec.num_dofs(Geometry.SEGMENT, p)
            base = edge * ne
        nv = fec.num_dofs(Geometry.POINT, p)
        dofs: List[int] = []
        for v in mesh.edge_vertices(edge):
            dofs.extend(int(v) * nv + j for j in range(nv))
        dofs.extend(range(self.nvdofs + base, self.nvdofs + base + ne))
        return self._renumber(np.array(dofs, dtype=np.int64)), p

    def get_face_dofs(self, face: int, variant: int = 0) -> Tuple[np.ndarray, int]:
        """DOFs of a face (an edge in 2-D, a vertex in 1-D) and its order,
        ``(empty, -1)`` past the last variant."""
        self._check_up_to_date()
        mesh, fec = self.mesh, self.fec
        if mesh.dim == 1:
            if variant > 0:
                return _EMPTY.copy(), -1
            return self.get_vertex_dofs(face), fec.default_order
        if mesh.dim == 2:
            return self.get_edge_dofs(face, variant)

        if not (0 <= face < mesh.num_faces):
            raise IndexError(f"face {face} out of range [0, {mesh.num_faces})")
        if self._face_dof is not None and variant == 0 and self._var_face_dofs is None:
            return self._face_dof[face].copy(), fec.default_order

        fgeom = mesh.face_geometry(face)
        if self._var_face_dofs is not None:
            rng = self._var_face_dofs.variant_range(face, variant)
            if rng is None:
                return _EMPTY.copy(), -1
            fbase, nf = rng
            p = self._ndof_to_order[fgeom][nf]
        else:
            if variant > 0:
                return _EMPTY.copy(), -1
            p = fec.default_order
            nf = fec.num_dofs(fgeom, p)
            fbase = face * nf

        nv = fec.num_dofs(Geometry.POINT, p)
        ne = fec.num_dofs(Geometry.SEGMENT, p)
        dofs: List[int] = []
        if nv:
            for v in mesh.face_vertices(face):
                dofs.extend(int(v) * nv + j for j in range(nv))
        if ne:
            E, Eo = mesh.face_edges(face)
            self._append_edge_dofs(dofs, E, Eo, p, ne)
        first = self.nvdofs + self.nedofs + fbase
        dofs.extend(range(first, first + nf))
        return self._renumber(np.array(dofs, dtype=np.int64)), p

    def get_degenerate_face_dofs(self, index: int, master_geom, variant: int = 0) -> Tuple[np.ndarray, int]:
        """DOFs of a zero-height slave "face" that is really edge ``-1-index``.

        The edge DOFs are replicated in the orthogonal direction so that the
        array looks like the DOFs of a quadrilateral face; the duplicates are
        skipped when dependencies are recorded.
        """
        edof, p = self.get_edge_dofs(-1 - index, variant)
        if p < 0:
            return _EMPTY.copy(), -1
        nv = self.fec.num_dofs(Geometry.POINT, p)
        ne = self.fec.num_dofs(Geometry.SEGMENT, p)
        nn = 2 * nv + ne
        if len(edof) != nn:
            raise ConformityError(f"degenerate face {index}: edge has {len(edof)} DOFs, expected {nn}")
        dofs = np.full(nn * nn, edof[0] if nn else 0, dtype=np.int64)
        dofs[:nv] = edof[:nv]
        dofs[nv:2 * nv] = edof[nv:2 * nv]
        face_vert = geo.num_verts(master_geom)
        dofs[face_vert * nv:face_vert * nv + ne] = edof[2 * nv:]
        return dofs, p

    def get_entity_dofs(self, entity: int, index: int, master_geom=None,
                        variant: int = 0) -> Tuple[np.ndarray, int]:
        """DOFs of a vertex (0), edge (1) or face (2) with their order."""
        if entity == 0:
            return self.get_vertex_dofs(index), 0
        if entity == 1:
            return self.get_edge_dofs(index, variant)
        if index >= 0:
            return self.get_face_dofs(index, variant)
        return self.get_degenerate_face_dofs(index, master_geom, variant)

    def get_num_element_interior_dofs(self, i: int) -> int:
        self._check_up_to_date()
        return self.fec.num_dofs(self.mesh.element_geometry(i), self._element_order(i))

    def get_element_interior_dofs(self, i: int) -> np.ndarray:
        self._check_up_to_date()
        nb = self.get_num_element_interior_dofs(i)
        base = int(self._bdofs[i]) if self._bdofs is not None else i * nb
        first = self.nvdofs + self.nedofs + self.nfdofs + base
        return self._renumber(np.arange(first, first + nb, dtype=np.int64))

    def get_edge_interior_dofs(self, edge: int, variant: int = 0) -> np.ndarray:
        self._check_up_to_date()
        if self._var_edge_dofs is not None:
            rng = self._var_edge_dofs.variant_range(edge, variant)
            if rng is None:
                return _EMPTY.copy()
            base, ne = rng
        else:
            if variant > 0:
                return _EMPTY.copy()
            ne = self.fec.dof_for_geometry(Geometry.SEGMENT)
            base = edge * ne
        return self._renumber(np.arange(self.nvdofs + base, self.nvdofs + base + ne, dtype=np.int64))

    def get_face_interior_dofs(self, face: int, variant: int = 0) -> np.ndarray:
        self._check_up_to_date()
        if self.mesh.dim < 3:
            return _EMPTY.copy()
        if self._var_face_dofs is not None:
            rng = self._var_face_dofs.variant_range(face, variant)
            if rng is None:
                return _EMPTY.copy()
            base, nf = rng
        else:
            if variant > 0:
                return _EMPTY.copy()
            nf = self.uni_fdof
            base = face * nf
        first = self.nvdofs + self.nedofs + base
        return self._renumber(np.arange(first, first + nf, dtype=np.int64))

    # ------------------------------------------------------------------
    # finite elements
    # ------------------------------------------------------------------
    def get_fe(self, i: int):
        self._check_up_to_date()
        return self.fec.get_fe(self.mesh.element_geometry(i), self._element_order(i))

    def get_be(self, b: int):
        self._check_up_to_date()
        order = self.fec.default_order
        if self.is_variable_order:
            order = self._element_order(self.mesh.bdr_element_adjacent_element(b)[0])
        return self.fec.get_fe(self.mesh.bdr_element_geometry(b), order)

    def get_face_element(self, face: int, variant: int = 0):
        return self.fec.get_fe(self.mesh.face_geometry(face), self.get_face_order(face, variant))

    def get_edge_element(self, edge: int, variant: int = 0):
        return self.fec.get_fe(Geometry.SEGMENT, self.get_edge_order(edge, variant))

    # ------------------------------------------------------------------
    # tables
    # ------------------------------------------------------------------
    def build_element_to_dof_table(self):
        self._check_up_to_date()
        return self._build_element_to_dof_table()

    def _build_element_to_dof_table(self):
        if self._elem_dof is None:
            self._elem_dof = [self._compute_element_dofs(i) for i in range(self.mesh.num_elements)]
        return self._elem_dof

    def build_bdr_element_to_dof_table(self):
        self._check_up_to_date()
        if self._bdr_elem_dof is None:
            self._bdr_elem_dof = [self._compute_bdr_element_dofs(b)
                                  for b in range(self.mesh.num_bdr_elements)]
        return self._bdr_elem_dof

    def build_face_to_dof_table(self):
        """Face → DOF rows for 3-D uniform-order spaces."""
        self._check_up_to_date()
        if self._face_dof is None and self.mesh.dim == 3 and self._var_face_dofs is None:
            self._face_dof = [self.get_face_dofs(f)[0] for f in range(self.mesh.num_faces)]
        return self._face_dof

    def reorder_element_to_dof_table(self):
        """Renumber DOFs in the order they are first met while walking the
        elements (better locality for assembly). Conforming spaces only."""
        self._check_up_to_date()
        if self.get_conforming_prolongation() is not None:
            raise SpaceError("DOF reordering is only supported for conforming spaces")
        self._build_element_to_dof_table()
        perm = np.full(self.ndofs, -1, dtype=np.int64)
        counter = 0
        for row in self._elem_dof:
            for d in decode_dofs(row):
                if perm[d] < 0:
                    perm[d] = counter
                    counter += 1
        # DOFs not touched by any element keep their relative order at the end
        for d in np.flatnonzero(perm < 0):
            perm[d] = counter
            counter += 1
        self._cache.invalidate()
        self._bdr_elem_dof = self._face_dof = None
        self._dof_elem = self._dof_ldof = None
        self._elem_dof = [np.where(r >= 0, perm[decode_dofs(r)], -1 - perm[decode_dofs(r)]) for r in self._elem_dof]
        self._dof_perm = perm if self._dof_perm is None else perm[self._dof_perm]

    def build_dof_to_arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        """First element containing each DOF and the DOF's local index there."""
        self._check_up_to_date()
        if self._dof_elem is None:
            self._build_element_to_dof_table()
            dof_elem = np.full(self.ndofs, -1, dtype=np.int64)
            dof_ldof = np.full(self.ndofs, -1, dtype=np.int64)
            for i, row in enumerate(self._elem_dof):
                for j, d in enumerate(decode_dofs(row)):
                    if dof_elem[d] < 0:
                        dof_elem[d] = i
                        dof_ldof[d] = j
            self._dof_elem, self._dof_ldof = dof_elem, dof_ldof
        return self._dof_elem, self._dof_ldof

    def _gather_matrix(self, blocks) -> sp.csr_matrix:
        rows, cols, vals = [], [], []
        r = 0
        for vdofs in blocks:
            n = len(vdofs)
            rows.append(np.arange(r, r + n))
            cols.append(decode_dofs(vdofs))
            vals.append(dof_signs(vdofs))
            r += n
        rows = np.concatenate(rows) if rows else _EMPTY
        cols = np.concatenate(cols) if cols else _EMPTY
        vals = np.concatenate(vals) if vals else np.zeros(0)
        return sp.csr_matrix((vals, (rows, cols)), shape=(r, self.vsize))

    def get_element_restriction(self) -> sp.csr_matrix:
        """Signed gather matrix from vdofs to element-blocked vectors."""
        self._check_up_to_date()
        return self._cache.get(
            ("element_restriction", int(self.ordering)),
            lambda: self._gather_matrix(self.get_element_vdofs(i) for i in range(self.mesh.num_elements)))

    def faces_of_type(self, face_type: str) -> np.ndarray:
        """Faces shared by two elements (``"interior"``) or carrying a
        boundary element (``"boundary"``). Faces are vertices in 1-D and
        edges in 2-D."""
        if face_type not in FACE_TYPES:
            raise ValueError(f"face_type must be one of {FACE_TYPES}, got {face_type!r}")
        mesh = self.mesh
        if face_type == "boundary":
            return np.array(sorted({mesh.bdr_element_entity(b) for b in range(mesh.num_bdr_elements)}),
                            dtype=np.int64)
        if mesh.dim == 1:
            count = np.zeros(mesh.num_vertices, dtype=np.int64)
            facets = mesh.element_vertices
        elif mesh.dim == 2:
            count = np.zeros(mesh.num_edges, dtype=np.int64)
            facets = lambda i: mesh.element_edges(i)[0]
        else:
            count = np.zeros(mesh.num_faces, dtype=np.int64)
            facets = lambda i: mesh.element_faces(i)[0]
        for i in range(mesh.num_elements):
            np.add.at(count, facets(i), 1)
        return np.flatnonzero(count == 2)

    def get_face_restriction(self, face_type: str = "interior") -> sp.csr_matrix:
        """Signed gather matrix from vdofs to face-blocked vectors, one block
        of :meth:`get_face_vdofs` per face of ``face_type`` in index order."""
        self._check_up_to_date()
        faces = self.faces_of_type(face_type)
        return self._cache.get(
            ("face_restriction", face_type, int(self.ordering)),
            lambda: self._gather_matrix(self.get_face_vdofs(int(f)) for f in faces))

    def get_dof_coords(self) -> np.ndarray:
        """Physical location of every scalar DOF (nodes of the Lagrange basis)."""
        self._check_up_to_date()

        def build():
            mesh = self.mesh
            X = np.full((self.ndofs, mesh.dim), np.nan)
            for i in range(mesh.num_elements):
                x = mesh.element_transformation(i).transform(self.get_fe(i).nodes)
                X[decode_dofs(self.get_element_dofs(i))] = x
            # variants no element uses (variable order masters)
            if self._var_edge_dofs is not None:
                for e in range(mesh.num_edges):
                    v = 0
                    while True:
                        dofs, p = self.get_edge_dofs(e, v)
                        if p < 0:
                            break
                        fe = self.fec.get_fe(Geometry.SEGMENT, p)
                        pm = mesh.vertices[list(mesh.edge_vertices(e))].T
                        X[decode_dofs(dofs)] = IsoparametricTransformation(Geometry.SEGMENT, pm).transform(fe.nodes)
                        v += 1
            if self._var_face_dofs is not None:
                for f in range(mesh.num_faces):
                    fgeom = mesh.face_geometry(f)
                    pm = mesh.vertices[list(mesh.face_vertices(f))].T
                    v = 0
                    while True:
                        dofs, p = self.get_face_dofs(f, v)
                        if p < 0:
                            break
                        fe = self.fec.get_fe(fgeom, p)
                        X[decode_dofs(dofs)] = IsoparametricTransformation(fgeom, pm).transform(fe.nodes)
                        v += 1
            return X
        return self._cache.get(("dof_coords",), build)

    # ------------------------------------------------------------------
    # conforming interpolation
    # ------------------------------------------------------------------
    def _conforming(self) -> Optional[ConformingOperators]:
        self._check_up_to_date()

        def build():
            ops = build_conforming_interpolation(self)
            if ops is not None and self.DEBUG:
                err = abs(ops.R @ ops.P - sp.identity(ops.P.shape[1])).max()
                if err > 1e-12:
                    raise ConformityError(f"cR*cP is not the identity (error {err:.3e})")
            return ops
        return self._cache.get(("conforming",), build)

    def get_conforming_prolongation(self) -> Optional[sp.csr_matrix]:
        """``cP`` (vsize × true vsize), ``None`` for conforming spaces."""
        ops = self._conforming()
        return None if ops is None else ops.P

    def get_conforming_restriction(self) -> Optional[sp.csr_matrix]:
        ops = self._conforming()
        return None if ops is None else ops.R

    def get_conforming_restriction_interpolation(self) -> Optional[sp.csr_matrix]:
        ops = self._conforming()
        if ops is None:
            return None
        return ops.Q if self.is_variable_order else ops.R

    get_prolongation_matrix = get_conforming_prolongation
    get_restriction_matrix = get_conforming_restriction

    def get_n_conforming_dofs(self) -> int:
        P = self.get_conforming_prolongation()
        return self.ndofs if P is None else P.shape[1] // self.vdim

    def get_conforming_vsize(self) -> int:
        return self.vdim * self.get_n_conforming_dofs()

    # ------------------------------------------------------------------
    # essential DOFs
    # ------------------------------------------------------------------
    def _component_vdofs(self, dofs, component: int) -> np.ndarray:
        if component < 0:
            return self.dofs_to_vdofs(dofs)
        return self.dofs_to_vdofs(dofs, vd=component)

    def get_essential_vdofs(self, bdr_attr_is_ess, component: int = -1) -> BitSet:
        """Mark the vdofs on boundary elements whose attribute ``a`` has
        ``bdr_attr_is_ess[a-1]`` set; ``component=-1`` marks all components."""
        self._check_up_to_date()
        mesh = self.mesh
        ess = np.asarray(bdr_attr_is_ess)
        marker = np.zeros(self.vsize, dtype=np.bool_)
        for b in range(mesh.num_bdr_elements):
            attr = mesh.bdr_attribute(b)
            if attr - 1 < len(ess) and ess[attr - 1]:
                mark_dofs(self._component_vdofs(self.get_bdr_element_dofs(b), component), marker)

        # boundary vertices/edges of NC meshes not covered by a boundary element
        if mesh.ncmesh is not None:
            verts, edges = mesh.ncmesh.boundary_closure(ess)
            for v in verts:
                mark_dofs(self._component_vdofs(self.get_vertex_dofs(int(v)), component), marker)
            for e in edges:
                mark_dofs(self._component_vdofs(self.get_edge_dofs(int(e))[0], component), marker)
        return BitSet(marker)

    def get_essential_true_dofs(self, bdr_attr_is_ess, component: int = -1) -> np.ndarray:
        marker = self.get_essential_vdofs(bdr_attr_is_ess, component)
        R = self.get_conforming_restriction()
        if R is None:
            return self.marker_to_list(marker)
        return self.marker_to_list(abs(R) @ marker.mask.astype(float) != 0)

    @staticmethod
    def marker_to_list(marker) -> np.ndarray:
        mask = marker.mask if isinstance(marker, BitSet) else np.asarray(marker)
        return np.flatnonzero(mask).astype(np.int64)

    @staticmethod
    def list_to_marker(lst, marker_size: int, mark_val: int = -1) -> np.ndarray:
        marker = np.zeros(marker_size, dtype=np.int64)
        marker[np.asarray(lst, dtype=np.int64)] = mark_val
        return marker

    def convert_to_conforming_vdofs(self, dofs) -> BitSet:
        """Marker over vdofs → marker over true (conforming) vdofs."""
        mask = dofs.mask if isinstance(dofs, BitSet) else np.asarray(dofs, dtype=bool)
        P = self.get_conforming_prolongation()
        if P is None:
            return BitSet(mask.copy())
        return BitSet(abs(P).T @ mask.astype(float) != 0)

    def convert_from_conforming_vdofs(self, cdofs) -> BitSet:
        mask = cdofs.mask if isinstance(cdofs, BitSet) else np.asarray(cdofs, dtype=bool)
        R = self.get_conforming_restriction()
        if R is None:
            return BitSet(mask.copy())
        return BitSet(abs(R).T @ mask.astype(float) != 0)

    # ------------------------------------------------------------------
    # restriction matrices between spaces on the same mesh
    # ------------------------------------------------------------------
    def d2c_global_restriction_matrix(self, cfes: "FiniteElementSpace") -> sp.csr_matrix:
        """Discontinuous (this) → continuous (``cfes``) restriction.

        Local DOFs are matched through their reference nodes, so the two
        collections must share the node set (same order).
        """
        self._check_up_to_date()
        R = sp.lil_matrix((cfes.vsize, self.vsize))
        for i in range(self.mesh.num_elements):
            d_fe, c_fe = self.get_fe(i), cfes.get_fe(i)
            if d_fe.ndof != c_fe.ndof:
                raise ValueError("D2C restriction requires matching element node sets")
            match = _match_nodes(c_fe.nodes, d_fe.nodes)
            d_vdofs = decode_dofs(self.get_element_vdofs(i))
            c_vdofs = decode_dofs(cfes.get_element_vdofs(i))
            nd = d_fe.ndof
            for vd in range(self.vdim):
                for j in range(nd):
                    R[c_vdofs[vd * nd + j], d_vdofs[vd * nd + match[j]]] = 1.0
        return R.tocsr()

    def d2const_global_restriction_matrix(self, cfes: "FiniteElementSpace") -> sp.csr_matrix:
        """Average of the element DOFs onto a piecewise constant space."""
        self._check_up_to_date()
        R = sp.lil_matrix((cfes.ndofs, self.ndofs))
        for i in range(self.mesh.num_elements):
            d_dofs = decode_dofs(self.get_element_dofs(i))
            c_dofs = decode_dofs(cfes.get_element_dofs(i))
            if len(c_dofs) != 1:
                raise ValueError("D2Const restriction requires a piecewise constant coarse space")
            for d in d_dofs:
                R[c_dofs[0], d] = 1.0 / len(d_dofs)
        return R.tocsr()

    def h2l_global_restriction_matrix(self, lfes: "FiniteElementSpace") -> sp.csr_matrix:
        """High order (this) → low order (``lfes``) nodal restriction."""
        self._check_up_to_date()
        R = sp.lil_matrix((lfes.ndofs, self.ndofs))
        for i in range(self.mesh.num_elements):
            h_fe, l_fe = self.get_fe(i), lfes.get_fe(i)
            loc = l_fe.transfer_matrix(h_fe, IsoparametricTransformation.identity(h_fe.geom))
            h_dofs = self.get_element_dofs(i)
            l_dofs = lfes.get_element_dofs(i)
            hs, ls = dof_signs(h_dofs), dof_signs(l_dofs)
            h_dofs, l_dofs = decode_dofs(h_dofs), decode_dofs(l_dofs)
            for a, ra in enumerate(l_dofs):
                for b, cb in enumerate(h_dofs):
                    if loc[a, b] != 0.0:
                        R[ra, cb] = ls[a] * hs[b] * loc[a, b]
        return R.tocsr()

    # ------------------------------------------------------------------
    # update and transfer
    # ------------------------------------------------------------------
    def set_update_operator_type(self, operator_type: str):
        if operator_type not in UPDATE_OPERATOR_TYPES:
            raise ValueError(f"operator_type must be one of {UPDATE_OPERATOR_TYPES}")
        self.update_operator_type = operator_type

    def get_update_operator(self):
        """Old → new vector map of the last :meth:`update` (``None`` if the
        update did not produce one)."""
        return self.Th

    def update(self, want_transform: bool = True):
        """Rebuild the DOF numbering after a mesh change or order change."""
        mesh = self.mesh
        if mesh.sequence == self.sequence and not self.orders_changed:
            return
        if want_transform and mesh.sequence != self.sequence + 1:
            raise SpaceError("Error in update sequence. Space needs to be updated after "
                             "each mesh modification.")
        if mesh.sequence != self.sequence and self.orders_changed:
            raise SpaceError("Updating space after both mesh changes and element order "
                             "changes is not supported. Please update separately after each change.")

        old_elem_dof = old_ndofs = old_orders = None
        if want_transform:
            old_elem_dof = self._elem_dof
            old_ndofs = self.ndofs
            if self.elem_order is not None:
                old_orders = self.elem_order.copy()

        if self.is_variable_order and self.sequence != mesh.sequence:
            self.update_element_orders()

        self._destroy()
        self._construct()
        self.sequence = mesh.sequence
        self._build_element_to_dof_table()

        if want_transform:
            if mesh.last_operation == Operation.REFINE:
                if self.update_operator_type == "sparse":
                    self.Th = transfer.refinement_matrix(self, old_ndofs, old_elem_dof)
                else:
                    self.Th = transfer.RefinementOperator(self, old_elem_dof, old_ndofs)
            elif mesh.last_operation == Operation.DEREFINE:
                Th = transfer.derefinement_matrix(self, old_ndofs, old_elem_dof, old_orders)
                P, R = self.get_conforming_prolongation(), self.get_conforming_restriction()
                if P is not None and R is not None:
                    Th = (P @ (R @ Th)).tocsr()
                self.Th = Th
        logger.debug("space updated to mesh sequence %d: ndofs=%d", self.sequence, self.ndofs)

    def get_transfer_operator(self, coarse_fes: "FiniteElementSpace", operator_type: str = "sparse"):
        """Interpolation from ``coarse_fes`` (on the mesh before the last
        refinement) to this space."""
        self._check_up_to_date()
        if operator_type == "sparse":
            return transfer.refinement_matrix_from_coarse(self, coarse_fes)
        if operator_type == "matrix_free":
            return transfer.RefinementOperator.from_coarse_space(self, coarse_fes)
        raise ValueError(f"operator_type must be one of {UPDATE_OPERATOR_TYPES}")

    def get_true_transfer_operator(self, coarse_fes: "FiniteElementSpace", operator_type: str = "sparse"):
        """Transfer between true DOF vectors: ``cR @ T @ coarse_cP``."""
        T = self.get_transfer_operator(coarse_fes, operator_type)
        R = self.get_conforming_restriction()
        coarse_P = coarse_fes.get_conforming_prolongation()
        if operator_type == "sparse":
            if R is not None:
                T = R @ T
            if coarse_P is not None:
                T = T @ coarse_P
            return sp.csr_matrix(T)
        if R is not None:
            T = aslinearoperator(R) * T
        if coarse_P is not None:
            T = T * aslinearoperator(coarse_P)
        return T


def _match_nodes(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """``m[j]``: index in ``b`` of the node at ``a[j]``."""
    d = np.linalg.norm(a[:, None, :] - b[None, :, :], axis=2)
    m = np.argmin(d, axis=1)
    if not np.allclose(d[np.arange(len(a)), m], 0.0, atol=1e-12):
        raise ValueError("element node sets differ")
    return m
