"""pyhpfem.core.ncmesh
Non-conforming (hanging node) relations and coarse/fine transformations.

An :class:`NCList` lists, for one entity kind (edges or faces), every
*master* entity together with the *slave* entities that subdivide it. Each
slave carries the point matrix that maps its reference domain into the
reference domain of its master.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Tuple
import logging
import numpy as np

from pyhpfem.core.geometry import Geometry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Master:
    index: int                  # edge or face index
    geom: Geometry
    element: int = -1           # an active element containing the entity
    slaves_begin: int = 0
    slaves_end: int = 0


@dataclass(slots=True)
class Slave:
    index: int                  # negative for degenerate faces, see FiniteElementSpace.get_degenerate_face_dofs
    geom: Geometry
    master: int                 # index of the master entity
    matrix: int                 # position in NCList.point_matrices[master geometry]


@dataclass
class NCList:
    masters: List[Master] = field(default_factory=list)
    slaves: List[Slave] = field(default_factory=list)
    point_matrices: Dict[Geometry, List[np.ndarray]] = field(default_factory=dict)

    def __bool__(self):
        return bool(self.masters)

    def add_point_matrix(self, geom, pm) -> int:
        mats = self.point_matrices.setdefault(Geometry(geom), [])
        mats.append(np.asarray(pm, dtype=float))
        return len(mats) - 1

    def oriented_point_matrix(self, slave: Slave, master_geom) -> np.ndarray:
        """Slave reference → master reference map (already in the master's
        edge/face orientation)."""
        return self.point_matrices[Geometry(master_geom)][slave.matrix]

    def master_slaves(self, master: Master) -> List[Slave]:
        return self.slaves[master.slaves_begin:master.slaves_end]


class Embedding(NamedTuple):
    parent: int                 # coarse element
    matrix: int                 # point matrix index, 0 is the identity


class CoarseToFineMap(NamedTuple):
    coarse_to_fine: List[List[int]]
    coarse_to_ref_type: List[int]
    ref_type_to_matrix: List[Tuple[int, ...]]
    ref_type_to_geom: List[Geometry]


@dataclass
class CoarseFineTransformations:
    """Relation between two consecutive meshes of a refinement hierarchy.

    ``embeddings[k]`` gives, for element ``k`` of the *fine* mesh, its coarse
    element and the point matrix (per geometry) that maps the fine reference
    element into the coarse one.
    """
    embeddings: List[Embedding]
    point_matrices: Dict[Geometry, np.ndarray]   # (nmat, dim, nverts)

    def num_coarse_elements(self) -> int:
        return 1 + max((e.parent for e in self.embeddings), default=-1)

    def get_coarse_to_fine_map(self, fine_mesh) -> CoarseToFineMap:
        nc = self.num_coarse_elements()
        coarse_to_fine: List[List[int]] = [[] for _ in range(nc)]
        for k, emb in enumerate(self.embeddings):
            coarse_to_fine[emb.parent].append(k)

        types: Dict[tuple, int] = {}
        coarse_to_ref_type: List[int] = []
        ref_type_to_matrix: List[Tuple[int, ...]] = []
        ref_type_to_geom: List[Geometry] = []
        for fines in coarse_to_fine:
            if not fines:
                raise ValueError("coarse element without fine elements")
            geom = fine_mesh.element_geometry(fines[0])
            key = (geom, tuple(self.embeddings[f].matrix for f in fines))
            if key not in types:
                types[key] = len(ref_type_to_matrix)
                ref_type_to_matrix.append(key[1])
                ref_type_to_geom.append(geom)
            coarse_to_ref_type.append(types[key])
        return CoarseToFineMap(coarse_to_fine, coarse_to_ref_type, ref_type_to_matrix, ref_type_to_geom)


class NCMesh:
    """Hanging-node view of a :class:`~pyhpfem.core.mesh.Mesh`.

    Built by the mesh after every topology change. Only edges can be
    non-conforming (2-D refinement), the face list is kept for the 3-D
    interface and is empty for the supported meshes.
    """

    def __init__(self, mesh):
        self.mesh = mesh
        self.edge_list = NCList()
        self.face_list = NCList()
        if mesh.dim == 2:
            self._build_edge_list()
        logger.debug("NC mesh: %d master edges, %d slave edges",
                     len(self.edge_list.masters), len(self.edge_list.slaves))

    def get_nc_list(self, entity: int) -> NCList:
        if entity == 1:
            return self.edge_list
        if entity == 2:
            return self.face_list
        raise ValueError(f"no non-conforming list for entity dimension {entity}")

    # ------------------------------------------------------------------
    def _build_edge_list(self):
        mesh = self.mesh
        found: Dict[int, List[Tuple[int, float, float]]] = {}
        for gid in range(mesh.num_edges):
            n0, n1 = mesh.edge_nodes(gid)
            out: List[Tuple[int, float, float]] = []
            self._traverse_edge(n0, n1, 0.0, 1.0, out, top=True)
            if out:
                found[gid] = out
        sub_edges = {s for out in found.values() for s, _, _ in out}

        lst = self.edge_list
        for gid, out in found.items():
            if gid in sub_edges:
                continue
            master = Master(gid, Geometry.SEGMENT, element=mesh.edge_element(gid),
                            slaves_begin=len(lst.slaves))
            for sgid, t_lo, t_hi in out:
                m = lst.add_point_matrix(Geometry.SEGMENT, [[t_lo, t_hi]])
                lst.slaves.append(Slave(sgid, Geometry.SEGMENT, gid, m))
            master.slaves_end = len(lst.slaves)
            lst.masters.append(master)

    def _traverse_edge(self, na, nb, ta, tb, out, top):
        mesh = self.mesh
        if not top:
            gid = mesh.find_edge(na, nb)
            if gid is not None:
                lo_node = mesh.edge_nodes(gid)[0]
                t_lo, t_hi = (ta, tb) if lo_node == na else (tb, ta)
                out.append((gid, t_lo, t_hi))
                return
        mid = mesh.find_midpoint(na, nb)
        if mid is None:
            return
        tm = 0.5 * (ta + tb)
        self._traverse_edge(na, mid, ta, tm, out, False)
        self._traverse_edge(mid, nb, tm, tb, out, False)

    # ------------------------------------------------------------------
    def boundary_closure(self, bdr_attr_is_ess) -> Tuple[np.ndarray, np.ndarray]:
        """Vertices and edges of all boundary elements whose attribute is
        marked in ``bdr_attr_is_ess`` (indexed by ``attribute - 1``)."""
        mesh = self.mesh
        verts, edges = set(), set()
        for b in range(mesh.num_bdr_elements):
            attr = mesh.bdr_attribute(b)
            if attr - 1 >= len(bdr_attr_is_ess) or not bdr_attr_is_ess[attr - 1]:
                continue
            verts.update(int(v) for v in mesh.bdr_element_vertices(b))
            if mesh.dim > 1:
                verts_edges, _ = mesh.bdr_element_edges(b)
                edges.update(int(e) for e in verts_edges)
        return np.array(sorted(verts), dtype=np.int64), np.array(sorted(edges), dtype=np.int64)
