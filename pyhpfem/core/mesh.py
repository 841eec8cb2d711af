import copy
import logging
from enum import IntEnum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from pyhpfem.core import geometry as geo
from pyhpfem.core.geometry import Geometry, GEOMETRY_NAMES, canonical_cycle, orientation
from pyhpfem.core.ncmesh import CoarseFineTransformations, Embedding, NCMesh
from pyhpfem.core.topology import BoundaryElement, Edge, Element, Face, Node
from pyhpfem.errors import MeshError
from pyhpfem.fem.transform import IsoparametricTransformation

logger = logging.getLogger(__name__)


class Operation(IntEnum):
    NONE = 0
    REFINE = 1
    DEREFINE = 2


class Mesh:
    """
    Refinement forest of segments, triangles, quadrilaterals or hexahedra.

    The mesh keeps every element ever created in a forest (roots are the
    input elements). The *active* mesh consists of the leaves, numbered in
    depth-first order; vertices are the nodes used by active elements,
    numbered by increasing node id. Edges, faces and boundary elements are
    rebuilt after every topology change, which also bumps :attr:`sequence`.

    Local refinement of 2-D meshes creates hanging nodes; such meshes are
    *nonconforming* and expose their master/slave edge relations through
    :attr:`ncmesh`. 3-D meshes are conforming only.
    """
    # point recipes: ('v', k) vertex, ('m', a, b) edge midpoint, ('c',) center
    _REFINE_POINTS = {
        Geometry.SEGMENT: (('v', 0), ('v', 1), ('m', 0, 1)),
        Geometry.TRIANGLE: (('v', 0), ('v', 1), ('v', 2), ('m', 0, 1), ('m', 1, 2), ('m', 2, 0)),
        Geometry.SQUARE: (('v', 0), ('v', 1), ('v', 2), ('v', 3),
                          ('m', 0, 1), ('m', 1, 2), ('m', 2, 3), ('m', 3, 0), ('c',)),
    }
    _CHILDREN = {
        Geometry.SEGMENT: ((0, 2), (2, 1)),
        Geometry.TRIANGLE: ((0, 3, 5), (3, 1, 4), (5, 4, 2), (4, 5, 3)),
        Geometry.SQUARE: ((0, 4, 8, 7), (4, 1, 5, 8), (8, 5, 2, 6), (7, 8, 6, 3)),
    }

    def __init__(self,
                 nodes: Union[List['Node'], np.ndarray],
                 element_connectivity: Sequence[Sequence[int]],
                 *,
                 element_type: Union[str, Sequence[str]] = 'quad',
                 element_attributes: Optional[Sequence[int]] = None,
                 boundary_attributes: Optional[Dict[int, Callable[[np.ndarray], bool]]] = None,
                 default_bdr_attribute: int = 1,
                 nonconforming: bool = False):
        """
        Parameters
        ----------
        nodes : list of Node or array_like (n, sdim)
        element_connectivity : sequence of corner node ids per element,
            in the vertex order of the reference geometry.
        element_type : 'segment', 'tri', 'quad', 'hex', or one per element.
        boundary_attributes : {attribute: locator(midpoint) -> bool}; the
            first matching locator labels a boundary facet, unmatched facets
            get ``default_bdr_attribute``.
        nonconforming : start as a nonconforming mesh (hanging nodes and
            variable order allowed) even before any local refinement.
        """
        types = [element_type] * len(element_connectivity) if isinstance(element_type, str) else list(element_type)
        if len(types) != len(element_connectivity):
            raise MeshError("need one element_type per element")
        try:
            geoms = [GEOMETRY_NAMES[t] for t in types]
        except KeyError as e:
            raise MeshError(f"unknown element type {e.args[0]!r}") from None
        dims = {geo.DIMENSION[g] for g in geoms}
        if len(dims) != 1:
            raise MeshError("all elements must have the same dimension")
        self.dim = dims.pop()

        if len(nodes) and isinstance(nodes[0], Node):
            coords = np.array([n.coords(self.dim) for n in nodes], dtype=float)
        else:
            coords = np.asarray(nodes, dtype=float).reshape(len(nodes), -1)[:, :self.dim]
        self._coords: List[np.ndarray] = list(coords)
        self._mid: Dict[tuple, int] = {}

        attrs = list(element_attributes) if element_attributes is not None else [1] * len(geoms)
        self._forest: List[Element] = []
        for eid, (conn, g) in enumerate(zip(element_connectivity, geoms)):
            conn = tuple(int(n) for n in conn)
            if len(conn) != geo.num_verts(g):
                raise MeshError(f"element {eid}: {g.name} needs {geo.num_verts(g)} nodes, got {len(conn)}")
            self._forest.append(Element(id=eid, geom=g, nodes=conn, attribute=int(attrs[eid])))
        self._roots = list(range(len(self._forest)))

        self._nonconforming = bool(nonconforming)
        self.sequence = 0
        self.last_operation = Operation.NONE
        self._ref_transforms: Optional[CoarseFineTransformations] = None
        self._deref_transforms: Optional[CoarseFineTransformations] = None

        self._bdr_attr: Dict[tuple, int] = {}
        self._tag_root_boundary(boundary_attributes or {}, default_bdr_attribute)
        self._build_topology()

    # ------------------------------------------------------------------
    # construction helpers
    # ------------------------------------------------------------------
    def _local_facets(self, geom: Geometry) -> Tuple[Tuple[int, ...], ...]:
        if self.dim == 1:
            return ((0,), (1,))
        if self.dim == 2:
            return geo.EDGES[geom]
        return geo.FACES[geom]

    @staticmethod
    def _facet_key(nodes) -> tuple:
        return tuple(sorted(int(n) for n in nodes))

    def _tag_root_boundary(self, locators, default_attr):
        count: Dict[tuple, int] = {}
        for el in self._forest:
            for f in self._local_facets(el.geom):
                key = self._facet_key(el.nodes[k] for k in f)
                count[key] = count.get(key, 0) + 1
        for key, c in count.items():
            if c != 1:
                continue
            mid = np.mean([self._coords[n] for n in key], axis=0)
            attr = default_attr
            for a, locator in locators.items():
                if locator(mid):
                    attr = int(a)
                    break
            self._bdr_attr[key] = attr

    def _new_node(self, x) -> int:
        self._coords.append(np.asarray(x, dtype=float))
        return len(self._coords) - 1

    def _get_mid(self, key: tuple, corners: Sequence[int]) -> int:
        node = self._mid.get(key)
        if node is None:
            node = self._new_node(np.mean([self._coords[n] for n in corners], axis=0))
            self._mid[key] = node
        return node

    def find_midpoint(self, na: int, nb: int) -> Optional[int]:
        """Node id splitting the segment between nodes ``na`` and ``nb``."""
        return self._mid.get(self._facet_key((na, nb)))

    # ------------------------------------------------------------------
    # active topology
    # ------------------------------------------------------------------
    def _build_topology(self):
        leaves: List[int] = []
        stack = list(reversed(self._roots))
        while stack:
            t = stack.pop()
            el = self._forest[t]
            if el.is_leaf:
                leaves.append(t)
            else:
                stack.extend(reversed(el.children))
        self._leaves = leaves
        self._leaf_index = {t: i for i, t in enumerate(leaves)}

        used = sorted({n for t in leaves for n in self._forest[t].nodes})
        self._vertex_nodes = np.array(used, dtype=np.int64)
        self._node_to_vertex = {n: i for i, n in enumerate(used)}
        self.vertices = np.array([self._coords[n] for n in used], dtype=float).reshape(len(used), self.dim)
        self._elem_vertices = [np.array([self._node_to_vertex[n] for n in self._forest[t].nodes], dtype=np.int64)
                               for t in leaves]

        self._edges: List[Edge] = []
        self._edge_index: Dict[Tuple[int, int], int] = {}
        self._edge_elem: List[int] = []
        self._elem_edges: List[Tuple[np.ndarray, List[tuple]]] = []
        if self.dim >= 2:
            for i, t in enumerate(leaves):
                ev = self._elem_vertices[i]
                E, Eo = [], []
                for a, b in geo.EDGES[self._forest[t].geom]:
                    gid = self._add_edge(int(ev[a]), int(ev[b]), i)
                    E.append(gid)
                    Eo.append((0, 1) if ev[a] < ev[b] else (1, 0))
                self._elem_edges.append((np.array(E, dtype=np.int64), Eo))

        self._faces: List[Face] = []
        self._face_index: Dict[tuple, int] = {}
        self._elem_faces: List[Tuple[np.ndarray, List[tuple]]] = []
        if self.dim == 3:
            for i, t in enumerate(leaves):
                ev = self._elem_vertices[i]
                F, Fo = [], []
                for f in geo.FACES[self._forest[t].geom]:
                    local = tuple(int(ev[k]) for k in f)
                    canon = canonical_cycle(local)
                    gid = self._face_index.get(canon)
                    if gid is None:
                        gid = len(self._faces)
                        fe, fo = [], []
                        for k in range(len(canon)):
                            a, b = canon[k], canon[(k + 1) % len(canon)]
                            fe.append(self._edge_index[(min(a, b), max(a, b))])
                            fo.append((0, 1) if a < b else (1, 0))
                        self._faces.append(Face(gid, Geometry.SQUARE, canon, tuple(fe), tuple(fo)))
                        self._face_index[canon] = gid
                    F.append(gid)
                    Fo.append(orientation(local, canon))
                self._elem_faces.append((np.array(F, dtype=np.int64), Fo))

        self._build_boundary()
        self._ncmesh = NCMesh(self) if self._nonconforming else None

    def _add_edge(self, va: int, vb: int, elem: int) -> int:
        key = (min(va, vb), max(va, vb))
        gid = self._edge_index.get(key)
        if gid is None:
            gid = len(self._edges)
            nodes = (int(self._vertex_nodes[key[0]]), int(self._vertex_nodes[key[1]]))
            self._edges.append(Edge(gid, key, nodes))
            self._edge_index[key] = gid
            self._edge_elem.append(elem)
        return gid

    def _build_boundary(self):
        self._bdr: List[BoundaryElement] = []
        seen = set()
        facet_geom = {1: Geometry.POINT, 2: Geometry.SEGMENT, 3: Geometry.SQUARE}[self.dim]
        for i, t in enumerate(self._leaves):
            el = self._forest[t]
            for lf, f in enumerate(self._local_facets(el.geom)):
                key = self._facet_key(el.nodes[k] for k in f)
                if key in seen or key not in self._bdr_attr:
                    continue
                seen.add(key)
                verts = [self._node_to_vertex[n] for n in (el.nodes[k] for k in f)]
                if self.dim == 1:
                    entity = verts[0]
                elif self.dim == 2:
                    entity = self._edge_index[(min(verts), max(verts))]
                else:
                    entity = self._face_index[canonical_cycle(verts)]
                self._bdr.append(BoundaryElement(len(self._bdr), facet_geom, entity,
                                                 self._bdr_attr[key], i, lf))

    # ------------------------------------------------------------------
    # refinement
    # ------------------------------------------------------------------
    def _reference_points(self, geom: Geometry) -> np.ndarray:
        V = geo.VERTICES[geom]
        pts = []
        for rec in self._REFINE_POINTS[geom]:
            if rec[0] == 'v':
                pts.append(V[rec[1]])
            elif rec[0] == 'm':
                pts.append(0.5 * (V[rec[1]] + V[rec[2]]))
            else:
                pts.append(V.mean(axis=0))
        return np.array(pts)

    def child_point_matrices(self, geom) -> np.ndarray:
        """``(1 + nchildren, dim, nverts)``: identity, then one per child."""
        geom = Geometry(geom)
        if geom not in self._CHILDREN:
            raise NotImplementedError(f"refinement of {geom.name} elements is not supported")
        pts = self._reference_points(geom)
        mats = [geo.VERTICES[geom].T]
        mats.extend(pts[list(child)].T for child in self._CHILDREN[geom])
        return np.array(mats)

    def _split(self, t: int):
        el = self._forest[t]
        geom = el.geom
        c = el.nodes
        pts = []
        for rec in self._REFINE_POINTS[geom]:
            if rec[0] == 'v':
                pts.append(c[rec[1]])
            elif rec[0] == 'm':
                a, b = c[rec[1]], c[rec[2]]
                pts.append(self._get_mid(self._facet_key((a, b)), (a, b)))
            else:
                pts.append(self._get_mid(('c',) + self._facet_key(c), c))

        # boundary facets pass their attribute to the halves
        if self.dim == 2:
            for a, b in geo.EDGES[geom]:
                attr = self._bdr_attr.get(self._facet_key((c[a], c[b])))
                if attr is not None:
                    m = self.find_midpoint(c[a], c[b])
                    self._bdr_attr[self._facet_key((c[a], m))] = attr
                    self._bdr_attr[self._facet_key((m, c[b]))] = attr

        kids = []
        for k, child in enumerate(self._CHILDREN[geom]):
            cid = len(self._forest)
            self._forest.append(Element(id=cid, geom=geom, nodes=tuple(pts[j] for j in child),
                                        attribute=el.attribute, parent=t, child_no=k))
            kids.append(cid)
        el.children = tuple(kids)

    def _transform_matrices(self) -> Dict[Geometry, np.ndarray]:
        return {g: self.child_point_matrices(g) for g in self.element_geometries()
                if g in self._CHILDREN}

    def refine(self, elements: Iterable[int]):
        """Isotropically refine the given active elements (one level)."""
        elements = sorted({int(i) for i in elements})
        if not elements:
            return
        for i in elements:
            if not (0 <= i < self.num_elements):
                raise IndexError(f"element {i} out of range [0, {self.num_elements})")
            if self.element_geometry(i) not in self._CHILDREN:
                raise NotImplementedError(f"refinement of {self.element_geometry(i).name} elements is not supported")
        old_index = dict(self._leaf_index)
        if self.dim >= 2 and len(elements) < self.num_elements:
            self._nonconforming = True
        for i in elements:
            self._split(self._leaves[i])
        self._build_topology()

        embeddings = []
        for t in self._leaves:
            if t in old_index:
                embeddings.append(Embedding(old_index[t], 0))
            else:
                el = self._forest[t]
                embeddings.append(Embedding(old_index[el.parent], 1 + el.child_no))
        self._ref_transforms = CoarseFineTransformations(embeddings, self._transform_matrices())
        self.sequence += 1
        self.last_operation = Operation.REFINE
        logger.debug("refined %d elements, now %d elements, %d vertices",
                     len(elements), self.num_elements, self.num_vertices)

    def uniform_refinement(self):
        self.refine(range(self.num_elements))

    def derefinement_table(self) -> List[Tuple[int, ...]]:
        """Groups of active elements that can be merged into their parent."""
        rows, seen = [], set()
        for t in self._leaves:
            p = self._forest[t].parent
            if p < 0 or p in seen:
                continue
            seen.add(p)
            kids = self._forest[p].children
            if all(self._forest[k].is_leaf for k in kids):
                rows.append(tuple(self._leaf_index[k] for k in kids))
        return rows

    def derefine(self, elements: Optional[Iterable[int]] = None) -> bool:
        """Merge the children of the parents of ``elements`` (all possible
        parents when ``None``). Returns False if nothing changed."""
        if not self._nonconforming:
            raise MeshError("derefinement requires a nonconforming mesh")
        if elements is None:
            elements = range(self.num_elements)
        parents = set()
        for i in elements:
            p = self._forest[self._leaves[int(i)]].parent
            if p >= 0 and all(self._forest[k].is_leaf for k in self._forest[p].children):
                parents.add(p)
        if not parents:
            return False
        old_leaves = list(self._leaves)
        for p in parents:
            self._forest[p].children = ()
        self._build_topology()

        embeddings = []
        for t in old_leaves:
            if t in self._leaf_index:
                embeddings.append(Embedding(self._leaf_index[t], 0))
            else:
                el = self._forest[t]
                embeddings.append(Embedding(self._leaf_index[el.parent], 1 + el.child_no))
        self._deref_transforms = CoarseFineTransformations(embeddings, self._transform_matrices())
        self.sequence += 1
        self.last_operation = Operation.DEREFINE
        logger.debug("derefined %d parents, now %d elements", len(parents), self.num_elements)
        return True

    def refinement_transforms(self) -> CoarseFineTransformations:
        if self._ref_transforms is None:
            raise MeshError("mesh has not been refined")
        return self._ref_transforms

    def derefinement_transforms(self) -> CoarseFineTransformations:
        if self._deref_transforms is None:
            raise MeshError("mesh has not been derefined")
        return self._deref_transforms

    def copy(self) -> "Mesh":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def nonconforming(self) -> bool:
        return self._nonconforming

    @property
    def ncmesh(self) -> Optional[NCMesh]:
        return self._ncmesh

    @property
    def num_vertices(self) -> int:
        return len(self._vertex_nodes)

    @property
    def num_edges(self) -> int:
        return len(self._edges)

    @property
    def num_faces(self) -> int:
        """Number of 2-D faces of a 3-D mesh (0 otherwise)."""
        return len(self._faces)

    @property
    def num_elements(self) -> int:
        return len(self._leaves)

    @property
    def num_bdr_elements(self) -> int:
        return len(self._bdr)

    @property
    def bdr_attributes(self) -> np.ndarray:
        return np.array(sorted({b.attribute for b in self._bdr}), dtype=int)

    def element_geometry(self, i: int) -> Geometry:
        return self._forest[self._leaves[i]].geom

    def element_geometries(self) -> List[Geometry]:
        return sorted({self._forest[t].geom for t in self._leaves})

    def face_geometry(self, f: int) -> Geometry:
        if self.dim == 3:
            return self._faces[f].geom
        return geo.FACE_GEOMETRY[Geometry.SQUARE if self.dim == 2 else Geometry.SEGMENT]

    def face_geometries(self) -> List[Geometry]:
        return sorted({f.geom for f in self._faces})

    def element_attribute(self, i: int) -> int:
        return self._forest[self._leaves[i]].attribute

    def element_vertices(self, i: int) -> np.ndarray:
        return self._elem_vertices[i]

    def element_edges(self, i: int) -> Tuple[np.ndarray, List[tuple]]:
        """Edge indices and orientation permutations of active element ``i``."""
        return self._elem_edges[i]

    def element_faces(self, i: int) -> Tuple[np.ndarray, List[tuple]]:
        return self._elem_faces[i]

    def element_transformation(self, i: int) -> IsoparametricTransformation:
        return IsoparametricTransformation(self.element_geometry(i), self.vertices[self._elem_vertices[i]].T)

    def edge_vertices(self, e: int) -> Tuple[int, int]:
        return self._edges[e].vertices

    def edge_nodes(self, e: int) -> Tuple[int, int]:
        return self._edges[e].nodes

    def edge_element(self, e: int) -> int:
        return self._edge_elem[e]

    def find_edge(self, na: int, nb: int) -> Optional[int]:
        """Active edge between nodes ``na`` and ``nb``, if any."""
        va, vb = self._node_to_vertex.get(na), self._node_to_vertex.get(nb)
        if va is None or vb is None:
            return None
        return self._edge_index.get((min(va, vb), max(va, vb)))

    def face_vertices(self, f: int) -> Tuple[int, ...]:
        return self._faces[f].vertices

    def face_edges(self, f: int) -> Tuple[Tuple[int, ...], Tuple[tuple, ...]]:
        return self._faces[f].edges, self._faces[f].edge_orientations

    def bdr_element_geometry(self, b: int) -> Geometry:
        return self._bdr[b].geom

    def bdr_attribute(self, b: int) -> int:
        return self._bdr[b].attribute

    def bdr_element_entity(self, b: int) -> int:
        return self._bdr[b].entity

    def bdr_element_adjacent_element(self, b: int) -> Tuple[int, int]:
        return self._bdr[b].element, self._bdr[b].local_face

    def bdr_element_vertices(self, b: int) -> np.ndarray:
        ent = self._bdr[b].entity
        if self.dim == 1:
            return np.array([ent], dtype=np.int64)
        if self.dim == 2:
            return np.array(self.edge_vertices(ent), dtype=np.int64)
        return np.array(self.face_vertices(ent), dtype=np.int64)

    def bdr_element_edges(self, b: int) -> Tuple[np.ndarray, List[tuple]]:
        ent = self._bdr[b].entity
        if self.dim == 2:
            return np.array([ent], dtype=np.int64), [(0, 1)]
        if self.dim == 3:
            E, Eo = self.face_edges(ent)
            return np.array(E, dtype=np.int64), list(Eo)
        return np.zeros(0, dtype=np.int64), []

    def bdr_element_transformation(self, b: int) -> IsoparametricTransformation:
        return IsoparametricTransformation(self.bdr_element_geometry(b),
                                           self.vertices[self.bdr_element_vertices(b)].T)

    def hanging_vertices(self) -> np.ndarray:
        """Active vertices lying in the interior of a master edge."""
        if self._ncmesh is None:
            return np.zeros(0, dtype=np.int64)
        lst = self._ncmesh.edge_list
        out = set()
        for master in lst.masters:
            ends = set(self.edge_vertices(master.index))
            for s in lst.master_slaves(master):
                out.update(v for v in self.edge_vertices(s.index) if v not in ends)
        return np.array(sorted(out), dtype=np.int64)

    def __repr__(self):
        return (f"<Mesh dim={self.dim}, n_vertices={self.num_vertices}, n_elements={self.num_elements}, "
                f"n_edges={self.num_edges}, n_faces={self.num_faces}, nonconforming={self._nonconforming}>")
