"""pyhpfem.fem.collection
Finite element collections: per-geometry, per-order DOF counts, elements
and orientation permutations of entity DOFs.
"""
from __future__ import annotations

from functools import lru_cache
import re
import numpy as np

from pyhpfem.core import geometry as geo
from pyhpfem.core.geometry import Geometry
from pyhpfem.fem.element import NodalElement, interior_lattice


@lru_cache(maxsize=None)
def _nodal_element(geom: Geometry, order: int, layout: str) -> NodalElement:
    return NodalElement(geom, order, layout)


@lru_cache(maxsize=None)
def _dof_ordering(geom: Geometry, order: int, perm: tuple) -> np.ndarray:
    """``ind[j]``: entity DOF index (canonical frame) of local entity DOF ``j``.

    ``perm[k]`` is the position, in the canonical vertex tuple of the entity,
    of the entity's local vertex ``k``.
    """
    nodes = interior_lattice(geom, order)
    V = geo.VERTICES[geom]
    ind = np.empty(len(nodes), dtype=np.int64)
    for j, x in enumerate(nodes):
        w = geo.linear_shape(geom, x)
        y = w @ V[list(perm)]
        ind[j] = int(np.argmin(np.linalg.norm(nodes - y, axis=1)))
    if len(set(ind.tolist())) != len(ind):
        raise ValueError(f"invalid orientation {perm} for {geom.name}")
    ind.flags.writeable = False
    return ind


class _Collection:
    family = ""
    layout = ""

    def __init__(self, order: int, dim: int):
        if order < self.min_order:
            raise ValueError(f"{self.family} collection requires order >= {self.min_order}, got {order}")
        if dim not in (1, 2, 3):
            raise ValueError(f"unsupported dimension {dim}")
        self.default_order = int(order)
        self.dim = int(dim)

    @property
    def name(self) -> str:
        return f"{self.family}_{self.dim}D_P{self.default_order}"

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

    def __eq__(self, other):
        return isinstance(other, _Collection) and self.name == other.name

    def __hash__(self):
        return hash(self.name)

    @staticmethod
    def from_name(name: str) -> "_Collection":
        m = re.fullmatch(r"(H1|L2)_(\d)D_P(\d+)", name.strip())
        if m is None:
            raise KeyError(f"unknown finite element collection {name!r}")
        cls = H1Collection if m.group(1) == "H1" else L2Collection
        return cls(int(m.group(3)), int(m.group(2)))

    def dof_for_geometry(self, geom) -> int:
        return self.num_dofs(geom, self.default_order)

    def fe_for_geometry(self, geom) -> NodalElement:
        return self.get_fe(geom, self.default_order)

    def get_fe(self, geom, order: int) -> NodalElement:
        return _nodal_element(Geometry(geom), int(order), self.layout)

    def dof_ordering(self, geom, order: int, perm) -> np.ndarray:
        return _dof_ordering(Geometry(geom), int(order), tuple(int(k) for k in perm))


class H1Collection(_Collection):
    """Continuous Lagrange elements, DOFs shared through vertices, edges and faces."""
    family = "H1"
    layout = "h1"
    min_order = 1

    def num_dofs(self, geom, order: int) -> int:
        """Number of DOFs owned by the *interior* of an entity of ``geom``."""
        geom, p = Geometry(geom), int(order)
        if geom == Geometry.POINT:
            return 1
        if geom == Geometry.SEGMENT:
            return p - 1
        if geom == Geometry.TRIANGLE:
            return (p - 1) * (p - 2) // 2
        if geom == Geometry.SQUARE:
            return (p - 1) ** 2
        if geom == Geometry.CUBE:
            return (p - 1) ** 3
        raise KeyError(geom)

    def has_face_dofs(self, geom, order: int) -> bool:
        return geo.DIMENSION[Geometry(geom)] == 3 and order > 1


class L2Collection(_Collection):
    """Discontinuous Lagrange elements: every DOF is an element interior DOF."""
    family = "L2"
    layout = "l2"
    min_order = 0

    def num_dofs(self, geom, order: int) -> int:
        geom, p = Geometry(geom), int(order)
        if geo.DIMENSION[geom] != self.dim:
            return 0
        if geom == Geometry.SEGMENT:
            return p + 1
        if geom == Geometry.TRIANGLE:
            return (p + 1) * (p + 2) // 2
        if geom == Geometry.SQUARE:
            return (p + 1) ** 2
        if geom == Geometry.CUBE:
            return (p + 1) ** 3
        raise KeyError(geom)

    def has_face_dofs(self, geom, order: int) -> bool:
        return False
