import numpy as np
from dataclasses import dataclass, field
from typing import Tuple

from pyhpfem.core.geometry import Geometry


class Node:
    def __init__(self, id, x, y=0.0, z=0.0, tag=None):
        self.x = x
        self.y = y
        self.z = z
        self.id = id
        self.tag = tag

    def __repr__(self):
        return f"Node {self.id}({self.x:.3f}, {self.y:.3f}, {self.z:.3f}, tag='{self.tag}')"

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return bool(np.allclose(self.coords(3), other.coords(3)))

    def __ne__(self, other):
        eq = self.__eq__(other)
        return eq if eq is NotImplemented else not eq

    def __hash__(self):
        return hash((self.x, self.y, self.z))

    def __getitem__(self, idx):
        if   idx == 0: return self.x
        elif idx == 1: return self.y
        elif idx == 2: return self.z
        raise IndexError("Node supports indices 0 (x), 1 (y) and 2 (z)")

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def coords(self, sdim: int) -> np.ndarray:
        return np.array([self.x, self.y, self.z][:sdim], dtype=float)


@dataclass(slots=True)
class Element:
    """One cell of the refinement forest."""
    id: int                     # position in the forest
    geom: Geometry
    nodes: Tuple[int, ...]      # node ids of the corners, reference vertex order
    attribute: int = 1
    parent: int = -1
    child_no: int = -1          # position among the parent's children
    children: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass(slots=True)
class Edge:
    gid: int
    vertices: Tuple[int, int]   # active vertex indices, ascending
    nodes: Tuple[int, int]      # node ids matching ``vertices``


@dataclass(slots=True)
class Face:
    gid: int
    geom: Geometry
    vertices: Tuple[int, ...]   # canonical cyclic order
    edges: Tuple[int, ...] = field(default_factory=tuple)
    edge_orientations: Tuple[Tuple[int, ...], ...] = field(default_factory=tuple)


@dataclass(slots=True)
class BoundaryElement:
    gid: int
    geom: Geometry
    entity: int                 # vertex (1D), edge (2D) or face (3D) index
    attribute: int
    element: int                # adjacent active element
    local_face: int             # local index of the entity inside ``element``
