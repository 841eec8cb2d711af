"""pyhpfem.core.geometry
Reference geometries on the unit simplex / unit cube and their linear
(vertex) shape functions.
"""
from __future__ import annotations

from enum import IntEnum
import numpy as np


class Geometry(IntEnum):
    POINT = 0
    SEGMENT = 1
    TRIANGLE = 2
    SQUARE = 3
    CUBE = 5


# element_type strings used by mesh generators and Mesh(...)
GEOMETRY_NAMES = {
    "point": Geometry.POINT,
    "segment": Geometry.SEGMENT,
    "tri": Geometry.TRIANGLE,
    "quad": Geometry.SQUARE,
    "hex": Geometry.CUBE,
}

DIMENSION = {
    Geometry.POINT: 0,
    Geometry.SEGMENT: 1,
    Geometry.TRIANGLE: 2,
    Geometry.SQUARE: 2,
    Geometry.CUBE: 3,
}

VERTICES = {
    Geometry.POINT: np.zeros((1, 0)),
    Geometry.SEGMENT: np.array([[0.0], [1.0]]),
    Geometry.TRIANGLE: np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
    Geometry.SQUARE: np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]),
    Geometry.CUBE: np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0],
                             [0.0, 0.0, 1.0], [1.0, 0.0, 1.0], [1.0, 1.0, 1.0], [0.0, 1.0, 1.0]]),
}

# local edges as (start, end) vertex pairs
EDGES = {
    Geometry.POINT: (),
    Geometry.SEGMENT: ((0, 1),),
    Geometry.TRIANGLE: ((0, 1), (1, 2), (2, 0)),
    Geometry.SQUARE: ((0, 1), (1, 2), (2, 3), (3, 0)),
    Geometry.CUBE: ((0, 1), (1, 2), (3, 2), (0, 3), (4, 5), (5, 6),
                    (7, 6), (4, 7), (0, 4), (1, 5), (2, 6), (3, 7)),
}

# local faces of 3D geometries, each a cyclic quadrilateral
FACES = {
    Geometry.CUBE: ((3, 2, 1, 0), (0, 1, 5, 4), (1, 2, 6, 5),
                    (2, 3, 7, 6), (3, 0, 4, 7), (4, 5, 6, 7)),
}

FACE_GEOMETRY = {
    Geometry.SEGMENT: Geometry.POINT,
    Geometry.TRIANGLE: Geometry.SEGMENT,
    Geometry.SQUARE: Geometry.SEGMENT,
    Geometry.CUBE: Geometry.SQUARE,
}


def num_verts(geom) -> int:
    return len(VERTICES[Geometry(geom)])


def center(geom) -> np.ndarray:
    return VERTICES[Geometry(geom)].mean(axis=0)


def inside(geom, x, eps: float = 1e-12) -> bool:
    """True if reference point ``x`` lies in the closed reference domain."""
    geom = Geometry(geom)
    x = np.asarray(x, dtype=float)
    if geom == Geometry.POINT:
        return True
    if geom == Geometry.TRIANGLE:
        return bool(x[0] >= -eps and x[1] >= -eps and x[0] + x[1] <= 1.0 + eps)
    return bool(np.all(x >= -eps) and np.all(x <= 1.0 + eps))


def linear_shape(geom, x) -> np.ndarray:
    """Vertex (P1/Q1) shape functions, used for the geometric mapping."""
    geom = Geometry(geom)
    x = np.asarray(x, dtype=float)
    if geom == Geometry.POINT:
        return np.ones(1)
    if geom == Geometry.SEGMENT:
        return np.array([1.0 - x[0], x[0]])
    if geom == Geometry.TRIANGLE:
        return np.array([1.0 - x[0] - x[1], x[0], x[1]])
    if geom == Geometry.SQUARE:
        s, t = x
        return np.array([(1 - s) * (1 - t), s * (1 - t), s * t, (1 - s) * t])
    if geom == Geometry.CUBE:
        s, t, u = x
        return np.array([(1 - s) * (1 - t) * (1 - u), s * (1 - t) * (1 - u),
                         s * t * (1 - u), (1 - s) * t * (1 - u),
                         (1 - s) * (1 - t) * u, s * (1 - t) * u,
                         s * t * u, (1 - s) * t * u])
    raise KeyError(geom)


def linear_dshape(geom, x) -> np.ndarray:
    """Gradients of :func:`linear_shape`, shape ``(nv, dim)``."""
    geom = Geometry(geom)
    x = np.asarray(x, dtype=float)
    if geom == Geometry.POINT:
        return np.zeros((1, 0))
    if geom == Geometry.SEGMENT:
        return np.array([[-1.0], [1.0]])
    if geom == Geometry.TRIANGLE:
        return np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])
    if geom == Geometry.SQUARE:
        s, t = x
        return np.array([[-(1 - t), -(1 - s)], [1 - t, -s], [t, s], [-t, 1 - s]])
    if geom == Geometry.CUBE:
        s, t, u = x
        return np.array([
            [-(1 - t) * (1 - u), -(1 - s) * (1 - u), -(1 - s) * (1 - t)],
            [(1 - t) * (1 - u), -s * (1 - u), -s * (1 - t)],
            [t * (1 - u), s * (1 - u), -s * t],
            [-t * (1 - u), (1 - s) * (1 - u), -(1 - s) * t],
            [-(1 - t) * u, -(1 - s) * u, (1 - s) * (1 - t)],
            [(1 - t) * u, -s * u, s * (1 - t)],
            [t * u, s * u, s * t],
            [-t * u, (1 - s) * u, (1 - s) * t],
        ])
    raise KeyError(geom)


def canonical_cycle(verts) -> tuple:
    """Canonical representative of a cyclic vertex tuple (face orientation).

    Starts at the smallest vertex and walks toward its smaller neighbour.
    """
    verts = tuple(int(v) for v in verts)
    n = len(verts)
    k = verts.index(min(verts))
    fwd = tuple(verts[(k + i) % n] for i in range(n))
    bwd = tuple(verts[(k - i) % n] for i in range(n))
    return fwd if fwd[1] < bwd[1] else bwd


def orientation(local, canonical) -> tuple:
    """Permutation ``perm`` with ``canonical[perm[k]] == local[k]``."""
    pos = {v: i for i, v in enumerate(canonical)}
    return tuple(pos[v] for v in local)
