# pyhpfem.fem.reference
"""
Order-agnostic reference-element factory.

Shape functions are returned in *lattice* order; nodal elements permute
them into vertex/edge/face/interior order.
"""
from functools import lru_cache
from importlib import import_module
import numpy as np

from pyhpfem.core.geometry import Geometry

SHAPE_CACHE_SIZE = 4096


class Ref:
    def __init__(self, lattice, shape_lambda):
        self.lattice = np.asarray(lattice, dtype=float)
        self.shape_lambda = shape_lambda

    @property
    def ndof(self) -> int:
        return self.lattice.shape[0]

    @lru_cache(maxsize=SHAPE_CACHE_SIZE)
    def _shape(self, x: tuple):
        return self.shape_lambda(*x).astype(float).ravel()

    def shape(self, x) -> np.ndarray:
        return self._shape(tuple(float(v) for v in np.ravel(x)))


_MODULES = {
    Geometry.SEGMENT: ("segment_pn", "segment_pn"),
    Geometry.TRIANGLE: ("tri_pn", "tri_pn"),
    Geometry.SQUARE: ("quad_qn", "quad_qn"),
    Geometry.CUBE: ("hex_qn", "hex_qn"),
}


@lru_cache(maxsize=None)
def get_reference(geom, poly_order: int = 1):
    try:
        module, func = _MODULES[Geometry(geom)]
    except KeyError:
        raise KeyError(geom) from None
    lattice, shape_l = getattr(import_module(f"pyhpfem.fem.reference.{module}"), func)(poly_order)
    return Ref(lattice, shape_l)
