"""pyhpfem.core.ordering
Signed DOF encoding and scalar-to-vector DOF layouts.

A global DOF reference ``d`` is a plain integer. Non-negative values are
DOFs with positive orientation, ``-1-d`` marks the same DOF with reversed
orientation (one's complement). Arrays of DOFs stay numpy ``int`` arrays;
:class:`SignedDof` is the explicit ``(index, reversed)`` view of one entry.
"""
from __future__ import annotations

from enum import IntEnum
from typing import NamedTuple, Tuple
import numba
import numpy as np


class Ordering(IntEnum):
    """Layout of the vector components of a vector-valued space."""
    BY_NODES = 0   # x0 x1 ... xn y0 y1 ... yn
    BY_VDIM = 1    # x0 y0 x1 y1 ...


class SignedDof(NamedTuple):
    index: int
    reversed: bool = False

    @property
    def encoded(self) -> int:
        return -1 - self.index if self.reversed else self.index

    @classmethod
    def from_encoded(cls, d: int) -> "SignedDof":
        d = int(d)
        return cls(-1 - d, True) if d < 0 else cls(d, False)


def encode_dof(base: int, idx: int) -> int:
    """Shift a (possibly reversed) local index ``idx`` by ``base``."""
    return base + idx if idx >= 0 else -1 - (base + (-1 - idx))


def decode_dof(d: int) -> int:
    return -1 - d if d < 0 else d


@numba.njit(cache=True)
def decode_dofs(dofs):
    out = np.empty(dofs.shape[0], dtype=np.int64)
    for i in range(dofs.shape[0]):
        d = dofs[i]
        out[i] = -1 - d if d < 0 else d
    return out


@numba.njit(cache=True)
def dof_signs(dofs):
    out = np.empty(dofs.shape[0], dtype=np.float64)
    for i in range(dofs.shape[0]):
        out[i] = -1.0 if dofs[i] < 0 else 1.0
    return out


@numba.njit(cache=True)
def mark_dofs(dofs, marker):
    for i in range(dofs.shape[0]):
        d = dofs[i]
        marker[-1 - d if d < 0 else d] = True


# -------------------------------------------------------------------------
# scalar <-> vector DOFs
# -------------------------------------------------------------------------
def map_dof(ordering: Ordering, ndofs: int, vdim: int, dof: int, vd: int) -> int:
    """Vector DOF of scalar ``dof`` (signed) and component ``vd``."""
    if not (0 <= vd < vdim):
        raise IndexError(f"component {vd} outside [0, {vdim})")
    if ordering == Ordering.BY_NODES:
        return dof + ndofs * vd if dof >= 0 else dof - ndofs * vd
    return vd + vdim * dof if dof >= 0 else -1 - (vd + vdim * (-1 - dof))


def unmap_vdof(ordering: Ordering, ndofs: int, vdim: int, vdof: int) -> Tuple[int, int]:
    """Inverse of :func:`map_dof` for unsigned vdofs: returns ``(dof, vd)``."""
    if not (0 <= vdof < ndofs * vdim):
        raise IndexError(f"vdof {vdof} outside [0, {ndofs * vdim})")
    if ordering == Ordering.BY_NODES:
        return vdof % ndofs, vdof // ndofs
    return vdof // vdim, vdof % vdim


def map_dofs(ordering: Ordering, ndofs: int, vdim: int, dofs, vd: int) -> np.ndarray:
    dofs = np.asarray(dofs, dtype=np.int64)
    if ordering == Ordering.BY_NODES:
        return np.where(dofs >= 0, dofs + ndofs * vd, dofs - ndofs * vd)
    return np.where(dofs >= 0, vd + vdim * dofs, -1 - (vd + vdim * (-1 - dofs)))


def dofs_to_vdofs(ordering: Ordering, ndofs: int, vdim: int, dofs) -> np.ndarray:
    """Component blocks ``[dofs(vd=0), dofs(vd=1), ...]`` for both layouts."""
    dofs = np.asarray(dofs, dtype=np.int64)
    if vdim == 1:
        return dofs.copy()
    return np.concatenate([map_dofs(ordering, ndofs, vdim, dofs, vd) for vd in range(vdim)])


# -------------------------------------------------------------------------
# signed gather / scatter
# -------------------------------------------------------------------------
def get_sub_vector(x: np.ndarray, dofs) -> np.ndarray:
    dofs = np.asarray(dofs, dtype=np.int64)
    return x[decode_dofs(dofs)] * dof_signs(dofs)


def set_sub_vector(y: np.ndarray, dofs, values) -> None:
    dofs = np.asarray(dofs, dtype=np.int64)
    y[decode_dofs(dofs)] = np.asarray(values, dtype=float) * dof_signs(dofs)


def add_sub_vector(y: np.ndarray, dofs, values) -> None:
    dofs = np.asarray(dofs, dtype=np.int64)
    np.add.at(y, decode_dofs(dofs), np.asarray(values, dtype=float) * dof_signs(dofs))
