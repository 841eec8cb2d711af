"""pyhpfem.utils.bitset
Boolean DOF markers and small integer order sets.
"""
from __future__ import annotations

from typing import Iterable, Iterator
import numpy as np


class BitSet:
    """Boolean marker over a index domain (DOFs, vdofs, attributes)."""

    def __init__(self, mask):
        self.mask = np.asarray(mask, dtype=bool)

    @classmethod
    def from_indices(cls, indices, size: int) -> "BitSet":
        mask = np.zeros(size, dtype=bool)
        mask[np.asarray(indices, dtype=int)] = True
        return cls(mask)

    def union(self, other): return BitSet(self.mask | other.mask)
    def intersect(self, other): return BitSet(self.mask & other.mask)
    def diff(self, other): return BitSet(self.mask & ~other.mask)
    __or__ = union
    __and__ = intersect
    __sub__ = diff
    def cardinality(self): return int(self.mask.sum())
    def to_indices(self): return np.flatnonzero(self.mask)
    def __len__(self): return len(self.mask)
    def __repr__(self): return f'<BitSet {self.cardinality()}/{len(self)}>'

    @property
    def array(self):
        """The underlying boolean NumPy mask (no copy)."""
        return self.mask

    def __getitem__(self, idx):      # BitSet[i] → bool
        return self.mask[idx]

    def __contains__(self, idx):     # idx in BitSet
        return bool(self.mask[idx])

    def __eq__(self, other):
        if not isinstance(other, BitSet):
            return NotImplemented
        return self.mask.shape == other.mask.shape and bool(np.all(self.mask == other.mask))


class OrderSet:
    """Immutable set of polynomial orders packed into an int bitmask.

    Bit ``p`` is set when order ``p`` is required on an edge or face.
    Iteration yields the orders in ascending order, which is the order in
    which DOF ranges (variants) are allocated.
    """

    __slots__ = ("_mask",)

    def __init__(self, orders: Iterable[int] = ()):
        mask = 0
        for p in orders:
            if p < 0:
                raise ValueError(f"negative order {p}")
            mask |= 1 << int(p)
        self._mask = mask

    @classmethod
    def from_mask(cls, mask: int) -> "OrderSet":
        if mask < 0:
            raise ValueError(f"invalid order mask {mask}")
        obj = cls()
        obj._mask = int(mask)
        return obj

    @classmethod
    def single(cls, order: int) -> "OrderSet":
        return cls((order,))

    @property
    def mask(self) -> int:
        return self._mask

    def min_order(self) -> int:
        if not self._mask:
            raise ValueError("min_order() of an empty OrderSet")
        return (self._mask & -self._mask).bit_length() - 1

    def max_order(self) -> int:
        if not self._mask:
            raise ValueError("max_order() of an empty OrderSet")
        return self._mask.bit_length() - 1

    def add(self, order: int) -> "OrderSet":
        return OrderSet.from_mask(self._mask | (1 << int(order)))

    def union(self, other: "OrderSet") -> "OrderSet":
        return OrderSet.from_mask(self._mask | other._mask)
    __or__ = union

    def __contains__(self, order) -> bool:
        return order >= 0 and bool(self._mask >> int(order) & 1)

    def __iter__(self) -> Iterator[int]:
        mask, p = self._mask, 0
        while mask:
            if mask & 1:
                yield p
            mask >>= 1
            p += 1

    def __len__(self) -> int:
        return bin(self._mask).count("1")

    def __bool__(self) -> bool:
        return bool(self._mask)

    def __eq__(self, other):
        if isinstance(other, OrderSet):
            return self._mask == other._mask
        return NotImplemented

    def __hash__(self):
        return hash(self._mask)

    def __repr__(self):
        return f"OrderSet({list(self)})"
