"""pyhpfem.core.doftable
Variant-indexed DOF ranges of edges and faces.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence, Tuple
import numpy as np

from pyhpfem.errors import SpaceError
from pyhpfem.utils.bitset import OrderSet


class VarDofTable:
    """Entity → list of DOF ranges, one per order variant (lowest order first).

    Storage is CSR-like: row ``i`` spans ``base[row_ptr[i]:row_ptr[i+1]]``.
    A terminator row holding the total DOF count follows the last entity,
    so the size of any range is ``base[k+1] - base[k]``.
    """

    def __init__(self, row_ptr: np.ndarray, base: np.ndarray):
        self.row_ptr = np.asarray(row_ptr, dtype=np.int64)
        self.base = np.asarray(base, dtype=np.int64)

    @classmethod
    def build(cls, entity_orders: Sequence[OrderSet],
              num_dofs: Callable[[int, int], int]) -> Tuple["VarDofTable", int]:
        """Allocate ``num_dofs(entity, order)`` DOFs per entity and order.

        Returns the table and the total number of DOFs.
        """
        row_ptr = [0]
        base = []
        total = 0
        for i, orders in enumerate(entity_orders):
            for p in orders:
                base.append(total)
                total += num_dofs(i, p)
            row_ptr.append(len(base))
        # terminator row
        base.append(total)
        row_ptr.append(len(base))
        return cls(np.array(row_ptr), np.array(base)), total

    @property
    def size(self) -> int:
        """Number of entities (without the terminator row)."""
        return len(self.row_ptr) - 2

    @property
    def total_dofs(self) -> int:
        return int(self.base[-1])

    def num_variants(self, entity: int) -> int:
        return int(self.row_ptr[entity + 1] - self.row_ptr[entity])

    def variant_range(self, entity: int, variant: int) -> Optional[Tuple[int, int]]:
        """``(base, ndofs)`` of a variant, or ``None`` past the last variant."""
        if not (0 <= entity < self.size):
            raise IndexError(f"entity {entity} out of range [0, {self.size})")
        if variant < 0:
            raise IndexError(f"negative variant {variant}")
        if variant >= self.num_variants(entity):
            return None
        k = self.row_ptr[entity] + variant
        return int(self.base[k]), int(self.base[k + 1] - self.base[k])

    def find_dofs(self, entity: int, ndof: int) -> int:
        """Base of the variant of ``entity`` holding exactly ``ndof`` DOFs."""
        for k in range(self.row_ptr[entity], self.row_ptr[entity + 1]):
            if self.base[k + 1] - self.base[k] == ndof:
                return int(self.base[k])
        raise SpaceError(f"DOFs not found for entity {entity} with {ndof} DOFs")


def build_ndof_to_order(num_dofs: Callable[[int], int], orders) -> Dict[int, int]:
    """Reverse map ``ndof -> order`` for one geometry."""
    out: Dict[int, int] = {}
    for p in orders:
        n = num_dofs(p)
        if n in out and out[n] != p:
            raise SpaceError(f"orders {out[n]} and {p} both have {n} DOFs, cannot recover the order")
        out[n] = p
    return out
