"""pyhpfem.core.cache
Lazily built operators of a space, keyed by configuration tuples.
"""
from typing import Any, Callable, Dict, Hashable


class OperatorCache:
    """One table for every derived operator of a space.

    Entries are built on first request and dropped together by
    :meth:`invalidate`, which the owning space calls whenever its DOF
    numbering changes.
    """

    def __init__(self):
        self._table: Dict[Hashable, Any] = {}

    def get(self, key: Hashable, builder: Callable[[], Any]) -> Any:
        if key not in self._table:
            self._table[key] = builder()
        return self._table[key]

    def invalidate(self) -> None:
        self._table.clear()

    def __contains__(self, key) -> bool:
        return key in self._table

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self):
        return f"<OperatorCache {sorted(map(str, self._table))}>"
