from functools import lru_cache
import numpy as np

from .segment_pn import _lagrange_basis_1d, _eval_1d


@lru_cache(maxsize=None)
def quad_qn(n: int):
    """
    Tensor-product Q_n on [0,1]^2.
    Returns: (lattice, shape_fn) where
      shape_fn(xi, eta) -> ( (n+1)^2, )
    Stacking order is (eta outer, xi inner): index = j*(n+1) + i
    """
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    nodes1d, L = _lagrange_basis_1d(n)
    lattice = np.array([(xi, eta) for eta in nodes1d for xi in nodes1d])

    def shape(xi, eta):
        lx = _eval_1d(L, xi)          # (n+1,)
        ly = _eval_1d(L, eta)         # (n+1,)
        # eta outer, xi inner
        return np.outer(ly, lx).reshape(-1)

    return lattice, shape
