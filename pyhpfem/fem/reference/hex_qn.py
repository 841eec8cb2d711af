from functools import lru_cache
import numpy as np

from .segment_pn import _lagrange_basis_1d, _eval_1d


@lru_cache(maxsize=None)
def hex_qn(n: int):
    """
    Tensor-product Q_n on [0,1]^3, stacking order (zeta, eta, xi) outer to inner.
    """
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    nodes1d, L = _lagrange_basis_1d(n)
    lattice = np.array([(xi, eta, zeta) for zeta in nodes1d for eta in nodes1d for xi in nodes1d])

    def shape(xi, eta, zeta):
        lx = _eval_1d(L, xi)
        ly = _eval_1d(L, eta)
        lz = _eval_1d(L, zeta)
        return np.einsum('k,j,i->kji', lz, ly, lx).reshape(-1)

    return lattice, shape
