from functools import lru_cache
import sympy as sp
import numpy as np


@lru_cache(maxsize=None)
def _lagrange_basis_1d(n: int):
    """Return equispaced 1D Lagrange nodes on [0,1] and NUMPY-callable lambdas."""
    x = sp.symbols('x')
    if n == 0:
        return np.array([0.5]), [sp.lambdify(x, sp.S(1), 'numpy')]
    nodes = [sp.Rational(i, n) for i in range(n + 1)]
    L = []
    for i, xi in enumerate(nodes):
        num = 1
        den = 1
        for j, xj in enumerate(nodes):
            if i == j:
                continue
            num *= (x - xj)
            den *= (xi - xj)
        L.append(sp.lambdify(x, sp.expand(num / den), 'numpy'))
    return np.array([float(v) for v in nodes]), L


def _eval_1d(vals, z):
    # vals is a list of 1D lambdas; output shape (n+1,)
    return np.array([f(z) for f in vals], dtype=float)


@lru_cache(maxsize=None)
def segment_pn(n: int):
    """
    P_n on [0,1].
    Returns: (lattice, shape_fn) where lattice is ((n+1), 1) and
      shape_fn(x) -> (n+1,) in lattice order.
    """
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    nodes1d, L = _lagrange_basis_1d(n)

    def shape(x):
        return _eval_1d(L, x)

    return nodes1d[:, None], shape
