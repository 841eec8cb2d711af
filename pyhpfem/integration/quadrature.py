"""pyhpfem.integration.quadrature
Quadrature rules on the reference geometries ([0,1]^d and the unit triangle).
"""
import numpy as np
from functools import lru_cache
from numpy.polynomial.legendre import leggauss

from pyhpfem.core.geometry import Geometry


# -------------------------------------------------------------------------
# 1‑D Gauss–Legendre
# -------------------------------------------------------------------------
def gauss_legendre(npts: int):
    if npts < 1:
        raise ValueError(npts)
    return leggauss(npts)  # (points, weights) on [-1,1]


def _gl01(npts: int):
    """Gauss–Legendre nodes and weights mapped to [0,1]."""
    xi, w = gauss_legendre(int(npts))
    return 0.5 * (xi + 1.0), 0.5 * w


def _npts_for_degree(degree: int) -> int:
    return max(1, (int(degree) + 2) // 2)


# -------------------------------------------------------------------------
# Tensor‑product construction helpers
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def segment_rule(degree: int):
    x, w = _gl01(_npts_for_degree(degree))
    return x[:, None], w


@lru_cache(maxsize=None)
def quad_rule(degree: int):
    x, w = _gl01(_npts_for_degree(degree))
    # eta outer, xi inner
    pts = np.array([[xi, eta] for eta in x for xi in x])
    wts = np.array([wy * wx for wy in w for wx in w])
    return pts, wts


@lru_cache(maxsize=None)
def hex_rule(degree: int):
    x, w = _gl01(_npts_for_degree(degree))
    pts = np.array([[a, b, c] for c in x for b in x for a in x])
    wts = np.array([wc * wb * wa for wc in w for wb in w for wa in w])
    return pts, wts


@lru_cache(maxsize=None)
def tri_rule(degree: int):
    """Degree‑exact collapsed Gauss rule on the triangle (0,0)-(1,0)-(0,1)."""
    u, w_u = _gl01(_npts_for_degree(degree + 1))
    pts = []
    wts = []
    for i, ui in enumerate(u):
        for j, vj in enumerate(u):
            r = ui
            s = vj * (1.0 - ui)
            pts.append([r, s])
            wts.append(w_u[i] * w_u[j] * (1.0 - ui))
    return np.array(pts), np.array(wts)


def volume(geom, degree: int):
    """Points ``(n, dim)`` and weights ``(n,)`` exact for polynomials of ``degree``."""
    geom = Geometry(geom)
    if geom == Geometry.POINT:
        return np.zeros((1, 0)), np.ones(1)
    if geom == Geometry.SEGMENT:
        return segment_rule(int(degree))
    if geom == Geometry.TRIANGLE:
        return tri_rule(int(degree))
    if geom == Geometry.SQUARE:
        return quad_rule(int(degree))
    if geom == Geometry.CUBE:
        return hex_rule(int(degree))
    raise KeyError(geom)
