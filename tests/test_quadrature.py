import numpy as np
import pytest
from pyhpfem.core.geometry import Geometry
from pyhpfem.integration import quadrature as q


def integrate_ref(geom, func, order):
    pts, wts = q.volume(geom, order)
    fvals = np.array([func(x) for x in pts])
    return (fvals * wts).sum()


def test_constant_volume():
    for geom, exact in ((Geometry.SEGMENT, 1.0), (Geometry.TRIANGLE, 0.5),
                        (Geometry.SQUARE, 1.0), (Geometry.CUBE, 1.0)):
        _, wts = q.volume(geom, 3)
        assert np.isclose(wts.sum(), exact, rtol=1e-12)


def test_linear_exact_tri():
    # ∫_T r dA over the reference triangle = 1/6
    val = integrate_ref(Geometry.TRIANGLE, lambda x: x[0], order=1)
    assert np.isclose(val, 1 / 6, rtol=1e-12)


@pytest.mark.parametrize("degree", [0, 1, 2, 5, 8])
def test_polynomial_exactness(degree):
    # ∫_0^1 x^p dx = 1/(p+1), tensor rules integrate products exactly
    exact_1d = 1.0 / (degree + 1)
    assert np.isclose(integrate_ref(Geometry.SEGMENT, lambda x: x[0] ** degree, degree), exact_1d)
    assert np.isclose(integrate_ref(Geometry.SQUARE, lambda x: x[0] ** degree * x[1] ** degree, degree),
                      exact_1d ** 2)
    assert np.isclose(integrate_ref(Geometry.CUBE, lambda x: (x[0] * x[1] * x[2]) ** degree, degree),
                      exact_1d ** 3)


def test_tri_monomials():
    # ∫_T r^a s^b = a! b! / (a + b + 2)!
    val = integrate_ref(Geometry.TRIANGLE, lambda x: x[0] ** 2 * x[1] ** 3, order=5)
    assert np.isclose(val, 2 * 6 / 5040, rtol=1e-12)


def test_point_and_bad_degree():
    pts, wts = q.volume(Geometry.POINT, 4)
    assert pts.shape == (1, 0) and wts.tolist() == [1.0]
    with pytest.raises(ValueError):
        q.gauss_legendre(0)
