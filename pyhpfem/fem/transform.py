"""pyhpfem.fem.transform
Reference → target mapping given by a point matrix of vertex images.

The same class maps reference elements to physical space and child/slave
reference elements into their parent/master reference element.
"""
import numpy as np

from pyhpfem.core import geometry as geo
from pyhpfem.core.geometry import Geometry


class IsoparametricTransformation:
    """Linear (P1/Q1 vertex) mapping ``x = PM @ N(xi)``.

    ``point_matrix`` has shape ``(target_dim, num_verts(geom))``: column ``k``
    is the image of reference vertex ``k``.
    """

    def __init__(self, geom, point_matrix):
        self.geom = Geometry(geom)
        self.point_matrix = np.atleast_2d(np.asarray(point_matrix, dtype=float))
        if self.point_matrix.shape[1] != geo.num_verts(self.geom):
            raise ValueError(f"point matrix has {self.point_matrix.shape[1]} columns, "
                             f"{self.geom.name} has {geo.num_verts(self.geom)} vertices")

    @classmethod
    def identity(cls, geom):
        return cls(geom, geo.VERTICES[Geometry(geom)].T)

    @property
    def dim(self) -> int:
        return geo.DIMENSION[self.geom]

    @property
    def order_w(self) -> int:
        """Per-variable degree of the Jacobian determinant (extra quadrature)."""
        if self.geom in (Geometry.SQUARE, Geometry.CUBE) and not self.is_affine():
            return self.dim - 1
        return 0

    def is_affine(self) -> bool:
        if self.geom not in (Geometry.SQUARE, Geometry.CUBE):
            return True
        pm = self.point_matrix
        v = geo.VERTICES[self.geom]
        # affine iff the mapping of the vertices is reproduced by v0 + J v
        J = self.jacobian(np.zeros(self.dim))
        return bool(np.allclose(pm[:, [0]] + J @ v.T, pm, atol=1e-13))

    def transform(self, ref_pts) -> np.ndarray:
        """Map ``(n, dim)`` (or a single ``(dim,)``) reference points."""
        ref_pts = np.asarray(ref_pts, dtype=float)
        single = ref_pts.ndim == 1
        pts = np.atleast_2d(ref_pts)
        if self.geom == Geometry.POINT:
            out = np.repeat(self.point_matrix[:, 0][None, :], pts.shape[0], axis=0)
        else:
            out = np.array([self.point_matrix @ geo.linear_shape(self.geom, x) for x in pts])
        return out[0] if single else out

    def jacobian(self, xi) -> np.ndarray:
        """``(target_dim, dim)`` Jacobian at reference point ``xi``."""
        return self.point_matrix @ geo.linear_dshape(self.geom, xi)

    def weight(self, xi) -> float:
        J = self.jacobian(xi)
        if J.shape[1] == 0:
            return 1.0
        if J.shape[0] == J.shape[1]:
            return abs(float(np.linalg.det(J)))
        return float(np.sqrt(np.linalg.det(J.T @ J)))

    def inverse(self, x, tol=1e-12, maxiter=50) -> np.ndarray:
        """Reference coordinates of target point ``x`` (Newton iteration).

        Points outside the image are extrapolated; callers check the result
        with :func:`pyhpfem.core.geometry.inside`.
        """
        x = np.asarray(x, dtype=float)
        xi = geo.center(self.geom).astype(float)
        for it in range(maxiter):
            X = self.transform(xi)
            J = self.jacobian(xi)
            try:
                delta = np.linalg.lstsq(J, x - X, rcond=None)[0]
            except np.linalg.LinAlgError:
                raise ValueError(f"Jacobian singular at iteration {it}, x={x}")
            xi = xi + delta
            if np.linalg.norm(delta) < tol:
                break
        else:
            raise ValueError(f"Inverse mapping did not converge after {maxiter} iterations, "
                             f"x={x}, residual={np.linalg.norm(x - self.transform(xi))}")
        return xi
