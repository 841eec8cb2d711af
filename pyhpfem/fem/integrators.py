"""pyhpfem.fem.integrators
Element-level bilinear forms used by the L2 transfer operators.
"""
import numpy as np

from pyhpfem.integration.quadrature import volume


class MassIntegrator:
    """``M_ij = ∫ c φ_i φ_j`` on one element.

    Parameters
    ----------
    coefficient : float, optional
        Constant weight ``c``.
    """

    def __init__(self, coefficient: float = 1.0):
        self.coefficient = float(coefficient)

    def quadrature_degree(self, trial_fe, test_fe, trans) -> int:
        return trial_fe.order + test_fe.order + trans.order_w

    def assemble_element_matrix(self, fe, trans) -> np.ndarray:
        return self.assemble_element_matrix2(fe, fe, trans)

    def assemble_element_matrix2(self, trial_fe, test_fe, trans) -> np.ndarray:
        """Mixed mass ``(test.ndof, trial.ndof)`` on the same reference element."""
        pts, wts = volume(trial_fe.geom, self.quadrature_degree(trial_fe, test_fe, trans))
        M = np.zeros((test_fe.ndof, trial_fe.ndof))
        for x, w in zip(pts, wts):
            u = trial_fe.shape(x)
            v = test_fe.shape(x)
            M += (self.coefficient * w * trans.weight(x)) * np.outer(v, u)
        return M
