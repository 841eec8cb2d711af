from functools import lru_cache
import sympy as sp
import numpy as np


@lru_cache(maxsize=None)
def tri_pn(n: int):
    """
    Return the nodal lattice and lambdified shape functions of the Pn triangle.

    Args:
        n: Polynomial order of the Pn element.

    Returns:
        tuple: (lattice, shape_fn)
            - lattice: (N, 2) nodes on the reference triangle (0,0)-(1,0)-(0,1),
              rows j (eta) outer, i (xi) inner.
            - shape_fn: Callable giving [phi_1, ..., phi_N] at (xi, eta).
    """
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    xi_sym, eta_sym = sp.symbols("xi eta")

    # 1. Pn nodal points
    nodes_ref_coords = []
    if n == 0:  # P0 element has one node, at the centroid
        nodes_ref_coords.append((sp.Rational(1, 3), sp.Rational(1, 3)))
    else:
        for j_level in range(n + 1):  # eta-like rows
            for i_level in range(n + 1 - j_level):  # xi-like within rows
                nodes_ref_coords.append((sp.Rational(i_level, n), sp.Rational(j_level, n)))
    num_nodes = len(nodes_ref_coords)

    # 2. Monomial basis for polynomials of degree <= n
    monomials_sym = []
    for total_degree in range(n + 1):
        for pow_xi in range(total_degree + 1):
            pow_eta = total_degree - pow_xi
            monomials_sym.append(xi_sym**pow_xi * eta_sym**pow_eta)

    if len(monomials_sym) != num_nodes:
        raise RuntimeError(f"Internal error: Mismatch between number of nodes ({num_nodes}) "
                           f"and number of monomials ({len(monomials_sym)}) for order n={n}.")

    # 3. Vandermonde matrix V
    V_matrix = sp.zeros(num_nodes, num_nodes)
    for i_node, (node_xi, node_eta) in enumerate(nodes_ref_coords):
        for j_monomial, monomial in enumerate(monomials_sym):
            V_matrix[i_node, j_monomial] = monomial.subs({xi_sym: node_xi, eta_sym: node_eta})

    # 4. Lagrange coefficients, exact rational arithmetic
    coeffs_matrix = (V_matrix.T).inv()

    # 5. Symbolic Lagrange basis
    monomials_matrix_col = sp.Matrix(monomials_sym)
    basis = []
    for k_node_idx in range(num_nodes):
        phi_k_sym = sp.expand((coeffs_matrix.row(k_node_idx) * monomials_matrix_col)[0, 0])
        basis.append(sp.lambdify((xi_sym, eta_sym), phi_k_sym, "numpy"))

    lattice = np.array([[float(a), float(b)] for a, b in nodes_ref_coords])

    def shape(xi, eta):
        return np.array([f(xi, eta) for f in basis], dtype=float)

    return lattice, shape
