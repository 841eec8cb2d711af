"""Example: hanging-node constraints on a locally refined quad mesh"""
import numpy as np
from pyhpfem.utils.meshgen import structured_quad, rectangle_boundary_locators
from pyhpfem.core.mesh import Mesh
from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.fem.collection import H1Collection
from pyhpfem.io.visualization import plot_mesh

u_exact = lambda x, y: x**2 - x*y + 0.5*y**2

nodes, elems = structured_quad(2, 1, nx=2, ny=1)
mesh = Mesh(nodes, elems, element_type='quad', boundary_attributes=rectangle_boundary_locators(2, 1))
mesh.refine([0])

fes = FiniteElementSpace(mesh, H1Collection(2, mesh.dim))
P, R = fes.get_conforming_prolongation(), fes.get_conforming_restriction()
print(f'ndofs = {fes.ndofs}, true dofs = {fes.true_vsize}, constrained = {fes.ndofs - fes.true_vsize}')

X = fes.get_dof_coords()
u = u_exact(X[:, 0], X[:, 1])
print('|u - P R u| =', np.linalg.norm(u - P @ (R @ u)))

ess = fes.get_essential_true_dofs([1, 1, 1, 1])
print('essential true dofs:', ess)
plot_mesh(mesh, fes, annotate_dofs=True, show=True)
