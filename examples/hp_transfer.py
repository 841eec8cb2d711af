"""Example: variable order space, refinement and derefinement with transfer operators"""
import numpy as np
from pyhpfem.utils.meshgen import structured_quad
from pyhpfem.core.mesh import Mesh
from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.fem.collection import H1Collection

u_exact = lambda X: 1.0 + X[:, 0] - 2.0*X[:, 1]

nodes, elems = structured_quad(2, 2, nx=2, ny=2)
mesh = Mesh(nodes, elems, element_type='quad', nonconforming=True)
fes = FiniteElementSpace(mesh, H1Collection(1, mesh.dim))
fes.set_element_order(3, 3)
fes.update(want_transform=False)
print('orders:', [fes.get_element_order(i) for i in range(mesh.num_elements)], 'ndofs =', fes.ndofs)

u = u_exact(fes.get_dof_coords())
for step in range(2):
    mesh.refine([mesh.num_elements - 1])
    fes.update()
    u = fes.get_update_operator() @ u
    print(f'refine {step}: ndofs = {fes.ndofs}, true = {fes.true_vsize}, '
          f'err = {np.abs(u - u_exact(fes.get_dof_coords())).max():.2e}')

while mesh.derefine():
    fes.update()
    u = fes.get_update_operator() @ u
    print(f'derefine: ndofs = {fes.ndofs}, err = {np.abs(u - u_exact(fes.get_dof_coords())).max():.2e}')
