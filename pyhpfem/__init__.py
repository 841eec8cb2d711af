"""pyhpfem: DOF numbering, hanging-node constraints and grid transfers for
h- and p-adaptive finite element spaces."""
from pyhpfem.core.mesh import Mesh
from pyhpfem.core.ordering import Ordering
from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.fem.collection import H1Collection, L2Collection

__all__ = ["Mesh", "Ordering", "FiniteElementSpace", "H1Collection", "L2Collection"]
