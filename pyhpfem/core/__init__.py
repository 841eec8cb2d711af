from .mesh import Mesh, Operation
from .ordering import Ordering
from .fespace import FiniteElementSpace
__all__=['Mesh','Operation','Ordering','FiniteElementSpace']
