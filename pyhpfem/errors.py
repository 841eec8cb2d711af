"""pyhpfem.errors"""


class PyHPFemError(Exception):
    """Base class for all pyhpfem exceptions."""


class SpaceError(PyHPFemError, RuntimeError):
    """Raised when a finite element space reaches an inconsistent state."""


class ConformityError(SpaceError):
    r"""Raised when the conforming interpolation cannot be constructed.

    This covers slave DOFs that never become expressible in terms of true
    DOFs, master entities of an unsupported geometry and inconsistent
    degenerate face DOF counts. It usually means the mesh is malformed.
    """


class OutOfDateError(SpaceError):
    """Raised when a space is queried after its mesh changed but before
    :meth:`~.FiniteElementSpace.update` was called."""


class MeshError(PyHPFemError, ValueError):
    """Invalid mesh input or refinement request."""


class DescriptorError(PyHPFemError, ValueError):
    """Malformed persisted space descriptor."""
