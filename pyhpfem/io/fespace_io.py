"""pyhpfem.io.fespace_io
Plain-text descriptor of a finite element space.

Two layouts are read and written::

    FiniteElementSpace                  MFEM FiniteElementSpace v1.0
    FiniteElementCollection: H1_2D_P2   FiniteElementCollection: H1_2D_P1
    VDim: 1                             VDim: 1
    Ordering: 0                         Ordering: 0
                                        element_orders
                                        1
                                        2
                                        ...
                                        End: MFEM FiniteElementSpace v1.0

The short (v0.9) layout is used for uniform order spaces; variable order
spaces, and spaces loaded with extra sections, are written as v1.0.
"""
from __future__ import annotations

import io
import logging
import os
from typing import Dict, Iterator, List, TextIO, Union

from pyhpfem.core.fespace import FiniteElementSpace
from pyhpfem.core.ordering import Ordering
from pyhpfem.errors import DescriptorError
from pyhpfem.fem.collection import H1Collection

logger = logging.getLogger(__name__)

HEADER_V09 = "FiniteElementSpace"
HEADER_V10 = "MFEM FiniteElementSpace v1.0"
END_V10 = "End: MFEM FiniteElementSpace v1.0"
PASS_THROUGH_SECTIONS = ("NURBS_order", "NURBS_orders", "NURBS_periodic", "NURBS_weights")

PathOrStream = Union[str, os.PathLike, TextIO]


def _format_space(space: FiniteElementSpace) -> str:
    v10 = space.is_variable_order or bool(space.descriptor_extras)
    lines = [HEADER_V10 if v10 else HEADER_V09,
             f"FiniteElementCollection: {space.fec.name}",
             f"VDim: {space.vdim}",
             f"Ordering: {int(space.ordering)}"]
    if v10:
        if space.is_variable_order:
            lines.append("element_orders")
            lines.extend(str(space.get_element_order(i)) for i in range(space.mesh.num_elements))
        for name, body in space.descriptor_extras.items():
            lines.append(name)
            lines.extend(body)
        lines.append(END_V10)
    return "\n".join(lines) + "\n"


def save_space(space: FiniteElementSpace, target: PathOrStream) -> None:
    """Write the descriptor of ``space`` to a path or text stream."""
    text = _format_space(space)
    if isinstance(target, (str, os.PathLike)):
        with open(target, "w") as fh:
            fh.write(text)
    else:
        target.write(text)


def _lines(stream: TextIO) -> Iterator[str]:
    for raw in stream:
        line = raw.rstrip("\r\n").strip()
        if line and not line.startswith("#"):
            yield line


def _key_value(line: str, key: str) -> str:
    prefix = key + ":"
    if not line.startswith(prefix):
        raise DescriptorError(f"expected '{prefix}', got {line!r}")
    return line[len(prefix):].strip()


def _parse(stream: TextIO, num_elements: int):
    it = _lines(stream)
    try:
        header = next(it)
    except StopIteration:
        raise DescriptorError("empty descriptor") from None
    if header not in (HEADER_V09, HEADER_V10):
        raise DescriptorError("input stream is not a FiniteElementSpace!")

    try:
        fec_name = _key_value(next(it), "FiniteElementCollection")
        vdim = int(_key_value(next(it), "VDim"))
        ordering = int(_key_value(next(it), "Ordering"))
    except StopIteration:
        raise DescriptorError("truncated descriptor header") from None
    except DescriptorError:
        raise
    except ValueError as e:
        raise DescriptorError(f"malformed descriptor header: {e}") from None

    orders: List[int] = []
    extras: Dict[str, List[str]] = {}
    if header == HEADER_V10:
        section = None
        for line in it:
            if line == END_V10:
                break
            if line == "element_orders" or line in PASS_THROUGH_SECTIONS:
                if line in extras or (line == "element_orders" and orders):
                    raise DescriptorError(f"{line}: section redefinition")
                section = line
                if section != "element_orders":
                    extras[section] = []
                continue
            if section == "element_orders":
                try:
                    orders.extend(int(tok) for tok in line.split())
                except ValueError:
                    raise DescriptorError(f"element_orders: not an integer in {line!r}") from None
            elif section is not None:
                extras[section].append(line)
            else:
                raise DescriptorError(f"unknown section: {line}")
        else:
            raise DescriptorError("error reading FiniteElementSpace v1.0: missing end marker")
        if orders and len(orders) != num_elements:
            raise DescriptorError(f"element_orders: {len(orders)} orders for {num_elements} elements")
    return fec_name, vdim, ordering, orders, extras


def load_space(mesh, source: PathOrStream, **kwargs) -> FiniteElementSpace:
    """Build a space on ``mesh`` from a descriptor (path, text stream or the
    descriptor text itself). Keyword arguments go to the space constructor."""
    is_text = isinstance(source, str) and ("\n" in source or source.lstrip().startswith((HEADER_V09, HEADER_V10)))
    if isinstance(source, (str, os.PathLike)) and not is_text:
        with open(source) as fh:
            parsed = _parse(fh, mesh.num_elements)
    elif isinstance(source, str):
        parsed = _parse(io.StringIO(source), mesh.num_elements)
    else:
        parsed = _parse(source, mesh.num_elements)
    fec_name, vdim, ordering, orders, extras = parsed

    try:
        fec = H1Collection.from_name(fec_name)
    except KeyError as e:
        raise DescriptorError(str(e)) from None
    if ordering not in (Ordering.BY_NODES, Ordering.BY_VDIM):
        raise DescriptorError(f"invalid ordering {ordering}")

    space = FiniteElementSpace(mesh, fec, vdim, Ordering(ordering), **kwargs)
    if orders:
        for i, p in enumerate(orders):
            space.set_element_order(i, p)
        space.update(want_transform=False)
    space.descriptor_extras = extras
    logger.debug("loaded %r (%d extra sections)", space, len(extras))
    return space
