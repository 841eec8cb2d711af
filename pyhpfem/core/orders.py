"""pyhpfem.core.orders
Edge and face order sets of variable-order spaces.
"""
from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from pyhpfem.utils.bitset import OrderSet

logger = logging.getLogger(__name__)


def calc_edge_face_var_orders(mesh, elem_orders: Sequence[int],
                              relaxed: bool = False) -> Tuple[List[OrderSet], List[OrderSet]]:
    """Orders required on every edge and face.

    Each edge (face) first collects the orders of its incident elements.
    Unless ``relaxed`` is set, masters of non-conforming edges/faces then
    receive the minimum order of their slaves, and face orders are pushed
    down to the bounding edges, until nothing changes. Relaxed mode keeps
    the seeded sets: fewer constraints, at the price of possibly
    non-conforming coupling between differing orders.
    """
    edge_orders = [OrderSet() for _ in range(mesh.num_edges)]
    face_orders = [OrderSet() for _ in range(mesh.num_faces)]

    for i in range(mesh.num_elements):
        p = int(elem_orders[i])
        if mesh.dim > 1:
            for e in mesh.element_edges(i)[0]:
                edge_orders[e] = edge_orders[e].add(p)
        if mesh.dim > 2:
            for f in mesh.element_faces(i)[0]:
                face_orders[f] = face_orders[f].add(p)

    if relaxed:
        return edge_orders, face_orders

    ncmesh = mesh.ncmesh
    edge_list = ncmesh.edge_list if ncmesh is not None else None
    face_list = ncmesh.face_list if ncmesh is not None else None

    passes = 0
    done = False
    while not done:
        done = True
        passes += 1

        # slave edges → master edges
        if edge_list:
            for master in edge_list.masters:
                slave_orders = OrderSet()
                for slave in edge_list.master_slaves(master):
                    slave_orders = slave_orders | edge_orders[slave.index]
                if not slave_orders:
                    continue
                min_order = slave_orders.min_order()
                if min_order < edge_orders[master.index].min_order():
                    edge_orders[master.index] = edge_orders[master.index].add(min_order)
                    done = False

        # slave faces (and their edges) → master faces
        if face_list:
            for master in face_list.masters:
                slave_orders = OrderSet()
                for slave in face_list.master_slaves(master):
                    if slave.index >= 0:
                        slave_orders = slave_orders | face_orders[slave.index]
                        for e in mesh.face_edges(slave.index)[0]:
                            slave_orders = slave_orders | edge_orders[e]
                    else:
                        # degenerate face, only the edge contributes
                        slave_orders = slave_orders | edge_orders[-1 - slave.index]
                if not slave_orders:
                    continue
                min_order = slave_orders.min_order()
                if min_order < face_orders[master.index].min_order():
                    face_orders[master.index] = face_orders[master.index].add(min_order)
                    done = False

        # faces impose their orders on their edges
        for f in range(mesh.num_faces):
            for e in mesh.face_edges(f)[0]:
                merged = edge_orders[e] | face_orders[f]
                if merged != edge_orders[e]:
                    edge_orders[e] = merged
                    done = False

    logger.debug("edge/face orders converged in %d passes", passes)
    return edge_orders, face_orders
