"""Solvent accessible surface construction on the octree mesh."""

from __future__ import annotations

import logging
import math
from os import PathLike
from typing import Callable, Iterator, Tuple, Union

from nanopore_pde.octree import NodeType, OctaTree, TreeNode
from nanopore_pde.tools import Atoms, donut_normal, read_pqr

logger = logging.getLogger(__name__)

_SOLID_OF = {
    NodeType.PROTEIN_BOUNDARY: NodeType.PROTEIN,
    NodeType.PORE_BOUNDARY: NodeType.PORE,
}


def _leaves_last_child_first(tree: OctaTree) -> Iterator[TreeNode]:
    stack = [tree.root]
    while stack:
        node = stack.pop()
        if node.is_leaf():
            yield node
        else:
            stack.extend(node.children)


def _reachable(
    node: TreeNode, accept: Callable[[TreeNode], bool]
) -> Iterator[TreeNode]:
    """Leaves across each face of ``node`` that ``accept`` lets through."""
    for neighbor in node.neighbors:
        if neighbor is None:
            continue
        if neighbor.is_leaf():
            if accept(neighbor):
                yield neighbor
            continue
        for child in neighbor.children:
            if (
                child.is_leaf()
                and accept(child)
                and any(back is node for back in child.neighbors)
            ):
                yield child


def _is_unsettled(node: TreeNode) -> bool:
    return node.type < 0


def _is_void(node: TreeNode) -> bool:
    return node.type == NodeType.WATER_VOIDS


def _flood(tree: OctaTree) -> Tuple[int, int]:
    """Turn the water reachable from the start cell into bulk water and mark the solid surfaces."""
    if tree.root.is_leaf():
        raise ValueError("the mesh must be refined before the surface is built")
    start = tree.root.children[6]
    while not start.is_leaf():
        start = start.children[5]

    protein_surface = 0
    pore_surface = 0
    stack = [start]
    while stack:
        node = stack.pop()
        if node.type == NodeType.WATER_VOIDS:
            node.type = NodeType.WATER
            stack.extend(_reachable(node, _is_unsettled))
        elif node.type == NodeType.PORE:
            node.type = NodeType.PORE_BOUNDARY
            pore_surface += 1
            stack.extend(_reachable(node, _is_void))
        elif node.type == NodeType.PROTEIN:
            node.type = NodeType.PROTEIN_BOUNDARY
            protein_surface += 1
            stack.extend(_reachable(node, _is_void))
    return protein_surface, pore_surface


def build_sas_from_atoms(
    tree: OctaTree, atoms: Atoms, r: float, l: float, debye: float
) -> Tuple[int, int]:
    """Build the protein and membrane surfaces in ``tree``.

    Returns the number of protein and pore surface cells found by the flood.
    """
    tree.add_protein(atoms)
    tree.add_pore(r, l, debye)
    protein_surface, pore_surface = _flood(tree)
    logger.info(
        "Protein Surface Node: %d, Pore Surface Node: %d",
        protein_surface,
        pore_surface,
    )
    insert_boundary(tree)
    adjust_boundary(tree)
    set_normals(tree, atoms, 0.0, 0.0, 0.0, r, l)
    return protein_surface, pore_surface


def build_sas(
    tree: OctaTree,
    path: Union[str, PathLike],
    probe: float,
    r: float,
    l: float,
    debye: float,
) -> Atoms:
    """Read a PQR file centred at the origin and build the surfaces; return the atoms read."""
    atoms = read_pqr(path, probe, 0.0, 0.0, 0.0)
    build_sas_from_atoms(tree, atoms, r, l, debye)
    return atoms


def insert_boundary(tree: OctaTree) -> None:
    """Mark box-face cells: Dirichlet at the top and bottom, Neumann at the sides."""
    for leaf in tree.leaves():
        neighbors = leaf.neighbors
        if neighbors[4] is None or neighbors[5] is None:
            leaf.type = NodeType.BOUNDARY_D
        elif any(n is None for n in neighbors) and leaf.type != NodeType.PORE:
            leaf.type = NodeType.BOUNDARY_N


def adjust_boundary(tree: OctaTree) -> Tuple[int, int]:
    """Return surface cells with no solid neighbour to the water.

    Stops at the first surface cell that touches a split cell.  Returns the
    number of protein and pore surface cells turned into water.
    """
    removed = {NodeType.PROTEIN_BOUNDARY: 0, NodeType.PORE_BOUNDARY: 0}
    for leaf in _leaves_last_child_first(tree):
        solid = _SOLID_OF.get(leaf.type)
        if solid is None:
            continue
        supported = False
        for neighbor in leaf.neighbors:
            if neighbor is None:
                continue
            if neighbor.type == NodeType.EXTERNAL:
                kind = "Protein" if leaf.type == NodeType.PROTEIN_BOUNDARY else "Pore"
                logger.error("Error %s Surface Neighbour", kind)
                return (
                    removed[NodeType.PROTEIN_BOUNDARY],
                    removed[NodeType.PORE_BOUNDARY],
                )
            if neighbor.type == solid:
                supported = True
        if not supported:
            removed[leaf.type] += 1
            leaf.type = NodeType.WATER
    logger.info(
        "Delete Protein Node: %d, Delete Pore Node: %d",
        removed[NodeType.PROTEIN_BOUNDARY],
        removed[NodeType.PORE_BOUNDARY],
    )
    return removed[NodeType.PROTEIN_BOUNDARY], removed[NodeType.PORE_BOUNDARY]


def _protein_normal(leaf: TreeNode, atoms: Atoms) -> Tuple[float, float, float]:
    nx = ny = nz = 0.0
    for atom_id in leaf.atom_ids:
        ax, ay, az = atoms.x[atom_id], atoms.y[atom_id], atoms.z[atom_id]
        distance = math.sqrt(
            (leaf.x - ax) ** 2 + (leaf.y - ay) ** 2 + (leaf.z - az) ** 2
        )
        if distance <= atoms.radius[atom_id]:
            nx += leaf.x - ax
            ny += leaf.y - ay
            nz += leaf.z - az
    length = math.sqrt(nx * nx + ny * ny + nz * nz)
    if length > 0:
        return nx / length, ny / length, nz / length
    return nx, ny, nz


def _pore_normal(
    x: float, y: float, z: float, r: float, l: float
) -> Tuple[float, float, float]:
    d2 = x * x + y * y
    if d2 >= 1.2 * 1.2 * r * r:
        return 0.0, 0.0, (1.0 if z > 0 else -1.0)
    if d2 >= r * r and -l / 2 + 0.2 * r <= z <= l / 2 - 0.2 * r:
        distance = math.sqrt(d2)
        return -x / distance, -y / distance, 0.0
    height = l / 2 - 0.2 * r if z > 0 else 0.2 * r - l / 2
    return donut_normal(0.2 * r, height, 1.2 * r, x, y, z)


def _side_normal(leaf: TreeNode) -> Tuple[float, float, float]:
    components = [0.0, 0.0, 0.0]
    count = 0
    for direction, neighbor in enumerate(leaf.neighbors):
        if neighbor is None:
            continue
        axis, positive = divmod(direction, 2)
        components[axis] += -1.0 if positive else 1.0
        count += 1
    if count == 0:
        return 0.0, 0.0, 0.0
    scale = math.sqrt(count)
    return components[0] / scale, components[1] / scale, components[2] / scale


def set_normals(
    tree: OctaTree,
    atoms: Atoms,
    x0: float,
    y0: float,
    z0: float,
    r: float,
    l: float,
) -> None:
    """Attach surface normals to protein, pore and side boundary cells."""
    for leaf in tree.leaves():
        if leaf.type == NodeType.PROTEIN_BOUNDARY:
            leaf.norm = _protein_normal(leaf, atoms)
        elif leaf.type == NodeType.PORE_BOUNDARY:
            leaf.norm = _pore_normal(leaf.x - x0, leaf.y - y0, leaf.z - z0, r, l)
        elif leaf.type == NodeType.BOUNDARY_N:
            leaf.norm = _side_normal(leaf)