"""Mesh statistics and binary and VTK output of the indexed cells."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from os import PathLike
from typing import Iterator, List, Tuple, Union

from nanopore_pde.octree import NodeType, OctaTree, TreeNode

logger = logging.getLogger(__name__)

_VTK_HEADER = (
    b"# vtk DataFile Version 2.0\n"
    b"Protein in Nanopore\n"
    b"BINARY\n"
    b"DATASET UNSTRUCTURED_GRID\n"
)
_VTK_HEXAHEDRON_CELL = 12


@dataclass(frozen=True)
class MeshInfo:
    """Counts and cell sizes gathered over the whole tree."""

    leaf_nodes: int
    branch_nodes: int
    min_cell: float
    max_cell: float
    protein_cell: float
    pore_cell: float
    usable_nodes: int
    bulk_nodes: int
    pore_surface_nodes: int
    protein_surface_nodes: int
    level_errors: int
    pore_errors: int
    protein_errors: int


def _all_nodes(tree: OctaTree) -> Iterator[TreeNode]:
    stack = [tree.root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(node.children)


def mesh_info(tree: OctaTree) -> MeshInfo:
    """Collect node counts, cell sizes and consistency errors of the tree."""
    leaves = branches = 0
    max_cell = tree.min_cell
    pore_cell = protein_cell = 0.0
    pore_errors = protein_errors = level_errors = 0
    usable = bulk = pore_surface = protein_surface = 0
    for node in _all_nodes(tree):
        if node.is_leaf():
            leaves += 1
            level_errors += sum(
                1
                for neighbor in node.neighbors
                if neighbor is not None and abs(node.level - neighbor.level) > 1
            )
            max_cell = max(max_cell, 2 * node.dx)
        else:
            branches += 1
        external_neighbors = sum(
            1
            for neighbor in node.neighbors
            if neighbor is not None and neighbor.type == NodeType.EXTERNAL
        )
        if node.type == NodeType.PROTEIN_BOUNDARY:
            protein_surface += 1
            if protein_cell == 0:
                protein_cell = node.dx * 2
            elif protein_cell != node.dx * 2:
                protein_errors += 1
            protein_errors += external_neighbors
        if node.type == NodeType.PORE_BOUNDARY:
            pore_surface += 1
            if pore_cell == 0:
                pore_cell = node.dx * 2
            elif pore_cell != node.dx * 2:
                pore_errors += 1
            pore_errors += external_neighbors
        if node.type not in (NodeType.EXTERNAL, NodeType.PORE):
            usable += 1
        if node.type == NodeType.WATER:
            bulk += 1
    return MeshInfo(
        leaf_nodes=leaves,
        branch_nodes=branches,
        min_cell=tree.min_cell,
        max_cell=max_cell,
        protein_cell=protein_cell,
        pore_cell=pore_cell,
        usable_nodes=usable,
        bulk_nodes=bulk,
        pore_surface_nodes=pore_surface,
        protein_surface_nodes=protein_surface,
        level_errors=level_errors,
        pore_errors=pore_errors,
        protein_errors=protein_errors,
    )


def format_info(info: MeshInfo) -> str:
    """Render a mesh summary as a text report."""
    if info.pore_errors:
        verdict = f"Error Pore Node: {info.pore_errors}"
    elif info.protein_errors:
        verdict = f"Error Protein Node: {info.protein_errors}"
    elif info.level_errors:
        verdict = f"Error Node Level: {info.level_errors}"
    else:
        verdict = "Node Quality Good"
    lines = [
        "INFO:----------------------",
        f"Leaf Node: {info.leaf_nodes}, Branch Node: {info.branch_nodes}",
        f"min Cell Size: {info.min_cell:g}, max Cell Size: {info.max_cell:g}",
        f"Protein Cell Size: {info.protein_cell:g}, Pore Cell Size: {info.pore_cell:g}",
        f"Usage Total Node: {info.usable_nodes}, Usage Bulk Node: {info.bulk_nodes}",
        f"Usage Pore Surface Node: {info.pore_surface_nodes}, "
        f"Usage Protein Surface Node : {info.protein_surface_nodes}",
        "Error:---------------------",
        verdict,
        "---------------------------",
    ]
    return "\n".join(lines) + "\n"


def _corners(x: float, y: float, z: float, dx: float) -> List[Tuple[float, float, float]]:
    return [
        (x + (dx if number & 1 else -dx), y + (dx if number & 2 else -dx), z + (dx if number & 4 else -dx))
        for number in range(8)
    ]


def save(
    tree: OctaTree,
    mesh_path: Union[str, PathLike],
    point_path: Union[str, PathLike],
) -> None:
    """Write the indexed cells as raw little-endian doubles.

    The mesh file holds the eight corners of each cell; the point file holds
    the centre, charge density, type and normal of each cell.
    """
    corner_format = struct.Struct("<24d")
    point_format = struct.Struct("<8d")
    with open(mesh_path, "wb") as mesh_file, open(point_path, "wb") as point_file:
        for node in tree.index:
            flat = [c for corner in _corners(node.x, node.y, node.z, node.dx) for c in corner]
            mesh_file.write(corner_format.pack(*flat))
            norm = node.norm if node.norm is not None else (0.0, 0.0, 0.0)
            point_file.write(
                point_format.pack(
                    node.x,
                    node.y,
                    node.z,
                    node.charge_density,
                    float(int(node.type)),
                    *norm,
                )
            )


def _single(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def to_vtk(tree: OctaTree, path: Union[str, PathLike]) -> None:
    """Write the indexed cells as a binary legacy VTK unstructured grid of hexahedra."""
    points: dict = {}
    cells: List[List[int]] = [[] for _ in tree.index]
    for node in tree.index:
        x, y, z, dx = (_single(v) for v in (node.x, node.y, node.z, node.dx))
        ids = []
        for corner in _corners(x, y, z, dx):
            key = tuple(_single(c) for c in corner)
            ids.append(points.setdefault(key, len(points)))
        cells[node.index] = ids

    flat = [c for point in points for c in point]
    count = len(cells)
    with open(path, "wb") as handle:
        handle.write(_VTK_HEADER)
        handle.write(f"POINTS {len(points)} float\n".encode("ascii"))
        handle.write(struct.pack(f">{len(flat)}f", *flat))
        handle.write(f"\nCELLS {count} {(9 * count) & 0xFFFFFFFF}\n".encode("ascii"))
        cell_format = struct.Struct(">9I")
        for ids in cells:
            handle.write(cell_format.pack(8, *(i & 0xFFFFFFFF for i in ids)))
        handle.write(f"\nCELL_TYPES {count}\n".encode("ascii"))
        handle.write(struct.pack(">I", _VTK_HEXAHEDRON_CELL) * count)
    logger.info("save to vtk")