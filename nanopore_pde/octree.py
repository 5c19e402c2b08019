"""Adaptive octree mesh of the simulation box around a protein in a nanopore."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple

from nanopore_pde.tools import Atoms, cube_with_pore, point_in_nanopore

# Children of a node that touch each of its six faces, in face order
# (-x, +x, -y, +y, -z, +z).  Used to reach finer cells across a face.
FACE_CHILDREN: Tuple[Tuple[int, int, int, int], ...] = (
    (1, 3, 5, 7),
    (0, 2, 4, 6),
    (2, 3, 6, 7),
    (0, 1, 4, 5),
    (4, 5, 6, 7),
    (0, 1, 2, 3),
)


class NodeType(IntEnum):
    """Role of a cell in the model; negative values mark cells not yet settled or inside solids."""

    EXTERNAL = 0
    BOUNDARY_D = 4
    BOUNDARY_N = -4
    WATER = 1
    WATER_VOIDS = -1
    PORE = -2
    PORE_BOUNDARY = 2
    PROTEIN = -3
    PROTEIN_BOUNDARY = 3


@dataclass(eq=False)
class TreeNode:
    """A cubic cell centred at (x, y, z) with half width ``dx``.

    Children are numbered so that bit 0, 1 and 2 of the child number select
    the positive x, y and z half.  Neighbours are kept per face in the order
    -x, +x, -y, +y, -z, +z; a neighbour may be coarser than the cell itself.
    """

    level: int
    x: float
    y: float
    z: float
    dx: float
    type: NodeType = NodeType.EXTERNAL
    index: int = -1
    charge_density: float = 0.0
    atom_ids: List[int] = field(default_factory=list, repr=False)
    children: List["TreeNode"] = field(default_factory=list, repr=False)
    neighbors: List[Optional["TreeNode"]] = field(
        default_factory=lambda: [None] * 6, repr=False
    )
    parent: Optional["TreeNode"] = field(default=None, repr=False)
    norm: Optional[Tuple[float, float, float]] = field(default=None, repr=False)

    def is_leaf(self) -> bool:
        """True when the cell has not been split."""
        return not self.children

    def _contains(self, x0: float, y0: float, z0: float) -> bool:
        return (
            self.x - self.dx <= x0 <= self.x + self.dx
            and self.y - self.dx <= y0 <= self.y + self.dx
            and self.z - self.dx <= z0 <= self.z + self.dx
        )


class OctaTree:
    """Octree over a cube of full width ``dx`` centred at (x, y, z).

    Cells are split uniformly down to ``min_depth``; protein atoms refine
    down to ``extra_depth`` and the membrane surface down to ``max_depth``.
    Splitting keeps face neighbours within one level of each other.
    """

    def __init__(
        self,
        extra_depth: int,
        max_depth: int,
        min_depth: int,
        x: float,
        y: float,
        z: float,
        dx: float,
    ) -> None:
        self.max_depth = max_depth
        self.min_depth = min_depth
        self.extra_depth = extra_depth
        self.min_cell = dx
        self.size = 0
        self.index: List[TreeNode] = []
        self.root = TreeNode(0, x, y, z, dx / 2, type=NodeType.WATER_VOIDS)
        self._initial(self.root)

    def _initial(self, node: TreeNode) -> None:
        if node.level >= self.min_depth:
            return
        self.refine(node)
        for child in node.children:
            self._initial(child)

    def refine(self, node: TreeNode) -> None:
        """Split a leaf into eight children, splitting coarser neighbours first."""
        if not node.is_leaf():
            return
        dx = node.dx
        self.min_cell = min(self.min_cell, dx)
        self.size += 8
        # The neighbour list may be rewired while coarser neighbours are split.
        for direction in range(6):
            neighbor = node.neighbors[direction]
            if neighbor is not None and node.level - neighbor.level > 0:
                self.refine(neighbor)

        half = dx / 2
        children = [
            TreeNode(
                node.level + 1,
                node.x + (half if number & 1 else -half),
                node.y + (half if number & 2 else -half),
                node.z + (half if number & 4 else -half),
                half,
                type=node.type,
                parent=node,
            )
            for number in range(8)
        ]
        node.children = children
        node.type = NodeType.EXTERNAL

        for number, child in enumerate(children):
            for direction in range(6):
                axis, positive = divmod(direction, 2)
                bit = 1 << axis
                if bool(number & bit) != bool(positive):
                    child.neighbors[direction] = children[number ^ bit]
                    continue
                outer = node.neighbors[direction]
                if outer is not None and not outer.is_leaf():
                    adjacent = outer.children[number ^ bit]
                    child.neighbors[direction] = adjacent
                    adjacent.neighbors[direction ^ 1] = child
                else:
                    child.neighbors[direction] = outer

    def insert_ball(
        self, node: TreeNode, x0: float, y0: float, z0: float, r0: float
    ) -> None:
        """Refine every cell meeting the ball of radius ``r0`` down to ``extra_depth``."""
        px = max(0.0, abs(x0 - node.x) - node.dx)
        py = max(0.0, abs(y0 - node.y) - node.dx)
        pz = max(0.0, abs(z0 - node.z) - node.dx)
        if math.sqrt(px * px + py * py + pz * pz) > r0:
            return
        if node.level >= self.extra_depth:
            return
        if node.is_leaf():
            self.refine(node)
        for child in node.children:
            self.insert_ball(child, x0, y0, z0, r0)

    def insert_pore(
        self,
        node: TreeNode,
        x0: float,
        y0: float,
        z0: float,
        r0: float,
        l0: float,
        debye: float,
    ) -> None:
        """Refine every cell near the membrane surface down to ``max_depth``."""
        position = cube_with_pore(
            node.x - x0, node.y - y0, node.z - z0, node.dx, r0, l0, debye
        )
        if position != 0:
            return
        if node.level >= self.max_depth:
            return
        if node.is_leaf():
            self.refine(node)
        for child in node.children:
            self.insert_pore(child, x0, y0, z0, r0, l0, debye)

    def search(self, x0: float, y0: float, z0: float) -> TreeNode:
        """Return the leaf containing the point; raise ValueError if none does."""
        node = self.root
        while not node.is_leaf():
            found = next(
                (child for child in node.children if child._contains(x0, y0, z0)),
                None,
            )
            if found is None:
                raise ValueError(f"point ({x0}, {y0}, {z0}) lies outside the mesh")
            node = found
        return node

    def leaves(self) -> Iterator[TreeNode]:
        """Yield every leaf, depth first in child order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf():
                yield node
            else:
                stack.extend(reversed(node.children))

    def add_pore(self, r: float, l: float, debye: float) -> None:
        """Refine around a membrane of thickness ``l`` with a pore of radius ``r`` and mark it."""
        self.insert_pore(self.root, 0.0, 0.0, 0.0, r, l, debye)
        for leaf in self.leaves():
            if point_in_nanopore(leaf.x, leaf.y, abs(leaf.z), r, l / 2) <= 0:
                leaf.type = NodeType.PORE

    def add_protein(self, atoms: Atoms) -> None:
        """Refine around the atoms, spread their Gaussian charges and mark protein cells."""
        for x, y, z, radius in zip(atoms.x, atoms.y, atoms.z, atoms.radius):
            self.insert_ball(self.root, x, y, z, 3 * radius)

        invsqrt_pi = math.sqrt(0.5 / math.pi)
        for atom_id, (ax, ay, az, charge, radius) in enumerate(
            zip(atoms.x, atoms.y, atoms.z, atoms.charge, atoms.radius)
        ):
            scaled = charge * (invsqrt_pi / radius) ** 3
            self._deposit_atom(atom_id, ax, ay, az, scaled, radius)

        for leaf in self.leaves():
            if leaf.type == NodeType.WATER:
                leaf.type = NodeType.WATER_VOIDS
            elif leaf.type == NodeType.PROTEIN_BOUNDARY:
                leaf.type = NodeType.PROTEIN

    def _deposit_atom(
        self,
        atom_id: int,
        ax: float,
        ay: float,
        az: float,
        charge: float,
        radius: float,
    ) -> None:
        stack = [self.search(ax, ay, az)]
        while stack:
            node = stack.pop()
            if not node.is_leaf():
                continue
            d = math.sqrt((node.x - ax) ** 2 + (node.y - ay) ** 2 + (node.z - az) ** 2)
            if d <= radius:
                node.charge_density += charge * math.exp(-d * d / radius / radius / 2.0)
                node.type = NodeType.PROTEIN_BOUNDARY
                node.atom_ids.append(atom_id)
                stack.extend(
                    neighbor
                    for neighbor in node.neighbors
                    if neighbor is not None
                    and neighbor.type != NodeType.PROTEIN_BOUNDARY
                )
            elif d <= 3 * radius:
                # The shell only takes charge; it does not spread further.
                node.charge_density += charge * math.exp(-d * d / radius / radius / 2.0)
                node.type = NodeType.WATER

    def generate_index(self) -> None:
        """Number the leaves outside the membrane breadth first from the lowest corner."""
        self.index = []
        for leaf in self.leaves():
            leaf.index = -1
        start = self.root
        while not start.is_leaf():
            start = start.children[0]
        queue = deque([start])
        start.index = -2
        while queue:
            node = queue.popleft()
            if not node.is_leaf() or node.type == NodeType.PORE:
                continue
            node.index = len(self.index)
            self.index.append(node)
            for neighbor in node.neighbors:
                if neighbor is None:
                    continue
                if neighbor.is_leaf():
                    if neighbor.index == -1:
                        neighbor.index = -2
                        queue.append(neighbor)
                    continue
                for child in neighbor.children:
                    if not child.is_leaf():
                        continue
                    if child.index == -1 and any(back is node for back in child.neighbors):
                        child.index = -2
                        queue.append(child)

    def check(self) -> None:
        """Cut the links from indexed cells to membrane cells."""
        for node in self.index:
            if not node.is_leaf():
                continue
            for direction, faces in enumerate(FACE_CHILDREN):
                neighbor = node.neighbors[direction]
                if neighbor is None:
                    continue
                if neighbor.type == NodeType.PORE:
                    node.neighbors[direction] = None
                elif neighbor.type == NodeType.EXTERNAL and not neighbor.is_leaf():
                    if any(neighbor.children[k].type == NodeType.PORE for k in faces):
                        node.neighbors[direction] = None