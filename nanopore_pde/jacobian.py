"""Sparse Jacobian of the PNP residual and its binary triplet output."""

from __future__ import annotations

import struct
from os import PathLike
from typing import List, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from nanopore_pde.octree import FACE_CHILDREN, NodeType, TreeNode
from nanopore_pde.pde_operator import FIELD_COUNT, PDEOperator

Entry = Tuple[int, float]
Triplet = Tuple[int, int, float]


def _face(node: TreeNode, direction: int) -> Tuple[List[Tuple[int, float]], float]:
    """Cells across one face with their averaging shares, and the distance to them."""
    neighbor = node.neighbors[direction]
    if neighbor.is_leaf():
        cells = [(neighbor.index, 1.0)]
        distance = node.dx + neighbor.dx
    else:
        cells = [(neighbor.children[k].index, 0.25) for k in FACE_CHILDREN[direction]]
        distance = 1.5 * node.dx
    for index, _ in cells:
        if index < 0:
            raise ValueError(
                f"cell at ({node.x}, {node.y}, {node.z}) has an unindexed neighbour"
            )
    return cells, distance


def _central_gradient(
    node: TreeNode, axis: int, weight: float, entries: List[Entry]
) -> float:
    lo_cells, dx0 = _face(node, 2 * axis)
    hi_cells, dx1 = _face(node, 2 * axis + 1)
    denominator = dx1 * dx0 * (dx0 + dx1)
    lo_coeff = -dx1 * dx1 / denominator * weight
    hi_coeff = dx0 * dx0 / denominator * weight
    entries.extend((index, lo_coeff * share) for index, share in lo_cells)
    entries.extend((index, hi_coeff * share) for index, share in hi_cells)
    return (dx1 * dx1 - dx0 * dx0) / denominator * weight


def _one_sided_gradient(
    node: TreeNode, direction: int, weight: float, entries: List[Entry]
) -> float:
    cells, distance = _face(node, direction)
    coeff = weight / distance if direction % 2 == 0 else -weight / distance
    entries.extend((index, -coeff * share) for index, share in cells)
    return coeff


def _with_centre(node: TreeNode, centre: float, entries: List[Entry]) -> List[Entry]:
    if centre != 0:
        return [(node.index, centre)] + entries
    return entries


def _gradient_stencil(node: TreeNode, coeffs: Sequence[float], usable) -> List[Entry]:
    entries: List[Entry] = []
    centre = 0.0
    for axis in range(3):
        lo, hi = 2 * axis, 2 * axis + 1
        has_lo = usable(node.neighbors[lo])
        has_hi = usable(node.neighbors[hi])
        if has_lo and has_hi:
            centre += _central_gradient(node, axis, coeffs[axis], entries)
        elif has_lo:
            centre += _one_sided_gradient(node, lo, coeffs[axis], entries)
        elif has_hi:
            centre += _one_sided_gradient(node, hi, coeffs[axis], entries)
    return _with_centre(node, centre, entries)


def grad_jacobian(node: TreeNode, coeffs: Sequence[float]) -> List[Entry]:
    """Derivative of ``grad(x) . coeffs`` at ``node`` as (cell index, value) pairs."""
    return _gradient_stencil(node, coeffs, lambda neighbor: neighbor is not None)


def grad_jacobian_water(node: TreeNode, coeffs: Sequence[float]) -> List[Entry]:
    """Like :func:`grad_jacobian` but using only faces towards bulk water cells."""
    return _gradient_stencil(
        node,
        coeffs,
        lambda neighbor: neighbor is not None and neighbor.type == NodeType.WATER,
    )


def lapl_jacobian(node: TreeNode, coeffs: Sequence[float]) -> List[Entry]:
    """Derivative of the face-weighted Laplacian at ``node`` as (cell index, value) pairs."""
    entries: List[Entry] = []
    centre = 0.0
    for axis in range(3):
        lo, hi = 2 * axis, 2 * axis + 1
        has_lo = node.neighbors[lo] is not None
        has_hi = node.neighbors[hi] is not None
        if has_lo and has_hi:
            lo_cells, dx0 = _face(node, lo)
            hi_cells, dx1 = _face(node, hi)
            lo_coeff = 2.0 / (dx0 * (dx0 + dx1)) * coeffs[lo]
            hi_coeff = 2.0 / (dx1 * (dx0 + dx1)) * coeffs[hi]
            entries.extend((index, lo_coeff * share) for index, share in lo_cells)
            entries.extend((index, hi_coeff * share) for index, share in hi_cells)
            centre -= (coeffs[lo] + coeffs[hi]) / (dx0 * dx1)
        else:
            for direction, present in ((lo, has_lo), (hi, has_hi)):
                if not present:
                    continue
                cells, distance = _face(node, direction)
                coeff = 1.0 / distance / distance * coeffs[direction]
                centre -= coeff
                entries.extend((index, coeff * share) for index, share in cells)
                break
    return _with_centre(node, centre, entries)


def grad_jacobian_direction(node: TreeNode, direction: Sequence[float]) -> List[Entry]:
    """Derivative of the upwinded directional gradient at ``node``.

    Axes with a zero weight keep their central stencil with zero values.
    """
    entries: List[Entry] = []
    centre = 0.0
    for axis in range(3):
        lo, hi = 2 * axis, 2 * axis + 1
        weight = direction[axis]
        if weight == 0:
            if node.neighbors[lo] is not None and node.neighbors[hi] is not None:
                centre += _central_gradient(node, axis, weight, entries)
        elif weight < 0:
            if node.neighbors[lo] is not None:
                centre += _one_sided_gradient(node, lo, weight, entries)
        elif node.neighbors[hi] is not None:
            centre += _one_sided_gradient(node, hi, weight, entries)
    return _with_centre(node, centre, entries)


def _dielectric_weights(op: PDEOperator, node: TreeNode) -> List[float]:
    coeff = [1.0] * 6
    for direction, neighbor in enumerate(node.neighbors):
        if neighbor is None:
            continue
        if neighbor.type == node.type and node.type == NodeType.PROTEIN:
            coeff[direction] = op.diep
        elif neighbor.type != node.type:
            coeff[direction] = 2 * op.diep / (1 + op.diep)
    return coeff


def _normal(node: TreeNode) -> Tuple[float, float, float]:
    if node.norm is None:
        raise ValueError(
            f"surface cell {node.index} of type {node.type.name} has no normal"
        )
    return node.norm


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def jacobian(op: PDEOperator, x) -> sparse.csr_matrix:
    """Jacobian of the potential and concentration residuals for the state ``x``.

    Concentration columns are derivatives with respect to the logarithm of
    the concentration. Returns a CSR matrix of shape (3n, 3n) in which
    repeated entries are summed.
    """
    n = len(op.mesh.index)
    state = np.asarray(x, dtype=float)
    if state.ndim != 1 or state.shape[0] < FIELD_COUNT * n:
        raise ValueError(
            f"state vector must hold {FIELD_COUNT * n} values, got {state.size}"
        )
    v = state[0:n]
    c0 = state[n:2 * n]
    c1 = state[2 * n:3 * n]
    u0 = state[3 * n:4 * n]
    u1 = state[4 * n:5 * n]
    u2 = state[5 * n:6 * n]
    z0, z1 = op.z0, op.z1
    triplets: List[Triplet] = []
    emit = triplets.append
    ones = (1.0,) * 6

    def surface_diagonal(i: int, grad_v, norm, velocity) -> None:
        flux = _dot(grad_v, norm)
        flow = _dot(velocity, norm)
        emit((i + n, i + n, z0 * flux * c0[i]))
        emit((i + 2 * n, i + 2 * n, z1 * flux * c1[i]))
        emit((i + n, i + n, -op.np_ns_coeff0 * flow * c0[i]))
        emit((i + 2 * n, i + 2 * n, -op.np_ns_coeff1 * flow * c1[i]))

    for i, node in enumerate(op.mesh.index):
        kind = node.type
        velocity = (float(u0[i]), float(u1[i]), float(u2[i]))
        if kind == NodeType.WATER:
            for idx, value in lapl_jacobian(node, ones):
                emit((i, idx, value))
                emit((i + n, idx, value * c0[i] * z0))
                emit((i + 2 * n, idx, value * c1[i] * z1))
                emit((i + n, idx + n, value * c0[idx]))
                emit((i + 2 * n, idx + 2 * n, value * c1[idx]))
            emit((i, i + n, op.charge_coeff0 * c0[i]))
            emit((i, i + 2 * n, op.charge_coeff1 * c1[i]))
            potential_lapl = sum(op.lapl(node, v, ones))
            emit((i + n, i + n, potential_lapl * z0 * c0[i]))
            emit((i + 2 * n, i + 2 * n, potential_lapl * z1 * c1[i]))
            for idx, value in grad_jacobian(node, op.grad(node, v)):
                emit((i + n, idx + n, value * z0 * c0[idx]))
                emit((i + 2 * n, idx + 2 * n, value * z1 * c1[idx]))
            for idx, value in grad_jacobian(node, op.grad(node, c0)):
                emit((i + n, idx, value * z0))
            for idx, value in grad_jacobian(node, op.grad(node, c1)):
                emit((i + 2 * n, idx, value * z1))
            for idx, value in grad_jacobian_direction(node, velocity):
                emit((i + n, idx + n, -value * op.np_ns_coeff0 * c0[idx]))
                emit((i + 2 * n, idx + 2 * n, -value * op.np_ns_coeff1 * c1[idx]))
        elif kind == NodeType.PROTEIN_BOUNDARY:
            norm = _normal(node)
            for idx, value in lapl_jacobian(node, _dielectric_weights(op, node)):
                emit((i, idx, value))
            emit((i, i + n, op.charge_coeff0 * c0[i]))
            emit((i, i + 2 * n, op.charge_coeff1 * c1[i]))
            water_stencil = grad_jacobian_water(node, norm)
            for idx, value in water_stencil:
                emit((i + n, idx + n, value * c0[idx]))
                emit((i + 2 * n, idx + 2 * n, value * c1[idx]))
            for idx, value in water_stencil:
                emit((i + n, idx, value * z0 * c0[i]))
                emit((i + 2 * n, idx, value * z1 * c1[i]))
            surface_diagonal(i, op.grad(node, v), norm, velocity)
        elif kind in (NodeType.PORE_BOUNDARY, NodeType.BOUNDARY_N):
            norm = _normal(node)
            for idx, value in grad_jacobian(node, norm):
                emit((i, idx, value))
                emit((i + n, idx, value * z0 * c0[i]))
                emit((i + 2 * n, idx, value * z1 * c1[i]))
                emit((i + n, idx + n, value * c0[idx]))
                emit((i + 2 * n, idx + 2 * n, value * c1[idx]))
            surface_diagonal(i, op.grad(node, v), norm, velocity)
        elif kind == NodeType.BOUNDARY_D:
            emit((i + n, i + n, c0[i]))
            emit((i + 2 * n, i + 2 * n, c1[i]))
            emit((i, i, 1.0))
        elif kind in (NodeType.PROTEIN, NodeType.WATER_VOIDS):
            emit((i + n, i + n, c0[i]))
            emit((i + 2 * n, i + 2 * n, c1[i]))
            for idx, value in lapl_jacobian(node, _dielectric_weights(op, node)):
                emit((i, idx, value))

    size = 3 * n
    if triplets:
        rows, cols, values = zip(*triplets)
    else:
        rows, cols, values = (), (), ()
    matrix = sparse.coo_matrix(
        (np.asarray(values, dtype=float), (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64))),
        shape=(size, size),
    ).tocsr()
    matrix.sort_indices()
    return matrix


def write_triplets(matrix, path: Union[str, PathLike]) -> int:
    """Write the stored entries of ``matrix`` in row order as little-endian triplets.

    The file starts with the entry count as a 64-bit integer, followed by
    row and column as 64-bit integers and the value as a double for each
    entry. Returns the entry count.
    """
    csr = sparse.csr_matrix(matrix, copy=True)
    csr.sum_duplicates()
    csr.sort_indices()
    entry = struct.Struct("<qqd")
    with open(path, "wb") as handle:
        handle.write(struct.pack("<q", csr.nnz))
        for row, (start, stop) in enumerate(zip(csr.indptr[:-1], csr.indptr[1:])):
            for col, value in zip(csr.indices[start:stop], csr.data[start:stop]):
                handle.write(entry.pack(row, int(col), float(value)))
    return int(csr.nnz)