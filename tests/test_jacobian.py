import struct

import numpy as np
import pytest
from scipy import sparse

from nanopore_pde.jacobian import (
    grad_jacobian,
    grad_jacobian_direction,
    grad_jacobian_water,
    jacobian,
    lapl_jacobian,
    write_triplets,
)
from nanopore_pde.octree import NodeType, OctaTree
from nanopore_pde.pde_operator import FIELD_COUNT, PDEOperator
from nanopore_pde.surface import insert_boundary, set_normals
from nanopore_pde.tools import Atoms


def _uniform_mesh():
    tree = OctaTree(2, 2, 2, 0.0, 0.0, 0.0, 4.0)
    insert_boundary(tree)
    for leaf in tree.leaves():
        if leaf.type == NodeType.WATER_VOIDS:
            leaf.type = NodeType.WATER
    set_normals(tree, Atoms(), 0.0, 0.0, 0.0, 1.0, 1.0)
    tree.generate_index()
    return tree


def _operator(tree):
    op = PDEOperator(tree)
    op.set_physics(2000, 20, 1, -1, 1.96e-9, 2.03e-9, 997, 0.0089)
    return op


def _apply(entries, values):
    return sum(value * values[idx] for idx, value in entries)


def _interior(tree):
    return next(node for node in tree.index if all(nb is not None for nb in node.neighbors))


def test_lapl_jacobian_matches_operator():
    tree = _uniform_mesh()
    op = _operator(tree)
    rng = np.random.default_rng(1)
    v = rng.normal(size=len(tree.index))
    coeffs = tuple(rng.uniform(0.5, 2.0, size=6))
    for node in tree.index:
        assert _apply(lapl_jacobian(node, coeffs), v) == pytest.approx(
            sum(op.lapl(node, v, coeffs)), rel=1e-10, abs=1e-12
        )


def test_grad_jacobian_matches_operator():
    tree = _uniform_mesh()
    op = _operator(tree)
    rng = np.random.default_rng(2)
    v = rng.normal(size=len(tree.index))
    coeffs = tuple(rng.normal(size=3))
    for node in tree.index:
        expected = float(np.dot(op.grad(node, v), coeffs))
        assert _apply(grad_jacobian(node, coeffs), v) == pytest.approx(expected, rel=1e-10, abs=1e-12)


def test_grad_jacobian_direction_matches_operator():
    tree = _uniform_mesh()
    op = _operator(tree)
    rng = np.random.default_rng(3)
    v = rng.normal(size=len(tree.index))
    direction = (0.7, -1.3, 0.4)
    for node in tree.index:
        expected = sum(op.grad_direction(node, v, direction))
        assert _apply(grad_jacobian_direction(node, direction), v) == pytest.approx(
            expected, rel=1e-10, abs=1e-12
        )


def test_zero_direction_keeps_zero_stencil():
    tree = _uniform_mesh()
    node = _interior(tree)
    entries = grad_jacobian_direction(node, (0.0, 0.0, 0.0))
    assert len(entries) == 6
    assert all(value == 0 for _, value in entries)
    assert node.index not in [idx for idx, _ in entries]


def test_stencils_annihilate_constants():
    tree = _uniform_mesh()
    for node in tree.index:
        assert sum(v for _, v in lapl_jacobian(node, (1.0,) * 6)) == pytest.approx(0.0, abs=1e-12)
        assert sum(v for _, v in grad_jacobian(node, (1.0, 2.0, 3.0))) == pytest.approx(0.0, abs=1e-12)


def test_lapl_centre_comes_first():
    tree = _uniform_mesh()
    node = _interior(tree)
    entries = lapl_jacobian(node, (1.0,) * 6)
    assert entries[0][0] == node.index
    assert entries[0][1] == pytest.approx(-sum(v for _, v in entries[1:]))
    assert {idx for idx, _ in entries[1:]} == {nb.index for nb in node.neighbors}


def test_grad_jacobian_water_uses_water_faces_only():
    tree = _uniform_mesh()
    node = _interior(tree)
    coeffs = (0.3, -0.2, 0.9)
    for neighbor in node.neighbors:
        neighbor.type = NodeType.WATER
    assert grad_jacobian_water(node, coeffs) == grad_jacobian(node, coeffs)
    for neighbor in node.neighbors:
        neighbor.type = NodeType.BOUNDARY_N
    assert grad_jacobian_water(node, coeffs) == []


@pytest.mark.parametrize("interior_type", [None, NodeType.PROTEIN, NodeType.WATER_VOIDS])
def test_jacobian_matches_finite_differences(interior_type):
    tree = _uniform_mesh()
    if interior_type is not None:
        _interior(tree).type = interior_type
    op = _operator(tree)
    n = len(tree.index)
    rng = np.random.default_rng(4)
    x = np.zeros(FIELD_COUNT * n)
    x[:n] = rng.normal(size=n)
    x[n:3 * n] = 1.0
    x[3 * n:6 * n] = rng.normal(scale=0.1, size=3 * n)
    dense = jacobian(op, x).toarray()
    assert dense.shape == (3 * n, 3 * n)
    eps = 1e-4
    for col in range(3 * n):
        step = np.zeros_like(x)
        step[col] = eps
        fd = (op.forward(x + step)[:3 * n] - op.forward(x - step)[:3 * n]) / (2 * eps)
        np.testing.assert_allclose(dense[:, col], fd, rtol=1e-6, atol=1e-7)


def test_dirichlet_rows():
    tree = _uniform_mesh()
    op = _operator(tree)
    n = len(tree.index)
    x = np.zeros(FIELD_COUNT * n)
    x[n:2 * n] = 2.0
    x[2 * n:3 * n] = 3.0
    matrix = jacobian(op, x)
    dirichlet = [node.index for node in tree.index if node.type == NodeType.BOUNDARY_D]
    assert dirichlet
    for i in dirichlet:
        assert matrix[i, i] == 1.0
        assert matrix[i + n, i + n] == 2.0
        assert matrix[i + 2 * n, i + 2 * n] == 3.0
        assert matrix.getrow(i).nnz == 1


def test_jacobian_rejects_short_state():
    tree = _uniform_mesh()
    op = _operator(tree)
    with pytest.raises(ValueError):
        jacobian(op, np.zeros(3 * len(tree.index)))


def test_unindexed_neighbour_raises():
    tree = _uniform_mesh()
    op = _operator(tree)
    node = _interior(tree)
    node.neighbors[0].index = -1
    x = np.zeros(FIELD_COUNT * len(tree.index))
    with pytest.raises(ValueError):
        jacobian(op, x)


def test_missing_normal_raises():
    tree = _uniform_mesh()
    op = _operator(tree)
    side = next(node for node in tree.index if node.type == NodeType.BOUNDARY_N)
    side.norm = None
    with pytest.raises(ValueError):
        jacobian(op, np.zeros(FIELD_COUNT * len(tree.index)))


def _read_triplets(path):
    data = path.read_bytes()
    (count,) = struct.unpack_from("<q", data, 0)
    entries = [struct.unpack_from("<qqd", data, 8 + 24 * k) for k in range(count)]
    return count, entries, len(data)


def test_write_triplets_round_trip(tmp_path):
    matrix = sparse.csr_matrix(
        np.array([[1.5, 0.0, -2.0], [0.0, 0.0, 0.0], [4.0, 0.25, 0.0]])
    )
    path = tmp_path / "matrix.bin"
    count = write_triplets(matrix, path)
    read_count, entries, size = _read_triplets(path)
    assert count == read_count == matrix.nnz
    assert size == 8 + 24 * count
    rebuilt = np.zeros((3, 3))
    for row, col, value in entries:
        rebuilt[row, col] = value
    np.testing.assert_array_equal(rebuilt, matrix.toarray())
    assert [(r, c) for r, c, _ in entries] == sorted((r, c) for r, c, _ in entries)


def test_write_triplets_of_jacobian(tmp_path):
    tree = _uniform_mesh()
    op = _operator(tree)
    n = len(tree.index)
    x = np.zeros(FIELD_COUNT * n)
    x[n:3 * n] = 1.0
    matrix = jacobian(op, x)
    path = tmp_path / "j.bin"
    count = write_triplets(matrix, path)
    read_count, entries, _ = _read_triplets(path)
    assert read_count == count == matrix.nnz
    rebuilt = sparse.coo_matrix(
        ([e[2] for e in entries], ([e[0] for e in entries], [e[1] for e in entries])),
        shape=matrix.shape,
    )
    np.testing.assert_array_equal(rebuilt.toarray(), matrix.toarray())