import math

import pytest

from nanopore_pde.octree import FACE_CHILDREN, NodeType, OctaTree, TreeNode
from nanopore_pde.tools import Atoms, point_in_nanopore


def _all_nodes(tree):
    stack = [tree.root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(node.children)


def _links_to_pore(tree):
    links = []
    for node in tree.index:
        for direction, neighbor in enumerate(node.neighbors):
            if neighbor is None:
                continue
            if neighbor.type == NodeType.PORE:
                links.append((node.index, direction))
            elif not neighbor.is_leaf() and any(
                neighbor.children[k].type == NodeType.PORE for k in FACE_CHILDREN[direction]
            ):
                links.append((node.index, direction))
    return links


@pytest.fixture
def uniform():
    return OctaTree(3, 3, 2, 0.0, 0.0, 0.0, 8.0)


@pytest.fixture
def pore_tree():
    tree = OctaTree(4, 4, 3, 0.0, 0.0, 0.0, 64.0)
    tree.add_pore(8.0, 16.0, 1.0)
    return tree


def test_initial_tree_is_uniform(uniform):
    leaves = list(uniform.leaves())
    assert len(leaves) == 8 ** 2
    assert uniform.root.dx == 4.0
    assert all(leaf.level == 2 for leaf in leaves)
    assert all(leaf.dx == uniform.root.dx / 4 for leaf in leaves)
    assert all(int(leaf.type) == -1 for leaf in leaves)
    assert int(uniform.root.type) == 0


def test_size_and_min_cell_follow_refinements(uniform):
    branches = [n for n in _all_nodes(uniform) if not n.is_leaf()]
    assert uniform.size == 8 * len(branches)
    assert uniform.min_cell == min(b.dx for b in branches)


def test_boundary_faces_have_no_neighbour(uniform):
    root = uniform.root
    for leaf in uniform.leaves():
        assert (leaf.neighbors[0] is None) == (leaf.x - leaf.dx == root.x - root.dx)
        assert (leaf.neighbors[1] is None) == (leaf.x + leaf.dx == root.x + root.dx)
        assert (leaf.neighbors[4] is None) == (leaf.z - leaf.dx == root.z - root.dx)
        assert (leaf.neighbors[5] is None) == (leaf.z + leaf.dx == root.z + root.dx)


def test_uniform_neighbours_are_adjacent_and_symmetric(uniform):
    for leaf in uniform.leaves():
        for direction, neighbor in enumerate(leaf.neighbors):
            if neighbor is None:
                continue
            axis, positive = divmod(direction, 2)
            offset = 2 * leaf.dx if positive else -2 * leaf.dx
            own = (leaf.x, leaf.y, leaf.z)
            other = (neighbor.x, neighbor.y, neighbor.z)
            assert other[axis] == pytest.approx(own[axis] + offset)
            assert neighbor.neighbors[direction ^ 1] is leaf


def test_refine_splits_leaf(uniform):
    before = len(list(uniform.leaves()))
    leaf = uniform.search(0.5, 0.5, 0.5)
    uniform.refine(leaf)
    assert len(list(uniform.leaves())) == before + 7
    assert leaf.type == NodeType.EXTERNAL
    assert len(leaf.children) == 8
    for child in leaf.children:
        assert child.parent is leaf
        assert child.level == leaf.level + 1
        assert child.dx == leaf.dx / 2
        assert child.type == NodeType.WATER_VOIDS
        assert leaf._contains(child.x, child.y, child.z)


def test_refine_of_branch_does_nothing(uniform):
    size = uniform.size
    uniform.refine(uniform.root)
    assert uniform.size == size


def test_refinement_keeps_two_to_one_balance():
    tree = OctaTree(6, 6, 1, 0.0, 0.0, 0.0, 8.0)
    tree.insert_ball(tree.root, 0.1, 0.1, 0.1, 0.01)
    assert tree.search(0.1, 0.1, 0.1).level == 6
    for leaf in tree.leaves():
        for neighbor in leaf.neighbors:
            if neighbor is not None:
                assert abs(leaf.level - neighbor.level) <= 1


def test_insert_ball_refines_only_near_ball():
    tree = OctaTree(4, 4, 2, 0.0, 0.0, 0.0, 16.0)
    tree.insert_ball(tree.root, 1.0, 1.0, 1.0, 0.5)
    assert tree.search(1.1, 1.1, 1.1).level == 4
    assert tree.search(-7.0, -7.0, -7.0).level == 2


def test_search_returns_containing_leaf(uniform):
    leaf = uniform.search(1.3, -2.2, 3.7)
    assert leaf.is_leaf()
    assert leaf._contains(1.3, -2.2, 3.7)


def test_search_outside_raises(uniform):
    with pytest.raises(ValueError):
        uniform.search(100.0, 0.0, 0.0)


def test_add_pore_marks_membrane(pore_tree):
    assert pore_tree.search(29.0, 29.0, 1.0).type == NodeType.PORE
    assert pore_tree.search(29.0, 29.0, -1.0).type == NodeType.PORE
    assert pore_tree.search(1.0, 1.0, 1.0).type != NodeType.PORE
    assert pore_tree.search(29.0, 29.0, 20.0).type != NodeType.PORE


def test_add_pore_types_match_classifier(pore_tree):
    for leaf in pore_tree.leaves():
        inside = point_in_nanopore(leaf.x, leaf.y, abs(leaf.z), 8.0, 8.0) <= 0
        assert (leaf.type == NodeType.PORE) == inside


def test_add_pore_refines_surface(pore_tree):
    assert pore_tree.search(29.0, 29.0, 7.0).level == pore_tree.max_depth


def test_generate_index_uniform_breadth_first(uniform):
    uniform.generate_index()
    leaves = list(uniform.leaves())
    assert len(uniform.index) == len(leaves)
    assert [node.index for node in uniform.index] == list(range(len(leaves)))
    assert uniform.index[0] is uniform.search(-3.5, -3.5, -3.5)
    root = uniform.root
    low = root.x - root.dx

    def hops(node):
        return sum(round((c - node.dx - low) / (2 * node.dx)) for c in (node.x, node.y, node.z))

    distances = [hops(node) for node in uniform.index]
    assert distances == sorted(distances)


def test_generate_index_skips_pore(pore_tree):
    pore_tree.generate_index()
    assert pore_tree.index
    assert all(node.type != NodeType.PORE for node in pore_tree.index)
    assert [node.index for node in pore_tree.index] == list(range(len(pore_tree.index)))
    assert len({id(node) for node in pore_tree.index}) == len(pore_tree.index)


def test_check_cuts_links_to_pore(pore_tree):
    pore_tree.generate_index()
    assert len(_links_to_pore(pore_tree)) > 0
    pore_tree.check()
    assert _links_to_pore(pore_tree) == []


def _single_atom_tree(charge):
    tree = OctaTree(4, 4, 2, 0.0, 0.0, 0.0, 16.0)
    atoms = Atoms()
    atoms.add(0.3, 0.2, 0.1, charge, 2.0)
    tree.add_protein(atoms)
    return tree


def test_add_protein_marks_atom_cells():
    tree = _single_atom_tree(1.0)
    centre = tree.search(0.3, 0.2, 0.1)
    assert centre.type == NodeType.PROTEIN
    assert centre.level == tree.extra_depth
    for leaf in tree.leaves():
        assert leaf.type in (NodeType.PROTEIN, NodeType.WATER_VOIDS)
        assert (leaf.type == NodeType.PROTEIN) == bool(leaf.atom_ids)
        if leaf.atom_ids:
            assert set(leaf.atom_ids) == {0}
            d = math.dist((leaf.x, leaf.y, leaf.z), (0.3, 0.2, 0.1))
            assert d <= 2.0


def test_add_protein_charge_stays_near_atom():
    tree = _single_atom_tree(1.0)
    far = tree.search(-7.0, -7.0, -7.0)
    assert far.charge_density == 0.0
    assert far.type == NodeType.WATER_VOIDS
    for leaf in tree.leaves():
        if leaf.charge_density != 0.0:
            assert math.dist((leaf.x, leaf.y, leaf.z), (0.3, 0.2, 0.1)) <= 6.0
    assert sum(leaf.charge_density for leaf in tree.leaves()) > 0


def test_add_protein_negative_charge():
    tree = _single_atom_tree(-1.0)
    assert sum(leaf.charge_density for leaf in tree.leaves()) < 0


def test_tree_node_leaf_flag():
    node = TreeNode(0, 0.0, 0.0, 0.0, 1.0)
    assert node.is_leaf() is True
    assert node.neighbors == [None] * 6
    assert node.index == -1
    node.children.append(TreeNode(1, 0.5, 0.5, 0.5, 0.5))
    assert node.is_leaf() is False