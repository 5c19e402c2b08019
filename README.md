# nanopore_pde

Builds an adaptive octree mesh around a protein sitting in a solid-state
nanopore and classifies every cell: bulk water, pore wall, protein surface,
protein interior, enclosed water voids, and the Dirichlet (top and bottom)
and Neumann (side) faces of the box. On that mesh it evaluates the discrete
Poisson–Nernst–Planck residual and assembles its sparse Jacobian. The mesh
can be written as raw binary arrays or as a legacy binary VTK unstructured
grid for viewing in ParaView.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Command line

Installing the package provides the `nanopore-pde` command. Given a PQR
file it:

1. builds the octree and the solvent-accessible surface of the protein and
   the membrane;
2. numbers the cells outside the membrane and writes `mesh.bin`,
   `point.bin` and `model.vtk`;
3. prints a mesh summary (node counts, cell sizes, consistency errors);
4. evaluates the residual for a state with unit concentrations, applies the
   right-hand side and writes it to `result.bin`;
5. assembles the Jacobian, writes it to `matrix.bin`, prints `write down`
   and the number of stored entries.

```
nanopore-pde protein.pqr -o out
```

Options (defaults in brackets): `-o/--output-dir` [.], `--extra-depth` [10],
`--max-depth` [7], `--min-depth` [5], `--box` [1024], `--probe` [1.4],
`--pore-radius` [100], `--pore-length` [300], `--debye` [20],
`--concentration` [2000], `--temperature` in Celsius [20], `--v0` [0],
`--v1` [0.01], `--surface-density` [-0.01]. See `nanopore-pde --help`.
Progress messages go through `logging` at INFO level. The command exits
with status 1 and an `error:` line on a missing file or invalid input.

## Library use

```python
from nanopore_pde.octree import OctaTree
from nanopore_pde.surface import build_sas
from nanopore_pde.export import save, to_vtk, mesh_info, format_info
from nanopore_pde.pde_operator import PDEOperator
from nanopore_pde.jacobian import jacobian, write_triplets

# Cube of edge 1024 centred on the origin, refined to depth 5 everywhere,
# depth 7 near the membrane and depth 10 around the atoms.
tree = OctaTree(10, 7, 5, 0.0, 0.0, 0.0, 1024.0)

# Probe 1.4, pore radius 100, membrane thickness 300, refinement band 20.
atoms = build_sas(tree, "protein.pqr", 1.4, 100.0, 300.0, 20.0)
tree.generate_index()
tree.check()

save(tree, "mesh.bin", "point.bin")
to_vtk(tree, "model.vtk")
print(format_info(mesh_info(tree)), end="")

op = PDEOperator(tree)
op.set_physics(2000, 20, 1, -1, 1.96e-9, 2.03e-9, 997, 0.0089)
```

The state vector holds seven blocks of one value per indexed cell: the
scaled potential, the two ion concentrations, the three velocity components
and the pressure. `PDEOperator.forward(x)` returns an array of the same
layout with the first three blocks (Poisson, cation and anion equations)
filled. `PDEOperator.right_hand(y, v0, v1, surface_density)` returns a copy
of the residual with the applied potentials, the membrane surface charge
and the protein charge density subtracted. `jacobian(op, x)` returns a
SciPy CSR matrix of shape `(3n, 3n)` for the potential and concentration
equations, in which concentration columns are derivatives with respect to
the logarithm of the concentration. `write_triplets(matrix, path)` stores
it on disk and returns the entry count.

### Modules

* `nanopore_pde.tools` — `Atoms`, `read_pqr`, the geometric predicates
  `donut_distance`, `donut_normal`, `cube_crosses_donut`,
  `point_in_nanopore`, `point_near_nanopore`, `cube_with_pore`, and
  `zero_diagonal` for finding empty diagonal entries of a matrix.
* `nanopore_pde.octree` — `NodeType`, `TreeNode` and `OctaTree` with
  `refine`, `insert_ball`, `insert_pore`, `search`, `add_pore`,
  `add_protein`, `leaves`, `generate_index` and `check`.
* `nanopore_pde.surface` — `build_sas`, `build_sas_from_atoms`,
  `insert_boundary`, `adjust_boundary`, `set_normals`.
* `nanopore_pde.export` — `MeshInfo`, `mesh_info`, `format_info`, `save`,
  `to_vtk`.
* `nanopore_pde.pde_operator` — `PDEOperator` with `set_physics`, `grad`,
  `lapl`, `grad_direction`, `forward`, `right_hand`.
* `nanopore_pde.jacobian` — `grad_jacobian`, `grad_jacobian_water`,
  `lapl_jacobian`, `grad_jacobian_direction`, `jacobian`, `write_triplets`.
* `nanopore_pde.cli` — `main`, the entry point of `nanopore-pde`.

## Output formats

* `mesh.bin`: for each indexed cell, its eight corner coordinates as 24
  little-endian doubles.
* `point.bin`: for each indexed cell, eight little-endian doubles — centre
  x, y, z, charge density, cell type and the three components of the
  surface normal (zeros where the cell has none).
* `model.vtk`: legacy `BINARY` unstructured grid of hexahedral cells with
  shared, de-duplicated vertices, big-endian as the format requires.
* `result.bin`: the residual as little-endian doubles, seven blocks of one
  value per indexed cell.
* `matrix.bin`: the entry count as a little-endian 64-bit integer, then for
  each entry in row order its row and column as 64-bit integers and its
  value as a double.

## What it does not do

The package assembles the residual and the Jacobian but does not solve the
linear or nonlinear system; solving it is left to the caller, for example
with `scipy.sparse.linalg`. The velocity and pressure equations are not
assembled: `forward` leaves those blocks at zero and `jacobian` covers only
the potential and concentration unknowns.