"""Command line entry: mesh a protein in a nanopore and assemble the PNP system."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np

from nanopore_pde.export import format_info, mesh_info, save, to_vtk
from nanopore_pde.jacobian import jacobian, write_triplets
from nanopore_pde.octree import OctaTree
from nanopore_pde.pde_operator import FIELD_COUNT, PDEOperator
from nanopore_pde.surface import build_sas


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nanopore-pde",
        description="Build an octree mesh of a protein in a nanopore and assemble the PNP system.",
    )
    parser.add_argument("pqr", help="PQR file with the protein atoms")
    parser.add_argument("-o", "--output-dir", default=".", help="directory for the output files")
    parser.add_argument("--extra-depth", type=int, default=10, help="refinement depth around atoms")
    parser.add_argument("--max-depth", type=int, default=7, help="refinement depth at the membrane")
    parser.add_argument("--min-depth", type=int, default=5, help="uniform refinement depth")
    parser.add_argument("--box", type=float, default=1024.0, help="width of the simulation box")
    parser.add_argument("--probe", type=float, default=1.4, help="probe radius added to atoms")
    parser.add_argument("--pore-radius", type=float, default=100.0, help="nanopore radius")
    parser.add_argument("--pore-length", type=float, default=300.0, help="membrane thickness")
    parser.add_argument("--debye", type=float, default=20.0, help="refinement band at the membrane")
    parser.add_argument("--concentration", type=float, default=2000.0, help="bulk concentration")
    parser.add_argument("--temperature", type=float, default=20.0, help="temperature in Celsius")
    parser.add_argument("--v0", type=float, default=0.0, help="potential below the membrane")
    parser.add_argument("--v1", type=float, default=0.01, help="potential above the membrane")
    parser.add_argument(
        "--surface-density", type=float, default=-0.01, help="membrane surface charge density"
    )
    return parser


def _run(args: argparse.Namespace) -> None:
    out = Path(args.output_dir)
    out.mkdir(parents=True, exist_ok=True)

    tree = OctaTree(
        args.extra_depth, args.max_depth, args.min_depth, 0.0, 0.0, 0.0, args.box
    )
    build_sas(tree, args.pqr, args.probe, args.pore_radius, args.pore_length, args.debye)
    tree.generate_index()
    tree.check()
    save(tree, out / "mesh.bin", out / "point.bin")
    to_vtk(tree, out / "model.vtk")
    print(format_info(mesh_info(tree)), end="")

    op = PDEOperator(tree)
    op.set_physics(args.concentration, args.temperature, 1, -1, 1.96e-9, 2.03e-9, 997, 0.0089)
    n = len(tree.index)
    state = np.zeros(FIELD_COUNT * n)
    state[n:3 * n] = 1.0
    state[6 * n:] = 1.0

    residual = op.right_hand(op.forward(state), args.v0, args.v1, args.surface_density)
    (out / "result.bin").write_bytes(residual.astype("<f8").tobytes())

    matrix = jacobian(op, state)
    count = write_triplets(matrix, out / "matrix.bin")
    print("write down")
    print(count)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the meshing and assembly pipeline; return the exit status."""
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        _run(args)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())