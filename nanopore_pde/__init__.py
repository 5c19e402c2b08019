"""Octree meshing of a protein in a nanopore with Poisson-Nernst-Planck residual and Jacobian assembly."""

__version__ = "0.1.0"