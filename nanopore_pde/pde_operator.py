"""Finite-volume residual of the coupled Poisson-Nernst-Planck equations on the octree mesh."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np

from nanopore_pde.octree import FACE_CHILDREN, NodeType, OctaTree, TreeNode

ELEMENTARY_CHARGE = 1.602176634e-19
BOLTZMANN = 1.380649e-23
AVOGADRO = 6.02214076e23
WATER_PERMITTIVITY = 8.854187817e-12 * 78.5
PROTEIN_RELATIVE_DIELECTRIC = 3.0 / 78.5
REFERENCE_PRESSURE = 101325.0

Vector = Tuple[float, float, float]

# Number of unknown fields per cell: potential, two concentrations,
# three velocity components and pressure.
FIELD_COUNT = 7


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


class PDEOperator:
    """Evaluates the discrete PNP residual for the indexed cells of a mesh.

    The state vector holds seven blocks of ``n`` values, where ``n`` is the
    number of indexed cells: potential, cation and anion concentration,
    the three velocity components and the pressure.
    """

    def __init__(self, mesh: OctaTree) -> None:
        self.mesh = mesh
        self.ee = ELEMENTARY_CHARGE
        self.eps0 = WATER_PERMITTIVITY
        self.diep = PROTEIN_RELATIVE_DIELECTRIC
        self.kb = BOLTZMANN
        self.avogadro = AVOGADRO
        self.inv_eps0 = 1.0 / self.eps0
        self.kbt = BOLTZMANN * (273.15 + 25)
        self.ekbt = self.ee / self.kbt
        self.c0 = 2000.0
        self.z0 = 1.0
        self.z1 = -1.0
        self.diffu0 = 1.96e-9
        self.diffu1 = 2.03e-9
        self.rho = 997.0
        self.viscosity = 0.0089
        self.p0 = REFERENCE_PRESSURE
        self.charge_coeff0 = 0.0
        self.charge_coeff1 = 0.0
        self.np_ns_coeff0 = 0.0
        self.np_ns_coeff1 = 0.0
        self.ns_pnp_coeff = 0.0
        self.re_inv = 0.0

    def set_physics(
        self,
        conc: float,
        temperature: float,
        z0: int,
        z1: int,
        diff0: float,
        diff1: float,
        rho: float,
        viscosity: float,
    ) -> None:
        """Set the electrolyte and fluid parameters and derive the scaled coefficients.

        ``temperature`` is in degrees Celsius.
        """
        self.kbt = BOLTZMANN * (273.15 + temperature)
        self.z0 = z0
        self.z1 = z1
        self.diffu0 = diff0
        self.diffu1 = diff1
        self.rho = rho
        self.viscosity = viscosity
        self.c0 = conc
        self.ekbt = self.ee / self.kbt

        charge_coeff = self.ee * self.avogadro * self.ekbt / self.eps0 * 1e-20 * self.c0
        self.charge_coeff0 = charge_coeff * z0
        self.charge_coeff1 = charge_coeff * z1
        self.np_ns_coeff0 = 1e-14 / self.diffu0
        self.np_ns_coeff1 = 1e-14 / self.diffu1
        self.re_inv = viscosity / 1e-6 / self.p0
        self.ns_pnp_coeff = self.eps0 / self.ekbt / self.p0 * 1e20 / self.ekbt

    @staticmethod
    def _sample(node: TreeNode, direction: int, x: np.ndarray) -> Tuple[float, float]:
        """Value across one face and the distance to it."""
        neighbor = node.neighbors[direction]
        if neighbor.is_leaf():
            return float(x[neighbor.index]), node.dx + neighbor.dx
        total = sum(float(x[neighbor.children[k].index]) for k in FACE_CHILDREN[direction])
        return total / 4, 1.5 * node.dx

    def grad(self, node: TreeNode, x) -> Vector:
        """Gradient of ``x`` at ``node``; one-sided at faces without a neighbour."""
        x1 = float(x[node.index])
        result = [0.0, 0.0, 0.0]
        for axis in range(3):
            lo, hi = 2 * axis, 2 * axis + 1
            has_lo = node.neighbors[lo] is not None
            has_hi = node.neighbors[hi] is not None
            if has_lo and has_hi:
                x0, dx0 = self._sample(node, lo, x)
                x2, dx1 = self._sample(node, hi, x)
                result[axis] = (
                    dx0 * dx0 * x2 + (dx1 * dx1 - dx0 * dx0) * x1 - dx1 * dx1 * x0
                ) / (dx0 * dx1 * (dx0 + dx1))
            elif has_lo:
                x0, dx = self._sample(node, lo, x)
                result[axis] = (x1 - x0) / dx
            elif has_hi:
                x2, dx = self._sample(node, hi, x)
                result[axis] = (x2 - x1) / dx
        return result[0], result[1], result[2]

    def lapl(
        self, node: TreeNode, x, coeff: Optional[Sequence[float]] = None
    ) -> Vector:
        """Per-axis second differences of ``x`` weighted by the six face coefficients."""
        if coeff is None:
            coeff = (1.0,) * 6
        x1 = float(x[node.index])
        result = [0.0, 0.0, 0.0]
        for axis in range(3):
            lo, hi = 2 * axis, 2 * axis + 1
            has_lo = node.neighbors[lo] is not None
            has_hi = node.neighbors[hi] is not None
            if has_lo and has_hi:
                x0, dx0 = self._sample(node, lo, x)
                x2, dx1 = self._sample(node, hi, x)
                result[axis] = (
                    2 * ((x2 - x1) / dx1 * coeff[hi] - (x1 - x0) / dx0 * coeff[lo]) / (dx0 + dx1)
                )
            elif has_lo:
                x0, dx = self._sample(node, lo, x)
                result[axis] = (x0 - x1) / dx / dx * coeff[lo]
            elif has_hi:
                x2, dx = self._sample(node, hi, x)
                result[axis] = (x2 - x1) / dx / dx * coeff[hi]
        return result[0], result[1], result[2]

    def grad_direction(self, node: TreeNode, x, direction: Sequence[float]) -> Vector:
        """Upwinded gradient components of ``x`` scaled by ``direction``."""
        x1 = float(x[node.index])
        result = [0.0, 0.0, 0.0]
        for axis in range(3):
            lo, hi = 2 * axis, 2 * axis + 1
            weight = direction[axis]
            if weight == 0:
                # A zero weight contributes nothing whatever the stencil.
                continue
            if weight < 0:
                if node.neighbors[lo] is None:
                    continue
                x0, dx = self._sample(node, lo, x)
                result[axis] = (x1 - x0) / dx * weight
            else:
                if node.neighbors[hi] is None:
                    continue
                x2, dx = self._sample(node, hi, x)
                result[axis] = (x2 - x1) / dx * weight
        return result[0], result[1], result[2]

    def _interface_coeffs(self, node: TreeNode) -> list:
        """Dielectric face weights for cells inside or on the protein."""
        coeff = [1.0] * 6
        for direction, neighbor in enumerate(node.neighbors):
            if neighbor is None:
                continue
            if neighbor.type == node.type and node.type == NodeType.PROTEIN:
                coeff[direction] = self.diep
            elif neighbor.type != node.type:
                coeff[direction] = 2 * self.diep / (1 + self.diep)
        return coeff

    @staticmethod
    def _normal(node: TreeNode) -> Vector:
        if node.norm is None:
            raise ValueError(
                f"surface cell {node.index} of type {node.type.name} has no normal"
            )
        return node.norm

    def _split(self, x) -> Tuple[int, np.ndarray]:
        n = len(self.mesh.index)
        state = np.asarray(x, dtype=float)
        if state.ndim != 1 or state.shape[0] < FIELD_COUNT * n:
            raise ValueError(
                f"state vector must hold {FIELD_COUNT * n} values, got {state.size}"
            )
        return n, state

    def forward(self, x) -> np.ndarray:
        """Residual of the PNP equations for the state ``x``.

        Returns an array of seven blocks of ``n`` values of which the first
        three (Poisson, cation and anion flux) are filled.
        """
        n, state = self._split(x)
        v = state[0:n]
        c0 = state[n:2 * n]
        c1 = state[2 * n:3 * n]
        u0 = state[3 * n:4 * n]
        u1 = state[4 * n:5 * n]
        u2 = state[5 * n:6 * n]
        y = np.zeros(FIELD_COUNT * n)

        for i, node in enumerate(self.mesh.index):
            kind = node.type
            velocity = (float(u0[i]), float(u1[i]), float(u2[i]))
            if kind == NodeType.WATER:
                potential_lapl = sum(self.lapl(node, v))
                res0 = potential_lapl + c0[i] * self.charge_coeff0 + c1[i] * self.charge_coeff1
                grad_v = self.grad(node, v)
                res1 = potential_lapl * c0[i] * self.z0
                res1 += sum(self.lapl(node, c0))
                res1 += _dot(grad_v, self.grad(node, c0)) * self.z0
                res1 -= self.np_ns_coeff0 * sum(self.grad_direction(node, c0, velocity))
                res2 = potential_lapl * c1[i] * self.z1
                res2 += sum(self.lapl(node, c1))
                res2 += _dot(grad_v, self.grad(node, c1)) * self.z1
                res2 -= self.np_ns_coeff1 * sum(self.grad_direction(node, c1, velocity))
                y[i], y[i + n], y[i + 2 * n] = res0, res1, res2
            elif kind == NodeType.PROTEIN_BOUNDARY:
                norm = self._normal(node)
                flux = _dot(self.grad(node, v), norm)
                flow = _dot(velocity, norm)
                res1 = flux * c0[i] * self.z0
                res1 += sum(self.grad_direction(node, c0, norm))
                res1 -= self.np_ns_coeff0 * c0[i] * flow
                res2 = flux * c1[i] * self.z1
                res2 += sum(self.grad_direction(node, c1, norm))
                res2 -= self.np_ns_coeff1 * c1[i] * flow
                y[i] = sum(self.lapl(node, v, self._interface_coeffs(node)))
                y[i + n], y[i + 2 * n] = res1, res2
            elif kind in (NodeType.PORE_BOUNDARY, NodeType.BOUNDARY_N):
                norm = self._normal(node)
                flux = _dot(self.grad(node, v), norm)
                flow = _dot(velocity, norm)
                res1 = flux * c0[i] * self.z0
                res1 += _dot(self.grad(node, c0), norm)
                res1 -= self.np_ns_coeff0 * c0[i] * flow
                res2 = flux * c1[i] * self.z1
                res2 += _dot(self.grad(node, c1), norm)
                res2 -= self.np_ns_coeff1 * c1[i] * flow
                y[i], y[i + n], y[i + 2 * n] = flux, res1, res2
            elif kind == NodeType.BOUNDARY_D:
                y[i], y[i + n], y[i + 2 * n] = v[i], c0[i], c1[i]
            elif kind in (NodeType.PROTEIN, NodeType.WATER_VOIDS):
                y[i + n] = c0[i]
                y[i + 2 * n] = c1[i]
                y[i] = sum(self.lapl(node, v, self._interface_coeffs(node)))
        return y

    def right_hand(
        self, y, v0: float, v1: float, surface_density: float
    ) -> np.ndarray:
        """Subtract the sources from the residual ``y`` and return the result.

        ``v0`` and ``v1`` are the applied potentials below and above the
        membrane and ``surface_density`` is the membrane surface charge.
        """
        n = len(self.mesh.index)
        result = np.array(y, dtype=float)
        if result.ndim != 1 or result.shape[0] < 3 * n:
            raise ValueError(f"residual must hold at least {3 * n} values, got {result.size}")
        volume = -self.ekbt * self.ee * 1e10 / self.eps0
        surface = -self.ekbt * 1e-10 / self.eps0
        for i, node in enumerate(self.mesh.index):
            if not node.is_leaf():
                continue
            if node.type == NodeType.PORE_BOUNDARY:
                result[i] -= surface_density * surface
            elif node.type == NodeType.BOUNDARY_D:
                result[i] -= (v1 if node.z > 0 else v0) * self.ekbt
                result[i + n] -= 1
                result[i + 2 * n] -= 1
            else:
                result[i] -= node.charge_density * volume
        return result