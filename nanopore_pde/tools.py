"""Geometry helpers for the nanopore model, PQR reading and matrix checks."""

from __future__ import annotations

import logging
import math
import re
import struct
from dataclasses import dataclass, field
from os import PathLike
from typing import Iterable, List, Tuple, Union

logger = logging.getLogger(__name__)

_NUMBER_PREFIX = re.compile(
    r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
)


@dataclass
class Atoms:
    """Atom positions, charges and radii kept as parallel lists."""

    x: List[float] = field(default_factory=list)
    y: List[float] = field(default_factory=list)
    z: List[float] = field(default_factory=list)
    charge: List[float] = field(default_factory=list)
    radius: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.x)

    def add(self, x: float, y: float, z: float, charge: float, radius: float) -> None:
        """Append one atom."""
        self.x.append(x)
        self.y.append(y)
        self.z.append(z)
        self.charge.append(charge)
        self.radius.append(radius)


def donut_distance(r: float, o: float, off: float, a: float, b: float, c: float) -> float:
    """Distance from point (a, b, c) to the ring of radius ``off`` at height ``o``."""
    del r  # the tube radius does not enter the distance to the ring
    return math.sqrt((off - math.hypot(a, b)) ** 2 + (c - o) ** 2)


def donut_normal(
    r: float, o: float, off: float, a: float, b: float, c: float
) -> Tuple[float, float, float]:
    """Unit vector from the nearest point of the torus ring towards (a, b, c)."""
    del r
    d = math.hypot(a, b)
    nx = a - a * off / d
    ny = b - b * off / d
    nz = c - o
    length = math.sqrt(nx * nx + ny * ny + nz * nz)
    return nx / length, ny / length, nz / length


def _cube_corners(x: float, y: float, z: float, dx: float) -> Iterable[Tuple[float, float, float]]:
    for cz in (z - dx, z + dx):
        for cx in (x - dx, x + dx):
            for cy in (y - dx, y + dx):
                yield cx, cy, cz


def cube_crosses_donut(
    r: float, o: float, off: float, x: float, y: float, z: float, dx: float
) -> bool:
    """True unless every corner of the cube lies strictly outside or strictly inside the torus."""
    distances = [donut_distance(r, o, off, a, b, c) for a, b, c in _cube_corners(x, y, z, dx)]
    if all(d > r for d in distances):
        return False
    if all(d < r for d in distances):
        return False
    return True


def point_in_nanopore(x: float, y: float, z: float, r: float, l: float) -> int:
    """Classify a point against the upper half of the membrane.

    Returns 1 outside the membrane, -1 inside it and 0 on its surface.
    ``l`` is the half thickness and the pore mouth is rounded by a torus of
    radius ``0.2 * r``.
    """
    r0 = r * 0.2
    d = math.hypot(x, y)
    if z > l or d < r:
        return 1
    if (z == l and d >= r + r0) or (d == r and z <= l - r0):
        return 0
    if (z < l and d >= r + r0) or (r < d < r + r0 and z < l - r0):
        return -1
    d = donut_distance(r0, l - r0, r + r0, x, y, z)
    if d > r0:
        return 1
    if d < r0:
        return -1
    return 0


def point_near_nanopore(
    x: float, y: float, z: float, r: float, l: float, debye: float
) -> int:
    """Classify a point by its signed distance to the membrane surface.

    Returns 0 within ``debye`` of the surface, -1 deeper inside the membrane
    and 1 further out.
    """
    dr = math.hypot(x, y)
    if dr >= 1.2 * r:
        d = z - l
    elif z <= l - 0.2 * r:
        d = r - dr
    else:
        d = donut_distance(r * 0.2, l - 0.2 * r, r * 1.2, x, y, z)
    if -debye <= d <= debye:
        return 0
    if d < 0:
        return -1
    return 1


def _classify_points(points: Iterable[Tuple[float, float, float]], r: float, half: float, debye: float) -> int:
    results = []
    for px, py, pz in points:
        c = point_near_nanopore(px, py, pz, r, half, debye)
        if c == 0:
            return 0
        results.append(c)
    if all(c == 1 for c in results):
        return 1
    if all(c == -1 for c in results):
        return -1
    return 0


def cube_with_pore(
    x: float, y: float, z: float, dx: float, r: float, l: float, debye: float
) -> int:
    """Classify a cube against the membrane of thickness ``l`` with a pore of radius ``r``.

    Returns 1 when the whole cube lies outside, -1 when it lies inside the
    membrane and 0 when it is near or crosses the surface.
    """
    half = l / 2
    xy = [(x - dx, y - dx), (x - dx, y + dx), (x + dx, y - dx), (x + dx, y + dx)]
    if z - dx >= 0 or z + dx <= 0:
        heights = (abs(z - dx), abs(z + dx))
    else:
        heights = (abs(z + dx), 0.0)
    points = [(px, py, pz) for pz in heights for px, py in xy]
    return _classify_points(points, r, half, debye)


def _to_float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _parse_single(text: str) -> float:
    """Parse the leading number of ``text`` at single precision."""
    match = _NUMBER_PREFIX.match(text)
    if match:
        value = float(match.group(1))
    else:
        value = float(text)
    try:
        return _to_float32(value)
    except OverflowError as exc:
        raise ValueError(f"number out of range: {text!r}") from exc


def read_pqr(
    path: Union[str, PathLike],
    probe: float,
    mx: float = 0.0,
    my: float = 0.0,
    mz: float = 0.0,
) -> Atoms:
    """Read ATOM records of a PQR file, centred so that their mean is (mx, my, mz).

    The probe radius is added to every atom radius.
    """
    atoms = Atoms()
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            line = line.rstrip("\r\n")
            if not line.startswith("ATOM"):
                continue
            atoms.add(
                _parse_single(line[30:38]),
                _parse_single(line[38:46]),
                _parse_single(line[46:54]),
                _parse_single(line[54:61]),
                _parse_single(line[61:68]) + probe,
            )
    n = len(atoms)
    if n == 0:
        raise ValueError(f"no ATOM records in {path}")
    mean = (sum(atoms.x) / n, sum(atoms.y) / n, sum(atoms.z) / n)
    shift = (mx - mean[0], my - mean[1], mz - mean[2])
    atoms.x = [v + shift[0] for v in atoms.x]
    atoms.y = [v + shift[1] for v in atoms.y]
    atoms.z = [v + shift[2] for v in atoms.z]
    low = [min(c - rad for c, rad in zip(axis, atoms.radius)) for axis in (atoms.x, atoms.y, atoms.z)]
    high = [max(c + rad for c, rad in zip(axis, atoms.radius)) for axis in (atoms.x, atoms.y, atoms.z)]
    logger.info(
        "protein coordinate range: [%g, %g, %g] [%g, %g, %g]", *low, *high
    )
    return atoms


def zero_diagonal(matrix) -> List[int]:
    """Indices of zero entries on the main diagonal of a (sparse) matrix."""
    diagonal = matrix.diagonal()
    zeros = [i for i, value in enumerate(diagonal) if value == 0]
    for i in zeros:
        logger.warning("main diagonal at (%d) 0", i)
    return zeros