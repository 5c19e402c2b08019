[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nanopore_pde"
version = "0.1.0"
description = "Adaptive octree meshing of a protein in a solid-state nanopore with Poisson-Nernst-Planck residual and Jacobian assembly"
requires-python = ">=3.10"
keywords = [
    "nanopore",
    "octree",
    "poisson-nernst-planck",
    "finite-difference",
    "pqr",
    "vtk",
    "electrostatics",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Physics",
    "Topic :: Scientific/Engineering :: Chemistry",
]
dependencies = [
    "numpy",
    "scipy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
nanopore-pde = "nanopore_pde.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["nanopore_pde"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
