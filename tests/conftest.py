"""Pytest configuration and common fixtures for laplace_gmrf tests."""

import numpy as np
import pytest
import torch

from laplace_gmrf.structures import build_spde_structure
from laplace_gmrf.utils.mesh import regular_mesh


@pytest.fixture(autouse=True)
def _seed():
    """Fixed seeds for every test."""
    torch.manual_seed(0)
    np.random.seed(0)


@pytest.fixture(scope="session")
def small_mesh():
    """4 x 4 regular mesh on the unit square: (vertices, triangles)."""
    return regular_mesh(4, 4)


@pytest.fixture(scope="session")
def spde_structure(small_mesh):
    vertices, triangles = small_mesh
    return build_spde_structure(vertices, triangles)


@pytest.fixture(scope="session")
def robs():
    """Observed recruitment series of the random-walk state-space scenario."""
    return np.array([10.0, 12.0, 11.0, 15.0])
