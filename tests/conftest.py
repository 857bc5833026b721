"""Fixtures for testing."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse

from fdapirls.backend import PenalizedRegressionSolver

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def hat_basis(x: np.ndarray, nodes: np.ndarray) -> sparse.csr_matrix:
    """Piecewise-linear finite-element basis on a 1-D mesh, evaluated at x."""
    n, K = x.size, nodes.size
    B = np.zeros((n, K))
    e = np.clip(np.searchsorted(nodes, x, side="right") - 1, 0, K - 2)
    h = nodes[e + 1] - nodes[e]
    lam = (x - nodes[e]) / h
    B[np.arange(n), e] = 1.0 - lam
    B[np.arange(n), e + 1] = lam
    return sparse.csr_matrix(B)


def stiffness(nodes: np.ndarray) -> np.ndarray:
    """Stiffness matrix of the 1-D linear elements (null space: constants)."""
    K = nodes.size
    h = np.diff(nodes)
    R = np.zeros((K, K))
    for e in range(K - 1):
        k = 1.0 / h[e]
        R[e, e] += k
        R[e + 1, e + 1] += k
        R[e, e + 1] -= k
        R[e + 1, e] -= k
    return R


# ---------------------------------------------------------------------
# Global marks / utilities
# ---------------------------------------------------------------------


@pytest.fixture(scope="session")
def rng():
    """Session-scoped RNG for deterministic tests."""
    return np.random.default_rng(1234)


@pytest.fixture
def mesh():
    """A 1-D mesh with 12 nodes and 60 observation locations."""
    nodes = np.linspace(0.0, 1.0, 12)
    x = np.linspace(0.0, 1.0, 60)
    return {
        "nodes": nodes,
        "x": x,
        "basis": hat_basis(x, nodes),
        "penalty": stiffness(nodes),
    }


@pytest.fixture
def gaussian_data(mesh):
    r = np.random.default_rng(0)
    f = np.sin(2 * np.pi * mesh["x"])
    return f + r.normal(0.0, 0.2, size=mesh["x"].size)


@pytest.fixture
def poisson_data(mesh):
    r = np.random.default_rng(1)
    mu = np.exp(1.0 + 0.5 * np.sin(2 * np.pi * mesh["x"]))
    return r.poisson(mu).astype(float)


@pytest.fixture
def bernoulli_data(mesh):
    r = np.random.default_rng(2)
    p = 1.0 / (1.0 + np.exp(-np.cos(2 * np.pi * mesh["x"])))
    return (r.uniform(size=p.size) < p).astype(float)


@pytest.fixture
def gamma_data(mesh):
    r = np.random.default_rng(3)
    mu = 2.0 + np.sin(2 * np.pi * mesh["x"])
    shape = 5.0
    return r.gamma(shape, mu / shape)


@pytest.fixture
def mixed_data(mesh):
    """Four groups of 15 observations, a random intercept and slope, observations shuffled."""
    r = np.random.default_rng(4)
    n = mesh["x"].size
    group_sizes = [15, 15, 15, 15]
    # model order: group by group; perm[k] = solver index of the k-th model observation
    perm = r.permutation(n)
    xm = mesh["x"][perm]
    Z = np.column_stack([np.ones(n), xm])
    b = r.normal(0.0, [0.8, 0.5], size=(4, 2))
    bounds = np.cumsum([0] + group_sizes)
    re = np.empty(n)
    for i in range(4):
        sl = slice(bounds[i], bounds[i + 1])
        re[sl] = Z[sl] @ b[i]
    y = np.sin(2 * np.pi * mesh["x"]) + r.normal(0.0, 0.2, size=n)
    y[perm] += re
    return {"y": y, "Z": Z, "group_sizes": group_sizes, "perm": perm}


@pytest.fixture
def make_solver():
    """Factory for reference solvers on a given mesh.

    Usage:
        def test_something(mesh, make_solver):
            solver = make_solver(mesh, lambda_s=[1e-3, 1e-1])
    """

    def _factory(mesh, lambda_s=(1e-3,), **kwargs) -> PenalizedRegressionSolver:
        return PenalizedRegressionSolver(
            basis=mesh["basis"], penalty=mesh["penalty"], lambda_s=lambda_s, **kwargs
        )

    return _factory
