"""
Shared pytest fixtures for PhyloMM tests.
"""

import numpy as np
import pytest

# Set random seed for reproducible tests
np.random.seed(42)


def pytest_configure(config):
    config.addinivalue_line("markers", "pql: penalized quasi-likelihood fits")
    config.addinivalue_line("markers", "corphylo: multivariate correlation fits")


def _balanced_tree_vcv(depth: int) -> np.ndarray:
    """Covariance of a balanced ultrametric tree with 2**depth tips.

    Each tip is a binary code of length *depth*; two tips share one unit of
    branch length (scaled by 1/depth) per leading bit they have in common.
    """
    n = 2**depth
    codes = (np.arange(n)[:, None] >> np.arange(depth - 1, -1, -1)) & 1
    V = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            mismatch = np.flatnonzero(codes[i] != codes[j])
            V[i, j] = (mismatch[0] if len(mismatch) else depth) / depth
    return V


@pytest.fixture
def balanced_tree_vcv():
    """Factory for balanced-tree covariance matrices: ``balanced_tree_vcv(depth)``."""
    return _balanced_tree_vcv


@pytest.fixture
def vphy16():
    """16-species phylogenetic covariance (balanced tree, unit height)."""
    return _balanced_tree_vcv(4)


@pytest.fixture
def community_binary_data(vphy16):
    """Species x site binary data with one covariate and a phylogenetic intercept.

    Returns a dict with ``X``, ``y``, ``species``, ``sites``, ``Vphy`` and
    the generating coefficients ``B`` and phylogenetic sd ``s``.
    """
    rng = np.random.default_rng(2024)
    n_sp, n_sites = vphy16.shape[0], 25
    species = np.tile(np.arange(n_sp), n_sites)
    sites = np.repeat(np.arange(n_sites), n_sp)
    n = n_sp * n_sites

    B = np.array([-0.5, 1.0])
    s = 0.5
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    phylo = np.linalg.cholesky(vphy16) @ rng.standard_normal(n_sp) * s
    eta = X @ B + phylo[species]
    y = (rng.random(n) < 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return {"X": X, "y": y, "species": species, "sites": sites, "Vphy": vphy16, "B": B, "s": s}


@pytest.fixture
def community_gaussian_data(vphy16):
    """Species x site Gaussian data with phylogenetic and species intercepts."""
    rng = np.random.default_rng(7)
    n_sp, n_sites = vphy16.shape[0], 10
    species = np.tile(np.arange(n_sp), n_sites)
    sites = np.repeat(np.arange(n_sites), n_sp)
    n = n_sp * n_sites

    B = np.array([1.0, 0.5])
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    phylo = np.linalg.cholesky(vphy16) @ rng.standard_normal(n_sp) * 0.8
    sp_effect = rng.standard_normal(n_sp) * 0.3
    Y = X @ B + phylo[species] + sp_effect[species] + rng.standard_normal(n) * 0.5
    return {"X": X, "Y": Y, "species": species, "sites": sites, "Vphy": vphy16, "B": B}


@pytest.fixture(autouse=True)
def _reset_optimizer_registry():
    """Keep the process-wide optimizer registry clean between tests."""
    from phylomm.backends import reset_optimizer

    reset_optimizer()
    yield
    reset_optimizer()
