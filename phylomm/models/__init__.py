"""Model entry points: PGLMM fits, cor_phylo and community dissimilarity."""

from .cor_phylo import cor_phylo
from .pcd import pcd, pcd_expectation, pcd_loop, psv
from .pglmm import binary_pglmm, fit_binary_pql, fit_gaussian_pglmm

__all__ = [
    "fit_gaussian_pglmm",
    "fit_binary_pql",
    "binary_pglmm",
    "cor_phylo",
    "pcd",
    "pcd_loop",
    "pcd_expectation",
    "psv",
]
