"""PhyloMM - phylogenetic generalized linear mixed models.

Fits Gaussian and binary mixed models whose random-effect covariance comes
from a phylogeny, estimates trait correlations corrected for shared
ancestry and measurement error, and measures phylogenetic dissimilarity
between communities.

Example:
    >>> import numpy as np
    >>> from phylomm import RandomEffectStructure, random_effect_block, fit_binary_pql
    >>>
    >>> re = RandomEffectStructure.from_blocks([
    ...     random_effect_block(species),          # species intercepts
    ...     random_effect_block(species, Vphy),    # phylogenetic intercepts
    ... ])
    >>> fit = fit_binary_pql(X, y, re.Zt, re.St, re.nested)
    >>> fit.coef_table()
"""

from importlib.metadata import version as _get_version

from .backends import get_optimizer, get_optimizer_info, reset_optimizer, set_optimizer
from .core import (
    PQLEngine,
    PQLStatus,
    RandomEffectStructure,
    build_covariance,
    fit_gaussian_reml,
    nested_block,
    optimize,
    predict,
    predictive_check,
    random_effect_block,
    set_seed,
    simulate_binary_response,
    simulate_gaussian_response,
)
from .exceptions import (
    DimensionMismatchError,
    InvalidParameterError,
    NonConvergenceWarning,
    PhyloMMError,
    RankDeficiencyWarning,
    SingularCovarianceError,
)
from .models import binary_pglmm, cor_phylo, fit_binary_pql, fit_gaussian_pglmm, pcd, pcd_expectation, pcd_loop, psv
from .progress import PrintReporter, ProgressReporter, TqdmReporter
from .utils.visualization import plot_correlation_matrix, plot_predictive_check

__version__ = _get_version("PhyloMM")

__all__ = [
    # Models
    "fit_gaussian_pglmm",
    "fit_binary_pql",
    "binary_pglmm",
    "fit_gaussian_reml",
    "cor_phylo",
    "pcd",
    "pcd_loop",
    "pcd_expectation",
    "psv",
    # Engine
    "build_covariance",
    "RandomEffectStructure",
    "random_effect_block",
    "nested_block",
    "PQLEngine",
    "PQLStatus",
    "optimize",
    # Simulation
    "predict",
    "set_seed",
    "simulate_gaussian_response",
    "simulate_binary_response",
    "predictive_check",
    "plot_predictive_check",
    "plot_correlation_matrix",
    # Optimizer backends
    "get_optimizer",
    "set_optimizer",
    "reset_optimizer",
    "get_optimizer_info",
    # Errors
    "PhyloMMError",
    "DimensionMismatchError",
    "SingularCovarianceError",
    "InvalidParameterError",
    "NonConvergenceWarning",
    "RankDeficiencyWarning",
    # Progress
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
