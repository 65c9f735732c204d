"""Core components for the PhyloMM estimation engine.

Re-exports the foundational building blocks:

- ``build_covariance``, ``random_effect_loadings`` and the structure
  builders: random-effect covariance construction.
- ``gaussian_evaluate``, ``binary_evaluate``, ``fit_gaussian_reml`` and
  friends: likelihood evaluation.
- ``PQLEngine``: the penalized quasi-likelihood mean step.
- ``optimize``: variance-component optimisation.
- ``predict``, ``set_seed``: the predictive simulator and its random stream.
"""

from .covariance import build_covariance, random_effect_loadings, standardize_phylo_cov
from .likelihood import (
    binary_evaluate,
    binary_inverse_logdet,
    binary_ll,
    fit_gaussian_reml,
    gaussian_evaluate,
    gaussian_ll,
    gaussian_ll_calc,
    gaussian_reml_evaluate,
)
from .optimizer import optimize
from .pql import MeanStepResult, PQLEngine
from .results import (
    PENALTY_VALUE,
    BinaryPGLMMResult,
    CorPhyloBootstrap,
    CorPhyloResult,
    Evaluation,
    GaussianLikelihood,
    GaussianPGLMMResult,
    LogLikelihood,
    OptimizationResult,
    PCDExpectation,
    PCDResult,
    Penalty,
    PQLStatus,
    objective_value,
)
from .simulation import get_rng, predict, predictive_check, set_seed, simulate_binary_response, simulate_gaussian_response
from .structure import RandomEffectStructure, nested_block, random_effect_block

__all__ = [
    # Covariance
    "build_covariance",
    "random_effect_loadings",
    "standardize_phylo_cov",
    "RandomEffectStructure",
    "random_effect_block",
    "nested_block",
    # Likelihood
    "gaussian_evaluate",
    "gaussian_ll",
    "gaussian_ll_calc",
    "binary_evaluate",
    "binary_ll",
    "binary_inverse_logdet",
    "gaussian_reml_evaluate",
    "fit_gaussian_reml",
    # Iteration
    "PQLEngine",
    "MeanStepResult",
    "optimize",
    # Simulation
    "set_seed",
    "get_rng",
    "predict",
    "simulate_gaussian_response",
    "simulate_binary_response",
    "predictive_check",
    # Results
    "PENALTY_VALUE",
    "Evaluation",
    "LogLikelihood",
    "Penalty",
    "objective_value",
    "PQLStatus",
    "OptimizationResult",
    "GaussianLikelihood",
    "GaussianPGLMMResult",
    "BinaryPGLMMResult",
    "CorPhyloResult",
    "CorPhyloBootstrap",
    "PCDExpectation",
    "PCDResult",
]
