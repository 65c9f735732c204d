"""
Result containers for PhyloMM.

Objective evaluations are modelled as a tagged union: an evaluator returns
either a ``LogLikelihood`` or a ``Penalty``. Only ``objective_value`` turns
a ``Penalty`` into a number, and only the optimizer glue calls it, so a
penalty can never be reported as a fitted log-likelihood.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import norm

PENALTY_VALUE = 1e10


@dataclass(frozen=True)
class LogLikelihood:
    """A successfully evaluated objective (negative log-likelihood up to constants)."""

    value: float


@dataclass(frozen=True)
class Penalty:
    """An objective evaluation that failed at an infeasible or singular point.

    Attributes:
        reason: Short description of the failure.
    """

    reason: str


Evaluation = Union[LogLikelihood, Penalty]


def objective_value(evaluation: Evaluation) -> float:
    """Scalar the optimizer minimises for *evaluation*."""
    if isinstance(evaluation, Penalty):
        return PENALTY_VALUE
    return evaluation.value


class PQLStatus(Enum):
    """States of the PQL iteration engine."""

    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"
    RANK_DEFICIENT = "rank_deficient"


@dataclass
class OptimizationResult:
    """Outcome of a variance-component optimisation.

    Attributes:
        par: Best parameter vector found.
        value: Objective at *par*.
        convcode: 0 on success, 1 when the evaluation cap was hit, 10 for
            other optimizer failures.
        n_evals: Number of objective evaluations.
        n_penalties: How many evaluations returned a ``Penalty``.
        message: Optimizer status message.
    """

    par: np.ndarray
    value: float
    convcode: int
    n_evals: int
    n_penalties: int = 0
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.convcode == 0


def coefficient_table(B, B_se, names: Optional[List[str]] = None) -> pd.DataFrame:
    """Wald z-table for fixed effects.

    Args:
        B: Coefficient estimates.
        B_se: Standard errors.
        names: Row labels (defaults to ``B0, B1, ...``).

    Returns:
        DataFrame with columns ``Value``, ``Std.Error``, ``Zscore``, ``Pvalue``.
    """
    B = np.asarray(B, dtype=np.float64).ravel()
    B_se = np.asarray(B_se, dtype=np.float64).ravel()
    with np.errstate(divide="ignore", invalid="ignore"):
        z = B / B_se
    p = 2.0 * norm.sf(np.abs(z))
    if names is None:
        names = [f"B{i}" for i in range(len(B))]
    return pd.DataFrame({"Value": B, "Std.Error": B_se, "Zscore": z, "Pvalue": p}, index=list(names))


@dataclass
class GaussianLikelihood:
    """Ancillary quantities from a full Gaussian likelihood evaluation.

    Attributes:
        LL: Objective value (negative log-likelihood up to constants).
        B: GLS fixed-effect estimates, shape (p,).
        H: Residuals ``Y - X B``.
        logdetV: log|V| of the unscaled covariance ``I + C``.
        s2: Profiled residual variance.
        reml_correction: ``0.5 * log|X'V^-1 X / s2|`` (0 for ML).
        XtiVX: ``X'V^-1 X`` (unscaled).
        V: Unscaled covariance ``I + C``.
    """

    LL: float
    B: np.ndarray
    H: np.ndarray
    logdetV: float
    s2: float
    reml_correction: float
    XtiVX: np.ndarray
    V: np.ndarray


@dataclass
class GaussianPGLMMResult:
    """Fitted Gaussian phylogenetic mixed model."""

    B: np.ndarray
    B_se: np.ndarray
    B_cov: np.ndarray
    ss: np.ndarray  # random-effect sds (non-nested, nested) then residual sd
    s2r: np.ndarray
    s2n: np.ndarray
    s2resid: float
    LL: float
    logLik: float
    AIC: float
    BIC: float
    convcode: int
    niter: int
    reml: bool
    fitted: np.ndarray
    H: np.ndarray
    V: np.ndarray  # marginal covariance s2resid * (I + C)
    X: np.ndarray = field(repr=False, default=None)

    @property
    def B_zscore(self) -> np.ndarray:
        return self.B / self.B_se

    @property
    def B_pvalue(self) -> np.ndarray:
        return 2.0 * norm.sf(np.abs(self.B_zscore))

    @property
    def converged(self) -> bool:
        return self.convcode == 0

    def coef_table(self, names: Optional[List[str]] = None) -> pd.DataFrame:
        """Fixed-effect estimates with Wald z-tests."""
        return coefficient_table(self.B, self.B_se, names)


@dataclass
class BinaryPGLMMResult:
    """Fitted binary phylogenetic mixed model (PQL)."""

    B: np.ndarray
    B_se: np.ndarray
    B_cov: np.ndarray
    ss: np.ndarray
    s2r: np.ndarray
    s2n: np.ndarray
    LL: float
    convcode: int
    niter: int
    status: PQLStatus
    rcondflag: int
    reml: bool
    mu: np.ndarray
    b: np.ndarray
    H: np.ndarray
    C: np.ndarray  # random-effect covariance at the final variance components
    X: np.ndarray = field(repr=False, default=None)
    history: Optional[List[Dict[str, Any]]] = field(repr=False, default=None)
    s2_lrt_pvalue: Optional[float] = None

    @property
    def B_zscore(self) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            return self.B / self.B_se

    @property
    def B_pvalue(self) -> np.ndarray:
        return 2.0 * norm.sf(np.abs(self.B_zscore))

    @property
    def converged(self) -> bool:
        return self.status == PQLStatus.CONVERGED and self.convcode == 0

    def coef_table(self, names: Optional[List[str]] = None) -> pd.DataFrame:
        """Fixed-effect estimates with Wald z-tests."""
        return coefficient_table(self.B, self.B_se, names)


@dataclass
class CorPhyloBootstrap:
    """Parametric bootstrap replicates for ``cor_phylo``.

    Attributes:
        corrs: (n_ok, k, k) correlation matrices.
        d: (n_ok, k) phylogenetic-signal parameters.
        B: (n_ok, n_coef) coefficients.
        n_failed: Replicates whose refit raised or did not converge.
    """

    corrs: np.ndarray
    d: np.ndarray
    B: np.ndarray
    n_failed: int

    def confint(self, alpha: float = 0.05) -> Dict[str, np.ndarray]:
        """Percentile confidence intervals, each of shape (2, ...)."""
        q = [alpha / 2.0, 1.0 - alpha / 2.0]
        return {
            "corrs": np.quantile(self.corrs, q, axis=0),
            "d": np.quantile(self.d, q, axis=0),
            "B": np.quantile(self.B, q, axis=0),
        }


@dataclass
class CorPhyloResult:
    """Fitted multivariate phylogenetic correlation model."""

    corrs: np.ndarray
    d: np.ndarray
    B: np.ndarray
    B_se: np.ndarray
    B_cov: np.ndarray
    B_names: List[str]
    logLik: float
    AIC: float
    BIC: float
    convcode: int
    niter: int
    reml: bool
    constrain_d: bool
    trait_names: List[str]
    par: np.ndarray = field(repr=False, default=None)
    V: np.ndarray = field(repr=False, default=None)
    bootstrap: Optional[CorPhyloBootstrap] = None

    @property
    def converged(self) -> bool:
        return self.convcode == 0

    def coef_table(self) -> pd.DataFrame:
        """Coefficients on the original scale with Wald z-tests."""
        return coefficient_table(self.B, self.B_se, self.B_names)

    def corr_frame(self) -> pd.DataFrame:
        """Correlation matrix labelled by trait."""
        return pd.DataFrame(self.corrs, index=self.trait_names, columns=self.trait_names)


@dataclass
class PCDExpectation:
    """Null expectations used to scale PCD.

    Attributes:
        nsr: Community richness levels covered.
        psv_bar: Expected conditional PSV of a random community given
            another random community of each richness in *nsr*.
        psv_pool: PSV of the whole species pool.
        nsp_pool: Number of species in the pool.
    """

    nsr: np.ndarray
    psv_bar: np.ndarray
    psv_pool: float
    nsp_pool: int


@dataclass
class PCDResult:
    """Pairwise phylogenetic community dissimilarity.

    Attributes:
        PCD: Total dissimilarity (upper triangle filled).
        PCDc: Compositional component.
        PCDp: Phylogenetic component, ``PCD / PCDc``.
        psv_bar: Expected conditional PSV per richness level in *nsr*.
        psv_pool: PSV of the whole species pool.
        nsr: Richness levels the expectation covers.
    """

    PCD: pd.DataFrame
    PCDc: pd.DataFrame
    PCDp: pd.DataFrame
    psv_bar: np.ndarray
    psv_pool: float
    nsr: np.ndarray
