"""
Likelihood Evaluator for Gaussian and binary phylogenetic mixed models.

Every objective is a negative log-likelihood up to additive constants, so
lower is better. Evaluators return an ``Evaluation``: a ``LogLikelihood`` on
success, or a ``Penalty`` when the covariance cannot be factorised at the
proposed variance components. They never raise for numerical failures.

Gaussian models profile the residual variance out of the objective:

    REML:  s2 = H'V^-1 H / (n - p)
           LL = 0.5 [(n-p) log s2 + log|V| + (n-p) + log|X'V^-1 X / s2|]
    ML:    s2 = H'V^-1 H / n
           LL = 0.5 [n log s2 + log|V| + n]

with ``V = I + C(par)``. Binary models use the PQL working variance,
``V = diag(1 / (mu (1 - mu))) + C(par)``, and

    LL = 0.5 [log|V| + H'V^-1 H (+ log|X'V^-1 X| under REML)].
"""

from typing import Tuple

import numpy as np

from ..exceptions import SingularCovarianceError
from .covariance import build_covariance
from .linalg import cho_solve, cholesky_factor, logdet_from_cholesky, spd_logdet
from .results import GaussianLikelihood, LogLikelihood, Penalty, objective_value

# Profiled residual variance below this share of the mean squared response is zero
_S2_REL_TOL = 1e-20

__all__ = [
    "gaussian_evaluate",
    "gaussian_ll",
    "gaussian_ll_calc",
    "binary_evaluate",
    "binary_ll",
    "binary_inverse_logdet",
    "gaussian_reml_evaluate",
    "fit_gaussian_reml",
]


def _gls(factor, X: np.ndarray, Y: np.ndarray):
    """GLS coefficients and ``X'V^-1 X`` given the Cholesky factor of V."""
    iVX = cho_solve(factor, X)
    XtiVX = X.T @ iVX
    xfactor = cholesky_factor(XtiVX)
    B = cho_solve(xfactor, iVX.T @ Y)
    return B, XtiVX, xfactor


# =============================================================================
# Gaussian
# =============================================================================


def gaussian_ll_calc(par, X, Y, Zt, St, nested, reml: bool = True) -> GaussianLikelihood:
    """Full Gaussian likelihood evaluation with ancillary quantities.

    Args:
        par: Random-effect standard deviations relative to the residual sd.
        X: (n, p) fixed-effect design.
        Y: Length-n continuous response.
        Zt, St, nested: Random-effect structure.
        reml: Restricted (``True``) or full maximum likelihood.

    Returns:
        GaussianLikelihood with the objective and the GLS solution.

    Raises:
        SingularCovarianceError: If ``V`` or ``X'V^-1 X`` is not positive
            definite, or the residual variance is zero.
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64).ravel()
    n, p = X.shape

    V = np.eye(n) + build_covariance(par, Zt, St, nested, n=n).toarray()
    factor = cholesky_factor(V)
    logdetV = logdet_from_cholesky(factor)

    B, XtiVX, xfactor = _gls(factor, X, Y)
    H = Y - X @ B
    quad = float(H @ cho_solve(factor, H))

    dof = n - p if reml else n
    s2 = quad / dof
    if not s2 > _S2_REL_TOL * float(Y @ Y) / dof:
        raise SingularCovarianceError("residual variance is zero")

    if reml:
        reml_correction = 0.5 * (logdet_from_cholesky(xfactor) - p * np.log(s2))
        LL = 0.5 * (dof * np.log(s2) + logdetV + dof) + reml_correction
    else:
        reml_correction = 0.0
        LL = 0.5 * (dof * np.log(s2) + logdetV + dof)

    return GaussianLikelihood(
        LL=float(LL),
        B=B,
        H=H,
        logdetV=logdetV,
        s2=s2,
        reml_correction=float(reml_correction),
        XtiVX=XtiVX,
        V=V,
    )


def gaussian_evaluate(par, X, Y, Zt, St, nested, reml: bool = True):
    """Gaussian objective as an ``Evaluation``."""
    try:
        LL = gaussian_ll_calc(par, X, Y, Zt, St, nested, reml).LL
    except SingularCovarianceError as e:
        return Penalty(str(e))
    if not np.isfinite(LL):
        return Penalty("non-finite log-likelihood")
    return LogLikelihood(LL)


def gaussian_ll(par, X, Y, Zt, St, nested, reml: bool = True) -> float:
    """Scalar Gaussian objective handed to the optimizer."""
    return objective_value(gaussian_evaluate(par, X, Y, Zt, St, nested, reml))


# =============================================================================
# Binary (PQL working model)
# =============================================================================


def binary_inverse_logdet(par, mu, Zt, St, nested) -> Tuple[Tuple[np.ndarray, bool], float]:
    """Cholesky factor and log-determinant of the binary working covariance.

    Returns:
        ``(factor, logdetV)`` where *factor* solves against
        ``V = diag(1 / (mu (1 - mu))) + C(par)``.

    Raises:
        SingularCovarianceError: If ``V`` is not positive definite.
    """
    V = build_covariance(par, Zt, St, nested, mu=mu).toarray()
    factor = cholesky_factor(V)
    return factor, logdet_from_cholesky(factor)


def binary_evaluate(par, H, X, Zt, St, mu, nested, reml: bool = True):
    """Binary working-model objective as an ``Evaluation``.

    Args:
        par: Random-effect standard deviations.
        H: Working residuals ``Z - X B`` from the current PQL iterate.
        X: (n, p) fixed-effect design.
        Zt, St, nested: Random-effect structure.
        mu: Current working mean.
        reml: Add ``log|X'V^-1 X|`` when ``True``.
    """
    H = np.asarray(H, dtype=np.float64).ravel()
    X = np.asarray(X, dtype=np.float64)
    try:
        factor, logdetV = binary_inverse_logdet(par, mu, Zt, St, nested)
        LL = 0.5 * (logdetV + float(H @ cho_solve(factor, H)))
        if reml:
            LL += 0.5 * spd_logdet(X.T @ cho_solve(factor, X))
    except SingularCovarianceError as e:
        return Penalty(str(e))
    if not np.isfinite(LL):
        return Penalty("non-finite log-likelihood")
    return LogLikelihood(float(LL))


def binary_ll(par, H, X, Zt, St, mu, nested, reml: bool = True) -> float:
    """Scalar binary objective handed to the optimizer."""
    return objective_value(binary_evaluate(par, H, X, Zt, St, mu, nested, reml))


# =============================================================================
# Single-phylogeny REML (binary_pglmm)
# =============================================================================


def gaussian_reml_evaluate(par, inv_w, H, vphy, X):
    """REML objective for one phylogenetic variance ``s2 = |par[0]|``.

    ``V = invW + s2 * Vphy`` and
    ``LL = log|V| + H'V^-1 H + log|X'V^-1 X|``.
    """
    s2 = abs(float(np.ravel(par)[0]))
    inv_w = np.asarray(inv_w, dtype=np.float64)
    if inv_w.ndim == 1:
        inv_w = np.diag(inv_w)
    H = np.asarray(H, dtype=np.float64).ravel()
    X = np.asarray(X, dtype=np.float64)

    V = inv_w + s2 * np.asarray(vphy, dtype=np.float64)
    try:
        factor = cholesky_factor(V)
        LL = logdet_from_cholesky(factor) + float(H @ cho_solve(factor, H)) + spd_logdet(X.T @ cho_solve(factor, X))
    except SingularCovarianceError as e:
        return Penalty(str(e))
    if not np.isfinite(LL):
        return Penalty("non-finite log-likelihood")
    return LogLikelihood(float(LL))


def fit_gaussian_reml(par, inv_w, H, vphy, X) -> float:
    """Scalar single-phylogeny REML objective; ``1e10`` at singular points."""
    return objective_value(gaussian_reml_evaluate(par, inv_w, H, vphy, X))
