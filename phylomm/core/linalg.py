"""Dense linear-algebra primitives shared by every estimator.

All solves and log-determinants go through a Cholesky factor; nothing in
the package forms an explicit inverse of a covariance matrix.
"""

from typing import Tuple

import numpy as np
import scipy.linalg
from scipy.special import expit

from ..exceptions import SingularCovarianceError

# Relative size of a negative eigenvalue still treated as rounding noise
PSD_EIGEN_TOL = 1e-10


def cholesky_factor(A: np.ndarray) -> Tuple[np.ndarray, bool]:
    """Cholesky-factorise a symmetric positive-definite matrix.

    Args:
        A: (k, k) symmetric matrix.

    Returns:
        The ``(c, lower)`` pair expected by ``scipy.linalg.cho_solve``.

    Raises:
        SingularCovarianceError: If *A* has non-finite entries or is not
            positive definite.
    """
    if not np.all(np.isfinite(A)):
        raise SingularCovarianceError("matrix contains non-finite entries")
    try:
        return scipy.linalg.cho_factor(A, lower=True, check_finite=False)
    except np.linalg.LinAlgError as e:
        raise SingularCovarianceError(f"matrix is not positive definite: {e}") from e


def cho_solve(factor: Tuple[np.ndarray, bool], b: np.ndarray) -> np.ndarray:
    """Solve ``A x = b`` given the Cholesky factor of ``A``."""
    return scipy.linalg.cho_solve(factor, b, check_finite=False)


def logdet_from_cholesky(factor: Tuple[np.ndarray, bool]) -> float:
    """log|A| from its Cholesky factor."""
    return float(2.0 * np.sum(np.log(np.diag(factor[0]))))


def spd_logdet(A: np.ndarray) -> float:
    """log|A| for a symmetric positive-definite matrix.

    Raises:
        SingularCovarianceError: If *A* is not positive definite.
    """
    return logdet_from_cholesky(cholesky_factor(A))


def reciprocal_condition(A: np.ndarray) -> float:
    """Reciprocal 2-norm condition number of *A*.

    Returns ``0.0`` for matrices with non-finite entries or a zero largest
    singular value, so callers can compare against a threshold without
    special cases.
    """
    A = np.atleast_2d(A)
    if A.size == 0 or not np.all(np.isfinite(A)):
        return 0.0
    s = np.linalg.svd(A, compute_uv=False)
    if s[0] <= 0.0:
        return 0.0
    return float(s[-1] / s[0])


def logistic(eta: np.ndarray) -> np.ndarray:
    """Inverse logit, stable for large ``|eta|``."""
    return expit(eta)


def psd_sqrt(V: np.ndarray) -> np.ndarray:
    """Return ``L`` with ``L @ L.T == V`` for a positive semi-definite *V*.

    Uses the Cholesky factor when *V* is positive definite; otherwise falls
    back to an eigen-decomposition, clipping eigenvalues that are negative
    only by rounding.

    Raises:
        SingularCovarianceError: If *V* is not symmetric positive
            semi-definite.
    """
    V = np.asarray(V, dtype=np.float64)
    if not np.all(np.isfinite(V)):
        raise SingularCovarianceError("covariance contains non-finite entries")
    if not np.allclose(V, V.T, rtol=1e-10, atol=1e-12):
        raise SingularCovarianceError("covariance is not symmetric")
    try:
        return np.linalg.cholesky(V)
    except np.linalg.LinAlgError:
        pass

    evals, evecs = np.linalg.eigh(V)
    scale = max(float(np.max(np.abs(evals))), 1.0)
    if evals[0] < -PSD_EIGEN_TOL * scale:
        raise SingularCovarianceError(f"covariance is not positive semi-definite (smallest eigenvalue {evals[0]:.3g})")
    evals = np.clip(evals, 0.0, None)
    return evecs * np.sqrt(evals)
