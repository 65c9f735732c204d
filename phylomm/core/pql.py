"""
PQL Iteration Engine for binary phylogenetic mixed models.

Penalized quasi-likelihood linearises the logit model around the current
mean ``mu``:

    Z = X B + b + (y - mu) / (mu (1 - mu))

and treats ``Z`` as Gaussian with covariance
``V = diag(1 / (mu (1 - mu))) + C``. The mean step alternates a GLS update
of ``B``, the BLUP ``b = C V^-1 (Z - X B)`` and ``mu = logistic(X B + b)``
until the fixed effects stop moving. The variance components are updated
by the caller between mean steps.

One engine serves both diagnostic modes: ``retain_history=True`` keeps
every iterate, ``False`` only the current and previous ones. Estimates are
identical either way.
"""

import warnings
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..exceptions import RankDeficiencyWarning, SingularCovarianceError
from ..utils.validators import _validate_iteration_settings
from .linalg import cho_solve, cholesky_factor, logistic, reciprocal_condition
from .results import PQLStatus

__all__ = ["PQLEngine", "MeanStepResult", "converge_criterion"]

# Starting value of the "previous" iterate so that the first pass always runs
_FAR_AWAY = 1e6


def converge_criterion(new: np.ndarray, old: np.ndarray, scale: int = 1) -> float:
    """Mean squared change ``sum((new - old)^2) / scale``."""
    diff = np.asarray(new, dtype=np.float64) - np.asarray(old, dtype=np.float64)
    return float(np.sum(diff**2) / scale)


@dataclass
class MeanStepResult:
    """Outcome of one PQL mean step.

    Attributes:
        B: Fixed-effect estimates.
        b: Random-effect predictions on the link scale.
        mu: Fitted probabilities.
        iterations: Number of GLS updates performed.
        status: CONVERGED, MAX_ITER_EXCEEDED or RANK_DEFICIENT.
        rcondflag: Condition-number failures seen during this step.
        history: Every ``B`` iterate when history is retained, else ``None``.
    """

    B: np.ndarray
    b: np.ndarray
    mu: np.ndarray
    iterations: int
    status: PQLStatus
    rcondflag: int
    history: Optional[List[np.ndarray]] = None


class PQLEngine:
    """Fixed-point iteration for the PQL mean model.

    Args:
        X: (n, p) fixed-effect design.
        y: Length-n 0/1 response.
        tol_pql: Convergence tolerance on the root-mean-square change in ``B``.
        maxit_pql: Maximum number of GLS updates per mean step.
        retain_history: Keep every ``B`` iterate for diagnostics.
        rcond_tol: Reciprocal condition threshold for ``V`` and ``X'V^-1 X``.
        verbose: Print each iterate.
    """

    def __init__(
        self,
        X: np.ndarray,
        y: np.ndarray,
        tol_pql: float = 1e-6,
        maxit_pql: int = 200,
        retain_history: bool = False,
        rcond_tol: float = 1e-10,
        verbose: bool = False,
    ):
        _validate_iteration_settings(tol_pql=tol_pql, maxit_pql=maxit_pql, rcond_tol=rcond_tol)
        self.X = np.asarray(X, dtype=np.float64)
        self.y = np.asarray(y, dtype=np.float64).ravel()
        self.n, self.p = self.X.shape
        self.tol_pql = float(tol_pql)
        self.maxit_pql = int(maxit_pql)
        self.retain_history = retain_history
        self.rcond_tol = float(rcond_tol)
        self.verbose = verbose
        self.status = PQLStatus.INITIALIZING

    def working_response(self, B: np.ndarray, b: np.ndarray, mu: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return the working response ``Z`` and residual ``H = Z - X B``."""
        eta_fixed = self.X @ B
        Z = eta_fixed + b + (self.y - mu) / (mu * (1.0 - mu))
        return Z, Z - eta_fixed

    def _working_covariance(self, mu: np.ndarray, C: np.ndarray) -> np.ndarray:
        return np.diag(1.0 / (mu * (1.0 - mu))) + C

    def _is_ill_conditioned(self, A: np.ndarray) -> bool:
        return reciprocal_condition(A) < self.rcond_tol

    def converged(self, B: np.ndarray, B_old: np.ndarray) -> bool:
        """Stopping rule ``sum((B - B_old)^2) / p <= tol_pql^2``."""
        return converge_criterion(B, B_old, self.p) <= self.tol_pql**2

    def mean_step(self, B, b, mu, C, B_init) -> MeanStepResult:
        """Iterate ``B``, ``b`` and ``mu`` to convergence for a fixed ``C``.

        When ``V`` is non-finite or ill-conditioned the iterate is restarted
        from ``B = 0 * B_init + 0.001`` with ``b = 0`` and the event is
        counted in ``rcondflag``. An ill-conditioned ``X'V^-1 X`` ends the
        step in RANK_DEFICIENT with the minimum-norm least-squares update.

        Args:
            B: Current fixed effects.
            b: Current random-effect predictions.
            mu: Current fitted probabilities.
            C: (n, n) random-effect covariance at the current variance components.
            B_init: Starting fixed effects, used for restarts.

        Returns:
            MeanStepResult.
        """
        X = self.X
        C = np.asarray(C.toarray() if hasattr(C, "toarray") else C, dtype=np.float64)
        B = np.asarray(B, dtype=np.float64).copy()
        b = np.asarray(b, dtype=np.float64).copy()
        mu = np.asarray(mu, dtype=np.float64).copy()
        B_init = np.asarray(B_init, dtype=np.float64)

        self.status = PQLStatus.ITERATING
        history = [B.copy()] if self.retain_history else None
        rcondflag = 0
        iteration = 0
        est_B = B.copy()
        oldest_B = np.full(self.p, _FAR_AWAY)

        while not self.converged(est_B, oldest_B) and iteration < self.maxit_pql:
            iteration += 1
            oldest_B = est_B

            V = self._working_covariance(mu, C)
            if not np.all(np.isfinite(V)) or self._is_ill_conditioned(V):
                rcondflag += 1
                B = 0.0 * B_init + 0.001
                b = np.zeros(self.n)
                mu = logistic(X @ B)
                oldest_B = np.full(self.p, _FAR_AWAY)
                V = self._working_covariance(mu, C)

            Z, _ = self.working_response(B, b, mu)
            try:
                factor = cholesky_factor(V)
            except SingularCovarianceError:
                rcondflag += 1
                self.status = PQLStatus.RANK_DEFICIENT
                break

            iVX = cho_solve(factor, X)
            XtiVX = X.T @ iVX
            rhs = iVX.T @ Z
            if self._is_ill_conditioned(XtiVX):
                rcondflag += 1
                B = np.linalg.lstsq(XtiVX, rhs, rcond=None)[0]
                b = C @ cho_solve(factor, Z - X @ B)
                mu = logistic(X @ B + b)
                if history is not None:
                    history.append(B.copy())
                self.status = PQLStatus.RANK_DEFICIENT
                warnings.warn(
                    f"X'V^-1X is near singular (rcond < {self.rcond_tol:g}); returning the minimum-norm estimate",
                    RankDeficiencyWarning,
                    stacklevel=2,
                )
                break

            B = np.linalg.solve(XtiVX, rhs)
            b = C @ cho_solve(factor, Z - X @ B)
            mu = logistic(X @ B + b)
            est_B = B

            if history is not None:
                history.append(B.copy())
            if self.verbose:
                print(f"  PQL iteration {iteration}: B={np.array2string(B, precision=4)}")

        if self.status != PQLStatus.RANK_DEFICIENT:
            self.status = PQLStatus.CONVERGED if self.converged(est_B, oldest_B) else PQLStatus.MAX_ITER_EXCEEDED

        return MeanStepResult(
            B=B,
            b=b,
            mu=mu,
            iterations=iteration,
            status=self.status,
            rcondflag=rcondflag,
            history=history,
        )
