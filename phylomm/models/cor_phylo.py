"""
Multivariate Correlation Solver (cor_phylo).

Estimates the correlation among k traits measured on n species while
accounting for shared ancestry, per-trait phylogenetic signal and known
measurement error. Each trait follows an Ornstein-Uhlenbeck-like process
with signal parameter ``d_i``; the covariance between trait i on species a
and trait j on species b is

    R_ij * d_i^tau_ab * d_j^tau_ba * (1 - (d_i d_j)^Vphy_ab) / (1 - d_i d_j)

with ``tau_ab = Vphy_bb - Vphy_ab``. Fixed effects (an intercept plus
optional trait-specific covariates ``U``) are profiled out by GLS, and the
correlation parameters and ``d`` are found by minimising the (restricted)
negative log-likelihood.

All estimation happens on standardized traits and covariates; coefficients
are transformed back to the original scale at the end.
"""

import warnings
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.linalg
from scipy.special import expit

from ..core.covariance import standardize_phylo_cov
from ..core.linalg import cho_solve, cholesky_factor, logdet_from_cholesky, reciprocal_condition
from ..core.optimizer import optimize
from ..core.results import CorPhyloBootstrap, CorPhyloResult, LogLikelihood, Penalty
from ..core.simulation import predict
from ..exceptions import DimensionMismatchError, InvalidParameterError, NonConvergenceWarning, SingularCovarianceError
from ..progress import make_reporter
from ..utils.validators import _as_float_matrix, _validate_iteration_settings, _validate_square

__all__ = ["cor_phylo"]

RCOND_TOL = 1e-10
# |logit(d)| above this, or raw d above it, is treated as infeasible
D_LIMIT = 10.0


def _column_stats(A: np.ndarray, what: str, names: Sequence[str]):
    mean = A.mean(axis=0)
    sd = A.std(axis=0, ddof=1)
    bad = [name for name, s in zip(names, sd) if not s > 0]
    if bad:
        raise InvalidParameterError(f"{what} with zero variance: {', '.join(bad)}")
    return mean, sd


class _CorPhyloProblem:
    """Standardized data and objective for one cor_phylo fit."""

    def __init__(self, Xs: np.ndarray, SeMs: np.ndarray, Us: List[Optional[np.ndarray]], Vphy: np.ndarray, reml: bool, constrain_d: bool):
        self.n, self.k = Xs.shape
        self.Vphy = Vphy
        self.reml = reml
        self.constrain_d = constrain_d

        # Trait-major stacking: all species for trait 1, then trait 2, ...
        blocks = [np.ones((self.n, 1)) if U is None else np.column_stack([np.ones(self.n), U]) for U in Us]
        self.UU = scipy.linalg.block_diag(*blocks)
        self.XX = Xs.T.ravel()
        self.MM = (SeMs**2).T.ravel()
        self.tau = np.outer(np.ones(self.n), np.diag(Vphy)) - Vphy

        # Lower-triangle positions in column-major order
        cols, rows = np.triu_indices(self.k)
        self.tri_rows, self.tri_cols = rows, cols
        self.n_L = len(rows)

    # -- parameters ------------------------------------------------------------

    def pack(self, L: np.ndarray, d: np.ndarray) -> np.ndarray:
        d = np.asarray(d, dtype=np.float64)
        d_par = np.log(d / (1.0 - d)) if self.constrain_d else d
        return np.concatenate([L[self.tri_rows, self.tri_cols], d_par])

    def unpack(self, par: np.ndarray):
        """Return ``(R, d)`` or a ``Penalty`` for out-of-range ``d``."""
        L = np.zeros((self.k, self.k))
        L[self.tri_rows, self.tri_cols] = par[: self.n_L]
        d_par = par[self.n_L :]
        if self.constrain_d:
            if np.any(np.abs(d_par) > D_LIMIT):
                return Penalty("logit(d) outside [-10, 10]")
            d = expit(d_par)
        else:
            if np.any(d_par > D_LIMIT):
                return Penalty("d above 10")
            d = d_par
        return L @ L.T, d

    # -- covariance --------------------------------------------------------------

    def covariance(self, R: np.ndarray, d: np.ndarray) -> np.ndarray:
        n, k = self.n, self.k
        C = np.zeros((n * k, n * k))
        with np.errstate(all="ignore"):
            d_tau = [d[i] ** self.tau for i in range(k)]
            for i in range(k):
                for j in range(k):
                    dd = d[i] * d[j]
                    Cd = d_tau[i] * d_tau[j].T * (1.0 - dd**self.Vphy) / (1.0 - dd)
                    C[i * n : (i + 1) * n, j * n : (j + 1) * n] = R[i, j] * Cd
        return C + np.diag(self.MM)

    # -- objective ---------------------------------------------------------------

    def _solve(self, V: np.ndarray):
        factor = cholesky_factor(V)
        iVU = cho_solve(factor, self.UU)
        denom = self.UU.T @ iVU
        return factor, iVU, denom

    def evaluate(self, par: np.ndarray):
        unpacked = self.unpack(par)
        if isinstance(unpacked, Penalty):
            return unpacked
        R, d = unpacked

        V = self.covariance(R, d)
        if not np.all(np.isfinite(V)) or reciprocal_condition(V) < RCOND_TOL:
            return Penalty("combined covariance is singular")
        try:
            factor, iVU, denom = self._solve(V)
            if reciprocal_condition(denom) < RCOND_TOL:
                return Penalty("U'V^-1U is singular")
            dfactor = cholesky_factor(denom)
            B = cho_solve(dfactor, iVU.T @ self.XX)
            H = self.XX - self.UU @ B
            LL = 0.5 * (logdet_from_cholesky(factor) + float(H @ cho_solve(factor, H)))
            if self.reml:
                LL += 0.5 * logdet_from_cholesky(dfactor)
        except SingularCovarianceError as e:
            return Penalty(str(e))
        if not np.isfinite(LL):
            return Penalty("non-finite log-likelihood")
        return LogLikelihood(float(LL))

    def gls(self, par: np.ndarray):
        """GLS solution at *par*; fatal if the covariance cannot be factorised."""
        unpacked = self.unpack(par)
        if isinstance(unpacked, Penalty):
            raise SingularCovarianceError(f"final parameters are infeasible: {unpacked.reason}")
        R, d = unpacked
        V = self.covariance(R, d)
        factor, iVU, denom = self._solve(V)
        dfactor = cholesky_factor(denom)
        B = cho_solve(dfactor, iVU.T @ self.XX)
        B_cov = cho_solve(dfactor, np.eye(denom.shape[0]))
        return R, d, V, B, B_cov


def _as_covariate(U, n: int, trait: str):
    """Return ``(array, column names)`` for one trait's covariates, or ``(None, [])``."""
    if U is None:
        return None, []
    names = [str(c) for c in U.columns] if isinstance(U, pd.DataFrame) else None
    U = _as_float_matrix(U, f"U[{trait}]")
    if U.shape[0] != n:
        raise DimensionMismatchError(f"U[{trait}] has {U.shape[0]} rows, expected n={n}")
    if U.shape[1] == 0:
        return None, []
    if names is None:
        names = [f"U{j + 1}" for j in range(U.shape[1])]
    return U, names


def cor_phylo(
    X,
    U: Optional[Sequence] = None,
    SeM=None,
    Vphy=None,
    reml: bool = True,
    constrain_d: bool = False,
    max_iter: int = 1000,
    method: str = "Nelder-Mead",
    reltol: float = 1e-6,
    boot: int = 0,
    verbose: bool = False,
    trait_names: Optional[Sequence[str]] = None,
    progress_callback=None,
) -> CorPhyloResult:
    """Phylogenetic correlations among traits with measurement error.

    Args:
        X: (n, k) trait values, one column per trait. A DataFrame supplies
            the trait names.
        U: Optional list of k covariate matrices (or ``None`` entries), one
            per trait, each with n rows.
        SeM: Optional (n, k) standard errors of the trait values.
        Vphy: (n, n) phylogenetic covariance among species.
        reml: Restricted (``True``) or full maximum likelihood.
        constrain_d: Optimise ``d`` on the logit scale, keeping it in (0, 1).
        max_iter: Maximum optimizer iterations.
        method: Optimizer method name.
        reltol: Relative optimizer tolerance.
        boot: Number of parametric bootstrap replicates (0 to skip).
        verbose: Print optimizer traces.
        trait_names: Labels for the traits.
        progress_callback: ``(current, total)`` callback for the bootstrap.
            ``None`` prints progress when *verbose* is set, ``False``
            disables it.

    Returns:
        CorPhyloResult.

    Raises:
        DimensionMismatchError: If the inputs disagree in shape.
        InvalidParameterError: For missing values or zero-variance columns.
        SingularCovarianceError: If the combined covariance cannot be
            factorised at the optimum.
    """
    if trait_names is None and isinstance(X, pd.DataFrame):
        trait_names = [str(c) for c in X.columns]
    X = _as_float_matrix(X, "X")
    n, k = X.shape
    if k < 2:
        raise DimensionMismatchError(f"cor_phylo needs at least two traits, got {k}")
    if not np.all(np.isfinite(X)):
        raise InvalidParameterError("X contains missing or non-finite values")
    trait_names = [f"X{i + 1}" for i in range(k)] if trait_names is None else list(trait_names)
    if len(trait_names) != k:
        raise DimensionMismatchError(f"{len(trait_names)} trait names for {k} traits")

    if Vphy is None:
        raise InvalidParameterError("Vphy is required")
    Vphy_in = Vphy
    Vphy = np.asarray(Vphy, dtype=np.float64)
    _validate_square(Vphy, "Vphy", n).raise_if_invalid()

    SeM_in = SeM
    SeM = np.zeros((n, k)) if SeM is None else _as_float_matrix(SeM, "SeM")
    if SeM.shape != (n, k):
        raise DimensionMismatchError(f"SeM has shape {SeM.shape}, expected ({n}, {k})")

    U_in = U
    if U is None:
        U = [None] * k
    if len(U) != k:
        raise DimensionMismatchError(f"U has {len(U)} entries, expected one per trait ({k})")

    _validate_iteration_settings(max_iter=max_iter, reltol=reltol, boot=boot)

    # Standardize
    Vphy = standardize_phylo_cov(Vphy)
    mx, sx = _column_stats(X, "traits", trait_names)
    Xs = (X - mx) / sx
    SeMs = SeM / sx

    Us, u_means, u_sds, B_names = [], [], [], []
    for i, trait in enumerate(trait_names):
        Ui, names = _as_covariate(U[i], n, trait)
        B_names.append(f"{trait}.intercept")
        if Ui is None:
            Us.append(None)
            u_means.append(np.zeros(0))
            u_sds.append(np.zeros(0))
            continue
        mu_u, su_u = _column_stats(Ui, f"covariates of {trait}", names)
        Us.append((Ui - mu_u) / su_u)
        u_means.append(mu_u)
        u_sds.append(su_u)
        B_names.extend(f"{trait}.{name}" for name in names)

    problem = _CorPhyloProblem(Xs, SeMs, Us, Vphy, reml, constrain_d)

    # Starting values from per-trait OLS residuals
    eps = np.empty((n, k))
    for i in range(k):
        design = np.ones((n, 1)) if Us[i] is None else np.column_stack([np.ones(n), Us[i]])
        coef = np.linalg.lstsq(design, Xs[:, i], rcond=None)[0]
        eps[:, i] = Xs[:, i] - design @ coef
    cov_eps = np.cov(eps, rowvar=False)
    try:
        L0 = np.linalg.cholesky(cov_eps)
    except np.linalg.LinAlgError:
        L0 = np.diag(np.sqrt(np.clip(np.diag(cov_eps), 1e-8, None)))
    par0 = problem.pack(L0, np.full(k, 0.5))

    opt = optimize(problem.evaluate, par0, method=method, maxit=max_iter, reltol=reltol, verbose=verbose)
    R, d, V, B_std, B_cov_std = problem.gls(opt.par)
    LL = opt.value

    D = np.diag(1.0 / np.sqrt(np.diag(R)))
    corrs = D @ R @ D

    # Back-transform coefficients to the original scale
    n_coef = len(B_std)
    J = np.zeros((n_coef, n_coef))
    offset = np.zeros(n_coef)
    idx = 0
    for i in range(k):
        m_i = len(u_means[i])
        J[idx, idx] = sx[i]
        offset[idx] = mx[i]
        for j in range(m_i):
            J[idx + 1 + j, idx + 1 + j] = sx[i] / u_sds[i][j]
            J[idx, idx + 1 + j] = -sx[i] * u_means[i][j] / u_sds[i][j]
        idx += 1 + m_i
    B = offset + J @ B_std
    B_cov = J @ B_cov_std @ J.T

    logLik = -LL - 0.5 * n * k * np.log(2.0 * np.pi)
    n_par = len(opt.par) + n_coef
    AIC = -2.0 * logLik + 2.0 * n_par
    BIC = -2.0 * logLik + n_par * np.log(n / np.pi)

    if verbose:
        print(f"cor_phylo: logLik={logLik:.4f} convcode={opt.convcode} evaluations={opt.n_evals}")

    result = CorPhyloResult(
        corrs=corrs,
        d=np.asarray(d, dtype=np.float64),
        B=B,
        B_se=np.sqrt(np.clip(np.diag(B_cov), 0.0, None)),
        B_cov=B_cov,
        B_names=B_names,
        logLik=float(logLik),
        AIC=float(AIC),
        BIC=float(BIC),
        convcode=opt.convcode,
        niter=opt.n_evals,
        reml=reml,
        constrain_d=constrain_d,
        trait_names=trait_names,
        par=opt.par,
        V=V,
    )

    if boot > 0:
        result.bootstrap = _bootstrap(
            result,
            problem,
            B_std,
            mx,
            sx,
            refit_kwargs=dict(
                U=U_in,
                SeM=SeM_in,
                Vphy=Vphy_in,
                reml=reml,
                constrain_d=constrain_d,
                max_iter=max_iter,
                method=method,
                reltol=reltol,
                trait_names=trait_names,
            ),
            boot=int(boot),
            progress_callback=progress_callback,
            verbose=verbose,
        )
    return result


def _bootstrap(result, problem, B_std, mx, sx, refit_kwargs, boot, progress_callback=None, verbose: bool = False) -> CorPhyloBootstrap:
    """Parametric bootstrap: simulate traits from the fit and refit each replicate."""
    n, k = problem.n, problem.k
    mean_std = problem.UU @ B_std
    draws = mean_std + predict(n * k, 1.0, boot, result.V)
    reporter = make_reporter(boot, progress_callback, verbose)

    corrs, ds, Bs = [], [], []
    n_failed = 0
    for r in range(boot):
        X_sim = draws[r].reshape(k, n).T * sx + mx
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", NonConvergenceWarning)
                fit = cor_phylo(X_sim, boot=0, **refit_kwargs)
        except (SingularCovarianceError, InvalidParameterError):
            n_failed += 1
        else:
            if fit.convcode != 0:
                n_failed += 1
            else:
                corrs.append(fit.corrs)
                ds.append(fit.d)
                Bs.append(fit.B)
        if reporter is not None:
            reporter.advance()
    if reporter is not None:
        reporter.finish()

    n_coef = len(result.B)
    return CorPhyloBootstrap(
        corrs=np.array(corrs).reshape(-1, k, k),
        d=np.array(ds).reshape(-1, k),
        B=np.array(Bs).reshape(-1, n_coef),
        n_failed=n_failed,
    )
