"""
Phylogenetic generalized linear mixed models.

Entry points:

- ``fit_gaussian_pglmm``: Gaussian response, REML or ML, variance
  components optimised directly on the profiled likelihood.
- ``fit_binary_pql``: binary response with any number of non-nested and
  nested random-effect terms, fitted by PQL with an outer optimisation of
  the variance components after each mean step.
- ``binary_pglmm``: binary response with a single phylogenetic random
  effect, fitted by PQL with a one-dimensional REML search.
"""

import warnings
from typing import Optional

import numpy as np
from scipy.stats import chi2
from sklearn.linear_model import LogisticRegression

from ..core.covariance import build_covariance, coerce_structure, standardize_phylo_cov
from ..core.likelihood import binary_evaluate, gaussian_evaluate, gaussian_ll_calc, gaussian_reml_evaluate
from ..core.linalg import cho_solve, cholesky_factor, logistic, reciprocal_condition, spd_logdet
from ..core.optimizer import optimize
from ..core.pql import PQLEngine, converge_criterion
from ..core.results import BinaryPGLMMResult, GaussianPGLMMResult, LogLikelihood, PQLStatus
from ..exceptions import DimensionMismatchError, InvalidParameterError, NonConvergenceWarning
from ..utils.validators import (
    _as_float_matrix,
    _validate_binary_response,
    _validate_declared_sizes,
    _validate_design,
    _validate_iteration_settings,
    _validate_random_structure,
    _validate_square,
)

__all__ = ["fit_gaussian_pglmm", "fit_binary_pql", "binary_pglmm"]

_FAR_AWAY = 1e6
_LOG_2PI = np.log(2.0 * np.pi)
# Search range of the standardized phylogenetic variance in binary_pglmm
_S2_BOUNDS = [(0.0, 10.0)]


def _prepare_inputs(X, Y, Zt, St, nested, par=None, n=None, p=None, q=None):
    """Convert and validate design, response and random-effect structure."""
    X = _as_float_matrix(X, "X")
    Y = np.asarray(Y, dtype=np.float64)
    if Y.ndim == 2 and Y.shape[1] == 1:
        Y = Y.ravel()
    _validate_design(X, Y).raise_if_invalid()

    Zt, St, nested = coerce_structure(Zt, St, nested)
    n_par = None if par is None else len(np.ravel(par))
    _validate_random_structure(Zt, St, nested, X.shape[0], n_par=n_par).raise_if_invalid()

    q_actual = (0 if St is None else St.shape[0]) + len(nested)
    _validate_declared_sizes((X.shape[0], X.shape[1], q_actual), (n, p, q), ("n", "p", "q")).raise_if_invalid()
    if q_actual == 0:
        raise InvalidParameterError("at least one random-effect term is required")
    return X, Y, Zt, St, nested


def _logistic_start(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Fixed-effect starting values from an (effectively unpenalised) logistic GLM."""
    model = LogisticRegression(C=1e6, fit_intercept=False, max_iter=1000)
    model.fit(X, y.astype(int))
    return model.coef_.ravel().astype(np.float64)


def _wald_covariance(XtiVX: np.ndarray, rank_deficient: bool) -> np.ndarray:
    if rank_deficient:
        return np.linalg.pinv(XtiVX)
    return cho_solve(cholesky_factor(XtiVX), np.eye(XtiVX.shape[0]))


def _standard_errors(B_cov: np.ndarray) -> np.ndarray:
    return np.sqrt(np.clip(np.diag(B_cov), 0.0, None))


def _reported_value(evaluation) -> float:
    """Objective at the final estimates, NaN when it could not be evaluated."""
    if isinstance(evaluation, LogLikelihood):
        return evaluation.value
    return float("nan")


# =============================================================================
# Gaussian
# =============================================================================


def fit_gaussian_pglmm(
    par,
    X,
    Y,
    Zt,
    St,
    nested,
    reml: bool = True,
    optimizer: str = "Nelder-Mead",
    maxit: int = 500,
    reltol: float = 1e-8,
    verbose: bool = False,
    n: Optional[int] = None,
    p: Optional[int] = None,
    q: Optional[int] = None,
) -> GaussianPGLMMResult:
    """Fit a Gaussian phylogenetic mixed model.

    Args:
        par: Starting random-effect standard deviations (relative to the
            residual sd), non-nested terms first.
        X: (n, p) fixed-effect design.
        Y: Length-n continuous response.
        Zt: (m, n) sparse random-effect loadings, or ``None``.
        St: (q_nn, m) sparse term indicators, or ``None``.
        nested: List of (n, n) nested-term matrices.
        reml: Restricted (``True``) or full maximum likelihood.
        optimizer: Optimizer method name.
        maxit: Maximum optimizer iterations.
        reltol: Relative optimizer tolerance.
        verbose: Print objective evaluations.
        n, p, q: Optional declared sizes, checked against the inputs.

    Returns:
        GaussianPGLMMResult.

    Raises:
        DimensionMismatchError: If the inputs disagree in shape.
        SingularCovarianceError: If the covariance at the optimum cannot be
            factorised.
    """
    X, Y, Zt, St, nested = _prepare_inputs(X, Y, Zt, St, nested, par=par, n=n, p=p, q=q)
    n_obs, n_coef = X.shape
    q_nn = 0 if St is None else St.shape[0]

    opt = optimize(
        lambda s: gaussian_evaluate(s, X, Y, Zt, St, nested, reml),
        np.asarray(par, dtype=np.float64),
        method=optimizer,
        maxit=maxit,
        reltol=reltol,
        verbose=verbose,
    )
    par_hat = np.abs(opt.par)
    lik = gaussian_ll_calc(par_hat, X, Y, Zt, St, nested, reml)

    s2resid = lik.s2
    sr, sn = par_hat[:q_nn], par_hat[q_nn:]
    B_cov = s2resid * _wald_covariance(lik.XtiVX, rank_deficient=False)

    if reml:
        logLik = -0.5 * (n_obs - n_coef) * _LOG_2PI + 0.5 * spd_logdet(X.T @ X) - lik.LL
    else:
        logLik = -0.5 * n_obs * _LOG_2PI - lik.LL
    k = n_coef + len(par_hat) + 1

    if verbose:
        print(f"Gaussian PGLMM: logLik={logLik:.4f} s2resid={s2resid:.4f} convcode={opt.convcode}")

    return GaussianPGLMMResult(
        B=lik.B,
        B_se=_standard_errors(B_cov),
        B_cov=B_cov,
        ss=np.sqrt(s2resid) * np.concatenate([sr, sn, [1.0]]),
        s2r=s2resid * sr**2,
        s2n=s2resid * sn**2,
        s2resid=s2resid,
        LL=lik.LL,
        logLik=float(logLik),
        AIC=float(-2.0 * logLik + 2.0 * k),
        BIC=float(-2.0 * logLik + k * (np.log(n_obs) - np.log(np.pi))),
        convcode=opt.convcode,
        niter=opt.n_evals,
        reml=reml,
        fitted=X @ lik.B,
        H=lik.H,
        V=s2resid * lik.V,
        X=X,
    )


# =============================================================================
# Binary, general random-effect structure
# =============================================================================


def fit_binary_pql(
    X,
    Y,
    Zt,
    St,
    nested,
    reml: bool = True,
    maxit: int = 500,
    reltol: float = 1e-8,
    tol_pql: float = 1e-6,
    maxit_pql: int = 200,
    optimizer: str = "Nelder-Mead",
    B_init=None,
    ss=None,
    verbose: bool = False,
    retain_history: bool = False,
    n: Optional[int] = None,
    p: Optional[int] = None,
    q: Optional[int] = None,
) -> BinaryPGLMMResult:
    """Fit a binary phylogenetic mixed model by penalized quasi-likelihood.

    Each outer iteration runs a PQL mean step at the current variance
    components, then re-optimises the variance components on the working
    model. Iteration stops when both the fixed effects and the variance
    components move less than *tol_pql*, or after *maxit_pql* outer
    iterations.

    Args:
        X: (n, p) fixed-effect design.
        Y: Length-n 0/1 response.
        Zt, St, nested: Random-effect structure.
        reml: Use the REML working objective.
        maxit: Maximum optimizer iterations per outer step.
        reltol: Relative optimizer tolerance.
        tol_pql: PQL convergence tolerance.
        maxit_pql: Maximum PQL iterations (outer, and per mean step).
        optimizer: Optimizer method name.
        B_init: Starting fixed effects; a logistic GLM fit by default.
        ss: Starting standard deviations; ``0.5`` for every term by default.
        verbose: Print iteration traces.
        retain_history: Keep per-iteration estimates on the result.
        n, p, q: Optional declared sizes, checked against the inputs.

    Returns:
        BinaryPGLMMResult. ``status`` is CONVERGED, MAX_ITER_EXCEEDED or
        RANK_DEFICIENT; ``rcondflag`` counts condition-number failures.
    """
    X, Y, Zt, St, nested = _prepare_inputs(X, Y, Zt, St, nested, par=ss, n=n, p=p, q=q)
    _validate_binary_response(Y)
    _validate_iteration_settings(maxit=maxit, reltol=reltol, tol_pql=tol_pql, maxit_pql=maxit_pql)
    n_obs, n_coef = X.shape
    q_nn = 0 if St is None else St.shape[0]
    q_total = q_nn + len(nested)

    B_init = _logistic_start(X, Y) if B_init is None else np.asarray(B_init, dtype=np.float64).ravel()
    if len(B_init) != n_coef:
        raise DimensionMismatchError(f"B_init has {len(B_init)} entries, expected p={n_coef}")
    ss = np.full(q_total, np.sqrt(0.25)) if ss is None else np.abs(np.asarray(ss, dtype=np.float64).ravel())

    engine = PQLEngine(X, Y, tol_pql=tol_pql, maxit_pql=maxit_pql, retain_history=retain_history, verbose=verbose)
    B = B_init.copy()
    b = np.zeros(n_obs)
    mu = logistic(X @ B)

    est_ss, oldest_ss = ss.copy(), np.full(q_total, _FAR_AWAY)
    est_B, oldest_B = B.copy(), np.full(n_coef, _FAR_AWAY)
    history = [] if retain_history else None
    status = PQLStatus.ITERATING
    rcondflag = 0
    convcode = 0
    iteration = 0
    tol2 = tol_pql**2

    def not_done():
        return converge_criterion(est_ss, oldest_ss) > tol2 or converge_criterion(est_B, oldest_B, n_coef) > tol2

    while not_done() and iteration < maxit_pql:
        iteration += 1
        oldest_ss, oldest_B = est_ss, est_B

        C = build_covariance(ss, Zt, St, nested, n=n_obs).toarray()
        step = engine.mean_step(B, b, mu, C, B_init)
        B, b, mu = step.B, step.b, step.mu
        rcondflag += step.rcondflag
        if step.status == PQLStatus.RANK_DEFICIENT:
            status = PQLStatus.RANK_DEFICIENT
            est_B = B
            break

        _, H = engine.working_response(B, b, mu)
        opt = optimize(
            lambda s: binary_evaluate(s, H, X, Zt, St, mu, nested, reml),
            ss,
            method=optimizer,
            maxit=maxit,
            reltol=reltol,
            verbose=False,
            warn=False,
        )
        ss = np.abs(opt.par)
        convcode = opt.convcode
        est_ss, est_B = ss, B

        if history is not None:
            history.append({"iteration": iteration, "B": B.copy(), "ss": ss.copy(), "LL": opt.value, "mean_step": step.history})
        if verbose:
            print(f"PQL iteration {iteration}: LL={opt.value:.6f} ss={np.array2string(ss, precision=4)} B={np.array2string(B, precision=4)}")

    if status != PQLStatus.RANK_DEFICIENT:
        if not_done():
            status = PQLStatus.MAX_ITER_EXCEEDED
            warnings.warn(f"PQL did not converge within maxit_pql={maxit_pql} iterations", NonConvergenceWarning, stacklevel=2)
        else:
            status = PQLStatus.CONVERGED
    if convcode != 0:
        warnings.warn(f"variance-component optimizer did not converge (convcode={convcode})", NonConvergenceWarning, stacklevel=2)

    C = build_covariance(ss, Zt, St, nested, n=n_obs).toarray()
    _, H = engine.working_response(B, b, mu)
    factor = cholesky_factor(np.diag(1.0 / (mu * (1.0 - mu))) + C)
    XtiVX = X.T @ cho_solve(factor, X)
    rank_deficient = status == PQLStatus.RANK_DEFICIENT or reciprocal_condition(XtiVX) < engine.rcond_tol
    B_cov = _wald_covariance(XtiVX, rank_deficient)

    return BinaryPGLMMResult(
        B=B,
        B_se=_standard_errors(B_cov),
        B_cov=B_cov,
        ss=ss,
        s2r=ss[:q_nn] ** 2,
        s2n=ss[q_nn:] ** 2,
        LL=_reported_value(binary_evaluate(ss, H, X, Zt, St, mu, nested, reml)),
        convcode=convcode,
        niter=iteration,
        status=status,
        rcondflag=rcondflag,
        reml=reml,
        mu=mu,
        b=b,
        H=H,
        C=C,
        X=X,
        history=history,
    )


# =============================================================================
# Binary, single phylogenetic random effect
# =============================================================================


def binary_pglmm(
    X,
    y,
    Vphy,
    s2_init: float = 0.1,
    B_init=None,
    tol_pql: float = 1e-6,
    maxit_pql: int = 200,
    maxit_reml: int = 100,
    retain_history: bool = False,
    verbose: bool = False,
) -> BinaryPGLMMResult:
    """Binary PGLMM with one phylogenetic random effect.

    The phylogenetic covariance is rescaled to unit determinant, so ``s2``
    is the phylogenetic signal on a standardized scale. Each PQL iteration
    updates ``s2`` with an L-BFGS-B search over ``[0, 10]`` of the REML
    objective ``fit_gaussian_reml``. The returned ``s2_lrt_pvalue`` tests ``s2 = 0``
    with a boundary-corrected likelihood-ratio test.

    Args:
        X: (n, p) fixed-effect design, including the intercept column.
        y: Length-n 0/1 response.
        Vphy: (n, n) phylogenetic covariance.
        s2_init: Starting phylogenetic variance.
        B_init: Starting fixed effects; a logistic GLM fit by default.
        tol_pql: PQL convergence tolerance.
        maxit_pql: Maximum PQL iterations.
        maxit_reml: Maximum L-BFGS-B iterations per variance update.
        retain_history: Keep per-iteration estimates on the result.
        verbose: Print iteration traces.

    Returns:
        BinaryPGLMMResult with ``ss = [sqrt(s2)]``.
    """
    X = _as_float_matrix(X, "X")
    y = np.asarray(y, dtype=np.float64).ravel()
    _validate_design(X, y).raise_if_invalid()
    _validate_binary_response(y)
    Vphy = np.asarray(Vphy, dtype=np.float64)
    _validate_square(Vphy, "Vphy", X.shape[0]).raise_if_invalid()
    _validate_iteration_settings(tol_pql=tol_pql, maxit_pql=maxit_pql, maxit_reml=maxit_reml)
    n_obs, n_coef = X.shape

    Vphy = standardize_phylo_cov(Vphy)
    B_init = _logistic_start(X, y) if B_init is None else np.asarray(B_init, dtype=np.float64).ravel()
    if len(B_init) != n_coef:
        raise DimensionMismatchError(f"B_init has {len(B_init)} entries, expected p={n_coef}")

    s2 = float(np.clip(abs(float(s2_init)), *_S2_BOUNDS[0]))
    engine = PQLEngine(X, y, tol_pql=tol_pql, maxit_pql=maxit_pql, retain_history=retain_history, verbose=verbose)
    B = B_init.copy()
    b = np.zeros(n_obs)
    mu = logistic(X @ B)

    est_s2, oldest_s2 = s2, _FAR_AWAY
    est_B, oldest_B = B.copy(), np.full(n_coef, _FAR_AWAY)
    history = [] if retain_history else None
    status = PQLStatus.ITERATING
    rcondflag = 0
    convcode = 0
    iteration = 0
    tol2 = tol_pql**2

    def not_done():
        return (est_s2 - oldest_s2) ** 2 > tol2 or converge_criterion(est_B, oldest_B, n_coef) > tol2

    while not_done() and iteration < maxit_pql:
        iteration += 1
        oldest_s2, oldest_B = est_s2, est_B

        step = engine.mean_step(B, b, mu, s2 * Vphy, B_init)
        B, b, mu = step.B, step.b, step.mu
        rcondflag += step.rcondflag
        if step.status == PQLStatus.RANK_DEFICIENT:
            status = PQLStatus.RANK_DEFICIENT
            est_B = B
            break

        _, H = engine.working_response(B, b, mu)
        inv_w = 1.0 / (mu * (1.0 - mu))
        opt = optimize(
            lambda s: gaussian_reml_evaluate(s, inv_w, H, Vphy, X),
            [s2],
            bounds=_S2_BOUNDS,
            method="L-BFGS-B",
            maxit=maxit_reml,
            warn=False,
        )
        s2 = float(opt.par[0])
        convcode = opt.convcode
        est_s2, est_B = s2, B

        if history is not None:
            history.append({"iteration": iteration, "B": B.copy(), "s2": s2, "LL": opt.value, "mean_step": step.history})
        if verbose:
            print(f"PQL iteration {iteration}: s2={s2:.6f} B={np.array2string(B, precision=4)}")

    if status != PQLStatus.RANK_DEFICIENT:
        if not_done():
            status = PQLStatus.MAX_ITER_EXCEEDED
            warnings.warn(f"PQL did not converge within maxit_pql={maxit_pql} iterations", NonConvergenceWarning, stacklevel=2)
        else:
            status = PQLStatus.CONVERGED
    if convcode != 0:
        warnings.warn(f"phylogenetic variance search did not converge (convcode={convcode})", NonConvergenceWarning, stacklevel=2)

    C = s2 * Vphy
    _, H = engine.working_response(B, b, mu)
    inv_w = 1.0 / (mu * (1.0 - mu))
    factor = cholesky_factor(np.diag(inv_w) + C)
    XtiVX = X.T @ cho_solve(factor, X)
    rank_deficient = status == PQLStatus.RANK_DEFICIENT or reciprocal_condition(XtiVX) < engine.rcond_tol
    B_cov = _wald_covariance(XtiVX, rank_deficient)

    LL = _reported_value(gaussian_reml_evaluate([s2], inv_w, H, Vphy, X))
    LL0 = _reported_value(gaussian_reml_evaluate([0.0], inv_w, H, Vphy, X))
    # Objectives are -2 x log-likelihood up to a shared constant
    s2_lrt_pvalue = float(chi2.sf(max(LL0 - LL, 0.0), df=1) / 2.0) if np.isfinite(LL0 - LL) else np.nan

    return BinaryPGLMMResult(
        B=B,
        B_se=_standard_errors(B_cov),
        B_cov=B_cov,
        ss=np.array([np.sqrt(s2)]),
        s2r=np.array([s2]),
        s2n=np.zeros(0),
        LL=LL,
        convcode=convcode,
        niter=iteration,
        status=status,
        rcondflag=rcondflag,
        reml=True,
        mu=mu,
        b=b,
        H=H,
        C=C,
        X=X,
        history=history,
        s2_lrt_pvalue=s2_lrt_pvalue,
    )
