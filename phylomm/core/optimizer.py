"""
Variance-Component Optimizer.

Glue between an evaluator returning ``Evaluation`` objects and the active
optimizer backend. The objective passed to the backend is the only place
where a ``Penalty`` is converted to a number.
"""

import warnings
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from ..backends import Optimizer, OptimizerConfig, get_optimizer, resolve_method
from ..exceptions import NonConvergenceWarning
from ..utils.validators import _validate_iteration_settings
from .results import Evaluation, OptimizationResult, Penalty, objective_value

__all__ = ["optimize"]

# convcode values
CONVERGED = 0
ITERATION_LIMIT = 1
OPTIMIZER_FAILURE = 10


class _TrackedObjective:
    """Counts evaluations and keeps the best point seen."""

    def __init__(self, evaluate: Callable[[np.ndarray], Evaluation], verbose: bool = False):
        self._evaluate = evaluate
        self.verbose = verbose
        self.n_evals = 0
        self.n_penalties = 0
        self.best_par: Optional[np.ndarray] = None
        self.best_value = np.inf

    def __call__(self, par: np.ndarray) -> float:
        par = np.array(par, dtype=np.float64, copy=True)
        evaluation = self._evaluate(par)
        value = objective_value(evaluation)
        self.n_evals += 1
        if isinstance(evaluation, Penalty):
            self.n_penalties += 1
        if value < self.best_value:
            self.best_value = value
            self.best_par = par
        if self.verbose:
            print(f"  eval {self.n_evals}: objective={value:.6f} par={np.array2string(par, precision=4)}")
        return value


def optimize(
    evaluate: Callable[[np.ndarray], Evaluation],
    initial_par,
    bounds: Optional[Sequence[Tuple[Optional[float], Optional[float]]]] = None,
    method: str = "Nelder-Mead",
    maxit: int = 500,
    reltol: float = 1e-8,
    verbose: bool = False,
    optimizer: Optional[Optimizer] = None,
    warn: bool = True,
) -> OptimizationResult:
    """Minimise an ``Evaluation``-valued objective over variance components.

    A simplex search over a single parameter degenerates in scipy, so
    ``Nelder-Mead`` is replaced by ``L-BFGS-B`` for one-dimensional problems.

    Args:
        evaluate: Callable mapping a parameter vector to an ``Evaluation``.
        initial_par: Starting parameter vector.
        bounds: Optional ``(low, high)`` pairs, honoured by bounded methods.
        method: ``"Nelder-Mead"``, ``"BFGS"``, ``"L-BFGS-B"``, ``"Powell"``
            or the alias ``"bobyqa"``.
        maxit: Cap on iterations / objective evaluations.
        reltol: Relative convergence tolerance.
        verbose: Print every objective evaluation.
        optimizer: Backend to use instead of the registered one.
        warn: Emit ``NonConvergenceWarning`` when the search fails.

    Returns:
        OptimizationResult with the best point found.
    """
    _validate_iteration_settings(maxit=maxit, reltol=reltol)
    method = resolve_method(method)
    initial = np.atleast_1d(np.asarray(initial_par, dtype=np.float64)).copy()
    if method == "Nelder-Mead" and initial.size == 1:
        method = "L-BFGS-B"

    tracked = _TrackedObjective(evaluate, verbose=verbose)
    backend = optimizer if optimizer is not None else get_optimizer()
    outcome = backend.minimize(tracked, initial, bounds, OptimizerConfig(method=method, maxit=int(maxit), reltol=float(reltol)))

    if outcome.success:
        convcode = CONVERGED
    elif outcome.hit_limit:
        convcode = ITERATION_LIMIT
    else:
        convcode = OPTIMIZER_FAILURE

    if tracked.best_par is not None and tracked.best_value <= outcome.fun:
        par, value = tracked.best_par, tracked.best_value
    else:
        par, value = np.asarray(outcome.x, dtype=np.float64), float(outcome.fun)

    if convcode != CONVERGED and warn:
        warnings.warn(
            f"{method} optimizer did not converge (convcode={convcode}): {outcome.message}. Returning the best point found.",
            NonConvergenceWarning,
            stacklevel=2,
        )

    return OptimizationResult(
        par=par,
        value=float(value),
        convcode=convcode,
        n_evals=tracked.n_evals,
        n_penalties=tracked.n_penalties,
        message=outcome.message,
    )
