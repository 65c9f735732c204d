"""
Optimizer backend built on ``scipy.optimize.minimize``.
"""

from typing import Callable, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from . import OptimizerConfig, OptimizerOutcome

# Methods that accept box constraints in scipy
_BOUNDED = {"Nelder-Mead", "L-BFGS-B", "Powell"}


class ScipyOptimizer:
    """Derivative-free simplex, quasi-Newton and Powell search via scipy."""

    def _options(self, objective, initial: np.ndarray, config: OptimizerConfig) -> dict:
        method, maxit, reltol = config.method, int(config.maxit), float(config.reltol)
        if method == "Nelder-Mead":
            # Stop on the relative spread of the simplex values only
            f0 = float(objective(initial))
            return {"maxfev": maxit, "maxiter": maxit, "xatol": np.inf, "fatol": reltol * max(1.0, abs(f0))}
        if method == "BFGS":
            return {"maxiter": maxit}
        if method == "L-BFGS-B":
            return {"maxiter": maxit, "ftol": reltol}
        if method == "Powell":
            return {"maxfev": maxit, "ftol": reltol}
        raise ValueError(f"Unsupported method for ScipyOptimizer: {method!r}")

    def minimize(
        self,
        objective: Callable[[np.ndarray], float],
        initial: np.ndarray,
        bounds: Optional[Sequence[Tuple[Optional[float], Optional[float]]]],
        config: OptimizerConfig,
    ) -> OptimizerOutcome:
        initial = np.asarray(initial, dtype=np.float64)
        options = self._options(objective, initial, config)
        kwargs = {}
        if bounds is not None and config.method in _BOUNDED:
            kwargs["bounds"] = bounds

        res = minimize(objective, initial, method=config.method, options=options, **kwargs)

        message = str(res.message)
        hit_limit = (not res.success) and any(word in message.lower() for word in ("maximum", "limit"))
        return OptimizerOutcome(
            x=np.asarray(res.x, dtype=np.float64),
            fun=float(res.fun),
            success=bool(res.success),
            nfev=int(getattr(res, "nfev", 0)),
            message=message,
            hit_limit=hit_limit,
        )
