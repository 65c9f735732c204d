"""
Optimizer backend abstraction for PhyloMM.

The variance-component optimizer never talks to a numerical library
directly. It hands a scalar objective to an ``Optimizer`` obtained from
this registry, so an alternative minimiser can be plugged in without
touching the likelihood code.

Users can override the selection via set_optimizer('scipy' | 'default')
or by passing any object implementing the ``Optimizer`` protocol.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

import numpy as np

from ..exceptions import InvalidParameterError

# Canonical method names and accepted aliases
SUPPORTED_METHODS = ("Nelder-Mead", "BFGS", "L-BFGS-B", "Powell")
_METHOD_ALIASES = {
    "nelder-mead": "Nelder-Mead",
    "neldermead": "Nelder-Mead",
    "bfgs": "BFGS",
    "l-bfgs-b": "L-BFGS-B",
    "lbfgsb": "L-BFGS-B",
    "powell": "Powell",
    "bobyqa": "Powell",
}


def resolve_method(method: str) -> str:
    """Map a user-facing method name to its canonical spelling.

    Raises:
        InvalidParameterError: If *method* is not supported.
    """
    key = str(method).strip().lower()
    if key not in _METHOD_ALIASES:
        raise InvalidParameterError(f"Unknown optimizer method {method!r}. Choose from: {', '.join(SUPPORTED_METHODS)} (or 'bobyqa')")
    return _METHOD_ALIASES[key]


@dataclass(frozen=True)
class OptimizerConfig:
    """Settings passed to an optimizer backend.

    Attributes:
        method: Canonical method name (see ``SUPPORTED_METHODS``).
        maxit: Cap on iterations / objective evaluations.
        reltol: Relative convergence tolerance on the objective.
    """

    method: str = "Nelder-Mead"
    maxit: int = 500
    reltol: float = 1e-8


@dataclass
class OptimizerOutcome:
    """Raw result reported by a backend."""

    x: np.ndarray
    fun: float
    success: bool
    nfev: int
    message: str = ""
    hit_limit: bool = False


@runtime_checkable
class Optimizer(Protocol):
    """Protocol defining the optimizer backend interface."""

    def minimize(
        self,
        objective: Callable[[np.ndarray], float],
        initial: np.ndarray,
        bounds: Optional[Sequence[Tuple[Optional[float], Optional[float]]]],
        config: OptimizerConfig,
    ) -> OptimizerOutcome:
        """Minimise *objective* starting from *initial*."""
        ...


_OPTIMIZER_NAMES = {"default", "scipy"}

# Global optimizer instance
_optimizer_instance = None
_optimizer_forced = False


def _create_optimizer(name: str) -> Optimizer:
    """
    Instantiate an optimizer backend by name.

    Args:
        name: 'scipy'
    """
    if name == "scipy":
        from .scipy_backend import ScipyOptimizer

        return ScipyOptimizer()

    raise ValueError(f"Unknown optimizer backend: {name!r}")


def get_optimizer() -> Optimizer:
    """
    Get the active optimizer backend.

    On first call, creates the scipy backend. Subsequent calls return the
    cached instance unless reset_optimizer() is called.
    """
    global _optimizer_instance

    if _optimizer_instance is not None:
        return _optimizer_instance

    _optimizer_instance = _create_optimizer("scipy")
    return _optimizer_instance


def set_optimizer(optimizer: Union[str, Optimizer]) -> None:
    """
    Set the optimizer backend.

    Args:
        optimizer: One of:
            - 'default': the scipy backend
            - 'scipy': force the scipy backend
            - An Optimizer instance

    Raises:
        ValueError: If the string is not recognized.
        TypeError: If the object does not implement ``minimize``.
    """
    global _optimizer_instance, _optimizer_forced

    if isinstance(optimizer, str):
        name = optimizer.lower().strip()
        if name not in _OPTIMIZER_NAMES:
            raise ValueError(f"Unknown optimizer backend {optimizer!r}. Choose from: {', '.join(sorted(_OPTIMIZER_NAMES))}")
        _optimizer_instance = _create_optimizer("scipy")
        _optimizer_forced = name != "default"
    else:
        if not isinstance(optimizer, Optimizer):
            raise TypeError(f"{type(optimizer).__name__} does not implement minimize(objective, initial, bounds, config)")
        _optimizer_instance = optimizer
        _optimizer_forced = True


def reset_optimizer() -> None:
    """Reset the optimizer backend to the default."""
    global _optimizer_instance, _optimizer_forced
    _optimizer_instance = None
    _optimizer_forced = False


def get_optimizer_info() -> dict:
    """
    Get information about the current optimizer backend.

    Returns:
        Dictionary with backend name, module, and whether it was forced.
    """
    optimizer = get_optimizer()
    return {
        "name": type(optimizer).__name__,
        "module": type(optimizer).__module__,
        "methods": list(SUPPORTED_METHODS),
        "forced": _optimizer_forced,
    }


__all__ = [
    "Optimizer",
    "OptimizerConfig",
    "OptimizerOutcome",
    "SUPPORTED_METHODS",
    "resolve_method",
    "get_optimizer",
    "set_optimizer",
    "reset_optimizer",
    "get_optimizer_info",
]
