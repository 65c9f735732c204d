"""
Validation utilities for PhyloMM.

Checks run once at call entry, before any iteration starts. Errors are
accumulated in a ``_ValidationResult`` and raised together so the caller
sees every shape problem at once.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from ..exceptions import DimensionMismatchError, InvalidParameterError

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self, error_class=DimensionMismatchError):
        """Raise *error_class* if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise error_class(error_msg)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float, np.integer, np.floating),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, [])

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_iteration_settings(**settings) -> None:
    """Validate iteration caps (positive integers) and tolerances (non-negative).

    Keyword names starting with ``maxit`` or ``max_iter`` are caps, names
    starting with ``tol`` or ``reltol`` are tolerances.

    Raises:
        InvalidParameterError: If any setting is out of range.
    """
    errors: List[str] = []
    for name, value in settings.items():
        if name.startswith(("maxit", "max_iter", "reps", "boot")):
            min_val = 0 if name.startswith("boot") else 1
            result = _validate_numeric_parameter(value, name, expected_types=(int, np.integer, float), min_val=min_val)
            if result.is_valid and float(value) != int(value):
                result.errors.append(f"{name} must be a whole number, got {value}")
        else:
            result = _validate_numeric_parameter(value, name, min_val=0)
        errors.extend(result.errors)

    _ValidationResult(len(errors) == 0, errors, []).raise_if_invalid(InvalidParameterError)


def _as_float_matrix(value: Any, name: str) -> np.ndarray:
    """Convert *value* to a 2-D float array, promoting vectors to columns."""
    arr = np.asarray(value, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise DimensionMismatchError(f"{name} must be 2-dimensional, got {arr.ndim} dimensions")
    return arr


def _as_sparse(value: Any) -> Optional[sp.csr_matrix]:
    """Convert *value* to CSR, passing ``None`` and empty inputs through as ``None``."""
    if value is None:
        return None
    mat = sp.csr_matrix(value, dtype=np.float64)
    if mat.shape[0] == 0:
        return None
    return mat


def _validate_random_structure(
    Zt: Optional[sp.spmatrix],
    St: Optional[sp.spmatrix],
    nested: Sequence,
    n: int,
    n_par: Optional[int] = None,
) -> _ValidationResult:
    """Check that ``Zt``, ``St`` and ``nested`` agree with each other and with *n*.

    Args:
        Zt: (m, n) random-effect loadings, or ``None``.
        St: (q_nn, m) term indicator matrix, or ``None``.
        nested: Sequence of (n, n) nested-term matrices.
        n: Number of observations.
        n_par: Length of the variance-component vector, if known.

    Returns:
        _ValidationResult listing every mismatch found.
    """
    errors: List[str] = []

    if (Zt is None) != (St is None):
        errors.append("Zt and St must be supplied together")
    elif Zt is not None:
        if St.shape[1] != Zt.shape[0]:
            errors.append(f"St has {St.shape[1]} columns but Zt has {Zt.shape[0]} rows")
        if Zt.shape[1] != n:
            errors.append(f"Zt has {Zt.shape[1]} columns, expected n={n}")

    for j, block in enumerate(nested):
        if block.shape != (n, n):
            errors.append(f"nested[{j}] has shape {block.shape}, expected ({n}, {n})")

    if n_par is not None:
        q_expected = (0 if St is None else St.shape[0]) + len(nested)
        if n_par != q_expected:
            errors.append(f"par has {n_par} entries but the random-effect structure defines {q_expected} terms")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_design(X: np.ndarray, y: np.ndarray) -> _ValidationResult:
    """Check the fixed-effect design against the response."""
    errors: List[str] = []
    warnings: List[str] = []

    if y.ndim != 1:
        errors.append(f"response must be a vector, got shape {y.shape}")
    elif X.shape[0] != y.shape[0]:
        errors.append(f"X has {X.shape[0]} rows but the response has {y.shape[0]} entries")

    if X.shape[1] >= X.shape[0]:
        errors.append(f"X has {X.shape[1]} columns for {X.shape[0]} observations")

    if not np.all(np.isfinite(X)):
        errors.append("X contains non-finite values")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_binary_response(y: np.ndarray) -> None:
    """Require a 0/1 response that contains both outcomes.

    Raises:
        InvalidParameterError: If *y* has other values or only one class.
    """
    errors: List[str] = []
    if not np.all(np.isin(y, (0.0, 1.0))):
        errors.append("binary response must contain only 0 and 1")
    elif np.all(y == y[0]):
        errors.append("binary response must contain both 0 and 1")
    _ValidationResult(len(errors) == 0, errors, []).raise_if_invalid(InvalidParameterError)


def _validate_square(matrix: np.ndarray, name: str, n: Optional[int] = None) -> _ValidationResult:
    """Check that *matrix* is square (and n×n when *n* is given)."""
    errors: List[str] = []
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        errors.append(f"{name} must be square, got shape {matrix.shape}")
    elif n is not None and matrix.shape[0] != n:
        errors.append(f"{name} has shape {matrix.shape}, expected ({n}, {n})")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_declared_sizes(actual: Tuple[int, ...], declared: Tuple[Optional[int], ...], names: Tuple[str, ...]) -> _ValidationResult:
    """Compare derived sizes against sizes the caller declared explicitly."""
    errors = [f"{name}={dec} does not match the data ({act})" for act, dec, name in zip(actual, declared, names) if dec is not None and dec != act]
    return _ValidationResult(len(errors) == 0, errors, [])
