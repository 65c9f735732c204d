"""
Error and warning categories for PhyloMM.

Structural problems with the inputs fail fast with an exception. Numerical
trouble inside an iteration is reported through result fields and one of
the warning categories below, so the caller decides whether to trust a fit.
"""

import numpy as np


class PhyloMMError(Exception):
    """Base class for all PhyloMM errors."""

    pass


class DimensionMismatchError(PhyloMMError, ValueError):
    """Raised when matrix shapes disagree with each other or with declared sizes."""

    pass


class SingularCovarianceError(PhyloMMError, np.linalg.LinAlgError):
    """Raised when a covariance matrix cannot be factorised."""

    pass


class InvalidParameterError(PhyloMMError, ValueError):
    """Raised for arguments outside their valid range."""

    pass


class NonConvergenceWarning(UserWarning):
    """An iteration cap was reached before the tolerance was met."""

    pass


class RankDeficiencyWarning(UserWarning):
    """A reciprocal-condition check detected a near-singular system."""

    pass
