"""
Covariance Builder.

Turns a vector of random-effect standard deviations into the marginal
covariance of the linear predictor:

    C(par) = Ut' Ut + sum_j sn_j^2 N_j,   Ut = diag(St' sr) Zt

where ``sr`` are the non-nested and ``sn`` the nested standard deviations.
Binary models add the working variance ``diag(1 / (mu (1 - mu)))``.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ..exceptions import DimensionMismatchError
from ..utils.validators import _as_sparse, _validate_random_structure
from .linalg import spd_logdet

__all__ = ["build_covariance", "random_effect_loadings", "coerce_structure", "standardize_phylo_cov"]


def coerce_structure(Zt, St, nested) -> Tuple[Optional[sp.csr_matrix], Optional[sp.csr_matrix], List[sp.csr_matrix]]:
    """Convert user inputs to the CSR representation used internally."""
    nested = [] if nested is None else [sp.csr_matrix(m, dtype=np.float64) for m in nested]
    return _as_sparse(Zt), _as_sparse(St), nested


def _structure_size(Zt, nested: Sequence, mu, n: Optional[int]) -> int:
    if n is not None:
        return int(n)
    if Zt is not None:
        return Zt.shape[1]
    if nested:
        return nested[0].shape[0]
    if mu is not None:
        return len(mu)
    return 0


def random_effect_loadings(par, Zt, St) -> Optional[sp.csr_matrix]:
    """Scaled loadings ``Ut = diag(St' sr) Zt`` for the non-nested terms.

    Args:
        par: Standard deviations; only the first ``St.shape[0]`` entries are used.
        Zt: (m, n) loadings.
        St: (q_nn, m) term indicators.

    Returns:
        Sparse (m, n) matrix, or ``None`` when there are no non-nested terms.
    """
    if Zt is None:
        return None
    sr = np.abs(np.asarray(par, dtype=np.float64).ravel()[: St.shape[0]])
    row_scale = St.T @ sr
    return sp.diags(row_scale) @ Zt


def build_covariance(par, Zt, St, nested, mu=None, n: Optional[int] = None) -> sp.csc_matrix:
    """Marginal covariance for variance components *par*.

    With ``mu=None`` the result is the random-effect covariance ``C(par)``
    alone. When *mu* is given the binary working variance
    ``diag(1 / (mu (1 - mu)))`` is added on the diagonal.

    Args:
        par: Length ``q_nn + q_n`` standard deviations; signs are ignored.
        Zt: (m, n) sparse loadings or ``None``.
        St: (q_nn, m) sparse term indicators or ``None``.
        nested: Sequence of (n, n) nested-term matrices.
        mu: Optional length-n working mean on the probability scale.
        n: Number of observations, needed only when it cannot be inferred.

    Returns:
        Symmetric (n, n) ``scipy.sparse.csc_matrix``.

    Raises:
        DimensionMismatchError: If the structural matrices disagree.
    """
    Zt, St, nested = coerce_structure(Zt, St, nested)
    par = np.abs(np.asarray(par, dtype=np.float64).ravel())
    n = _structure_size(Zt, nested, mu, n)

    _validate_random_structure(Zt, St, nested, n, n_par=len(par)).raise_if_invalid()

    C = sp.csc_matrix((n, n), dtype=np.float64)
    q_nn = 0
    if Zt is not None:
        q_nn = St.shape[0]
        Ut = random_effect_loadings(par, Zt, St)
        C = C + (Ut.T @ Ut).tocsc()

    for sn, block in zip(par[q_nn:], nested):
        C = C + (sn**2) * block

    if mu is not None:
        mu = np.asarray(mu, dtype=np.float64).ravel()
        if len(mu) != n:
            raise DimensionMismatchError(f"mu has length {len(mu)}, expected n={n}")
        C = C + sp.diags(1.0 / (mu * (1.0 - mu)))

    # Sparse products can leave rounding asymmetry in the last bit
    C = 0.5 * (C + C.T)
    return sp.csc_matrix(C)


def standardize_phylo_cov(Vphy: np.ndarray) -> np.ndarray:
    """Scale a phylogenetic covariance to unit maximum, then to unit determinant.

    The result depends on *Vphy* only up to a positive scalar factor.

    Raises:
        SingularCovarianceError: If *Vphy* is not positive definite.
    """
    Vphy = np.asarray(Vphy, dtype=np.float64)
    Vphy = Vphy / np.max(Vphy)
    return Vphy / np.exp(spd_logdet(Vphy) / Vphy.shape[0])
