"""Builders for the random-effect structure (``Zt``, ``St``, ``nested``).

A non-nested term with covariance ``Σ`` over its levels and incidence
matrix ``Z`` (n × levels) contributes the rows ``(Z L)'`` to ``Zt``, where
``L L' = Σ``. Scaling those rows by the term's standard deviation ``s``
gives ``s² Z Σ Z'`` in the marginal covariance. ``St`` marks which rows of
``Zt`` belong to which term.

A nested term is a full (n × n) pattern matrix, e.g. species covariance
restricted to observations in the same site.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ..exceptions import DimensionMismatchError
from .linalg import psd_sqrt


def _incidence(groups: Sequence) -> Tuple[sp.csr_matrix, np.ndarray]:
    """Return the (n × levels) 0/1 incidence matrix and the sorted level labels."""
    levels, codes = np.unique(np.asarray(groups), return_inverse=True)
    n = len(codes)
    Z = sp.csr_matrix((np.ones(n), (np.arange(n), codes)), shape=(n, len(levels)))
    return Z, levels


def random_effect_block(groups: Sequence, cov: Optional[np.ndarray] = None) -> sp.csr_matrix:
    """Rows of ``Zt`` for one non-nested random-effect term.

    Args:
        groups: Length-n level label per observation (e.g. species).
        cov: (levels × levels) covariance among the sorted levels, or
            ``None`` for independent levels.

    Returns:
        Sparse (levels × n) block ``(Z L)'``.
    """
    Z, levels = _incidence(groups)
    if cov is None:
        return Z.T.tocsr()
    cov = np.asarray(cov, dtype=np.float64)
    if cov.shape != (len(levels), len(levels)):
        raise DimensionMismatchError(f"covariance has shape {cov.shape} but the term has {len(levels)} levels")
    L = psd_sqrt(cov)
    return sp.csr_matrix((Z @ L).T)


def nested_block(groups: Sequence, within: Sequence, cov: Optional[np.ndarray] = None) -> sp.csr_matrix:
    """(n × n) pattern for a term acting within levels of another factor.

    Entry (k, l) is ``cov[g_k, g_l]`` when observations k and l share the
    same *within* level, and 0 otherwise.

    Args:
        groups: Level per observation the covariance refers to (e.g. species).
        within: Level per observation that restricts the covariance (e.g. site).
        cov: Covariance among the sorted *groups* levels; identity if ``None``.
    """
    Zg, levels = _incidence(groups)
    Zw, _ = _incidence(within)
    if Zg.shape[0] != Zw.shape[0]:
        raise DimensionMismatchError("groups and within must have the same length")
    if cov is None:
        cov = np.eye(len(levels))
    cov = np.asarray(cov, dtype=np.float64)
    if cov.shape != (len(levels), len(levels)):
        raise DimensionMismatchError(f"covariance has shape {cov.shape} but the term has {len(levels)} levels")
    full = sp.csr_matrix(Zg @ cov @ Zg.T)
    same = (Zw @ Zw.T).tocsr()
    return full.multiply(same).tocsr()


@dataclass
class RandomEffectStructure:
    """Stacked random-effect structure for a PGLMM.

    Attributes:
        Zt: (m × n) sparse loadings, or ``None`` without non-nested terms.
        St: (q_nn × m) sparse term indicators, or ``None``.
        nested: List of (n × n) nested-term matrices.
        names: Term labels, non-nested first, then nested.
    """

    Zt: Optional[sp.csr_matrix]
    St: Optional[sp.csr_matrix]
    nested: List[sp.csr_matrix] = field(default_factory=list)
    names: List[str] = field(default_factory=list)

    @property
    def q_nonnested(self) -> int:
        return 0 if self.St is None else self.St.shape[0]

    @property
    def q(self) -> int:
        return self.q_nonnested + len(self.nested)

    @classmethod
    def from_blocks(cls, blocks: Sequence[sp.spmatrix], nested: Sequence = (), names: Optional[Sequence[str]] = None):
        """Stack non-nested ``Zt`` blocks and attach nested terms.

        Args:
            blocks: ``Zt`` row blocks, one per non-nested term, all with n columns.
            nested: (n × n) nested-term matrices.
            names: Optional term labels.
        """
        blocks = [sp.csr_matrix(b) for b in blocks]
        nested = [sp.csr_matrix(m) for m in nested]
        if blocks:
            n_cols = {b.shape[1] for b in blocks}
            if len(n_cols) != 1:
                raise DimensionMismatchError(f"Zt blocks disagree on the number of observations: {sorted(n_cols)}")
            Zt = sp.vstack(blocks).tocsr()
            sizes = [b.shape[0] for b in blocks]
            rows = np.repeat(np.arange(len(blocks)), sizes)
            St = sp.csr_matrix((np.ones(len(rows)), (rows, np.arange(len(rows)))), shape=(len(blocks), Zt.shape[0]))
        else:
            Zt = St = None

        q = len(blocks) + len(nested)
        if names is None:
            names = [f"re{i + 1}" for i in range(q)]
        elif len(names) != q:
            raise DimensionMismatchError(f"{len(names)} names for {q} random-effect terms")
        return cls(Zt=Zt, St=St, nested=nested, names=list(names))
