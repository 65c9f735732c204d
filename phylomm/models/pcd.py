"""
Community Dissimilarity Engine.

Pairwise phylogenetic community dissimilarity (PCD) splits the turnover
between two communities into a compositional part (``PCDc``, species not
shared) and a phylogenetic part (``PCDp``, how related the non-shared
species are). For communities i and j the conditional covariance of
community i given community j is

    S_i = C_ii - C_ij C_jj^-1 C_ji

and its phylogenetic species variability is
``SC_i = (n_i tr S_i - sum S_i) / (n_i (n_i - 1))``. PCD scales
``n_i SC_i + n_j SC_j`` by its expectation under random community
assembly from the species pool. PCDc replaces the conditional PSVs by the
PSV of the whole pool for each non-shared species, and ``PCDp = PCD / PCDc``.

The phylogenetic covariance is used as a correlation matrix throughout.
"""

from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..core.linalg import cho_solve, cholesky_factor
from ..core.results import PCDExpectation, PCDResult
from ..core.simulation import get_rng
from ..exceptions import DimensionMismatchError, InvalidParameterError
from ..progress import make_reporter
from ..utils.validators import _validate_declared_sizes, _validate_iteration_settings, _validate_square

__all__ = ["pcd", "pcd_loop", "pcd_expectation", "psv"]


def _to_correlation(V: np.ndarray) -> np.ndarray:
    s = np.sqrt(np.diag(V))
    if not np.all(s > 0):
        raise InvalidParameterError("V has non-positive variances on the diagonal")
    return V / np.outer(s, s)


def _prepare_community(comm, V) -> Tuple[np.ndarray, np.ndarray, list]:
    """Align *comm* (sites x species) with *V* and return presence/absence and correlations."""
    if isinstance(V, pd.DataFrame) and isinstance(comm, pd.DataFrame):
        extra = [c for c in comm.columns if c not in V.index]
        if extra:
            raise DimensionMismatchError(f"species missing from V: {', '.join(map(str, extra[:5]))}")
        comm = comm.reindex(columns=V.index, fill_value=0)

    sites = list(comm.index) if isinstance(comm, pd.DataFrame) else list(range(np.shape(comm)[0]))
    comm = (np.asarray(comm, dtype=np.float64) > 0).astype(np.float64)
    V = np.asarray(V, dtype=np.float64)
    _validate_square(V, "V").raise_if_invalid()
    if comm.ndim != 2 or comm.shape[1] != V.shape[0]:
        raise DimensionMismatchError(f"comm has shape {comm.shape} but V covers {V.shape[0]} species")
    return comm, _to_correlation(V), sites


def _psv_of(C: np.ndarray) -> float:
    n = C.shape[0]
    return float((n * np.trace(C) - np.sum(C)) / (n * (n - 1)))


def _conditional_psv(V: np.ndarray, pick1: np.ndarray, pick2: np.ndarray) -> float:
    """PSV of species *pick1* conditional on species *pick2*."""
    C11 = V[np.ix_(pick1, pick1)]
    C12 = V[np.ix_(pick1, pick2)]
    C22 = V[np.ix_(pick2, pick2)]
    S11 = C11 - C12 @ cho_solve(cholesky_factor(C22), C12.T)
    return _psv_of(S11)


def psv(comm, V) -> pd.Series:
    """Phylogenetic species variability of each community.

    Communities with fewer than two species get NaN.
    """
    comm, V, sites = _prepare_community(comm, V)
    values = []
    for row in comm:
        picks = np.flatnonzero(row)
        values.append(_psv_of(V[np.ix_(picks, picks)]) if len(picks) >= 2 else np.nan)
    return pd.Series(values, index=sites, name="PSV")


def pcd_expectation(comm, V, reps: int = 1000, progress_callback=None, verbose: bool = False) -> PCDExpectation:
    """Monte Carlo null expectations for every richness level in *comm*.

    For each richness ``k >= 2`` present, two random communities of ``k``
    species are drawn from the pool *reps* times, and the conditional PSV
    of the first given the second is averaged. Draws use the process-wide
    random stream, so ``set_seed`` makes the table reproducible.

    Args:
        comm: (sites, species) presence/absence or abundance matrix.
        V: (species, species) phylogenetic covariance.
        reps: Monte Carlo draws per richness level.
        progress_callback: ``(current, total)`` callback. ``None`` prints
            progress when *verbose* is set, ``False`` disables it.
        verbose: Print progress to stderr when no callback is given.

    Returns:
        PCDExpectation.
    """
    _validate_iteration_settings(reps=reps)
    comm, V, _ = _prepare_community(comm, V)
    nsp_pool = V.shape[0]
    richness = comm.sum(axis=1).astype(int)
    nsr = np.unique(richness[richness >= 2])

    rng = get_rng()
    reporter = make_reporter(len(nsr) * int(reps), progress_callback, verbose)
    psv_bar = np.zeros(len(nsr))
    for idx, k in enumerate(nsr):
        total = 0.0
        for _ in range(int(reps)):
            pick1 = rng.choice(nsp_pool, size=k, replace=False)
            pick2 = rng.choice(nsp_pool, size=k, replace=False)
            total += _conditional_psv(V, pick1, pick2)
            if reporter is not None:
                reporter.advance()
        psv_bar[idx] = total / reps
    if reporter is not None:
        reporter.finish()

    return PCDExpectation(nsr=nsr, psv_bar=psv_bar, psv_pool=_psv_of(V), nsp_pool=nsp_pool)


def pcd_loop(SSii, nsr, SCii: float, comm, V, nsp_pool: int, verbose: bool = False) -> dict:
    """Pairwise PCD for all community pairs given precomputed expectations.

    Args:
        SSii: Expected conditional PSV for each richness in *nsr*.
        nsr: Richness levels matching *SSii*.
        SCii: PSV of the species pool. Each non-shared species contributes
            this much to the compositional component.
        comm: (sites, species) presence/absence matrix.
        V: (species, species) phylogenetic correlation matrix.
        nsp_pool: Number of species in the pool.
        verbose: Print progress per community.

    Returns:
        Dictionary with (sites, sites) arrays ``PCD``, ``PCDc`` and ``PCDp``
        (upper triangle filled, NaN elsewhere) and ``psv_pool``.

    Raises:
        InvalidParameterError: If a community richness has no expectation.
    """
    comm = (np.asarray(comm, dtype=np.float64) > 0).astype(np.float64)
    V = np.asarray(V, dtype=np.float64)
    _validate_square(V, "V", comm.shape[1]).raise_if_invalid()
    _validate_declared_sizes((V.shape[0],), (int(nsp_pool),), ("nsp_pool",)).raise_if_invalid()

    SSii = np.asarray(SSii, dtype=np.float64).ravel()
    nsr = np.asarray(nsr).astype(int).ravel()
    if len(SSii) != len(nsr):
        raise DimensionMismatchError(f"SSii has {len(SSii)} entries but nsr has {len(nsr)}")
    expected = dict(zip(nsr.tolist(), SSii.tolist()))

    richness = comm.sum(axis=1).astype(int)
    missing = sorted(set(richness[richness >= 2].tolist()) - set(expected))
    if missing:
        raise InvalidParameterError(f"no expectation for community richness {missing}")

    m = comm.shape[0]
    SCii = float(SCii)
    PCD = np.full((m, m), np.nan)
    PCDc = np.full((m, m), np.nan)
    PCDp = np.full((m, m), np.nan)

    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(m - 1):
            if verbose:
                print(f"pcd: community {i + 1} of {m}")
            n1 = richness[i]
            if n1 < 2:
                continue
            pick1 = np.flatnonzero(comm[i])
            for j in range(i + 1, m):
                n2 = richness[j]
                if n2 < 2:
                    continue
                pick2 = np.flatnonzero(comm[j])

                SC11 = _conditional_psv(V, pick1, pick2)
                SC22 = _conditional_psv(V, pick2, pick1)
                expected_pair = n1 * expected[n2] + n2 * expected[n1]
                PCD[i, j] = (n1 * SC11 + n2 * SC22) / expected_pair

                shared = len(np.intersect1d(pick1, pick2))
                unshared = (n1 - shared) + (n2 - shared)
                PCDc[i, j] = unshared * SCii / expected_pair
                PCDp[i, j] = PCD[i, j] / PCDc[i, j]

    return {"PCD": PCD, "PCDc": PCDc, "PCDp": PCDp, "psv_pool": SCii}


def pcd(comm, V, expectation: Optional[PCDExpectation] = None, reps: int = 1000, verbose: bool = False, progress_callback=None) -> PCDResult:
    """Pairwise phylogenetic community dissimilarity.

    Args:
        comm: (sites, species) presence/absence or abundance matrix. With
            DataFrames for both *comm* and *V*, species are matched by label.
        V: (species, species) phylogenetic covariance.
        expectation: Precomputed null expectations, e.g. from
            ``pcd_expectation`` on a larger set of communities. Computed
            from *comm* when omitted.
        reps: Monte Carlo draws for the expectation.
        verbose: Print progress.
        progress_callback: ``(current, total)`` callback for the expectation.

    Returns:
        PCDResult with ``PCD``, ``PCDc`` and ``PCDp`` as labelled DataFrames.
    """
    if expectation is None:
        expectation = pcd_expectation(comm, V, reps=reps, progress_callback=progress_callback, verbose=verbose)
    comm_arr, V_corr, sites = _prepare_community(comm, V)

    out = pcd_loop(
        expectation.psv_bar,
        expectation.nsr,
        expectation.psv_pool,
        comm_arr,
        V_corr,
        expectation.nsp_pool,
        verbose=verbose,
    )

    def frame(values):
        return pd.DataFrame(values, index=sites, columns=sites)

    return PCDResult(
        PCD=frame(out["PCD"]),
        PCDc=frame(out["PCDc"]),
        PCDp=frame(out["PCDp"]),
        psv_bar=np.asarray(expectation.psv_bar),
        psv_pool=out["psv_pool"],
        nsr=np.asarray(expectation.nsr),
    )
