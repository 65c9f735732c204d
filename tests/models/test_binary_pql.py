"""
Tests for the binary phylogenetic mixed model fitted by PQL.
"""

import warnings

import numpy as np
import pytest

from config import N_REPS_QUICK, SEED

pytestmark = pytest.mark.pql


def _structure(species, Vphy, sites=None):
    from phylomm.core.structure import RandomEffectStructure, nested_block, random_effect_block

    nested = [] if sites is None else [nested_block(species, sites, Vphy)]
    return RandomEffectStructure.from_blocks([random_effect_block(species), random_effect_block(species, Vphy)], nested=nested)


def _subset(data, n_sites):
    keep = data["sites"] < n_sites
    return data["X"][keep], data["y"][keep], data["species"][keep], data["sites"][keep]


class TestFitBinaryPQL:
    """Recovery and bookkeeping of the PQL fit."""

    def test_recovers_fixed_effects(self, community_binary_data):
        from phylomm import PQLStatus, fit_binary_pql

        d = community_binary_data
        re = _structure(d["species"], d["Vphy"])
        fit = fit_binary_pql(d["X"], d["y"], re.Zt, re.St, re.nested, tol_pql=1e-2, maxit_pql=50)

        assert fit.status == PQLStatus.CONVERGED
        assert fit.converged
        assert fit.rcondflag == 0
        assert fit.B[1] == pytest.approx(d["B"][1], abs=0.35)
        assert fit.B[0] == pytest.approx(d["B"][0], abs=0.75)
        assert np.all(fit.B_se > 0)
        assert np.all((fit.mu > 0) & (fit.mu < 1))

    def test_estimates_sharpen_with_more_sites(self, vphy16):
        """Standard errors shrink and the slope tightens around the truth as sites are added."""
        from phylomm import fit_binary_pql

        rng = np.random.default_rng(31)
        n_sp, n_sites = vphy16.shape[0], 48
        species = np.tile(np.arange(n_sp), n_sites)
        sites = np.repeat(np.arange(n_sites), n_sp)
        X = np.column_stack([np.ones(len(species)), rng.standard_normal(len(species))])
        phylo = np.linalg.cholesky(vphy16) @ rng.standard_normal(n_sp) * 0.5
        eta = X @ np.array([-0.5, 1.0]) + phylo[species]
        y = (rng.random(len(species)) < 1.0 / (1.0 + np.exp(-eta))).astype(float)

        fits = {}
        for size in (8, 48):
            keep = sites < size
            re = _structure(species[keep], vphy16)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                fits[size] = fit_binary_pql(X[keep], y[keep], re.Zt, re.St, re.nested, tol_pql=1e-2, maxit_pql=50)

        assert fits[48].B_se[1] < 0.6 * fits[8].B_se[1]
        assert fits[48].B[1] == pytest.approx(1.0, abs=0.3)

    def test_variance_component_layout(self, community_binary_data):
        from phylomm import fit_binary_pql

        X, y, species, sites = _subset(community_binary_data, 8)
        re = _structure(species, community_binary_data["Vphy"], sites)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = fit_binary_pql(X, y, re.Zt, re.St, re.nested, tol_pql=1e-2, maxit_pql=5)

        assert fit.ss.shape == (3,)
        np.testing.assert_allclose(fit.s2r, fit.ss[:2] ** 2)
        np.testing.assert_allclose(fit.s2n, fit.ss[2:] ** 2)
        assert fit.C.shape == (len(y), len(y))
        assert np.isfinite(fit.LL)

    def test_history_retention(self, community_binary_data):
        from phylomm import fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 8)
        re = _structure(species, community_binary_data["Vphy"])
        kwargs = dict(tol_pql=1e-2, maxit_pql=5, B_init=np.zeros(2))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            lean = fit_binary_pql(X, y, re.Zt, re.St, re.nested, **kwargs)
            full = fit_binary_pql(X, y, re.Zt, re.St, re.nested, retain_history=True, **kwargs)

        assert lean.history is None
        assert len(full.history) == full.niter
        assert set(full.history[0]) == {"iteration", "B", "ss", "LL", "mean_step"}
        np.testing.assert_array_equal(lean.B, full.B)
        np.testing.assert_array_equal(lean.ss, full.ss)

    def test_iteration_cap_warns(self, community_binary_data):
        from phylomm import NonConvergenceWarning, PQLStatus, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 8)
        re = _structure(species, community_binary_data["Vphy"])

        with pytest.warns(NonConvergenceWarning, match="maxit_pql=1"):
            fit = fit_binary_pql(X, y, re.Zt, re.St, re.nested, maxit_pql=1)

        assert fit.status == PQLStatus.MAX_ITER_EXCEEDED
        assert fit.niter == 1
        assert not fit.converged

    def test_rank_deficient_design(self, community_binary_data):
        from phylomm import PQLStatus, RankDeficiencyWarning, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 8)
        X = np.column_stack([X, X[:, 1]])
        re = _structure(species, community_binary_data["Vphy"])

        with pytest.warns(RankDeficiencyWarning):
            fit = fit_binary_pql(X, y, re.Zt, re.St, re.nested, B_init=np.zeros(3))

        assert fit.status == PQLStatus.RANK_DEFICIENT
        assert fit.rcondflag >= 1
        assert np.all(np.isfinite(fit.B))
        assert np.all(np.isfinite(fit.B_se))

    def test_simulated_responses(self, community_binary_data):
        from phylomm import fit_binary_pql, predictive_check, set_seed, simulate_binary_response

        X, y, species, _ = _subset(community_binary_data, 8)
        re = _structure(species, community_binary_data["Vphy"])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = fit_binary_pql(X, y, re.Zt, re.St, re.nested, tol_pql=1e-2, maxit_pql=5)

        set_seed(SEED)
        sims = simulate_binary_response(fit, reps=N_REPS_QUICK)
        check = predictive_check(y, sims)

        assert sims.shape == (N_REPS_QUICK, len(y))
        assert 0.0 <= check["pvalue"] <= 1.0


class TestFitBinaryPQLErrors:
    def test_non_binary_response(self, community_binary_data):
        from phylomm import InvalidParameterError, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 4)
        re = _structure(species, community_binary_data["Vphy"])
        with pytest.raises(InvalidParameterError, match="0 and 1"):
            fit_binary_pql(X, y * 2.0, re.Zt, re.St, re.nested)

    def test_start_length(self, community_binary_data):
        from phylomm import DimensionMismatchError, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 4)
        re = _structure(species, community_binary_data["Vphy"])
        with pytest.raises(DimensionMismatchError, match="B_init"):
            fit_binary_pql(X, y, re.Zt, re.St, re.nested, B_init=np.zeros(5))

    def test_start_sd_length(self, community_binary_data):
        from phylomm import DimensionMismatchError, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 4)
        re = _structure(species, community_binary_data["Vphy"])
        with pytest.raises(DimensionMismatchError, match="par has 1 entries"):
            fit_binary_pql(X, y, re.Zt, re.St, re.nested, ss=[0.5])

    def test_invalid_tolerance(self, community_binary_data):
        from phylomm import InvalidParameterError, fit_binary_pql

        X, y, species, _ = _subset(community_binary_data, 4)
        re = _structure(species, community_binary_data["Vphy"])
        with pytest.raises(InvalidParameterError, match="tol_pql"):
            fit_binary_pql(X, y, re.Zt, re.St, re.nested, tol_pql=-1.0)
