"""
Tests for the single-phylogeny binary PGLMM.
"""

import warnings

import numpy as np
import pytest

pytestmark = pytest.mark.pql


@pytest.fixture
def phylo_binary(balanced_tree_vcv):
    """64 species, one observation each, with a strong phylogenetic signal."""
    rng = np.random.default_rng(99)
    Vphy = balanced_tree_vcv(6)
    n = Vphy.shape[0]
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    phylo = np.linalg.cholesky(Vphy + 1e-9 * np.eye(n)) @ rng.standard_normal(n) * 1.5
    eta = X @ np.array([0.0, 1.5]) + phylo
    y = (rng.random(n) < 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return X, y, Vphy


class TestBinaryPGLMM:
    def test_fit(self, phylo_binary):
        from phylomm import NonConvergenceWarning, PQLStatus, binary_pglmm

        X, y, Vphy = phylo_binary
        with warnings.catch_warnings():
            warnings.simplefilter("error", NonConvergenceWarning)
            fit = binary_pglmm(X, y, Vphy, tol_pql=1e-4)

        assert fit.status == PQLStatus.CONVERGED
        assert fit.convcode == 0
        assert fit.converged
        assert fit.B.shape == (2,)
        assert fit.B[1] > 0
        assert fit.s2r.shape == (1,)
        assert fit.s2r[0] >= 0.0
        assert fit.ss[0] == pytest.approx(np.sqrt(fit.s2r[0]))
        assert fit.s2n.shape == (0,)
        assert 0.0 <= fit.s2_lrt_pvalue <= 0.5
        assert fit.reml

    def test_covariance_uses_standardized_phylogeny(self, phylo_binary):
        """Rescaling Vphy leaves the fit unchanged."""
        from phylomm import binary_pglmm

        X, y, Vphy = phylo_binary
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            a = binary_pglmm(X, y, Vphy, maxit_pql=5, B_init=np.zeros(2))
            b = binary_pglmm(X, y, 4.0 * Vphy, maxit_pql=5, B_init=np.zeros(2))

        np.testing.assert_allclose(a.B, b.B, rtol=1e-8)
        np.testing.assert_allclose(a.s2r, b.s2r, rtol=1e-8)

    def test_history_retention(self, phylo_binary):
        from phylomm import binary_pglmm

        X, y, Vphy = phylo_binary
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            lean = binary_pglmm(X, y, Vphy, maxit_pql=5)
            full = binary_pglmm(X, y, Vphy, maxit_pql=5, retain_history=True)

        assert lean.history is None
        assert len(full.history) == full.niter
        assert {"iteration", "B", "s2", "LL", "mean_step"} <= set(full.history[-1])
        np.testing.assert_array_equal(lean.B, full.B)

    def test_no_signal_keeps_variance_in_range(self, balanced_tree_vcv):
        """Without phylogenetic signal the variance estimate stays inside [0, 10]."""
        from phylomm import binary_pglmm

        rng = np.random.default_rng(5)
        Vphy = balanced_tree_vcv(6)
        n = Vphy.shape[0]
        X = np.column_stack([np.ones(n), rng.standard_normal(n)])
        y = (rng.random(n) < 1.0 / (1.0 + np.exp(-X[:, 1]))).astype(float)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = binary_pglmm(X, y, Vphy, tol_pql=1e-4)

        assert 0.0 <= fit.s2r[0] <= 10.0
        assert fit.ss[0] == pytest.approx(np.sqrt(fit.s2r[0]))

    def test_variance_search_failure_warns(self, phylo_binary):
        from phylomm import NonConvergenceWarning, binary_pglmm, set_optimizer
        from phylomm.backends import OptimizerOutcome

        class _FailingOptimizer:
            def minimize(self, objective, initial, bounds, config):
                return OptimizerOutcome(x=initial, fun=objective(initial), success=False, nfev=1, message="stopped", hit_limit=False)

        X, y, Vphy = phylo_binary
        set_optimizer(_FailingOptimizer())
        with pytest.warns(NonConvergenceWarning, match="phylogenetic variance search"):
            fit = binary_pglmm(X, y, Vphy, maxit_pql=3)

        assert fit.convcode == 10
        assert not fit.converged

    def test_iteration_cap_warns(self, phylo_binary):
        from phylomm import NonConvergenceWarning, PQLStatus, binary_pglmm

        X, y, Vphy = phylo_binary
        with pytest.warns(NonConvergenceWarning):
            fit = binary_pglmm(X, y, Vphy, maxit_pql=1)
        assert fit.status == PQLStatus.MAX_ITER_EXCEEDED


class TestBinaryPGLMMErrors:
    def test_vphy_size(self, phylo_binary):
        from phylomm import DimensionMismatchError, binary_pglmm

        X, y, Vphy = phylo_binary
        with pytest.raises(DimensionMismatchError, match="Vphy"):
            binary_pglmm(X, y, Vphy[:10, :10])

    def test_single_class(self, phylo_binary):
        from phylomm import InvalidParameterError, binary_pglmm

        X, _, Vphy = phylo_binary
        with pytest.raises(InvalidParameterError, match="both"):
            binary_pglmm(X, np.zeros(X.shape[0]), Vphy)

    def test_invalid_iterations(self, phylo_binary):
        from phylomm import InvalidParameterError, binary_pglmm

        X, y, Vphy = phylo_binary
        with pytest.raises(InvalidParameterError, match="maxit_reml"):
            binary_pglmm(X, y, Vphy, maxit_reml=0)
