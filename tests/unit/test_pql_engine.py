"""
Tests for the PQL mean-step engine.
"""

import warnings

import numpy as np
import pytest

pytestmark = pytest.mark.pql


@pytest.fixture
def logistic_data():
    rng = np.random.default_rng(3)
    n = 300
    X = np.column_stack([np.ones(n), rng.standard_normal(n), rng.uniform(-1, 1, n)])
    eta = X @ np.array([0.2, 0.9, -0.6])
    y = (rng.random(n) < 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return X, y


def _start(p, n):
    return np.zeros(p), np.zeros(n), np.full(n, 0.5)


class TestMeanStep:
    """Fixed-point iteration at fixed variance components."""

    def test_no_random_effects_is_logistic_regression(self, logistic_data):
        """With C = 0 the mean step is IRLS for an ordinary logistic GLM."""
        from sklearn.linear_model import LogisticRegression

        from phylomm.core.pql import PQLEngine
        from phylomm.core.results import PQLStatus

        X, y = logistic_data
        n, p = X.shape
        engine = PQLEngine(X, y, tol_pql=1e-10, maxit_pql=100)
        B, b, mu = _start(p, n)
        step = engine.mean_step(B, b, mu, np.zeros((n, n)), B)

        reference = LogisticRegression(C=1e10, fit_intercept=False, tol=1e-12, max_iter=10000).fit(X, y.astype(int))

        assert step.status == PQLStatus.CONVERGED
        assert step.rcondflag == 0
        np.testing.assert_allclose(step.B, reference.coef_.ravel(), atol=1e-4)
        np.testing.assert_allclose(step.b, 0.0, atol=1e-12)

    def test_history_does_not_change_estimates(self, logistic_data, balanced_tree_vcv):
        from phylomm.core.pql import PQLEngine

        X, y = logistic_data
        X, y = X[:64], y[:64]
        n, p = X.shape
        C = 0.5 * np.kron(balanced_tree_vcv(3), np.ones((8, 8)))
        B, b, mu = _start(p, n)

        lean = PQLEngine(X, y, retain_history=False).mean_step(B, b, mu, C, B)
        full = PQLEngine(X, y, retain_history=True).mean_step(B, b, mu, C, B)

        assert lean.history is None
        assert len(full.history) == full.iterations + 1
        np.testing.assert_array_equal(lean.B, full.B)
        np.testing.assert_array_equal(lean.mu, full.mu)
        assert lean.iterations == full.iterations
        np.testing.assert_array_equal(full.history[0], B)
        np.testing.assert_array_equal(full.history[-1], full.B)

    def test_zero_tolerance_hits_iteration_cap(self, logistic_data):
        from phylomm.core.pql import PQLEngine
        from phylomm.core.results import PQLStatus

        X, y = logistic_data
        n, p = X.shape
        engine = PQLEngine(X, y, tol_pql=0.0, maxit_pql=1)
        B, b, mu = _start(p, n)
        step = engine.mean_step(B, b, mu, np.zeros((n, n)), B)

        assert step.iterations == 1
        assert step.status == PQLStatus.MAX_ITER_EXCEEDED
        assert engine.status == PQLStatus.MAX_ITER_EXCEEDED

    def test_ill_conditioned_covariance_restarts(self):
        """Each ill-conditioned V restarts the iterate and is counted."""
        from phylomm.core.pql import PQLEngine
        from phylomm.core.results import PQLStatus

        n = 10
        X = np.ones((n, 1))
        y = np.array([0, 1] * 5, dtype=float)
        C = 1e12 * np.ones((n, n))
        engine = PQLEngine(X, y, maxit_pql=3)

        step = engine.mean_step(np.zeros(1), np.zeros(n), np.full(n, 0.5), C, np.zeros(1))

        assert step.rcondflag == 3
        assert step.status == PQLStatus.MAX_ITER_EXCEEDED

    def test_collinear_design_is_rank_deficient(self, logistic_data):
        from phylomm.core.pql import PQLEngine
        from phylomm.core.results import PQLStatus
        from phylomm.exceptions import RankDeficiencyWarning

        X, y = logistic_data
        X = np.column_stack([X[:, :2], X[:, 1]])
        n, p = X.shape
        engine = PQLEngine(X, y, retain_history=True)
        B, b, mu = _start(p, n)

        with pytest.warns(RankDeficiencyWarning):
            step = engine.mean_step(B, b, mu, np.zeros((n, n)), B)

        assert step.status == PQLStatus.RANK_DEFICIENT
        assert step.rcondflag == 1
        assert np.all(np.isfinite(step.B))
        # Minimum-norm solution splits the slope evenly between the copies
        assert step.B[1] == pytest.approx(step.B[2], rel=1e-6)


class TestWorkingResponse:
    def test_definition(self):
        from phylomm.core.pql import PQLEngine

        X = np.column_stack([np.ones(4), [0.0, 1.0, 2.0, 3.0]])
        y = np.array([0.0, 1.0, 1.0, 0.0])
        engine = PQLEngine(X, y)
        B = np.array([0.1, -0.2])
        b = np.array([0.0, 0.1, -0.1, 0.2])
        mu = np.array([0.4, 0.5, 0.3, 0.6])

        Z, H = engine.working_response(B, b, mu)
        np.testing.assert_allclose(Z, X @ B + b + (y - mu) / (mu * (1 - mu)))
        np.testing.assert_allclose(H, Z - X @ B)

    def test_converge_criterion(self):
        from phylomm.core.pql import converge_criterion

        assert converge_criterion([1.0, 2.0], [1.0, 0.0]) == 4.0
        assert converge_criterion([1.0, 2.0], [1.0, 0.0], scale=2) == 2.0

    def test_invalid_settings(self, logistic_data):
        from phylomm.core.pql import PQLEngine
        from phylomm.exceptions import InvalidParameterError

        X, y = logistic_data
        with pytest.raises(InvalidParameterError, match="maxit_pql"):
            PQLEngine(X, y, maxit_pql=0)
        with pytest.raises(InvalidParameterError, match="tol_pql"):
            PQLEngine(X, y, tol_pql=-1.0)

    def test_no_warning_on_clean_fit(self, logistic_data):
        from phylomm.core.pql import PQLEngine

        X, y = logistic_data
        n, p = X.shape
        B, b, mu = _start(p, n)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            PQLEngine(X, y).mean_step(B, b, mu, np.zeros((n, n)), B)
