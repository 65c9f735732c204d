"""
Tests for the marginal covariance builder.
"""

import numpy as np
import pytest
import scipy.sparse as sp


def _two_term_structure(balanced_tree_vcv):
    from phylomm.core.structure import RandomEffectStructure, nested_block, random_effect_block

    Vphy = balanced_tree_vcv(2)
    species = np.tile(np.arange(4), 3)
    sites = np.repeat(np.arange(3), 4)
    return RandomEffectStructure.from_blocks(
        [random_effect_block(species), random_effect_block(species, Vphy)],
        nested=[nested_block(species, sites, Vphy)],
    ), species, sites, Vphy


class TestBuildCovariance:
    """C(par) = Ut' Ut + sum sn^2 N_j."""

    def test_matches_dense_formula(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance

        re, species, sites, Vphy = _two_term_structure(balanced_tree_vcv)
        par = np.array([0.7, 1.3, 0.4])

        C = build_covariance(par, re.Zt, re.St, re.nested).toarray()

        Z = np.zeros((12, 4))
        Z[np.arange(12), species] = 1.0
        same_site = (sites[:, None] == sites[None, :]).astype(float)
        expected = 0.49 * Z @ Z.T + 1.69 * Z @ Vphy @ Z.T + 0.16 * (Z @ Vphy @ Z.T) * same_site
        np.testing.assert_allclose(C, expected, atol=1e-12)

    def test_symmetric_sparse(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance

        re, *_ = _two_term_structure(balanced_tree_vcv)
        C = build_covariance([0.3, 2.0, 1.1], re.Zt, re.St, re.nested)

        assert sp.issparse(C)
        assert abs(C - C.T).max() == 0.0

    def test_signs_ignored(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance

        re, *_ = _two_term_structure(balanced_tree_vcv)
        pos = build_covariance([0.3, 2.0, 1.1], re.Zt, re.St, re.nested).toarray()
        neg = build_covariance([-0.3, 2.0, -1.1], re.Zt, re.St, re.nested).toarray()
        np.testing.assert_allclose(pos, neg)

    def test_working_variance_on_diagonal(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance

        re, *_ = _two_term_structure(balanced_tree_vcv)
        par = [0.5, 0.5, 0.5]
        mu = np.linspace(0.2, 0.8, 12)

        C = build_covariance(par, re.Zt, re.St, re.nested).toarray()
        V = build_covariance(par, re.Zt, re.St, re.nested, mu=mu).toarray()
        np.testing.assert_allclose(V - C, np.diag(1.0 / (mu * (1.0 - mu))), atol=1e-12)

    def test_nested_only(self):
        from phylomm.core.covariance import build_covariance

        N = np.eye(5)
        C = build_covariance([2.0], None, None, [N]).toarray()
        np.testing.assert_allclose(C, 4.0 * np.eye(5))


class TestBuildCovarianceErrors:
    def test_par_length_mismatch(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance
        from phylomm.exceptions import DimensionMismatchError

        re, *_ = _two_term_structure(balanced_tree_vcv)
        with pytest.raises(DimensionMismatchError, match="par has 2 entries"):
            build_covariance([0.5, 0.5], re.Zt, re.St, re.nested)

    def test_nested_shape_mismatch(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance
        from phylomm.exceptions import DimensionMismatchError

        re, *_ = _two_term_structure(balanced_tree_vcv)
        with pytest.raises(DimensionMismatchError, match="nested"):
            build_covariance([0.5, 0.5, 0.5], re.Zt, re.St, [np.eye(5)])

    def test_zt_without_st(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance
        from phylomm.exceptions import DimensionMismatchError

        re, *_ = _two_term_structure(balanced_tree_vcv)
        with pytest.raises(DimensionMismatchError, match="together"):
            build_covariance([0.5], re.Zt, None, [])

    def test_mu_length_mismatch(self, balanced_tree_vcv):
        from phylomm.core.covariance import build_covariance
        from phylomm.exceptions import DimensionMismatchError

        re, *_ = _two_term_structure(balanced_tree_vcv)
        with pytest.raises(DimensionMismatchError, match="mu"):
            build_covariance([0.5, 0.5, 0.5], re.Zt, re.St, re.nested, mu=np.full(5, 0.5))


class TestStandardizePhyloCov:
    def test_unit_determinant(self, balanced_tree_vcv):
        from phylomm.core.covariance import standardize_phylo_cov

        V = standardize_phylo_cov(3.0 * balanced_tree_vcv(3) + np.eye(8))
        sign, logdet = np.linalg.slogdet(V)
        assert sign == 1.0
        assert logdet == pytest.approx(0.0, abs=1e-10)

    def test_scale_free(self, balanced_tree_vcv):
        from phylomm.core.covariance import standardize_phylo_cov

        V = balanced_tree_vcv(3) + 0.1 * np.eye(8)
        np.testing.assert_allclose(standardize_phylo_cov(V), standardize_phylo_cov(25.0 * V), rtol=1e-12)
