"""
Tests for input validation helpers.
"""

import numpy as np
import pytest
import scipy.sparse as sp


class TestValidationResult:
    def test_raise_if_invalid_lists_errors(self):
        from phylomm.exceptions import DimensionMismatchError
        from phylomm.utils.validators import _ValidationResult

        result = _ValidationResult(False, ["first problem", "second problem"], [])
        with pytest.raises(DimensionMismatchError) as excinfo:
            result.raise_if_invalid()
        assert "first problem" in str(excinfo.value)
        assert "second problem" in str(excinfo.value)

    def test_valid_does_nothing(self):
        from phylomm.utils.validators import _ValidationResult

        _ValidationResult(True, [], []).raise_if_invalid()

    def test_custom_error_class(self):
        from phylomm.exceptions import InvalidParameterError
        from phylomm.utils.validators import _ValidationResult

        with pytest.raises(InvalidParameterError):
            _ValidationResult(False, ["bad"], []).raise_if_invalid(InvalidParameterError)


class TestIterationSettings:
    def test_valid(self):
        from phylomm.utils.validators import _validate_iteration_settings

        _validate_iteration_settings(maxit=10, reltol=1e-8, tol_pql=0.0, boot=0, reps=np.int64(5))

    @pytest.mark.parametrize(
        "settings, fragment",
        [
            ({"maxit": 0}, "maxit must be >= 1"),
            ({"maxit_pql": 2.5}, "whole number"),
            ({"reltol": -1e-3}, "reltol must be >= 0"),
            ({"boot": -1}, "boot must be >= 0"),
            ({"max_iter": "100"}, "max_iter must be"),
        ],
    )
    def test_invalid(self, settings, fragment):
        from phylomm.exceptions import InvalidParameterError
        from phylomm.utils.validators import _validate_iteration_settings

        with pytest.raises(InvalidParameterError, match=fragment):
            _validate_iteration_settings(**settings)

    def test_invalid_parameter_is_value_error(self):
        from phylomm.exceptions import InvalidParameterError

        assert issubclass(InvalidParameterError, ValueError)


class TestRandomStructure:
    def test_consistent(self):
        from phylomm.utils.validators import _validate_random_structure

        Zt = sp.csr_matrix(np.ones((4, 6)))
        St = sp.csr_matrix(np.ones((1, 4)))
        result = _validate_random_structure(Zt, St, [sp.eye(6)], 6, n_par=2)
        assert result.is_valid

    def test_every_mismatch_reported(self):
        from phylomm.utils.validators import _validate_random_structure

        Zt = sp.csr_matrix(np.ones((4, 5)))
        St = sp.csr_matrix(np.ones((1, 3)))
        result = _validate_random_structure(Zt, St, [sp.eye(4)], 6, n_par=5)

        assert not result.is_valid
        assert len(result.errors) == 4


class TestDesign:
    def test_row_mismatch(self):
        from phylomm.utils.validators import _validate_design

        result = _validate_design(np.ones((5, 2)), np.ones(4))
        assert not result.is_valid
        assert "5 rows" in result.errors[0]

    def test_too_many_columns(self):
        from phylomm.utils.validators import _validate_design

        result = _validate_design(np.ones((3, 3)), np.ones(3))
        assert not result.is_valid

    def test_non_finite(self):
        from phylomm.utils.validators import _validate_design

        X = np.ones((5, 2))
        X[0, 1] = np.nan
        assert not _validate_design(X, np.ones(5)).is_valid


class TestBinaryResponse:
    def test_valid(self):
        from phylomm.utils.validators import _validate_binary_response

        _validate_binary_response(np.array([0.0, 1.0, 1.0]))

    def test_other_values(self):
        from phylomm.exceptions import InvalidParameterError
        from phylomm.utils.validators import _validate_binary_response

        with pytest.raises(InvalidParameterError, match="only 0 and 1"):
            _validate_binary_response(np.array([0.0, 2.0, 1.0]))

    def test_single_class(self):
        from phylomm.exceptions import InvalidParameterError
        from phylomm.utils.validators import _validate_binary_response

        with pytest.raises(InvalidParameterError, match="both"):
            _validate_binary_response(np.ones(5))


class TestShapes:
    def test_square(self):
        from phylomm.utils.validators import _validate_square

        assert _validate_square(np.eye(3), "V").is_valid
        assert not _validate_square(np.ones((2, 3)), "V").is_valid
        assert not _validate_square(np.eye(3), "V", n=4).is_valid

    def test_declared_sizes(self):
        from phylomm.utils.validators import _validate_declared_sizes

        assert _validate_declared_sizes((10, 2), (None, 2), ("n", "p")).is_valid
        result = _validate_declared_sizes((10, 2), (12, 2), ("n", "p"))
        assert result.errors == ["n=12 does not match the data (10)"]

    def test_as_float_matrix_promotes_vector(self):
        from phylomm.utils.validators import _as_float_matrix

        assert _as_float_matrix([1, 2, 3], "x").shape == (3, 1)

    def test_as_sparse_empty_is_none(self):
        from phylomm.utils.validators import _as_sparse

        assert _as_sparse(None) is None
        assert _as_sparse(np.zeros((0, 4))) is None
