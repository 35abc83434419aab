import copy
import io
import math

import numpy as np
import pytest

from bincov.core.covariance import CovarianceMatrix, create_diagonal_covariance, generate_random_covariance
from bincov.core.errors import (
    InvalidArgumentError,
    NotPositiveDefiniteError,
    OutOfRangeError,
    SizeMismatchError,
)
from tests._factories import mk_correlated

# ---------------------------
# construction and elements
# ---------------------------


@pytest.mark.parametrize("size", [0, -3])
def test_rejects_non_positive_size(size):
    with pytest.raises(InvalidArgumentError):
        CovarianceMatrix(size)


def test_from_packed_infers_size():
    cov = CovarianceMatrix.from_packed([1.0, 0.5, 2.0])
    assert cov.size == 2
    assert cov.get_covariance(1, 0) == 0.5
    assert cov.get_covariance(1, 1) == 2.0


def test_from_packed_rejects_bad_length():
    with pytest.raises(InvalidArgumentError):
        CovarianceMatrix.from_packed([1.0, 0.5])


def test_new_matrix_reads_as_zero_and_has_no_inverse():
    cov = CovarianceMatrix(2)
    assert cov.get_covariance(0, 1) == 0.0
    assert cov.get_memory_state().startswith("[------]")
    with pytest.raises(NotPositiveDefiniteError):
        cov.get_inverse_covariance(0, 0)
    assert not cov.is_positive_definite()


def test_off_diagonal_set_mirrors():
    cov = CovarianceMatrix(3).set_covariance(0, 0, 1.0).set_covariance(2, 0, 0.25)
    assert cov.get_covariance(0, 2) == 0.25
    assert cov.get_covariance(2, 0) == 0.25


@pytest.mark.parametrize("value", [0.0, -1.0])
def test_diagonal_must_be_positive(value):
    cov = CovarianceMatrix(2)
    with pytest.raises(InvalidArgumentError):
        cov.set_covariance(1, 1, value)
    with pytest.raises(InvalidArgumentError):
        cov.set_inverse_covariance(0, 0, value)


def test_index_out_of_range():
    cov = CovarianceMatrix(2)
    with pytest.raises(OutOfRangeError):
        cov.set_covariance(0, 2, 1.0)
    with pytest.raises(OutOfRangeError):
        cov.get_covariance(-1, 0)


def test_inverse_is_computed_on_demand_and_cached():
    cov = CovarianceMatrix(2).set_covariance(0, 0, 2.0).set_covariance(1, 1, 4.0)
    assert cov.get_memory_state().startswith("[M-----]")
    assert cov.get_inverse_covariance(0, 0) == pytest.approx(0.5)
    assert cov.get_inverse_covariance(1, 1) == pytest.approx(0.25)
    assert cov.get_memory_state().startswith("[MIC---]")


def test_setting_inverse_invalidates_covariance_and_factor():
    cov = mk_correlated(3)
    cov.get_inverse_covariance(0, 0)
    cov.set_inverse_covariance(1, 1, 5.0)
    assert cov.get_memory_state().startswith("[-I----]")
    dense = cov.as_array()
    assert np.allclose(dense @ cov.as_array(inverse=True), np.eye(3), atol=1e-10)


def test_covariance_from_inverse_round_trip():
    cov = CovarianceMatrix(2)
    cov.set_inverse_covariance(0, 0, 2.0).set_inverse_covariance(1, 1, 3.0).set_inverse_covariance(0, 1, 1.0)
    expected = np.linalg.inv(np.array([[2.0, 1.0], [1.0, 3.0]]))
    assert np.allclose(cov.as_array(), expected)


def test_not_positive_definite_inverse():
    cov = CovarianceMatrix(2).set_covariance(0, 0, 1.0).set_covariance(1, 1, 1.0).set_covariance(0, 1, 2.0)
    with pytest.raises(NotPositiveDefiniteError):
        cov.get_inverse_covariance(0, 0)
    with pytest.raises(NotPositiveDefiniteError):
        cov.get_log_determinant()


# ---------------------------
# vector operations
# ---------------------------


def test_multiply_in_place():
    cov = mk_correlated(3)
    dense = cov.as_array()
    v = np.array([1.0, 2.0, -1.0])
    expected = dense @ v
    cov.multiply_by_covariance(v)
    assert np.allclose(v, expected)
    cov.multiply_by_inverse_covariance(v)
    assert np.allclose(v, [1.0, 2.0, -1.0])


def test_multiply_size_mismatch():
    cov = mk_correlated(3)
    with pytest.raises(SizeMismatchError):
        cov.multiply_by_covariance(np.zeros(2))
    with pytest.raises(SizeMismatchError):
        cov.chi_square([1.0, 2.0])


def test_chi_square_matches_dense():
    cov = mk_correlated(3)
    delta = np.array([0.5, -1.0, 2.0])
    expected = float(delta @ np.linalg.inv(cov.as_array()) @ delta)
    assert cov.chi_square(delta) == pytest.approx(expected)


# ---------------------------
# whole-matrix transforms
# ---------------------------


def test_scale_factor_keeps_forms_in_sync():
    cov = mk_correlated(3)
    before = cov.as_array()
    cov.get_inverse_covariance(0, 0)
    cov.apply_scale_factor(4.0)
    assert np.allclose(cov.as_array(), 4.0 * before)
    assert np.allclose(cov.as_array(inverse=True), np.linalg.inv(4.0 * before))
    assert cov.get_log_determinant() == pytest.approx(np.linalg.slogdet(4.0 * before)[1])


@pytest.mark.parametrize("scale", [0.0, -2.0])
def test_scale_factor_must_be_positive(scale):
    with pytest.raises(InvalidArgumentError):
        mk_correlated(2).apply_scale_factor(scale)


def test_triple_product():
    a = mk_correlated(3)
    b = create_diagonal_covariance([2.0, 3.0, 4.0])
    expected = a.as_array() @ np.linalg.inv(b.as_array()) @ a.as_array()
    a.replace_with_triple_product(b)
    assert np.allclose(a.as_array(), expected)
    assert a.is_positive_definite()


def test_triple_product_size_mismatch():
    with pytest.raises(SizeMismatchError):
        mk_correlated(3).replace_with_triple_product(mk_correlated(2))


def test_add_inverse_sums_precisions():
    a = mk_correlated(3)
    b = create_diagonal_covariance(3, 2.0)
    expected = np.linalg.inv(a.as_array()) + 1.5 * np.linalg.inv(b.as_array())
    a.add_inverse(b, 1.5)
    assert np.allclose(a.as_array(inverse=True), expected)


def test_add_inverse_closed_form_inverse_variance_weighting():
    v1, v2, n1, n2 = 2.0, 5.0, 400, 600
    combined = create_diagonal_covariance(2, v1)
    combined.apply_scale_factor(1.0 / n1)
    combined.add_inverse(create_diagonal_covariance(2, v2), n2)
    assert combined.get_inverse_covariance(0, 0) == pytest.approx(n1 / v1 + n2 / v2)
    assert combined.get_inverse_covariance(0, 1) == 0.0


def test_add_inverse_reads_compressed_operand_without_expanding():
    other = create_diagonal_covariance(4, 2.0)
    other.get_inverse_covariance(0, 0)
    assert other.compress()
    target = CovarianceMatrix(4)
    target.add_inverse(other, 2.0)
    assert other.is_compressed()
    assert target.get_inverse_covariance(3, 3) == pytest.approx(1.0)


def test_add_inverse_into_itself():
    cov = create_diagonal_covariance(2, 4.0)
    cov.add_inverse(cov, 1.0)
    assert cov.get_covariance(0, 0) == pytest.approx(2.0)


@pytest.mark.parametrize("weight", [0.0, -1.0])
def test_add_inverse_weight_must_be_positive(weight):
    with pytest.raises(InvalidArgumentError):
        mk_correlated(2).add_inverse(mk_correlated(2), weight)


def test_eigen_modes_ascending_rows_are_modes():
    cov = mk_correlated(4)
    values, modes = cov.get_eigen_modes()
    assert np.all(np.diff(values) >= 0)
    dense = cov.as_array()
    for k in range(4):
        assert np.allclose(dense @ modes[k], values[k] * modes[k])
        assert np.linalg.norm(modes[k]) == pytest.approx(1.0)


def test_rescale_eigenvalues():
    cov = mk_correlated(3)
    values, modes = cov.get_eigen_modes()
    cov.rescale_eigenvalues([1.0, 2.0, 3.0])
    new_values, _ = cov.get_eigen_modes()
    assert np.allclose(np.sort(new_values), np.sort(values * [1.0, 2.0, 3.0]))
    with pytest.raises(SizeMismatchError):
        cov.rescale_eigenvalues([1.0])
    with pytest.raises(InvalidArgumentError):
        cov.rescale_eigenvalues([1.0, 0.0, 1.0])


def test_prune_keeps_selected_rows_in_order():
    cov = mk_correlated(4)
    dense = cov.as_array()
    cov.prune({3, 1})
    assert cov.size == 2
    assert np.allclose(cov.as_array(), dense[np.ix_([1, 3], [1, 3])])


def test_prune_everything_kept_is_noop():
    cov = mk_correlated(3)
    cov.get_inverse_covariance(0, 0)
    state = cov.get_memory_state()
    cov.prune(range(3))
    assert cov.size == 3
    assert cov.get_memory_state() == state


def test_prune_rejects_out_of_range():
    with pytest.raises(OutOfRangeError):
        mk_correlated(3).prune([0, 3])


# ---------------------------
# sampling
# ---------------------------


def test_sample_returns_delta_and_nll(rng):
    cov = mk_correlated(3)
    delta, nll = cov.sample(rng)
    assert delta.shape == (3,)
    # delta = L z so delta.Cinv.delta = z.z = 2 nll
    assert cov.chi_square(delta) == pytest.approx(2.0 * nll)


def test_sample_many_reproduces_covariance(rng):
    cov = mk_correlated(3)
    draws = cov.sample_many(20000, rng)
    assert draws.shape == (20000, 3)
    assert np.allclose(np.cov(draws, rowvar=False), cov.as_array(), atol=0.15)
    with pytest.raises(InvalidArgumentError):
        cov.sample_many(0, rng)


def test_sample_is_reproducible_for_seeded_generators():
    cov = mk_correlated(3)
    a, _ = cov.sample(np.random.default_rng(7))
    b, _ = cov.sample(np.random.default_rng(7))
    assert np.array_equal(a, b)


# ---------------------------
# compression and diagnostics
# ---------------------------


def test_compress_is_lossless():
    cov = create_diagonal_covariance([2.0, 3.0, 7.0])
    icov_before = [cov.get_inverse_covariance(k, k) for k in range(3)]
    cov_before = cov.as_array()
    assert cov.compress()
    assert cov.is_compressed()
    assert cov.size == 3
    assert cov.get_memory_state().startswith("[---D--]")
    assert [cov.get_inverse_covariance(k, k) for k in range(3)] == icov_before
    assert not cov.is_compressed()
    assert np.array_equal(cov.as_array(), cov_before)


def test_compress_sparse_off_diagonal():
    cov = create_diagonal_covariance(4, 1.0)
    cov.set_covariance(0, 3, 0.25)
    assert cov.compress()
    assert cov.get_memory_state().startswith("[---DZV]")
    assert cov.get_covariance(3, 0) == 0.25
    assert cov.get_covariance(1, 2) == 0.0


def test_compress_not_profitable_for_dense_or_empty():
    assert not mk_correlated(3).compress()
    assert not CovarianceMatrix(3).compress()
    cov = create_diagonal_covariance(2)
    assert cov.compress()
    assert not cov.compress()


def test_memory_usage_shrinks_on_compress():
    cov = create_diagonal_covariance(50, 2.0)
    before = cov.get_memory_usage()
    cov.compress()
    assert cov.get_memory_usage() < before


def test_n_elements_and_log_determinant():
    cov = create_diagonal_covariance([2.0, 3.0])
    assert cov.get_n_elements() == 2
    assert cov.get_log_determinant() == pytest.approx(math.log(6.0))
    cov.set_covariance(0, 1, 0.5)
    assert cov.get_n_elements() == 3


def test_clone_is_independent():
    cov = mk_correlated(3)
    other = copy.copy(cov)
    other.set_covariance(0, 0, 9.0)
    assert cov.get_covariance(0, 0) != 9.0


def test_swap_exchanges_contents():
    a = create_diagonal_covariance(2, 1.0)
    b = create_diagonal_covariance(3, 5.0)
    a.swap(b)
    assert a.size == 3 and a.get_covariance(2, 2) == 5.0
    assert b.size == 2 and b.get_covariance(1, 1) == 1.0


def test_print_normalized_with_labels():
    cov = CovarianceMatrix(2).set_covariance(0, 0, 4.0).set_covariance(1, 1, 9.0).set_covariance(0, 1, 3.0)
    out = io.StringIO()
    cov.print_to_stream(out, normalized=True, fmt="{:.2f}", labels=["a", "bb"])
    assert out.getvalue().splitlines() == ["a  2.00 0.50", "bb 0.50 3.00"]
    with pytest.raises(SizeMismatchError):
        cov.print_to_stream(out, labels=["a"])


def test_generate_random_covariance_fixes_determinant(rng):
    cov = generate_random_covariance(5, rng, scale=2.0)
    assert cov.is_positive_definite()
    assert cov.get_log_determinant() == pytest.approx(5 * math.log(2.0))
    with pytest.raises(InvalidArgumentError):
        generate_random_covariance(0, rng)
