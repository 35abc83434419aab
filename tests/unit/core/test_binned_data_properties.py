# tests/unit/core/test_binned_data_properties.py
"""Property tests for dataset invariants with explicit seeding."""

from __future__ import annotations

import numpy as np
import pytest

from bincov.core import BinnedData, create_diagonal_covariance, generate_random_covariance
from tests._factories import mk_dataset, mk_grid

hypothesis = pytest.importorskip("hypothesis")
given = hypothesis.given
settings = hypothesis.settings
seed = hypothesis.seed
st = hypothesis.strategies

values_st = st.lists(st.floats(-100.0, 100.0, allow_nan=False), min_size=1, max_size=6)


def _random_dataset(values, cov_seed: int) -> BinnedData:
    cov = generate_random_covariance(len(values), np.random.default_rng(cov_seed), scale=2.0)
    return mk_dataset(values, covariance=cov)


@seed(0)
@settings(max_examples=40, deadline=None)
@given(values_st, st.integers(0, 2**16))
def test_weighted_round_trip(values, cov_seed: int) -> None:
    data = _random_dataset(values, cov_seed)
    dense = data.get_covariance_matrix().as_array()
    weighted = np.array([data.get_data(i, weighted=True) for i in data])
    # settle on the weighted form so reading back must multiply by C
    data.compress(weighted=True)
    assert np.allclose(dense @ weighted, values, atol=1e-8)
    assert np.allclose([data.get_data(i) for i in data], values, atol=1e-8)


@seed(0)
@settings(max_examples=40, deadline=None)
@given(st.lists(st.floats(0.01, 100.0), min_size=2, max_size=8))
def test_compression_is_lossless(diagonal) -> None:
    cov = create_diagonal_covariance(diagonal)
    icov = [cov.get_inverse_covariance(k, k) for k in range(len(diagonal))]
    assert cov.compress()
    assert [cov.get_covariance(k, k) for k in range(len(diagonal))] == [float(v) for v in diagonal]
    assert [cov.get_inverse_covariance(k, k) for k in range(len(diagonal))] == icov


@seed(0)
@settings(max_examples=40, deadline=None)
@given(values_st, st.integers(0, 2**16), st.floats(-50.0, 50.0))
def test_decorrelated_weights_sum_to_chi_square(values, cov_seed: int, shift: float) -> None:
    data = _random_dataset(values, cov_seed)
    pred = np.array(values) + shift * np.arange(len(values))
    delta = np.array(values) - pred
    weights = data.get_decorrelated_weights(pred)
    assert float(np.sum(weights * delta**2)) == pytest.approx(data.chi_square(pred), rel=1e-7, abs=1e-9)


@seed(0)
@settings(max_examples=40, deadline=None)
@given(
    st.lists(st.floats(-10.0, 10.0), min_size=3, max_size=3),
    st.lists(st.floats(-10.0, 10.0), min_size=3, max_size=3),
    st.floats(0.1, 10.0),
    st.floats(0.1, 10.0),
)
def test_scalar_add_is_order_independent(a_values, b_values, wa: float, wb: float) -> None:
    grid = mk_grid(3)
    a = mk_dataset(a_values, grid=grid)
    a.drop_covariance(wa)
    b = mk_dataset(b_values, grid=grid)
    b.drop_covariance(wb)
    ab = BinnedData(grid).add(a).add(b)
    ba = BinnedData(grid).add(b).add(a)
    assert [ab.get_data(i) for i in ab] == pytest.approx([ba.get_data(i) for i in ba], abs=1e-9)
    assert ab.get_scalar_weight() == pytest.approx(ba.get_scalar_weight())


@seed(0)
@settings(max_examples=40, deadline=None)
@given(st.integers(2, 8).flatmap(lambda n: st.tuples(st.just(n), st.sets(st.integers(0, n - 1), min_size=1))))
def test_prune_preserves_kept_values(case) -> None:
    n, keep = case
    values = [float(10 * k) for k in range(n)]
    data = _random_dataset(values, n)
    data.prune(keep)
    assert list(data) == sorted(keep)
    assert [data.get_data(i) for i in data] == [10.0 * k for k in sorted(keep)]
    assert data.get_covariance_matrix().size == len(keep)
    assert all(not data.has_data(k) for k in range(n) if k not in keep)
