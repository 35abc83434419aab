# src/bincov/core/resampler.py
"""
Module: resampler
Purpose: Combine, bootstrap and jackknife collections of congruent datasets
Dependencies: numpy, itertools

Observations are combined by precision weighting (``BinnedData.add``), so a
bootstrap sample that draws an observation k times adds it with weight k.
With ``scalar_weights=True`` each observation's covariance is replaced on entry
by its effective scalar weight ``exp(-log|C|/n)``, which is much cheaper to
combine for large bin counts.
"""

from __future__ import annotations

from itertools import combinations, islice
from typing import List, Optional, Union

import numpy as np
from numpy.typing import NDArray

from .binned_data import BinnedData
from .covariance import CovarianceMatrix
from .errors import InvalidArgumentError, NotCongruentError, SizeMismatchError
from .packed import VectorLike, pack_symmetric

__all__ = ["CovarianceAccumulator", "BinnedDataResampler", "get_subset"]


def get_subset(n: int, seqno: int, m: int) -> Optional[List[int]]:
    """The ``seqno``-th ``m``-element subset of ``range(n)`` in lexicographic order, or None."""
    if m <= 0 or m > n:
        raise InvalidArgumentError(f"get_subset: expected 0 < m <= n, got m={m}, n={n}.")
    if seqno < 0:
        raise InvalidArgumentError(f"get_subset: expected seqno >= 0, got {seqno}.")
    subset = next(islice(combinations(range(n), m), seqno, None), None)
    return None if subset is None else list(subset)


class CovarianceAccumulator:
    """Running mean and sample covariance of fixed-length vectors (Welford updates)."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise InvalidArgumentError(f"CovarianceAccumulator: expected size > 0, got {size}.")
        self._size = size
        self._count = 0
        self._mean = np.zeros(size, dtype=float)
        self._m2 = np.zeros((size, size), dtype=float)

    @property
    def count(self) -> int:
        return self._count

    def accumulate(self, sample: Union[BinnedData, VectorLike]) -> None:
        if isinstance(sample, BinnedData):
            vector = np.array([sample.get_data(index) for index in sample], dtype=float)
        else:
            vector = np.asarray(sample, dtype=float)
        if vector.shape != (self._size,):
            raise SizeMismatchError(
                f"CovarianceAccumulator.accumulate: expected {self._size} values, got shape {vector.shape}."
            )
        self._count += 1
        delta = vector - self._mean
        self._mean += delta / self._count
        self._m2 += np.outer(delta, vector - self._mean)

    def mean(self) -> NDArray[np.float64]:
        return self._mean.copy()

    def get_covariance(self) -> CovarianceMatrix:
        if self._count < 2:
            raise InvalidArgumentError("CovarianceAccumulator.get_covariance: need at least 2 samples.")
        cov = self._m2 / (self._count - 1)
        return CovarianceMatrix.from_packed(pack_symmetric(0.5 * (cov + cov.T)))


class BinnedDataResampler:
    """Collects congruent observations and builds combined and resampled datasets."""

    def __init__(self, random: np.random.Generator, scalar_weights: bool = False) -> None:
        self._random = random
        self._scalar_weights = scalar_weights
        self._observations: List[BinnedData] = []
        self._combined: Optional[BinnedData] = None

    @property
    def n_observations(self) -> int:
        return len(self._observations)

    def add_observation(self, data: BinnedData) -> None:
        if self._scalar_weights:
            obs = data.clone(binning_only=True)
            for index in data:
                obs.set_data(index, data.get_data(index))
            obs.drop_covariance(data.get_scalar_weight())
        else:
            obs = data.clone()
        if self._observations and not self._observations[0].is_congruent(obs):
            raise NotCongruentError("BinnedDataResampler.add_observation: observation is not congruent.")
        self._observations.append(obs)
        self._combined = None

    def _require_observations(self, where: str) -> None:
        if not self._observations:
            raise InvalidArgumentError(f"BinnedDataResampler.{where}: no observations added.")

    def _combine(self, counts: Union[NDArray[np.int64], List[int]]) -> BinnedData:
        result = self._observations[0].clone(binning_only=True)
        for obs, count in zip(self._observations, counts):
            if count:
                result.add(obs, float(count))
        return result

    def combined(self) -> BinnedData:
        """Precision-weighted combination of every observation."""
        self._require_observations("combined")
        if self._combined is None:
            self._combined = self._combine([1] * len(self._observations))
        return self._combined.clone()

    def bootstrap(self, size: int = 0, fix_covariance: bool = False) -> BinnedData:
        """
        Combine ``size`` observations drawn with replacement (default: as many as were added).

        With ``fix_covariance`` the result keeps its combined values but takes the
        covariance of all observations combined, rescaled to ``size`` draws.
        """
        self._require_observations("bootstrap")
        n = len(self._observations)
        size = size or n
        if size < 0:
            raise InvalidArgumentError(f"BinnedDataResampler.bootstrap: expected size >= 0, got {size}.")
        picks = self._random.integers(0, n, size=size)
        result = self._combine(np.bincount(picks, minlength=n))
        if fix_covariance:
            result.unweight_data()
            combined = self.combined()
            if combined.has_covariance():
                cov = combined.get_covariance_matrix().clone()
                cov.apply_scale_factor(n / size)
                result.set_covariance_matrix(cov)
            else:
                result.drop_covariance(combined.get_scalar_weight() * size / n)
        return result

    def jackknife(self, ndrop: int, seqno: int) -> Optional[BinnedData]:
        """Combination leaving out the ``seqno``-th ``ndrop``-subset of observations, or None when exhausted."""
        self._require_observations("jackknife")
        n = len(self._observations)
        if not 0 < ndrop < n:
            raise InvalidArgumentError(f"BinnedDataResampler.jackknife: expected 0 < ndrop < {n}, got {ndrop}.")
        dropped = get_subset(n, seqno, ndrop)
        if dropped is None:
            return None
        drop = set(dropped)
        return self._combine([0 if k in drop else 1 for k in range(n)])

    def estimate_combined_covariance(self, ntrials: int) -> CovarianceAccumulator:
        """Accumulate ``ntrials`` bootstrap combinations to estimate their covariance."""
        self._require_observations("estimate_combined_covariance")
        if ntrials <= 0:
            raise InvalidArgumentError(f"BinnedDataResampler.estimate_combined_covariance: bad ntrials {ntrials}.")
        accumulator = CovarianceAccumulator(self._observations[0].get_n_bins_with_data())
        for _ in range(ntrials):
            accumulator.accumulate(self.bootstrap())
        return accumulator
