# src/bincov/core/binned_data.py
"""
Module: binned_data
Purpose: Sparse measurements over a grid with an optional shared covariance matrix
Dependencies: numpy; CovarianceMatrix / SharedCovariance from this package

Storage
-------
Three parallel structures track the occupied bins:

  _offset[global_index] -> compact offset, or EMPTY_BIN   (one entry per grid bin)
  _index[offset]        -> global index                   (insertion order)
  _data[offset]         -> value                          (one entry per occupied bin)

``_data`` holds either raw values (unweighted) or ``Cinv . data`` (weighted);
``_weighted`` records which. ``_data_cache`` optionally holds the other
representation so that flipping back and forth is free. Without a covariance
matrix the scalar ``_weight`` plays the role of ``Cinv``.

Covariance matrices may be shared between datasets (``clone``, ``sample``,
``share_covariance_matrix``). A dataset only mutates its matrix in place when it
is the sole owner (see ``SharedCovariance``); otherwise it clones first or fails
with ``NotModifiableError``, as documented per method.
"""

from __future__ import annotations

import math
import sys
from typing import IO, Iterable, Iterator, List, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .covariance import CovarianceMatrix
from .errors import (
    EmptyBinError,
    FinalizedError,
    HasCovarianceError,
    InvalidArgumentError,
    NoCovarianceError,
    NotCongruentError,
    NotModifiableError,
    NotPositiveDefiniteError,
    OutOfRangeError,
    SizeMismatchError,
)
from .grid import Grid
from .packed import VectorLike
from .shared import SharedCovariance

__all__ = ["BinnedData", "EMPTY_BIN"]

EMPTY_BIN = -1


class BinnedData:
    """Binned dataset with inverse-covariance weighting and precision-weighted merging."""

    def __init__(self, grid: Grid) -> None:
        self._grid = grid
        self._offset: NDArray[np.intp] = np.full(grid.total_bins(), EMPTY_BIN, dtype=np.intp)
        self._index: List[int] = []
        self._data: NDArray[np.float64] = np.empty(0, dtype=float)
        self._data_cache: Optional[NDArray[np.float64]] = None
        self._weighted = False
        self._weight = 1.0
        self._finalized = False
        self._covariance: Optional[CovarianceMatrix] = None
        self._shared: Optional[SharedCovariance] = None

    # ---- copies and covariance ownership ----

    def clone(self, binning_only: bool = False) -> "BinnedData":
        """Copy this dataset; the covariance matrix, if any, is shared rather than copied."""
        other = type(self)(self._grid)
        if binning_only:
            return other
        other._offset = self._offset.copy()
        other._index = list(self._index)
        other._data = self._data.copy()
        other._data_cache = None if self._data_cache is None else self._data_cache.copy()
        other._weighted = self._weighted
        other._weight = self._weight
        other._finalized = self._finalized
        other._attach(self._covariance)
        return other

    def copy(self) -> "BinnedData":
        return self.clone()

    __copy__ = copy

    def _attach(self, matrix: Optional[CovarianceMatrix]) -> None:
        if self._shared is not None:
            self._shared.release(self)
        self._covariance = matrix
        self._shared = None
        if matrix is not None:
            self._shared = SharedCovariance.of(matrix)
            self._shared.attach(self)

    def clone_covariance(self) -> None:
        """Replace a (possibly shared) covariance with a private copy."""
        if self._covariance is not None:
            self._attach(self._covariance.clone())

    def drop_covariance(self, weight: float = 1.0) -> None:
        """Unweight the data, release the covariance and fall back to a scalar weight."""
        if self._finalized:
            raise FinalizedError("BinnedData.drop_covariance: object is finalized.")
        self.unweight_data()
        self._attach(None)
        self._weight = float(weight)

    def has_covariance(self) -> bool:
        return self._covariance is not None

    def is_covariance_modifiable(self) -> bool:
        return self._shared is not None and self._shared.is_sole_owner(self)

    def get_covariance_matrix(self) -> Optional[CovarianceMatrix]:
        """
        The attached matrix itself, not a copy.

        Only datasets count as owners, so a caller keeping this reference sees
        later in-place changes made through this dataset (``set_covariance``,
        ``add``, ...). Keep ``get_covariance_matrix().clone()`` for a snapshot.
        """
        return self._covariance

    def set_covariance_matrix(self, matrix: CovarianceMatrix) -> None:
        """
        Attach (share) ``matrix``, which must match the number of bins with data.

        The caller's own reference is not counted as an owner: if this dataset
        is the only dataset holding ``matrix`` it may modify it in place. Pass
        ``matrix.clone()`` to keep the original unchanged.
        """
        if self._finalized:
            raise FinalizedError("BinnedData.set_covariance_matrix: object is finalized.")
        if matrix.size != len(self._index):
            raise SizeMismatchError(
                f"BinnedData.set_covariance_matrix: matrix size {matrix.size} != {len(self._index)} bins with data."
            )
        self._attach(matrix)
        self._data_cache = None

    def share_covariance_matrix(self, other: "BinnedData") -> None:
        """Attach ``other``'s covariance by reference."""
        if self._finalized:
            raise FinalizedError("BinnedData.share_covariance_matrix: object is finalized.")
        if not other.has_covariance():
            raise NoCovarianceError("BinnedData.share_covariance_matrix: no other covariance to share.")
        if not self.is_congruent(other, ignore_covariance=True):
            raise NotCongruentError("BinnedData.share_covariance_matrix: datasets are not congruent.")
        self._attach(other._covariance)
        self._data_cache = None

    # ---- bookkeeping ----

    def get_grid(self) -> Grid:
        return self._grid

    def get_n_bins_with_data(self) -> int:
        return len(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[int]:
        return iter(self._index)

    def has_data(self, index: int) -> bool:
        self._grid.check_index(index)
        return bool(self._offset[index] != EMPTY_BIN)

    def get_index_at_offset(self, offset: int) -> int:
        if not 0 <= offset < len(self._index):
            raise OutOfRangeError(f"BinnedData.get_index_at_offset: invalid offset {offset}.")
        return self._index[offset]

    def get_offset_for_index(self, index: int) -> int:
        if not self.has_data(index):
            raise EmptyBinError(f"BinnedData.get_offset_for_index: bin {index} is empty.")
        return int(self._offset[index])

    def is_weighted(self) -> bool:
        return self._weighted

    def is_finalized(self) -> bool:
        return self._finalized

    def finalize(self) -> None:
        """Freeze the set of bins and the covariance binding; irreversible."""
        self._finalized = True

    def is_congruent(self, other: "BinnedData", only_binning: bool = False, ignore_covariance: bool = False) -> bool:
        if not self._grid.is_congruent(other._grid):
            return False
        if not only_binning:
            # occupied bins are compared as ordered lists, not sets
            if self._index != other._index:
                return False
            if not ignore_covariance and self.has_covariance() != other.has_covariance():
                return False
        return True

    # ---- weighted / unweighted representation ----

    def _set_weighted(self, weighted: bool, flush_cache: bool = False) -> None:
        if weighted != self._weighted:
            if self._data_cache is not None:
                self._data, self._data_cache = self._data_cache, self._data
            else:
                # convert a copy so a failed multiply leaves both slots untouched
                converted = self._data.copy()
                if weighted:
                    if self._covariance is not None and len(converted) > 0:
                        self._covariance.multiply_by_inverse_covariance(converted)
                    elif self._weight != 1:
                        converted *= self._weight
                else:
                    if self._covariance is not None and len(converted) > 0:
                        self._covariance.multiply_by_covariance(converted)
                    elif self._weight != 1:
                        converted /= self._weight
                if not flush_cache:
                    self._data_cache = self._data
                self._data = converted
            self._weighted = weighted
        if flush_cache:
            self._data_cache = None

    def unweight_data(self) -> None:
        """Store raw values and drop any cached weighted copy."""
        self._set_weighted(False, True)

    # ---- values ----

    def get_data(self, index: int, weighted: bool = False) -> float:
        if not self.has_data(index):
            raise EmptyBinError(f"BinnedData.get_data: bin {index} is empty.")
        self._set_weighted(weighted)
        return float(self._data[self._offset[index]])

    def set_data(self, index: int, value: float, weighted: bool = False) -> None:
        """Set the value at ``index``, creating the bin if it has no data yet."""
        exists = self.has_data(index)
        if not exists:
            if self._finalized:
                raise FinalizedError(f"BinnedData.set_data: object is finalized; cannot add bin {index}.")
            if self._covariance is not None:
                raise HasCovarianceError(f"BinnedData.set_data: cannot add bin {index} after covariance.")
        self._set_weighted(weighted, True)
        if exists:
            self._data[self._offset[index]] = value
        else:
            self._offset[index] = len(self._index)
            self._index.append(index)
            self._data = np.append(self._data, float(value))

    def add_data(self, index: int, delta: float, weighted: bool = False) -> None:
        if not self.has_data(index):
            raise EmptyBinError(f"BinnedData.add_data: bin {index} is empty.")
        self._set_weighted(weighted, True)
        self._data[self._offset[index]] += delta

    # ---- covariance elements ----

    def _offsets_with_data(self, where: str, *indices: int) -> List[int]:
        offsets = []
        for index in indices:
            if not self.has_data(index):
                raise EmptyBinError(f"BinnedData.{where}: bin {index} is empty.")
            offsets.append(int(self._offset[index]))
        return offsets

    def _require_covariance(self, where: str) -> CovarianceMatrix:
        if self._covariance is None:
            raise NoCovarianceError(f"BinnedData.{where}: has no covariance specified.")
        return self._covariance

    def _modifiable_covariance(self, where: str) -> CovarianceMatrix:
        if self._covariance is None:
            if self._finalized:
                raise FinalizedError(f"BinnedData.{where}: object is finalized.")
            self._attach(CovarianceMatrix(len(self._index)))
        if not self.is_covariance_modifiable():
            raise NotModifiableError(f"BinnedData.{where}: cannot modify shared covariance.")
        return self._covariance

    def get_covariance(self, index1: int, index2: int) -> float:
        cov = self._require_covariance("get_covariance")
        off1, off2 = self._offsets_with_data("get_covariance", index1, index2)
        return cov.get_covariance(off1, off2)

    def get_inverse_covariance(self, index1: int, index2: int) -> float:
        cov = self._require_covariance("get_inverse_covariance")
        off1, off2 = self._offsets_with_data("get_inverse_covariance", index1, index2)
        return cov.get_inverse_covariance(off1, off2)

    def set_covariance(self, index1: int, index2: int, value: float) -> None:
        """
        Set one covariance element, creating the matrix on first use.

        The data representation is not switched, so stored values keep their
        current weighted/unweighted meaning relative to the new matrix.
        """
        off1, off2 = self._offsets_with_data("set_covariance", index1, index2)
        self._modifiable_covariance("set_covariance").set_covariance(off1, off2, value)
        self._data_cache = None

    def set_inverse_covariance(self, index1: int, index2: int, value: float) -> None:
        off1, off2 = self._offsets_with_data("set_inverse_covariance", index1, index2)
        self._modifiable_covariance("set_inverse_covariance").set_inverse_covariance(off1, off2, value)
        self._data_cache = None

    # ---- merging ----

    def add(self, other: "BinnedData", weight: float = 1.0) -> "BinnedData":
        """
        Merge ``weight * other`` into this dataset by summing weighted data and precisions.

        An empty receiver adopts ``other``'s occupied bins; otherwise both datasets
        must be fully congruent.
        """
        if weight == 0:
            return self
        if weight < 0 and other.has_covariance():
            raise InvalidArgumentError(f"BinnedData.add: expected weight > 0 with a covariance, got {weight}.")
        if not self._index:
            if not self.is_congruent(other, only_binning=True):
                raise NotCongruentError("BinnedData.add: datasets have different binning.")
        else:
            if not self.is_congruent(other):
                raise NotCongruentError("BinnedData.add: datasets are not congruent.")
            if self._covariance is not None and not self.is_covariance_modifiable():
                raise NotModifiableError("BinnedData.add: cannot modify shared covariance.")
        # weighted conversions may raise, so run them before changing anything
        other._set_weighted(True)
        if not self._index:
            for index in other._index:
                self.set_data(index, 0.0)
            if other.has_covariance():
                self._attach(CovarianceMatrix(len(self._index)))
            else:
                # the scalar weight stands in for Cinv and accumulates below
                self._weight = 0.0
            # zeros are already valid Cinv.data; do not transform them
            self._weighted = True
        else:
            self._set_weighted(True, True)
        self._data += weight * other._data
        if self._covariance is not None:
            self._covariance.add_inverse(other._covariance, weight)
        else:
            self._weight += other._weight * weight
        return self

    def __iadd__(self, other: "BinnedData") -> "BinnedData":
        return self.add(other)

    # ---- covariance transforms ----

    def transform_covariance(self, transform: CovarianceMatrix) -> None:
        """
        Replace our covariance ``C`` with ``D . Cinv . D`` for ``D = transform``.

        On return ``transform`` holds the previous ``C``.
        """
        self._require_covariance("transform_covariance")
        self.unweight_data()
        if not self.is_covariance_modifiable():
            self.clone_covariance()
        transform.replace_with_triple_product(self._covariance)
        transform.swap(self._covariance)

    def rescale_eigenvalues(self, mode_scales: VectorLike) -> None:
        cov = self._require_covariance("rescale_eigenvalues")
        if len(mode_scales) != len(self._index):
            raise SizeMismatchError(
                f"BinnedData.rescale_eigenvalues: expected {len(self._index)} mode scales, got {len(mode_scales)}."
            )
        self.unweight_data()
        if not self.is_covariance_modifiable():
            self.clone_covariance()
            cov = self._covariance
        cov.rescale_eigenvalues(mode_scales)

    def project_onto_modes(self, nkeep: int) -> int:
        """
        Project the data onto covariance eigenmodes.

        ``nkeep > 0`` keeps the ``nkeep`` lowest-variance modes, ``nkeep < 0`` the
        ``|nkeep|`` highest. Returns the number of modes dropped.
        """
        if self._finalized:
            raise FinalizedError("BinnedData.project_onto_modes: object is finalized.")
        cov = self._require_covariance("project_onto_modes")
        size = len(self._index)
        if nkeep == 0 or nkeep >= size or nkeep <= -size:
            raise InvalidArgumentError(f"BinnedData.project_onto_modes: invalid nkeep {nkeep} for {size} bins.")
        _, modes = cov.get_eigen_modes()
        kept = modes[:nkeep] if nkeep > 0 else modes[size + nkeep:]
        self.unweight_data()
        self._data = kept.T @ (kept @ self._data)
        return size - abs(nkeep)

    def prune(self, keep: Iterable[int]) -> None:
        """Keep only the listed global indices, compacted in their original offset order."""
        if self._finalized:
            raise FinalizedError("BinnedData.prune: object is finalized.")
        offsets = set()
        for index in keep:
            self._grid.check_index(index)
            if self._offset[index] == EMPTY_BIN:
                raise EmptyBinError(f"BinnedData.prune: bin {index} is empty.")
            offsets.add(int(self._offset[index]))
        if len(offsets) == len(self._index):
            return
        if not offsets and self._covariance is not None:
            raise InvalidArgumentError("BinnedData.prune: cannot prune every bin of a dataset with covariance.")
        kept = sorted(offsets)
        self.unweight_data()
        new_index = [self._index[offset] for offset in kept]
        self._offset[:] = EMPTY_BIN
        self._offset[new_index] = np.arange(len(kept), dtype=np.intp)
        self._index = new_index
        self._data = self._data[kept]
        if self._covariance is not None:
            if not self.is_covariance_modifiable():
                self.clone_covariance()
            self._covariance.prune(kept)

    # ---- statistics ----

    def _check_prediction(self, pred: VectorLike, where: str) -> NDArray[np.float64]:
        values = np.array(pred, dtype=float)
        if values.shape != (len(self._index),):
            raise SizeMismatchError(
                f"BinnedData.{where}: prediction has shape {values.shape}, expected ({len(self._index)},)."
            )
        return values

    def chi_square(self, pred: VectorLike) -> float:
        """
        Chi-square of ``pred - data`` using the covariance or the scalar weight.

        Residuals are formed in a private copy; ``pred`` is left unchanged and
        does not hold the residuals on return.
        """
        residuals = self._check_prediction(pred, "chi_square")
        self._set_weighted(False)
        residuals -= self._data
        if self._covariance is not None:
            return self._covariance.chi_square(residuals)
        return self._weight * float(residuals @ residuals)

    def get_decorrelated_weights(self, pred: VectorLike) -> NDArray[np.float64]:
        """
        Per-bin weights ``w`` with ``sum(w * delta**2) == chi_square(pred)``.

        With a covariance, ``w_j = sum_k Cinv[j,k] delta_k / delta_j`` where
        ``delta = data - pred``, and ``Cinv[j,j]`` when ``delta_j == 0``.
        """
        p = self._check_prediction(pred, "get_decorrelated_weights")
        if self._covariance is None:
            return np.full(len(self._index), self._weight)
        self._set_weighted(False)
        delta = self._data - p
        icov = self._covariance.as_array(inverse=True)
        numerator = icov @ delta
        nonzero = delta != 0
        return np.where(nonzero, numerator / np.where(nonzero, delta, 1.0), np.diag(icov))

    def get_scalar_weight(self) -> float:
        """``exp(-log|C| / n)`` with a covariance, else the scalar weight."""
        if self._covariance is not None:
            return math.exp(-self._covariance.get_log_determinant() / len(self._index))
        return self._weight

    def sample(self, random: np.random.Generator) -> "BinnedData":
        """
        Return a new dataset holding our unweighted values plus Gaussian noise.

        The noise is drawn from our covariance (which the result shares), or with
        variance ``1 / weight`` per bin when only a scalar weight is present.
        """
        sampled = self.clone(binning_only=True)
        n = len(self._index)
        if self._covariance is not None:
            noise, _ = self._covariance.sample(random)
        else:
            if n and self._weight <= 0:
                raise InvalidArgumentError(f"BinnedData.sample: scalar weight {self._weight} is not positive.")
            noise = random.standard_normal(n) / math.sqrt(self._weight) if n else np.empty(0)
        self._set_weighted(False)
        sampled._offset = self._offset.copy()
        sampled._index = list(self._index)
        sampled._data = self._data + noise
        if self._covariance is not None:
            sampled.set_covariance_matrix(self._covariance)
        else:
            sampled._weight = self._weight
        return sampled

    # ---- compression and diagnostics ----

    def compress(self, weighted: bool = False) -> bool:
        """Settle on one representation, drop the cache and compress the covariance if possible."""
        self._set_weighted(weighted)
        self._data_cache = None
        return self._covariance.compress() if self._covariance is not None else False

    def is_compressed(self) -> bool:
        return self._covariance.is_compressed() if self._covariance is not None else False

    def get_memory_usage(self, include_covariance: bool = True) -> int:
        size = (
            sys.getsizeof(self)
            + int(self._offset.nbytes)
            + sys.getsizeof(self._index)
            + int(self._data.nbytes)
            + (int(self._data_cache.nbytes) if self._data_cache is not None else 0)
        )
        if include_covariance and self._covariance is not None:
            size += self._covariance.get_memory_usage()
        return size

    def get_memory_state(self) -> str:
        state = "%6d %s%c " % (
            self.get_memory_usage(False),
            "CinvD" if self._weighted else "    D",
            "+" if self._data_cache is not None else "-",
        )
        if self._covariance is not None:
            state += "refcount %2d " % self._shared.use_count
            state += self._covariance.get_memory_state()
        else:
            state += "no covariance"
        return state

    def print_to_stream(self, out: Optional[IO[str]] = None, fmt: str = "{:12.6g}") -> None:
        out = sys.stdout if out is None else out
        for index in self._index:
            out.write(f"[{index:4d}] " + fmt.format(self.get_data(index)) + "\n")

    def save_data(self, out: IO[str], weighted: bool = False) -> None:
        """Write ``"<index> <value>"`` lines at full double precision in occupied-bin order."""
        for index in self._index:
            out.write(f"{index} {self.get_data(index, weighted)!r}\n")

    def save_inverse_covariance(self, out: IO[str], scale: float = 1.0) -> None:
        """
        Write ``"<index1> <index2> <value>"`` lines of ``scale * Cinv``.

        Every diagonal element is written; off-diagonal elements are written once
        per pair (second index later in occupied-bin order) and only when non-zero.
        """
        cov = self._require_covariance("save_inverse_covariance")
        if not cov.is_positive_definite():
            raise NotPositiveDefiniteError("BinnedData.save_inverse_covariance: matrix is not positive definite.")
        icov = cov.as_array(inverse=True)
        for a, index1 in enumerate(self._index):
            out.write(f"{index1} {index1} {float(scale * icov[a, a])!r}\n")
            for b in range(a + 1, len(self._index)):
                value = float(scale * icov[a, b])
                if value == 0:
                    continue
                out.write(f"{index1} {self._index[b]} {value!r}\n")

    def __repr__(self) -> str:
        return f"BinnedData(nbins={len(self._index)}, state={self.get_memory_state()!r})"
