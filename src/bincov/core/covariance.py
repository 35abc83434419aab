# src/bincov/core/covariance.py
"""
Module: covariance
Purpose: Fixed-size symmetric positive-definite matrix with lazily synchronised forms
Dependencies: numpy, scipy.linalg

Overview
--------
A ``CovarianceMatrix`` holds one logical SPD matrix ``C`` in one of two storage
forms:

  expanded   : up to three packed vectors, the covariance ``C``, its inverse
               ``Cinv`` and the lower Cholesky factor of ``C``. Only the vectors
               that have been computed are present. Changing an element of one
               form drops the other form and the Cholesky factor.
  compressed : a diagonal vector plus sparse (offset, value) off-diagonal pairs
               for every form that was present when ``compress()`` ran. Any
               operation other than ``size`` / ``is_compressed()`` / ``compress()``
               and ``add_inverse`` applied *from* a compressed matrix restores
               the expanded form first, bit for bit.

Conversions between ``C`` and ``Cinv`` go through a Cholesky factorisation and
are memoised. A failed factorisation raises ``NotPositiveDefiniteError``.

A newly constructed matrix has no elements allocated and reads as the zero
matrix in covariance form; its inverse form cannot be read until enough
elements make it positive definite.
"""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass, field
from typing import IO, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.linalg
from numpy.typing import NDArray

from .errors import (
    InvalidArgumentError,
    NotPositiveDefiniteError,
    OutOfRangeError,
    SizeMismatchError,
)
from .packed import (
    PackedArray,
    VectorLike,
    cholesky_decompose,
    invert_cholesky,
    pack_symmetric,
    packed_length,
    symmetric_matrix_index,
    symmetric_matrix_size,
    unpack_lower_factor,
    unpack_symmetric,
)

__all__ = [
    "CovarianceMatrix",
    "create_diagonal_covariance",
    "generate_random_covariance",
]


def _diagonal_offsets(size: int) -> NDArray[np.intp]:
    j = np.arange(size, dtype=np.intp)
    return j + (j * (j + 1)) // 2


# ---- Storage variants --------------------------------------------------------


@dataclass
class _Expanded:
    cov: Optional[PackedArray] = None
    icov: Optional[PackedArray] = None
    cholesky: Optional[PackedArray] = None

    def arrays(self) -> List[PackedArray]:
        return [a for a in (self.cov, self.icov, self.cholesky) if a is not None]

    def copy(self) -> "_Expanded":
        return _Expanded(
            cov=None if self.cov is None else self.cov.copy(),
            icov=None if self.icov is None else self.icov.copy(),
            cholesky=None if self.cholesky is None else self.cholesky.copy(),
        )


@dataclass
class _SparseForm:
    """Diagonal plus non-zero off-diagonal elements of one packed form."""

    diag: NDArray[np.float64]
    offdiag_index: NDArray[np.intp]
    offdiag_value: NDArray[np.float64]

    @classmethod
    def encode(cls, packed: PackedArray, size: int) -> "_SparseForm":
        diag_at = _diagonal_offsets(size)
        mask = np.ones(len(packed), dtype=bool)
        mask[diag_at] = False
        mask &= packed != 0
        nonzero = np.flatnonzero(mask)
        return cls(
            diag=packed[diag_at].copy(),
            offdiag_index=nonzero.astype(np.intp),
            offdiag_value=packed[nonzero].copy(),
        )

    def decode(self, size: int) -> PackedArray:
        packed = np.zeros(packed_length(size), dtype=float)
        packed[_diagonal_offsets(size)] = self.diag
        packed[self.offdiag_index] = self.offdiag_value
        return packed

    @property
    def n_stored(self) -> int:
        return len(self.diag) + 2 * len(self.offdiag_index)

    def arrays(self) -> List[np.ndarray]:
        return [self.diag, self.offdiag_index, self.offdiag_value]


@dataclass
class _Compressed:
    cov: Optional[_SparseForm] = None
    icov: Optional[_SparseForm] = None
    forms: List[_SparseForm] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.forms = [f for f in (self.cov, self.icov) if f is not None]


_Storage = Union[_Expanded, _Compressed]


# ---- Matrix ------------------------------------------------------------------


class CovarianceMatrix:
    """Symmetric positive-definite matrix of fixed size with cached inverse and factor."""

    def __init__(self, size: int) -> None:
        if isinstance(size, bool) or not isinstance(size, (int, np.integer)) or size <= 0:
            raise InvalidArgumentError(f"CovarianceMatrix: expected size > 0, got {size!r}.")
        self._size = int(size)
        self._storage: _Storage = _Expanded()

    @classmethod
    def from_packed(cls, packed: VectorLike) -> "CovarianceMatrix":
        """Build from a column-wise packed upper triangle; size is inferred from its length."""
        values = np.array(packed, dtype=float).ravel()
        size = symmetric_matrix_size(len(values))
        if np.any(values[_diagonal_offsets(size)] <= 0):
            raise InvalidArgumentError("CovarianceMatrix.from_packed: diagonal elements must be positive.")
        matrix = cls(size)
        matrix._storage = _Expanded(cov=values)
        return matrix

    # ---- bookkeeping ----

    @property
    def size(self) -> int:
        return self._size

    def is_compressed(self) -> bool:
        return isinstance(self._storage, _Compressed)

    def clone(self) -> "CovarianceMatrix":
        other = CovarianceMatrix(self._size)
        if isinstance(self._storage, _Compressed):
            other._storage = _Compressed(
                cov=None if self._storage.cov is None else _copy_form(self._storage.cov),
                icov=None if self._storage.icov is None else _copy_form(self._storage.icov),
            )
        else:
            other._storage = self._storage.copy()
        return other

    def __copy__(self) -> "CovarianceMatrix":
        return self.clone()

    def __deepcopy__(self, memo: dict) -> "CovarianceMatrix":
        return self.clone()

    def swap(self, other: "CovarianceMatrix") -> None:
        """Exchange the complete contents (size and storage) of two matrices."""
        self._size, other._size = other._size, self._size
        self._storage, other._storage = other._storage, self._storage

    def _expanded(self) -> _Expanded:
        """Undo any compression and return the expanded storage."""
        st = self._storage
        if isinstance(st, _Compressed):
            st = _Expanded(
                cov=None if st.cov is None else st.cov.decode(self._size),
                icov=None if st.icov is None else st.icov.decode(self._size),
            )
            self._storage = st
        return st

    def _reads_cov(self) -> bool:
        st = self._expanded()
        if st.cov is None:
            if st.icov is None:
                return False
            st.cov = invert_cholesky(cholesky_decompose(st.icov, self._size), self._size)
        return True

    def _reads_icov(self) -> bool:
        st = self._expanded()
        if st.icov is None:
            if st.cov is None:
                return False
            st.icov = invert_cholesky(self._reads_cholesky(), self._size)
        return True

    def _reads_cholesky(self) -> PackedArray:
        st = self._expanded()
        if st.cholesky is None:
            if not self._reads_cov():
                raise NotPositiveDefiniteError("CovarianceMatrix: no elements have been set.")
            st.cholesky = cholesky_decompose(st.cov, self._size)
        return st.cholesky

    def _require_icov(self, where: str) -> PackedArray:
        if not self._reads_icov():
            raise NotPositiveDefiniteError(f"CovarianceMatrix.{where}: no elements have been set.")
        return self._expanded().icov

    def _changes_cov(self) -> PackedArray:
        st = self._expanded()
        if not self._reads_cov():
            st.cov = np.zeros(packed_length(self._size), dtype=float)
        st.icov = None
        st.cholesky = None
        return st.cov

    def _changes_icov(self) -> PackedArray:
        st = self._expanded()
        if not self._reads_icov():
            st.icov = np.zeros(packed_length(self._size), dtype=float)
        st.cov = None
        st.cholesky = None
        return st.icov

    def _replace_cov(self, packed: PackedArray) -> None:
        self._storage = _Expanded(cov=packed)

    def _check_vector(self, vector: VectorLike, where: str) -> NDArray[np.float64]:
        v = np.asarray(vector, dtype=float)
        if v.shape != (self._size,):
            raise SizeMismatchError(
                f"CovarianceMatrix.{where}: expected vector of length {self._size}, got shape {v.shape}."
            )
        return v

    # ---- element access ----

    def get_covariance(self, row: int, col: int) -> float:
        offset = symmetric_matrix_index(row, col, self._size)
        if not self._reads_cov():
            return 0.0
        return float(self._expanded().cov[offset])

    def get_inverse_covariance(self, row: int, col: int) -> float:
        offset = symmetric_matrix_index(row, col, self._size)
        return float(self._require_icov("get_inverse_covariance")[offset])

    def set_covariance(self, row: int, col: int, value: float) -> "CovarianceMatrix":
        offset = symmetric_matrix_index(row, col, self._size)
        if row == col and value <= 0:
            raise InvalidArgumentError(f"CovarianceMatrix.set_covariance: diagonal ({row},{col}) must be > 0.")
        self._changes_cov()[offset] = value
        return self

    def set_inverse_covariance(self, row: int, col: int, value: float) -> "CovarianceMatrix":
        offset = symmetric_matrix_index(row, col, self._size)
        if row == col and value <= 0:
            raise InvalidArgumentError(
                f"CovarianceMatrix.set_inverse_covariance: diagonal ({row},{col}) must be > 0."
            )
        self._changes_icov()[offset] = value
        return self

    def as_array(self, inverse: bool = False) -> NDArray[np.float64]:
        """Dense copy of the covariance (or inverse covariance) matrix."""
        if inverse:
            return unpack_symmetric(self._require_icov("as_array"), self._size)
        if not self._reads_cov():
            return np.zeros((self._size, self._size), dtype=float)
        return unpack_symmetric(self._expanded().cov, self._size)

    def get_n_elements(self) -> int:
        """Number of non-zero elements in the packed covariance."""
        if not self._reads_cov():
            return 0
        return int(np.count_nonzero(self._expanded().cov))

    def get_log_determinant(self) -> float:
        lower = self._reads_cholesky()
        return 2.0 * float(np.sum(np.log(lower[_diagonal_offsets(self._size)])))

    def is_positive_definite(self) -> bool:
        try:
            self._reads_cholesky()
        except NotPositiveDefiniteError:
            return False
        return True

    # ---- vector operations ----

    def multiply_by_covariance(self, vector: NDArray[np.float64]) -> None:
        """Replace ``vector`` in place with ``C @ vector``."""
        v = self._check_vector(vector, "multiply_by_covariance")
        dense = self.as_array()
        vector[:] = dense @ v

    def multiply_by_inverse_covariance(self, vector: NDArray[np.float64]) -> None:
        """Replace ``vector`` in place with ``Cinv @ vector``."""
        v = self._check_vector(vector, "multiply_by_inverse_covariance")
        dense = self.as_array(inverse=True)
        vector[:] = dense @ v

    def chi_square(self, delta: VectorLike) -> float:
        """Return ``delta . Cinv . delta``."""
        v = self._check_vector(delta, "chi_square")
        return float(v @ self.as_array(inverse=True) @ v)

    # ---- whole-matrix transforms ----

    def apply_scale_factor(self, scale: float) -> None:
        """Multiply every covariance element by ``scale`` (> 0), keeping cached forms in sync."""
        if scale <= 0:
            raise InvalidArgumentError(f"CovarianceMatrix.apply_scale_factor: expected scale > 0, got {scale}.")
        st = self._expanded()
        if st.cov is not None:
            st.cov *= scale
        if st.icov is not None:
            st.icov /= scale
        if st.cholesky is not None:
            st.cholesky *= math.sqrt(scale)

    def replace_with_triple_product(self, other: "CovarianceMatrix") -> None:
        """
        Replace our contents ``A`` with ``A . Binv . A`` where ``B`` is ``other``.

        Both matrices must be positive definite. With ``A`` acting as the change
        of basis, the result is the covariance ``B`` re-expressed in that basis.
        """
        if other.size != self._size:
            raise SizeMismatchError(
                f"CovarianceMatrix.replace_with_triple_product: size {other.size} != {self._size}."
            )
        self._reads_cholesky()
        a = self.as_array()
        binv = other.as_array(inverse=True)
        product = a @ binv @ a
        self._replace_cov(pack_symmetric(0.5 * (product + product.T)))

    def add_inverse(self, other: "CovarianceMatrix", weight: float = 1.0) -> None:
        """
        Add ``weight * other.Cinv`` to our inverse covariance.

        A compressed ``other`` holding its inverse form is read in place without
        being expanded.
        """
        if weight <= 0:
            raise InvalidArgumentError(f"CovarianceMatrix.add_inverse: expected weight > 0, got {weight}.")
        if other.size != self._size:
            raise SizeMismatchError(f"CovarianceMatrix.add_inverse: size {other.size} != {self._size}.")
        ost = other._storage
        if isinstance(ost, _Compressed) and ost.icov is not None:
            form = ost.icov
            icov = self._changes_icov()
            icov[_diagonal_offsets(self._size)] += weight * form.diag
            icov[form.offdiag_index] += weight * form.offdiag_value
            return
        addend = other._require_icov("add_inverse").copy()
        icov = self._changes_icov()
        icov += weight * addend

    def get_eigen_modes(self) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Eigen-decompose the covariance.

        Returns:
            (eigenvalues, modes): eigenvalues in ascending order and a
            ``size x size`` array whose row ``k`` is the unit eigenvector of mode ``k``.
        """
        if not self._reads_cov():
            raise NotPositiveDefiniteError("CovarianceMatrix.get_eigen_modes: no elements have been set.")
        values, vectors = scipy.linalg.eigh(self.as_array())
        return values, np.ascontiguousarray(vectors.T)

    def rescale_eigenvalues(self, scales: VectorLike) -> None:
        """Multiply eigenvalue ``k`` by ``scales[k]`` keeping the eigenvectors fixed."""
        s = np.asarray(scales, dtype=float)
        if s.shape != (self._size,):
            raise SizeMismatchError(
                f"CovarianceMatrix.rescale_eigenvalues: expected {self._size} scales, got shape {s.shape}."
            )
        if np.any(s <= 0):
            raise InvalidArgumentError("CovarianceMatrix.rescale_eigenvalues: scales must be positive.")
        values, modes = self.get_eigen_modes()
        dense = (modes.T * (values * s)) @ modes
        self._replace_cov(pack_symmetric(0.5 * (dense + dense.T)))

    def prune(self, keep: Iterable[int]) -> None:
        """Keep only the rows/columns listed in ``keep``, in ascending index order."""
        offsets = sorted({int(k) for k in keep})
        for k in offsets:
            if not 0 <= k < self._size:
                raise OutOfRangeError(f"CovarianceMatrix.prune: index {k} outside [0,{self._size}).")
        if len(offsets) == self._size:
            return
        if not offsets:
            raise InvalidArgumentError("CovarianceMatrix.prune: cannot prune every row.")
        if self._reads_cov():
            dense = self.as_array()
            self._storage = _Expanded(cov=pack_symmetric(dense[np.ix_(offsets, offsets)]))
        else:
            self._storage = _Expanded()
        self._size = len(offsets)

    # ---- sampling ----

    def sample(self, random: np.random.Generator) -> Tuple[NDArray[np.float64], float]:
        """
        Draw one Gaussian offset with this covariance.

        Returns:
            (delta, nll): ``delta = L . z`` for ``size`` standard normals ``z`` and
            the negative log-likelihood ``z.z / 2`` of the drawn offset.
        """
        lower = self._dense_cholesky()
        z = random.standard_normal(self._size)
        return lower @ z, 0.5 * float(z @ z)

    def sample_many(self, nsample: int, random: np.random.Generator) -> NDArray[np.float64]:
        """Draw ``nsample`` offsets at once; row ``n`` of the result is the n-th draw."""
        if nsample <= 0:
            raise InvalidArgumentError(f"CovarianceMatrix.sample_many: expected nsample > 0, got {nsample}.")
        lower = self._dense_cholesky()
        z = random.standard_normal((nsample, self._size))
        return z @ lower.T

    def _dense_cholesky(self) -> NDArray[np.float64]:
        return unpack_lower_factor(self._reads_cholesky(), self._size)

    # ---- compression and diagnostics ----

    def compress(self) -> bool:
        """Switch to sparse storage when it is smaller; returns True if compression happened."""
        st = self._storage
        if isinstance(st, _Compressed):
            return False
        present = {name: arr for name, arr in (("cov", st.cov), ("icov", st.icov)) if arr is not None}
        if not present:
            return False
        encoded = {name: _SparseForm.encode(arr, self._size) for name, arr in present.items()}
        if sum(f.n_stored for f in encoded.values()) >= sum(len(a) for a in present.values()):
            return False
        self._storage = _Compressed(cov=encoded.get("cov"), icov=encoded.get("icov"))
        return True

    def get_memory_usage(self) -> int:
        st = self._storage
        arrays = st.arrays() if isinstance(st, _Expanded) else [a for f in st.forms for a in f.arrays()]
        return sys.getsizeof(self) + sum(int(a.nbytes) for a in arrays)

    def get_memory_state(self) -> str:
        """
        Compact storage summary ``[MICDZV] nnnnnnn``.

        Letters mark allocated storage, ``-`` marks absent storage:
        M covariance, I inverse, C Cholesky, D compressed diagonals,
        Z compressed off-diagonal offsets, V compressed off-diagonal values.
        """
        st = self._storage
        if isinstance(st, _Expanded):
            tags = [
                "M" if st.cov is not None else "-",
                "I" if st.icov is not None else "-",
                "C" if st.cholesky is not None else "-",
                "---",
            ]
        else:
            has_offdiag = any(len(f.offdiag_index) for f in st.forms)
            tags = ["---", "D", "Z" if has_offdiag else "-", "V" if has_offdiag else "-"]
        return f"[{''.join(tags)}] {self.get_memory_usage():7d}"

    def print_to_stream(
        self,
        out: Optional[IO[str]] = None,
        normalized: bool = False,
        fmt: str = "{:+10.3g}",
        labels: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Print the covariance one row per line.

        When ``normalized``, diagonal entries show ``sqrt(C_ii)`` and off-diagonal
        entries the correlation coefficient ``C_ij / sqrt(C_ii C_jj)``.
        """
        out = sys.stdout if out is None else out
        if labels is not None and len(labels) != self._size:
            raise SizeMismatchError(
                f"CovarianceMatrix.print_to_stream: expected {self._size} labels, got {len(labels)}."
            )
        dense = self.as_array()
        if normalized:
            sigma = np.sqrt(np.diag(dense))
            dense = dense / np.outer(sigma, sigma)
            np.fill_diagonal(dense, sigma)
        width = max((len(label) for label in labels), default=0) if labels else 0
        for row in range(self._size):
            prefix = f"{labels[row]:<{width}} " if labels else ""
            out.write(prefix + " ".join(fmt.format(v) for v in dense[row]) + "\n")

    def __repr__(self) -> str:
        return f"CovarianceMatrix(size={self._size}, state={self.get_memory_state()!r})"


def _copy_form(form: _SparseForm) -> _SparseForm:
    return _SparseForm(form.diag.copy(), form.offdiag_index.copy(), form.offdiag_value.copy())


# ---- Factories ---------------------------------------------------------------


def create_diagonal_covariance(
    size_or_values: Union[int, VectorLike], value: float = 1.0
) -> CovarianceMatrix:
    """Diagonal covariance with constant ``value`` (int first argument) or the given positive diagonal."""
    if isinstance(size_or_values, (int, np.integer)) and not isinstance(size_or_values, bool):
        size = int(size_or_values)
        diagonal = np.full(max(size, 0), float(value))
    else:
        diagonal = np.asarray(size_or_values, dtype=float).ravel()
        size = len(diagonal)
    matrix = CovarianceMatrix(size)
    for k, v in enumerate(diagonal):
        matrix.set_covariance(k, k, float(v))
    return matrix


def generate_random_covariance(
    size: int, random: np.random.Generator, scale: float = 1.0
) -> CovarianceMatrix:
    """
    Random SPD matrix whose determinant is ``scale**size``.

    The fixed determinant matches ``scale * identity``, so the generated
    covariances are directly proportional to ``scale``.
    """
    if size <= 0:
        raise InvalidArgumentError(f"generate_random_covariance: expected size > 0, got {size}.")
    if scale <= 0:
        raise InvalidArgumentError(f"generate_random_covariance: expected scale > 0, got {scale}.")
    a = random.standard_normal((size, size))
    dense = a @ a.T + size * np.eye(size)
    _, logdet = np.linalg.slogdet(dense)
    dense *= scale * math.exp(-logdet / size)
    return CovarianceMatrix.from_packed(pack_symmetric(dense))
