# src/bincov/core/packed.py
"""
Module: packed
Purpose: Packed symmetric storage and the dense linear algebra behind it
Dependencies: numpy, scipy.linalg

Layout
------
A symmetric ``size x size`` matrix is stored as the column-wise packed upper
triangle (the BLAS "U" packed format)::

    m00 m01 m02 ...
        m11 m12 ...   ==>  [m00, m01, m11, m02, m12, m22, ...]
            m22 ...

so element ``(i, j)`` with ``i <= j`` lives at ``i + j*(j+1)//2``. The same
ordering is produced by ``np.tril_indices(size)`` read as ``(j, i)`` pairs,
which is how packing and unpacking are vectorised below.

Cholesky factors are stored in the same packed layout holding the *lower*
factor ``L`` with ``C = L @ L.T``, i.e. packed element ``(i, j)`` is ``L[j, i]``.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple, Union

import numpy as np
import scipy.linalg
from numpy.typing import NDArray
from typing_extensions import TypeAlias

from .errors import InvalidArgumentError, NotPositiveDefiniteError, OutOfRangeError, SizeMismatchError

__all__ = [
    "PackedArray",
    "VectorLike",
    "symmetric_matrix_index",
    "symmetric_matrix_size",
    "packed_length",
    "pack_symmetric",
    "unpack_symmetric",
    "cholesky_decompose",
    "invert_cholesky",
    "symmetric_matrix_multiply",
    "unpack_lower_factor",
]

PackedArray: TypeAlias = NDArray[np.float64]
VectorLike: TypeAlias = Union[Sequence[float], NDArray[np.float64]]


def packed_length(size: int) -> int:
    """Number of packed elements for a ``size x size`` symmetric matrix."""
    return (size * (size + 1)) // 2


def symmetric_matrix_index(row: int, col: int, size: int) -> int:
    """Packed offset of element ``(row, col)``; order of the pair does not matter."""
    if not (0 <= row < size) or not (0 <= col < size):
        raise OutOfRangeError(f"symmetric_matrix_index: ({row},{col}) outside [0,{size}).")
    if row > col:
        row, col = col, row
    return row + (col * (col + 1)) // 2


def symmetric_matrix_size(nelem: int) -> int:
    """Invert ``nelem = size*(size+1)/2``; raises if nelem is not triangular."""
    if nelem <= 0:
        raise InvalidArgumentError(f"symmetric_matrix_size: expected nelem > 0, got {nelem}.")
    size = (math.isqrt(8 * nelem + 1) - 1) // 2
    if packed_length(size) != nelem:
        raise InvalidArgumentError(
            f"symmetric_matrix_size: {nelem} is not a valid packed symmetric length."
        )
    return size


def _tril(size: int) -> Tuple[NDArray[np.intp], NDArray[np.intp]]:
    return np.tril_indices(size)


def pack_symmetric(matrix: NDArray[np.float64]) -> PackedArray:
    """Pack the upper triangle of a square matrix (assumed symmetric)."""
    m = np.asarray(matrix, dtype=float)
    if m.ndim != 2 or m.shape[0] != m.shape[1]:
        raise SizeMismatchError(f"pack_symmetric: expected a square matrix, got shape {m.shape}.")
    cols, rows = _tril(m.shape[0])
    return np.ascontiguousarray(m[rows, cols])


def unpack_symmetric(packed: PackedArray, size: int) -> NDArray[np.float64]:
    """Expand a packed vector into a full symmetric ``size x size`` array."""
    if len(packed) != packed_length(size):
        raise SizeMismatchError(
            f"unpack_symmetric: expected {packed_length(size)} elements, got {len(packed)}."
        )
    out = np.empty((size, size), dtype=float)
    cols, rows = _tril(size)
    out[rows, cols] = packed
    out[cols, rows] = packed
    return out


def unpack_lower_factor(packed: PackedArray, size: int) -> NDArray[np.float64]:
    """Expand a packed Cholesky factor into the dense lower-triangular ``L``."""
    out = np.zeros((size, size), dtype=float)
    cols, rows = _tril(size)
    out[cols, rows] = packed
    return out


def _pack_lower_factor(lower: NDArray[np.float64]) -> PackedArray:
    cols, rows = _tril(lower.shape[0])
    return np.ascontiguousarray(lower[cols, rows])


def cholesky_decompose(packed: PackedArray, size: int = 0) -> PackedArray:
    """
    Return the packed lower Cholesky factor of a packed SPD matrix.

    Raises:
        NotPositiveDefiniteError: when the factorisation fails.
    """
    n = size if size > 0 else symmetric_matrix_size(len(packed))
    dense = unpack_symmetric(packed, n)
    try:
        lower = scipy.linalg.cholesky(dense, lower=True, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise NotPositiveDefiniteError(f"cholesky_decompose: matrix is not positive definite ({exc}).") from exc
    return _pack_lower_factor(lower)


def invert_cholesky(packed_factor: PackedArray, size: int = 0) -> PackedArray:
    """Given a packed lower Cholesky factor of ``M``, return packed ``M^-1``."""
    n = size if size > 0 else symmetric_matrix_size(len(packed_factor))
    lower = unpack_lower_factor(packed_factor, n)
    if np.any(np.diag(lower) <= 0):
        raise NotPositiveDefiniteError("invert_cholesky: factor has a non-positive diagonal.")
    inverse = scipy.linalg.cho_solve((lower, True), np.eye(n), check_finite=False)
    # cho_solve is symmetric only up to rounding; pack from the upper triangle
    return pack_symmetric(inverse)


def symmetric_matrix_multiply(packed: PackedArray, vector: VectorLike) -> NDArray[np.float64]:
    """Return ``M @ vector`` for a packed symmetric ``M``."""
    v = np.asarray(vector, dtype=float)
    n = symmetric_matrix_size(len(packed))
    if v.shape != (n,):
        raise SizeMismatchError(f"symmetric_matrix_multiply: expected vector of length {n}, got {v.shape}.")
    return unpack_symmetric(packed, n) @ v
