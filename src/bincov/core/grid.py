# src/bincov/core/grid.py
"""
Module: grid
Purpose: The grid capability consumed by BinnedData, plus a minimal edge-based grid
Dependencies: numpy, typing

Datasets only ever ask a grid three things: how many bins it has, whether a
global index is valid, and whether another grid has identical axes. Anything
implementing ``Grid`` can back a ``BinnedData``.
"""

from __future__ import annotations

from typing import Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
from numpy.typing import NDArray

from .errors import InvalidArgumentError, OutOfRangeError, SizeMismatchError

__all__ = ["Grid", "BinnedGrid"]


@runtime_checkable
class Grid(Protocol):
    def total_bins(self) -> int: ...

    def check_index(self, index: int) -> None: ...

    def is_congruent(self, other: "Grid") -> bool: ...


class BinnedGrid:
    """
    Product of one or more 1D axes, each given by strictly increasing bin edges.

    Global indices are row-major over the axes (the last axis varies fastest).
    """

    def __init__(self, *axes: Sequence[float]) -> None:
        if not axes:
            raise InvalidArgumentError("BinnedGrid: need at least one axis.")
        edges = []
        for k, axis in enumerate(axes):
            arr = np.asarray(axis, dtype=float).ravel()
            if arr.size < 2:
                raise InvalidArgumentError(f"BinnedGrid: axis {k} needs at least 2 edges.")
            if not np.all(np.diff(arr) > 0):
                raise InvalidArgumentError(f"BinnedGrid: axis {k} edges are not strictly increasing.")
            edges.append(arr)
        self._edges: Tuple[NDArray[np.float64], ...] = tuple(edges)
        self._shape: Tuple[int, ...] = tuple(len(e) - 1 for e in edges)
        self._nbins = int(np.prod(self._shape))

    @classmethod
    def uniform(cls, nbins: int, lo: float = 0.0, hi: float = 1.0) -> "BinnedGrid":
        if nbins <= 0:
            raise InvalidArgumentError(f"BinnedGrid.uniform: expected nbins > 0, got {nbins}.")
        if hi <= lo:
            raise InvalidArgumentError(f"BinnedGrid.uniform: expected hi > lo, got [{lo},{hi}].")
        return cls(np.linspace(lo, hi, nbins + 1))

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def n_axes(self) -> int:
        return len(self._shape)

    def axis_edges(self, axis: int) -> NDArray[np.float64]:
        return self._edges[axis].copy()

    def total_bins(self) -> int:
        return self._nbins

    def check_index(self, index: int) -> None:
        if not 0 <= index < self._nbins:
            raise OutOfRangeError(f"BinnedGrid.check_index: index {index} outside [0,{self._nbins}).")

    def is_congruent(self, other: Grid) -> bool:
        if not isinstance(other, BinnedGrid):
            return False
        if other is self:
            return True
        return self._shape == other._shape and all(
            np.array_equal(a, b) for a, b in zip(self._edges, other._edges)
        )

    def get_bin_indices(self, index: int) -> Tuple[int, ...]:
        """Per-axis bin coordinates of a global index."""
        self.check_index(index)
        return tuple(int(i) for i in np.unravel_index(index, self._shape))

    def get_index(self, indices: Sequence[int]) -> int:
        """Global index of per-axis bin coordinates."""
        if len(indices) != self.n_axes:
            raise SizeMismatchError(f"BinnedGrid.get_index: expected {self.n_axes} coordinates, got {len(indices)}.")
        for axis, (i, n) in enumerate(zip(indices, self._shape)):
            if not 0 <= i < n:
                raise OutOfRangeError(f"BinnedGrid.get_index: axis {axis} coordinate {i} outside [0,{n}).")
        return int(np.ravel_multi_index(tuple(indices), self._shape))

    def get_bin_centers(self, index: int) -> Tuple[float, ...]:
        return tuple(
            0.5 * float(e[i] + e[i + 1]) for e, i in zip(self._edges, self.get_bin_indices(index))
        )

    def find_index(self, values: Sequence[float]) -> int:
        """Global index of the bin containing ``values`` (upper edge of the last bin is inclusive)."""
        if len(values) != self.n_axes:
            raise SizeMismatchError(f"BinnedGrid.find_index: expected {self.n_axes} values, got {len(values)}.")
        coords = []
        for axis, (v, e) in enumerate(zip(values, self._edges)):
            if not e[0] <= v <= e[-1]:
                raise OutOfRangeError(f"BinnedGrid.find_index: axis {axis} value {v} outside [{e[0]},{e[-1]}].")
            coords.append(min(int(np.searchsorted(e, v, side="right")) - 1, len(e) - 2))
        return self.get_index(coords)

    def __repr__(self) -> str:
        return f"BinnedGrid(shape={self._shape})"
