# src/bincov/core/shared.py
"""
Module: shared
Purpose: Copy-on-write ownership tracking for covariance matrices shared by datasets
Dependencies: weakref

One ``SharedCovariance`` handle exists per live ``CovarianceMatrix`` (see
``SharedCovariance.of``). Datasets register themselves as owners when they
attach a matrix and release it when they drop or replace it. Owners are held
weakly, so a dataset that is garbage collected stops counting without an
explicit release.

Mutating a matrix in place is only allowed through an owner for which
``is_sole_owner(owner)`` holds; any other owner must clone first. Plain
references to the matrix held outside a dataset are not owners and do not
block in-place changes.
"""

from __future__ import annotations

import weakref
from typing import Any, Optional

from .covariance import CovarianceMatrix

__all__ = ["SharedCovariance"]


class SharedCovariance:
    """Reference-counting handle for one covariance matrix."""

    _handles: "weakref.WeakKeyDictionary[CovarianceMatrix, SharedCovariance]" = weakref.WeakKeyDictionary()

    def __init__(self, matrix: CovarianceMatrix) -> None:
        self._matrix = weakref.ref(matrix)
        self._owners: "weakref.WeakSet[Any]" = weakref.WeakSet()

    @classmethod
    def of(cls, matrix: CovarianceMatrix) -> "SharedCovariance":
        """Return the unique handle for ``matrix``, creating it on first use."""
        handle = cls._handles.get(matrix)
        if handle is None:
            handle = cls(matrix)
            cls._handles[matrix] = handle
        return handle

    @property
    def matrix(self) -> Optional[CovarianceMatrix]:
        return self._matrix()

    @property
    def use_count(self) -> int:
        return len(self._owners)

    def attach(self, owner: Any) -> None:
        self._owners.add(owner)

    def release(self, owner: Any) -> None:
        self._owners.discard(owner)

    def is_sole_owner(self, owner: Any) -> bool:
        return len(self._owners) == 1 and owner in self._owners

    def __repr__(self) -> str:
        return f"SharedCovariance(use_count={self.use_count}, matrix={self.matrix!r})"
