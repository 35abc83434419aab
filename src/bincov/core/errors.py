# src/bincov/core/errors.py
"""
Module: errors
Purpose: Typed failures raised by the covariance engine and binned datasets
Dependencies: none

Every failure surfaces immediately to the caller; nothing here is retried or
suppressed. The secondary builtin bases let callers catch broad categories
(``ValueError``, ``IndexError``, ``LookupError``) without importing this module.
"""

from __future__ import annotations

__all__ = [
    "BincovError",
    "InvalidArgumentError",
    "OutOfRangeError",
    "EmptyBinError",
    "SizeMismatchError",
    "NoCovarianceError",
    "NotPositiveDefiniteError",
    "FinalizedError",
    "NotModifiableError",
    "NotCongruentError",
    "HasCovarianceError",
]


class BincovError(RuntimeError):
    """Base class for all bincov failures."""


class InvalidArgumentError(BincovError, ValueError):
    """Malformed construction parameter, non-positive diagonal, scale or weight."""


class OutOfRangeError(InvalidArgumentError, IndexError):
    """Index outside [0, size) or outside a grid's bin space."""


class EmptyBinError(BincovError, LookupError):
    """Query or mutation addressed at a bin with no stored value."""


class SizeMismatchError(BincovError, ValueError):
    """Vector or matrix argument has the wrong dimension."""


class NoCovarianceError(BincovError):
    """Operation requires a covariance matrix that is not attached."""


class NotPositiveDefiniteError(BincovError, ArithmeticError):
    """A required Cholesky factorisation or determinant failed."""


class FinalizedError(BincovError):
    """Dataset structure change attempted after finalize()."""


class NotModifiableError(BincovError):
    """In-place change to a covariance matrix that other datasets share."""


class NotCongruentError(BincovError, ValueError):
    """Datasets differ in binning, occupied bins or covariance presence."""


class HasCovarianceError(BincovError):
    """New bin added to a dataset whose correlation structure is already fixed."""
