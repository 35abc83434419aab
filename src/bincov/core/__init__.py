"""Numerical core: covariance matrices, binned datasets and resampling."""

from .binned_data import EMPTY_BIN, BinnedData
from .covariance import CovarianceMatrix, create_diagonal_covariance, generate_random_covariance
from .errors import (
    BincovError,
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
from .grid import BinnedGrid, Grid
from .resampler import BinnedDataResampler, CovarianceAccumulator, get_subset
from .shared import SharedCovariance

__all__ = [
    "EMPTY_BIN",
    "BinnedData",
    "BinnedDataResampler",
    "BinnedGrid",
    "BincovError",
    "CovarianceAccumulator",
    "CovarianceMatrix",
    "EmptyBinError",
    "FinalizedError",
    "Grid",
    "HasCovarianceError",
    "InvalidArgumentError",
    "NoCovarianceError",
    "NotCongruentError",
    "NotModifiableError",
    "NotPositiveDefiniteError",
    "OutOfRangeError",
    "SharedCovariance",
    "SizeMismatchError",
    "create_diagonal_covariance",
    "generate_random_covariance",
    "get_subset",
]
