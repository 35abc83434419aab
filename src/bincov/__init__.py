"""Top-level package for bincov: binned measurements with shared covariance matrices."""

from importlib import metadata as _metadata

from . import core, io
from .core import BinnedData, BinnedGrid, CovarianceMatrix

try:
    __version__ = _metadata.version("bincov")
except _metadata.PackageNotFoundError:  # pragma: no cover - during local usage
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "core",
    "io",
    "BinnedData",
    "BinnedGrid",
    "CovarianceMatrix",
]
