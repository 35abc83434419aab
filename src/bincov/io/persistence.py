# src/bincov/io/persistence.py
"""
Module: persistence
Purpose: Plain-text dumps of binned datasets and their inverse covariance, with readers
Dependencies: pathlib; bincov.core, bincov.io.audit

Formats
-------
data dump  : ``<globalIndex> <value>`` per occupied bin, in occupied-bin order
icov dump  : ``<index1> <index2> <value>`` for every diagonal element and each
             non-zero off-diagonal pair once, multiplied by a caller scale

Values are written with ``repr(float)`` so they read back bit for bit.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from bincov.core.binned_data import BinnedData
from bincov.core.errors import InvalidArgumentError
from bincov.core.grid import Grid

from . import audit

__all__ = ["save_dataset", "load_data", "load_inverse_covariance"]

PathLike = Union[str, Path]


def save_dataset(
    data: BinnedData,
    data_path: PathLike,
    icov_path: Optional[PathLike] = None,
    *,
    scale: float = 1.0,
    weighted: bool = False,
    audit_path: Optional[PathLike] = None,
) -> Optional[str]:
    """
    Write the data dump (and optionally the inverse-covariance dump) to disk.

    When ``audit_path`` is given, a record naming the written files and their
    sha256 digests is appended to that audit chain and its hash is returned.
    """
    written: Dict[str, Path] = {}
    data_file = Path(data_path)
    data_file.parent.mkdir(parents=True, exist_ok=True)
    with data_file.open("w", encoding="utf-8") as out:
        data.save_data(out, weighted)
    written["data"] = data_file
    if icov_path is not None:
        icov_file = Path(icov_path)
        icov_file.parent.mkdir(parents=True, exist_ok=True)
        with icov_file.open("w", encoding="utf-8") as out:
            data.save_inverse_covariance(out, scale)
        written["icov"] = icov_file
    if audit_path is None:
        return None
    record = audit.make_record(
        data,
        written,
        scale=scale if icov_path is not None else None,
        extra={"weighted_dump": bool(weighted)},
    )
    return audit.append_record(audit_path, record)


def _iter_fields(path: PathLike, nfields: int) -> Iterator[Tuple[int, List[str]]]:
    with Path(path).open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            fields = stripped.split()
            if len(fields) != nfields:
                raise InvalidArgumentError(
                    f"{path}:{lineno}: expected {nfields} fields, got {len(fields)}."
                )
            yield lineno, fields


def load_data(grid: Grid, path: PathLike, weighted: bool = False) -> BinnedData:
    """Build a dataset on ``grid`` from a data dump; bins are created in file order."""
    data = BinnedData(grid)
    for lineno, (index, value) in _iter_fields(path, 2):
        try:
            i, v = int(index), float(value)
        except ValueError as exc:
            raise InvalidArgumentError(f"{path}:{lineno}: {exc}") from exc
        data.set_data(i, v, weighted)
    return data


def load_inverse_covariance(data: BinnedData, path: PathLike, scale: float = 1.0) -> BinnedData:
    """Set inverse-covariance elements of ``data`` from an icov dump written with ``scale``."""
    if scale <= 0:
        raise InvalidArgumentError(f"load_inverse_covariance: expected scale > 0, got {scale}.")
    for lineno, (index1, index2, value) in _iter_fields(path, 3):
        try:
            i, j, v = int(index1), int(index2), float(value)
        except ValueError as exc:
            raise InvalidArgumentError(f"{path}:{lineno}: {exc}") from exc
        data.set_inverse_covariance(i, j, v / scale)
    return data
