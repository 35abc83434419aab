"""
Module: audit
Purpose: Hash-chained JSONL ledger of dataset dumps with on-disk digest checks
Dependencies: hashlib, json, pathlib, datetime

Every ``save_dataset`` call given an ``audit_path`` appends one record to the
ledger. A record describes the dataset that was dumped and, per role
(``"data"``, ``"icov"``), the file written with its size and sha256.

Records are chained: ``prev_sha256`` repeats the digest of the record before
it and ``sha256`` is the digest of the record's canonical JSON without that
field. ``verify_chain`` re-derives both, and with ``check_files=True`` also
re-hashes the dumps so that an edited or truncated data file is caught even
when the ledger itself is intact. A path written more than once is checked
against its most recent record only.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from bincov.core.binned_data import BinnedData

__all__ = [
    "AuditError",
    "append_record",
    "verify_chain",
    "tail_sha",
    "make_record",
    "file_sha256",
]

SCHEMA_ID = "bincov/dump-ledger.v1"
_CHAIN_FIELDS = ("sha256", "prev_sha256")

PathLike = Union[str, Path]


class AuditError(RuntimeError):
    """Raised when a dump ledger or a dump it describes fails verification."""


def _canonical(obj: Mapping[str, Any]) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _digest(obj: Mapping[str, Any]) -> str:
    return hashlib.sha256(_canonical(obj).encode("utf-8")).hexdigest()


def file_sha256(path: PathLike) -> str:
    hasher = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _read_records(ledger: Path) -> List[Tuple[int, Dict[str, Any]]]:
    records = []
    for lineno, line in enumerate(ledger.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append((lineno, json.loads(line)))
        except json.JSONDecodeError as exc:
            raise AuditError(f"{ledger}:{lineno}: not a JSON record ({exc.msg})") from exc
    return records


def tail_sha(path: PathLike) -> Optional[str]:
    """Digest of the last record in the ledger, or None for a missing or empty ledger."""
    ledger = Path(path)
    if not ledger.exists():
        return None
    records = _read_records(ledger)
    if not records:
        return None
    sha = records[-1][1].get("sha256")
    return sha if isinstance(sha, str) else None


def append_record(path: PathLike, record: Mapping[str, Any]) -> str:
    """
    Link ``record`` to the end of the ledger at ``path`` and return its digest.

    Any ``sha256`` / ``prev_sha256`` already present in ``record`` is replaced.
    """
    ledger = Path(path)
    ledger.parent.mkdir(parents=True, exist_ok=True)
    body = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
    body["prev_sha256"] = tail_sha(ledger)
    sha = _digest(body)
    with ledger.open("a", encoding="utf-8") as out:
        out.write(_canonical({**body, "sha256": sha}) + "\n")
    return sha


def verify_chain(path: PathLike, check_files: bool = False) -> int:
    """
    Check every record digest and link; returns the number of records.

    With ``check_files`` each dump named by the ledger must still exist and
    hash to the digest of the latest record that wrote it.

    Raises:
        FileNotFoundError: if the ledger does not exist.
        AuditError: on a missing or wrong digest, a broken link, or (with
            ``check_files``) a missing or modified dump.
    """
    ledger = Path(path)
    if not ledger.exists():
        raise FileNotFoundError(str(ledger))
    prev: Optional[str] = None
    latest: Dict[str, Tuple[int, str]] = {}
    records = _read_records(ledger)
    for lineno, record in records:
        claimed = record.get("sha256")
        if claimed is None:
            raise AuditError(f"{ledger}:{lineno}: record has no sha256")
        body = {k: v for k, v in record.items() if k != "sha256"}
        if _digest(body) != claimed:
            raise AuditError(f"{ledger}:{lineno}: record digest does not match its content")
        if body.get("prev_sha256") != prev:
            raise AuditError(f"{ledger}:{lineno}: prev_sha256 does not link to the previous record")
        prev = claimed
        for entry in record.get("files", []):
            latest[entry["path"]] = (lineno, entry["sha256"])
    if check_files:
        for dump, (lineno, recorded) in latest.items():
            if not Path(dump).exists():
                raise AuditError(f"{ledger}:{lineno}: dump {dump} is missing")
            if file_sha256(dump) != recorded:
                raise AuditError(f"{ledger}:{lineno}: dump {dump} changed since it was recorded")
    return len(records)


def _now_iso_utc() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_record(
    data: BinnedData,
    files: Mapping[str, PathLike],
    *,
    action: str = "save",
    scale: Optional[float] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Describe ``data`` and the dumps written for it, keyed by role (``"data"``, ``"icov"``)."""
    has_covariance = data.has_covariance()
    return {
        "schema": SCHEMA_ID,
        "ts": _now_iso_utc(),
        "action": str(action),
        "dataset": {
            "n_bins": data.get_n_bins_with_data(),
            "n_grid_bins": data.get_grid().total_bins(),
            "indices": [int(index) for index in data],
            "weighted": data.is_weighted(),
            "finalized": data.is_finalized(),
            "has_covariance": has_covariance,
            "scalar_weight": None if has_covariance else float(data.get_scalar_weight()),
            "memory_state": data.get_memory_state(),
        },
        "files": [
            {
                "role": role,
                "path": str(p),
                "bytes": Path(p).stat().st_size,
                "sha256": file_sha256(p),
            }
            for role, p in files.items()
        ],
        "scale": None if scale is None else float(scale),
        "extra": dict(extra or {}),
    }
