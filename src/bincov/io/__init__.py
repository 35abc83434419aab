"""Persistence, audit trail and seeding helpers."""

from .audit import AuditError, append_record, make_record, tail_sha, verify_chain
from .persistence import load_data, load_inverse_covariance, save_dataset
from .seeds import make_rng, resolve_seed

__all__ = [
    "AuditError",
    "append_record",
    "load_data",
    "load_inverse_covariance",
    "make_record",
    "make_rng",
    "resolve_seed",
    "save_dataset",
    "tail_sha",
    "verify_chain",
]
