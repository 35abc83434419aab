# src/bincov/io/seeds.py
from __future__ import annotations

import os
from typing import Optional

import numpy as np

SEED_ENV = "BINCOV_SEED"
DEFAULT_SEED = 1337


def resolve_seed(seed: Optional[int] = None) -> int:
    """Explicit seed wins, then $BINCOV_SEED, then the package default."""
    return int(seed if seed is not None else os.environ.get(SEED_ENV, str(DEFAULT_SEED)))


def make_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Build the generator that callers thread through every sampling call."""
    return np.random.default_rng(resolve_seed(seed))
