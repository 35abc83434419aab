"""
Pytest bootstrap for src/ layout.

Puts ./src first on sys.path so `import bincov` resolves to this checkout even
without an editable install.
"""
from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
src = repo_root / "src"
if src.is_dir():
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(12345)
