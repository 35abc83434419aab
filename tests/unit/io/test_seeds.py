import numpy as np

from bincov.io import make_rng, resolve_seed
from bincov.io.seeds import DEFAULT_SEED, SEED_ENV


def test_explicit_seed_wins(monkeypatch):
    monkeypatch.setenv(SEED_ENV, "99")
    assert resolve_seed(7) == 7


def test_env_then_default(monkeypatch):
    monkeypatch.setenv(SEED_ENV, "99")
    assert resolve_seed() == 99
    monkeypatch.delenv(SEED_ENV)
    assert resolve_seed() == DEFAULT_SEED


def test_make_rng_is_reproducible(monkeypatch):
    monkeypatch.delenv(SEED_ENV, raising=False)
    a, b = make_rng(), make_rng()
    assert isinstance(a, np.random.Generator)
    assert np.array_equal(a.standard_normal(4), b.standard_normal(4))
    assert not np.array_equal(make_rng(1).standard_normal(4), make_rng(2).standard_normal(4))
