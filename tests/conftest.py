import numpy as np
import pytest

from whatwasthat.engine import Engine

SR = 44100


def make_clap(seconds=1.0, sr=SR, seed=7):
    """Noise burst with a fast attack and exponential decay."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(seconds * sr)) / sr
    envelope = np.exp(-t * 12.0) * np.minimum(t / 0.002, 1.0)
    return 0.8 * envelope * rng.standard_normal(len(t))


def make_tone(freq=1000.0, seconds=1.0, sr=SR):
    t = np.arange(int(seconds * sr)) / sr
    return 0.5 * np.sin(2 * np.pi * freq * t)


def make_noise(seconds=1.0, sr=SR, seed=11):
    rng = np.random.default_rng(seed)
    return rng.uniform(-1.0, 1.0, int(seconds * sr))


@pytest.fixture
def clap():
    return make_clap()


@pytest.fixture
def silence():
    return np.zeros(SR)


@pytest.fixture
def noise():
    return make_noise()


@pytest.fixture
def tone():
    return make_tone()


@pytest.fixture
def engine(tmp_path):
    with Engine(tmp_path / "fingerprints.db") as eng:
        yield eng
