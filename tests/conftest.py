import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from config import SSAConfig
import system_model


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def linear():
    return system_model.linear_model()


@pytest.fixture
def small_config():
    return SSAConfig(N=4, M=20, L=200, n=2, m=2, p=2, alpha=0.15, chunk_size=64, seed=7)
