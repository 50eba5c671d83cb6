"""
Pytest Configuration and Fixtures
"""

import numpy as np
import pytest
import torch


@pytest.fixture(autouse=True)
def seed():
    """Seed torch and numpy before every test."""
    torch.manual_seed(42)
    np.random.seed(42)
    return 42


@pytest.fixture
def svae():
    from svae import SVAE
    return SVAE.from_dims(n_input=6, n_hidden=16, n_latent=4, n_layers=2).double()


@pytest.fixture
def twocaps():
    from svae_twocaps import SVAETwoCaps
    return SVAETwoCaps.from_dims(n_input=6, n_hidden=16, n_latent=5, n_layers=2).double()


@pytest.fixture
def twocaps_scalarsigma():
    from svae_twocaps import SVAETwoCaps
    return SVAETwoCaps.from_dims(
        n_input=6, n_hidden=16, n_latent=5, n_layers=2, variant="scalarsigma"
    ).double()


@pytest.fixture
def batch():
    return torch.randn(8, 6, dtype=torch.float64)
