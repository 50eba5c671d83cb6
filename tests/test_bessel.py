"""
Tests for the exponentially scaled Bessel functions.
"""

import numpy as np
import pytest
import scipy.special
import torch

from bessel import besseli_scaled, bessel_ratio, ive, log_ive


class TestIve:
    """Test ive against scipy and its analytic gradient."""

    @pytest.mark.parametrize("v", [0.0, 1.0, 1.5, 7.0, 31.0])
    def test_matches_scipy(self, v):
        z = torch.tensor([1e-3, 0.5, 3.0, 50.0, 500.0], dtype=torch.float64)
        expected = scipy.special.ive(v, z.numpy())
        assert np.allclose(ive(v, z).numpy(), expected, rtol=1e-10, atol=0)

    def test_besseli_scaled_accepts_floats(self):
        out = besseli_scaled(2.0, 4.0)
        assert torch.is_tensor(out)
        assert np.isclose(out.item(), scipy.special.ive(2.0, 4.0))

    def test_preserves_dtype(self):
        z = torch.tensor([1.0, 2.0], dtype=torch.float32)
        assert ive(1.5, z).dtype == torch.float32

    @pytest.mark.parametrize("v", [0.0, 1.0, 2.5, 10.0])
    def test_gradcheck(self, v):
        z = torch.tensor([0.3, 2.0, 15.0], dtype=torch.float64, requires_grad=True)
        assert torch.autograd.gradcheck(lambda a: ive(v, a), (z,))


class TestLogIve:
    """Test the log-scaled Bessel function, including underflow."""

    def test_matches_log_of_ive(self):
        z = torch.tensor([0.1, 1.0, 10.0, 100.0, 1000.0], dtype=torch.float64)
        assert torch.allclose(log_ive(3.0, z), torch.log(ive(3.0, z)))

    def test_underflow_uses_series(self):
        v = 31.0
        z = torch.tensor([1e-12], dtype=torch.float64)
        out = log_ive(v, z)
        expected = v * np.log(1e-12 / 2) - scipy.special.gammaln(v + 1)
        assert torch.isfinite(out).all()
        assert np.isclose(out.item(), expected, rtol=1e-6)

    def test_scalar_input(self):
        out = log_ive(2.0, torch.tensor(3.0, dtype=torch.float64))
        assert out.shape == ()
        assert np.isclose(out.item(), np.log(scipy.special.ive(2.0, 3.0)))

    def test_gradcheck(self):
        z = torch.tensor([0.05, 1.0, 40.0], dtype=torch.float64, requires_grad=True)
        assert torch.autograd.gradcheck(lambda a: log_ive(4.0, a), (z,))

    @pytest.mark.parametrize("d", [4, 16, 64])
    def test_ratio_finite(self, d):
        kappa = torch.tensor([1e-6, 1.0, 10.0, 100.0, 1000.0], dtype=torch.float64)
        r = bessel_ratio(d / 2, kappa)
        assert torch.isfinite(r).all()
        # I_v / I_{v-1} lies in (0, 1)
        assert ((r > 0) & (r < 1)).all()
