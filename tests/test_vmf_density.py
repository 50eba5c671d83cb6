"""
Tests for VMF entropy, KL divergence and log-densities.
"""

import math

import numpy as np
import pytest
import torch

from hyperspherical import normalize, sample_hyperspherical_uniform
from vmf_density import (
    hyperspherical_uniform_entropy,
    imq_kernel,
    kl_divergence,
    log_normal,
    log_vmf_density,
    log_vmf_normalizer,
    mmd_imq,
    pairwise_cos,
    vmf_entropy,
)

KAPPAS = [1e-6, 1.0, 10.0, 100.0, 1000.0]


class TestEntropy:
    """Test entropy and KL divergence formulas."""

    def test_uniform_entropy_on_two_sphere(self):
        # surface of S^2 is 4 pi
        assert np.isclose(hyperspherical_uniform_entropy(3), math.log(4 * math.pi))

    @pytest.mark.parametrize("d", [4, 16, 64])
    @pytest.mark.parametrize("dtype", [torch.float32, torch.float64])
    def test_entropy_finite(self, d, dtype):
        kappa = torch.tensor(KAPPAS, dtype=dtype)
        assert torch.isfinite(vmf_entropy(d, kappa)).all()
        assert torch.isfinite(kl_divergence(d, kappa)).all()

    @pytest.mark.parametrize("d", [4, 5, 8, 16, 32, 64])
    def test_kl_zero_at_zero_kappa(self, d):
        kappa = torch.tensor([0.0, 1e-8], dtype=torch.float64)
        assert torch.allclose(kl_divergence(d, kappa), torch.zeros(2, dtype=torch.float64), atol=1e-7)

    @pytest.mark.parametrize("d", [4, 5, 8, 16, 32, 64])
    def test_kl_monotone_in_kappa(self, d):
        kappa = torch.logspace(-4, 3, 200, dtype=torch.float64)
        kl = kl_divergence(d, kappa)
        assert (kl[1:] - kl[:-1] >= -1e-9).all()
        assert (kl >= -1e-9).all()

    def test_kl_gradient(self):
        kappa = torch.tensor([0.5, 5.0, 50.0], dtype=torch.float64, requires_grad=True)
        kl_divergence(10, kappa).sum().backward()
        assert torch.isfinite(kappa.grad).all()
        assert (kappa.grad > 0).all()


class TestLogDensity:
    """Test the VMF and Gaussian log-densities."""

    def test_normalizer_closed_form_in_three_dims(self):
        # C_3(k) = k / (4 pi sinh k)
        kappa = torch.tensor([0.5, 2.0, 20.0], dtype=torch.float64)
        expected = torch.log(kappa / (4 * math.pi * torch.sinh(kappa)))
        assert torch.allclose(log_vmf_normalizer(3, kappa), expected)

    @pytest.mark.parametrize("d,k", [(4, 2.0), (6, 5.0)])
    def test_integrates_to_one(self, d, k):
        n = 200000
        x = sample_hyperspherical_uniform((n, d), dtype=torch.float64)
        mu = normalize(torch.randn(d, dtype=torch.float64).unsqueeze(0))[0]
        density = torch.exp(log_vmf_density(x, mu, k))
        # E_uniform[f] * surface area
        mass = density.mean().item() * math.exp(hyperspherical_uniform_entropy(d))
        assert abs(mass - 1.0) < 0.05

    def test_density_peaks_at_mean(self):
        mu = normalize(torch.randn(1, 5, dtype=torch.float64))
        x = torch.cat([mu, -mu])
        lp = log_vmf_density(x, mu[0], torch.tensor([3.0, 3.0], dtype=torch.float64))
        assert lp[0] > lp[1]
        assert torch.isclose(lp[0] - lp[1], torch.tensor(6.0, dtype=torch.float64))

    def test_log_normal_unit_variance(self):
        x = torch.randn(4, 3, dtype=torch.float64)
        mu = torch.randn(4, 3, dtype=torch.float64)
        ones = torch.ones(4, 1, dtype=torch.float64)
        assert torch.allclose(log_normal(x, mu), log_normal(x, mu, ones))

    def test_log_normal_matches_torch(self):
        x = torch.randn(4, 3, dtype=torch.float64)
        mu = torch.randn(4, 3, dtype=torch.float64)
        var = torch.rand(4, 3, dtype=torch.float64) + 0.1
        expected = torch.distributions.Normal(mu, var.sqrt()).log_prob(x).sum(dim=-1)
        assert torch.allclose(log_normal(x, mu, var), expected)


class TestKernels:
    """Test the cosine-distance IMQ kernel and MMD."""

    def test_pairwise_cos_nonnegative(self):
        x = normalize(torch.randn(10, 4))
        d = pairwise_cos(x)
        assert d.shape == (10, 10)
        assert (d >= 0).all()
        assert torch.allclose(torch.diagonal(d), torch.zeros(10), atol=1e-5)

    def test_single_point_kernel_is_zero(self):
        x = normalize(torch.randn(1, 4))
        assert imq_kernel(x).item() == 0

    def test_mmd_separates_caps(self):
        mu = torch.zeros(200, 5, dtype=torch.float64)
        mu[:, 0] = 1
        x = normalize(mu + 0.1 * torch.randn(200, 5, dtype=torch.float64))
        same = normalize(mu + 0.1 * torch.randn(200, 5, dtype=torch.float64))
        other = normalize(-mu + 0.1 * torch.randn(200, 5, dtype=torch.float64))
        assert mmd_imq(x, same) < mmd_imq(x, other)
